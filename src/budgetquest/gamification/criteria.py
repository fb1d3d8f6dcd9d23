"""Typed achievement criteria.

Catalog rows store criteria as JSON; they are parsed once into one of the
variants below (discriminated on ``kind``) and then evaluated against a
``UserStats`` snapshot:

    {"kind": "min_count", "field": "transactions", "threshold": 10}
    {"kind": "min_amount", "field": "savings_total", "threshold": 1000}
    {"kind": "min_streak", "streak_type": "daily_transaction", "threshold": 7}
    {"kind": "min_level", "threshold": 5}
    {"kind": "min_xp", "threshold": 1000}
"""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from budgetquest.gamification.stats import UserStats


class _Criterion(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class MinCount(_Criterion):
    kind: Literal["min_count"] = "min_count"
    field: Literal["transactions", "goals_created", "goals_completed", "contributions"]
    threshold: int = Field(ge=0)


class MinAmount(_Criterion):
    kind: Literal["min_amount"] = "min_amount"
    field: Literal["transaction_total", "savings_total"]
    threshold: Decimal = Field(ge=0)


class MinStreak(_Criterion):
    kind: Literal["min_streak"] = "min_streak"
    streak_type: Literal["daily_login", "daily_transaction", "weekly_budget", "monthly_saving"]
    threshold: int = Field(ge=0)


class MinLevel(_Criterion):
    kind: Literal["min_level"] = "min_level"
    threshold: int = Field(ge=1)


class MinXp(_Criterion):
    kind: Literal["min_xp"] = "min_xp"
    threshold: int = Field(ge=0)


Criterion = Annotated[
    Union[MinCount, MinAmount, MinStreak, MinLevel, MinXp],
    Field(discriminator="kind"),
]

_criterion_adapter: TypeAdapter[Criterion] = TypeAdapter(Criterion)


def parse_criterion(data: dict[str, Any]) -> Criterion:
    """Validate a JSON criteria dict. Raises pydantic.ValidationError."""
    return _criterion_adapter.validate_python(data)


def criterion_value(criterion: Criterion, stats: UserStats) -> int | Decimal:
    """The user's current aggregate value that ``criterion`` compares against."""
    if isinstance(criterion, MinCount):
        return {
            "transactions": stats.transaction_count,
            "goals_created": stats.goals_created,
            "goals_completed": stats.goals_completed,
            "contributions": stats.contribution_count,
        }[criterion.field]
    if isinstance(criterion, MinAmount):
        if criterion.field == "transaction_total":
            return stats.transaction_total
        return stats.savings_total
    if isinstance(criterion, MinStreak):
        return stats.best_streaks.get(criterion.streak_type, 0)
    if isinstance(criterion, MinLevel):
        return stats.level
    if isinstance(criterion, MinXp):
        return stats.total_xp
    msg = f"Unhandled criterion {criterion!r}"
    raise TypeError(msg)


def evaluate_criterion(criterion: Criterion, stats: UserStats) -> bool:
    return criterion_value(criterion, stats) >= criterion.threshold


def criterion_progress(criterion: Criterion, stats: UserStats) -> tuple[float, float]:
    """(current, required), with current capped at required."""
    required = float(criterion.threshold)
    current = float(criterion_value(criterion, stats))
    return min(current, required), required
