"""Precondition errors raised by the gamification engine.

Expected non-events (already recorded today, nothing to claim, no new
achievements) are reported as normal results, never through these.
"""

from __future__ import annotations


class GamificationError(ValueError):
    """Base class for invalid input to the gamification engine."""


class InvalidAmount(GamificationError):
    """Raised when an XP amount is not a non-negative integer."""


class UnknownStreakType(GamificationError):
    """Raised when a streak type is not one of the supported types."""


class UnknownEventType(GamificationError):
    """Raised when an achievement evaluation is triggered by an unknown event."""


class MalformedEvent(GamificationError):
    """Raised when a stream message lacks the fields its hook needs."""
