"""Level curve and computation.

XP required to *reach* a level:

    xp_required_for_level(level) = (level - 1) * 100 + (level - 1) * (level - 2) * 10

Level 1 costs 0 XP, level 2 costs 100, level 3 costs 220, level 4 costs 360.
Each level costs 20 XP more than the previous one.
"""

from __future__ import annotations

from math import isqrt

# (minimum level, value) pairs, evaluated top-down
LEVEL_TITLES: tuple[tuple[int, str], ...] = (
    (100, "Savings Master"),
    (75, "Financial Expert"),
    (50, "Advanced Manager"),
    (25, "Seasoned Saver"),
    (10, "Budget Apprentice"),
    (1, "Beginner"),
)

LEVEL_COLORS: tuple[tuple[int, str], ...] = (
    (100, "#DC2626"),
    (75, "#7C3AED"),
    (50, "#059669"),
    (25, "#3B82F6"),
    (1, "#6B7280"),
)

LEVEL_UP_MESSAGES: tuple[tuple[int, str], ...] = (
    (100, "Incredible! You are now a Savings Master!"),
    (75, "Fantastic! You are a Financial Expert!"),
    (50, "Excellent work! Level {level} reached!"),
    (25, "Well done! You are on your way to expertise!"),
    (10, "Great! You have mastered the basics!"),
    (1, "Congratulations! Level {level}!"),
)


def pick_tier(table: tuple[tuple[int, str], ...], value: int) -> str:
    """Return the entry of the first row whose threshold is <= value."""
    for threshold, entry in table:
        if value >= threshold:
            return entry
    return table[-1][1]


def xp_required_for_level(level: int) -> int:
    """Cumulative XP needed to reach ``level``."""
    if level < 1:
        msg = f"Level must be >= 1, got {level}"
        raise ValueError(msg)
    n = level - 1
    return n * 100 + n * (n - 1) * 10


def level_for_xp(total_xp: int) -> int:
    """Largest level whose XP requirement is <= total_xp."""
    if total_xp < 0:
        msg = f"Total XP must be >= 0, got {total_xp}"
        raise ValueError(msg)
    # 10n^2 + 90n <= xp  =>  n <= (sqrt(8100 + 40xp) - 90) / 20
    n = max(0, (isqrt(8100 + 40 * total_xp) - 90) // 20)
    while xp_required_for_level(n + 2) <= total_xp:
        n += 1
    while n > 0 and xp_required_for_level(n + 1) > total_xp:
        n -= 1
    return n + 1


def level_title(level: int) -> str:
    return pick_tier(LEVEL_TITLES, level)


def level_color(level: int) -> str:
    return pick_tier(LEVEL_COLORS, level)


def level_up_message(level: int) -> str:
    """Celebratory message for reaching ``level``."""
    return pick_tier(LEVEL_UP_MESSAGES, level).format(level=level)


def compute_level(total_xp: int) -> dict:
    """Compute level info from total XP."""
    level = level_for_xp(total_xp)
    floor_xp = xp_required_for_level(level)
    ceiling_xp = xp_required_for_level(level + 1)

    xp_into_level = total_xp - floor_xp
    xp_for_level = ceiling_xp - floor_xp

    return {
        "level": level,
        "title": level_title(level),
        "color": level_color(level),
        "xp_into_level": xp_into_level,
        "xp_for_level": xp_for_level,
        "xp_to_next_level": ceiling_xp - total_xp,
        "progress_percentage": round(xp_into_level / xp_for_level * 100, 2),
    }
