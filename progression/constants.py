"""
progression.constants — Shared Constants & the Leveling Formula
================================================================

Single source of truth for the leveling formula and the reward thresholds.
Import from here instead of re-deriving levels in services or routes.

Leveling is triangular: leaving level *n* costs ``n * 10`` XP, so level 2
starts at 10 XP, level 3 at 30, level 4 at 60, and so on.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from progression.errors import ValidationError

if TYPE_CHECKING:
    from progression.database.models import User

# ---------------------------------------------------------------------------
# Leveling
# ---------------------------------------------------------------------------
XP_PER_LEVEL_STEP = 10

# Largest total a user may hold; the stats columns are 32-bit integers
MAX_TOTAL_EXPERIENCE = 2**31 - 1

# Attendance streak lengths that unlock a one-off bonus when crossed.
STREAK_BONUS_THRESHOLDS: tuple[int, ...] = (7, 30)

# Ranking page size bounds
DEFAULT_RANKING_LIMIT = 20
MAX_RANKING_LIMIT = 100
RANKING_PREVIEW_SIZE = 5


@dataclass(frozen=True, slots=True)
class LevelProgress:
    """Position of a cumulative XP total on the level curve."""

    level: int
    current_exp: int
    current_level_required_xp: int

    @property
    def exp_to_next_level(self) -> int:
        return self.current_level_required_xp - self.current_exp

    @property
    def progress_percentage(self) -> int:
        return min(100, (self.current_exp * 100) // self.current_level_required_xp)

    def as_stats(self) -> dict[str, int]:
        return {
            "level": self.level,
            "current_exp": self.current_exp,
            "current_level_required_xp": self.current_level_required_xp,
        }


def required_xp(level: int) -> int:
    """XP needed to go from *level* to *level + 1*."""
    return level * XP_PER_LEVEL_STEP


def cumulative_xp(level: int) -> int:
    """Total XP at which *level* starts (sum of ``required_xp(1..level-1)``)."""
    return XP_PER_LEVEL_STEP * level * (level - 1) // 2


def level_progress(total_experience: int) -> LevelProgress:
    """Map a cumulative XP total to ``(level, current_exp, required)``.

    The level is the largest *L* with ``cumulative_xp(L) <= total``, found
    in closed form so any total costs the same; whatever is left is the
    progress into the current level.  Pure and deterministic.

    Raises
    ------
    ValidationError
        If *total_experience* is negative.
    """
    if total_experience < 0:
        raise ValidationError(
            f"total_experience must be non-negative, got {total_experience}"
        )

    # step * L * (L - 1) / 2 <= total  <=>  L * (L - 1) <= floor(2 * total / step)
    bound = 2 * total_experience // XP_PER_LEVEL_STEP
    level = (1 + math.isqrt(1 + 4 * bound)) // 2

    return LevelProgress(
        level=level,
        current_exp=total_experience - cumulative_xp(level),
        current_level_required_xp=required_xp(level),
    )


def derived_fields_match(user: User) -> bool:
    """True when the cached level columns agree with ``total_experience``."""
    expected = level_progress(user.total_experience)
    return (
        user.level == expected.level
        and user.current_exp == expected.current_exp
        and user.current_level_required_xp == expected.current_level_required_xp
    )
