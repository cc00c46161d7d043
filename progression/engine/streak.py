"""
progression.engine.streak — Civil Dates & Streak Arithmetic
============================================================

Pure functions, no DB I/O.  Everything works on *civil dates*: calendar
days in the product's fixed timezone (``Asia/Seoul`` unless configured
otherwise), never the host's or the device's local zone.

The streak transition for a check-in on civil day ``d``::

    attendances[d - 1] marked  →  new_streak = previous_streak + 1
    otherwise                  →  new_streak = 1

Bonus crossing is evaluated against the ``previous_streak`` captured
*before* the transition, so a 7-day bonus fires exactly once per run.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from progression.config import DEFAULT_TIMEZONE
from progression.constants import STREAK_BONUS_THRESHOLDS

if TYPE_CHECKING:
    from progression.engine.catalog import RewardSettings

__all__ = [
    "BonusLine",
    "civil_date",
    "civil_date_string",
    "crossed_thresholds",
    "current_streak",
    "month_key",
    "next_streak",
    "streak_bonus_lines",
    "utc_now",
]

_DEFAULT_ZONE = ZoneInfo(DEFAULT_TIMEZONE)


def utc_now() -> datetime:
    return datetime.now(UTC)


def civil_date(now: datetime | None = None, tz: ZoneInfo | None = None) -> date:
    """The calendar day *now* falls on in *tz*.

    Naive datetimes are taken to be UTC.
    """
    now = now or utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(tz or _DEFAULT_ZONE).date()


def civil_date_string(day: date) -> str:
    return day.strftime("%Y-%m-%d")


def month_key(day: date) -> str:
    return day.strftime("%Y-%m")


def next_streak(attendances: dict[str, bool], previous_streak: int, today: date) -> int:
    """Streak length after checking in on *today*."""
    yesterday = civil_date_string(today - timedelta(days=1))
    if attendances.get(yesterday):
        return previous_streak + 1
    return 1


def current_streak(attendances: dict[str, bool], stored_streak: int, today: date) -> int:
    """Streak as it stands on *today* without checking in.

    The stored value is only rewritten on the next check-in, so a run that
    ended before yesterday reads as 0.
    """
    if attendances.get(civil_date_string(today)):
        return stored_streak
    if attendances.get(civil_date_string(today - timedelta(days=1))):
        return stored_streak
    return 0


def crossed_thresholds(
    previous_streak: int,
    new_streak: int,
    thresholds: tuple[int, ...] = STREAK_BONUS_THRESHOLDS,
) -> list[int]:
    """Thresholds with ``new >= t and previous < t``, in ascending order."""
    return [t for t in sorted(thresholds) if new_streak >= t and previous_streak < t]


@dataclass(frozen=True, slots=True)
class BonusLine:
    """One streak bonus to award as its own reward line."""

    threshold: int
    amount: int


def streak_bonus_lines(
    previous_streak: int, new_streak: int, settings: RewardSettings
) -> list[BonusLine]:
    """Bonus reward lines unlocked by moving from *previous* to *new* streak.

    Zero-valued bonuses (disabled by an admin) are dropped.
    """
    lines = []
    for threshold in crossed_thresholds(previous_streak, new_streak):
        amount = settings.streak_bonus(threshold)
        if amount > 0:
            lines.append(BonusLine(threshold=threshold, amount=amount))
    return lines
