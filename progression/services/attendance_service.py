"""
progression.services.attendance_service — Daily Check-in
=========================================================

"Apply day" is one SQL transaction that:

* marks today's civil date in the user's attendance record,
* advances the streak (see :mod:`progression.engine.streak`),
* awards the base attendance XP and any crossed streak bonus as separate
  reward lines through :func:`~progression.services.reward_service.apply_award`,
* mirrors the streak onto ``users.streak``,
* caches the result so a repeated check-in on the same day replays it.

Both the attendance record and the user row are version-checked, so two
concurrent check-ins for one user serialise: the loser re-runs, sees today
already marked and returns the cached result.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from progression.database.engine import DEFAULT_MAX_ATTEMPTS, run_in_transaction
from progression.database.models import AttendanceRecord, RewardKind
from progression.engine.streak import (
    civil_date,
    civil_date_string,
    current_streak,
    month_key,
    next_streak,
    streak_bonus_lines,
    utc_now,
)
from progression.errors import ValidationError
from progression.services.reward_service import (
    apply_award,
    load_user_for_update,
    validate_user_id,
)

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

    from sqlalchemy import Engine

    from progression.engine.catalog import RewardSettings

logger = logging.getLogger(__name__)

_YEAR_MONTH = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass
class CheckInResult:
    """What the client shows after (or instead of) a check-in."""

    checked_today: bool
    streak: int
    total_count: int
    month_count: int
    exp_gained: int = 0
    leveled_up: bool = False
    old_level: int | None = None
    new_level: int | None = None
    bonuses: list[int] = field(default_factory=list)
    last_attendance: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckInResult:
        return cls(
            checked_today=bool(data.get("checked_today", True)),
            streak=int(data.get("streak", 0)),
            total_count=int(data.get("total_count", 0)),
            month_count=int(data.get("month_count", 0)),
            exp_gained=int(data.get("exp_gained", 0)),
            leveled_up=bool(data.get("leveled_up", False)),
            old_level=data.get("old_level"),
            new_level=data.get("new_level"),
            bonuses=list(data.get("bonuses") or []),
            last_attendance=data.get("last_attendance"),
        )


def _month_count(record: AttendanceRecord, key: str) -> int:
    # Older records stored a bare ``true`` per month
    return int((record.monthly_log or {}).get(key, 0))


def _status_from_record(record: AttendanceRecord, today_str: str, month: str, streak: int) -> CheckInResult:
    return CheckInResult(
        checked_today=bool(record.attendances.get(today_str)),
        streak=streak,
        total_count=len(record.attendances),
        month_count=_month_count(record, month),
        last_attendance=record.last_attendance.isoformat() if record.last_attendance else None,
    )


# ---------------------------------------------------------------------------
# Check-in
# ---------------------------------------------------------------------------
def check_in(
    engine: Engine,
    settings: RewardSettings,
    user_id: str,
    *,
    now: datetime | None = None,
    tz: ZoneInfo | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> CheckInResult:
    """Record today's attendance for *user_id* and award its XP.

    Idempotent per civil day: a second call returns the first call's
    result verbatim and awards nothing.

    Raises
    ------
    ValidationError
        Empty or malformed user id.
    NotFoundError
        The user does not exist.
    TransientStoreError
        Retries on concurrent writes ran out.
    """
    user_id = validate_user_id(user_id)
    now = now or utc_now()
    today = civil_date(now, tz)
    today_str = civil_date_string(today)
    month = month_key(today)

    def _work(session: Session) -> CheckInResult:
        user = load_user_for_update(session, user_id)
        record = session.get(AttendanceRecord, user_id)

        if record is not None and record.attendances.get(today_str):
            if record.last_check_in_date == today_str and record.last_check_in_result:
                return CheckInResult.from_dict(record.last_check_in_result)
            logger.warning(
                "User %s already marked for %s without a cached result", user_id, today_str,
            )
            return _status_from_record(record, today_str, month, record.streak)

        if record is None:
            record = AttendanceRecord(
                user_id=user_id, attendances={}, streak=0, monthly_log={},
            )
            session.add(record)

        # Captured before any mutation; bonus crossing is judged against it
        previous_streak = record.streak
        new_streak = next_streak(record.attendances, previous_streak, today)

        # JSON columns only track reassignment, never in-place mutation
        attendances = dict(record.attendances)
        attendances[today_str] = True
        monthly = dict(record.monthly_log or {})
        monthly[month] = _month_count(record, month) + 1

        record.attendances = attendances
        record.monthly_log = monthly
        record.streak = new_streak
        record.last_attendance = now
        record.last_check_in_date = today_str

        old_level = user.level
        exp_gained = 0
        if settings.attendance_xp > 0:
            base = apply_award(
                session, user, RewardKind.ATTENDANCE, settings.attendance_xp,
                idempotency_key=f"attendance:{today_str}",
                civil_date_str=today_str,
                metadata={"streak": new_streak},
                now=now,
            )
            if not base.was_duplicate:
                exp_gained += base.exp_awarded

        bonuses: list[int] = []
        for line in streak_bonus_lines(previous_streak, new_streak, settings):
            bonus = apply_award(
                session, user, RewardKind.ATTENDANCE_STREAK, line.amount,
                idempotency_key=f"attendanceStreak{line.threshold}:{today_str}",
                civil_date_str=today_str,
                metadata={"threshold": line.threshold, "streak": new_streak},
                now=now,
            )
            if not bonus.was_duplicate:
                exp_gained += bonus.exp_awarded
                bonuses.append(line.threshold)

        user.streak = new_streak

        result = CheckInResult(
            checked_today=True,
            streak=new_streak,
            total_count=len(attendances),
            month_count=monthly[month],
            exp_gained=exp_gained,
            leveled_up=user.level > old_level,
            old_level=old_level,
            new_level=user.level,
            bonuses=bonuses,
            last_attendance=now.isoformat(),
        )
        record.last_check_in_result = result.to_dict()
        return result

    result = run_in_transaction(
        engine, _work, max_attempts=max_attempts, label=f"check-in {user_id} {today_str}",
    )
    if result.exp_gained:
        logger.info(
            "User %s checked in on %s (streak %d, +%d XP, bonuses %s)",
            user_id, today_str, result.streak, result.exp_gained, result.bonuses,
        )
    return result


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_attendance(
    engine: Engine,
    user_id: str,
    *,
    now: datetime | None = None,
    tz: ZoneInfo | None = None,
) -> CheckInResult:
    """Today's attendance status without checking in."""
    user_id = validate_user_id(user_id)
    today = civil_date(now, tz)
    today_str = civil_date_string(today)
    month = month_key(today)

    with Session(engine) as session:
        record = session.get(AttendanceRecord, user_id)
        if record is None:
            return CheckInResult(checked_today=False, streak=0, total_count=0, month_count=0)
        streak = current_streak(record.attendances, record.streak, today)
        return _status_from_record(record, today_str, month, streak)


def get_month_attendance(engine: Engine, user_id: str, year_month: str) -> list[str]:
    """Attended civil dates within *year_month* (``YYYY-MM``), ascending."""
    user_id = validate_user_id(user_id)
    if not isinstance(year_month, str) or not _YEAR_MONTH.match(year_month):
        raise ValidationError(f"year_month must look like YYYY-MM, got {year_month!r}")

    with Session(engine) as session:
        record = session.get(AttendanceRecord, user_id)
        if record is None:
            return []
        prefix = f"{year_month}-"
        return sorted(
            day for day, marked in record.attendances.items()
            if marked and day.startswith(prefix)
        )
