"""
progression.services.reward_service — Reward Application
=========================================================

The only module allowed to change a user's experience.  Every write:

1. reads the user row (repairing drifted level fields on the way),
2. computes the new total and re-derives level / current_exp /
   current_level_required_xp from it with :func:`level_progress`,
3. appends an immutable :class:`RewardHistory` line,
4. commits with a compare-and-swap on ``users.version``.

A lost race re-runs steps 1–4 against fresh state (see
:func:`~progression.database.engine.run_in_transaction`), so concurrent
awards to the same user never lose an increment.

Repeated delivery of the same logical event is absorbed by the
``(user_id, idempotency_key)`` unique key on ``reward_history``: the second
delivery finds the first line and returns its recorded outcome.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from progression.constants import (
    MAX_TOTAL_EXPERIENCE,
    derived_fields_match,
    level_progress,
)
from progression.database.engine import DEFAULT_MAX_ATTEMPTS, run_in_transaction
from progression.database.models import (
    AdminActionType,
    AdminLog,
    RewardHistory,
    RewardKind,
    User,
)
from progression.engine.streak import civil_date, civil_date_string, utc_now
from progression.errors import (
    ConsistencyViolation,
    NotFoundError,
    RewardLimitError,
    ValidationError,
)

if TYPE_CHECKING:
    from zoneinfo import ZoneInfo

    from sqlalchemy import Engine

    from progression.engine.catalog import RewardSettings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
@dataclass
class AwardResult:
    """Outcome of one reward line."""

    exp_awarded: int
    leveled_up: bool
    old_level: int
    new_level: int
    total_experience: int
    was_duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ReferralResult:
    referrer: AwardResult
    referee: AwardResult
    was_duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "referrer": self.referrer.to_dict(),
            "referee": self.referee.to_dict(),
            "was_duplicate": self.was_duplicate,
        }


@dataclass
class AdRewardStatus:
    can_watch: bool
    today_count: int
    daily_limit: int
    remaining_minutes: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
def validate_user_id(user_id: Any) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValidationError(f"Invalid user id: {user_id!r}")
    return user_id.strip()


def validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Award amount must be a positive integer, got {amount!r}")
    if amount > MAX_TOTAL_EXPERIENCE:
        raise ValidationError(
            f"Award amount {amount} exceeds the maximum of {MAX_TOTAL_EXPERIENCE}"
        )
    return amount


def parse_kind(kind: RewardKind | str) -> RewardKind:
    try:
        return RewardKind(kind)
    except ValueError:
        raise ValidationError(
            f"Unknown reward kind {kind!r}; expected one of "
            f"{[k.value for k in RewardKind]}"
        ) from None


def _as_utc(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


# ---------------------------------------------------------------------------
# Stats helpers
# ---------------------------------------------------------------------------
def write_total(user: User, new_total: int) -> None:
    """Set ``total_experience`` and every field derived from it."""
    progress = level_progress(new_total)
    user.total_experience = new_total
    user.level = progress.level
    user.current_exp = progress.current_exp
    user.current_level_required_xp = progress.current_level_required_xp


def repair_derived_fields(user: User) -> ConsistencyViolation | None:
    """Recompute cached level fields if they drifted from the total.

    Returns the violation that was healed, or ``None`` when consistent.
    """
    if derived_fields_match(user):
        return None
    violation = ConsistencyViolation(
        user.id,
        stored=user.stats_snapshot(),
        expected=level_progress(user.total_experience).as_stats(),
    )
    logger.warning("%s — repairing from total_experience", violation)
    write_total(user, user.total_experience)
    return violation


def load_user_for_update(session: Session, user_id: str) -> User:
    """Fetch a user inside a write transaction, healing drifted fields."""
    user = session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    repair_derived_fields(user)
    return user


def get_or_create_user(session: Session, user_id: str, user_name: str = "") -> User:
    """Fetch or insert a User row with zeroed stats."""
    user = session.get(User, user_id)
    if user is None:
        user = User(id=user_id, user_name=user_name)
        write_total(user, 0)
        session.add(user)
        session.flush()
    return user


def upsert_user(
    engine: Engine,
    user_id: str,
    *,
    user_name: str,
    school_id: str | None = None,
    school_name: str | None = None,
    sido: str | None = None,
    sigungu: str | None = None,
) -> dict[str, Any]:
    """Create a user or refresh the profile fields the ranking filters on.

    Profiles are owned by the account system; this mirrors what ranking
    needs and never touches stats.
    """
    user_id = validate_user_id(user_id)

    def _work(session: Session) -> dict[str, Any]:
        user = get_or_create_user(session, user_id, user_name)
        user.user_name = user_name
        user.school_id = school_id
        user.school_name = school_name
        user.sido = sido
        user.sigungu = sigungu
        session.flush()
        return {"user_id": user.id, "user_name": user.user_name, **user.stats_snapshot()}

    return run_in_transaction(engine, _work, label=f"upsert user {user_id}")


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
def find_history(session: Session, user_id: str, idempotency_key: str) -> RewardHistory | None:
    return session.scalar(
        select(RewardHistory).where(
            RewardHistory.user_id == user_id,
            RewardHistory.idempotency_key == idempotency_key,
        )
    )


def _result_from_history(line: RewardHistory) -> AwardResult:
    return AwardResult(
        exp_awarded=line.amount,
        leveled_up=line.level_after > line.level_before,
        old_level=line.level_before,
        new_level=line.level_after,
        total_experience=line.total_after,
        was_duplicate=True,
    )


def _history_dict(line: RewardHistory) -> dict[str, Any]:
    return {
        "id": line.id,
        "kind": line.kind,
        "amount": line.amount,
        "total_before": line.total_before,
        "total_after": line.total_after,
        "level_before": line.level_before,
        "level_after": line.level_after,
        "actor_id": line.actor_id,
        "reason": line.reason,
        "idempotency_key": line.idempotency_key,
        "civil_date": line.civil_date,
        "metadata": line.metadata_,
        "timestamp": line.timestamp.isoformat() if line.timestamp else None,
    }


def get_reward_history(engine: Engine, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
    """Most recent reward lines for a user, newest first."""
    user_id = validate_user_id(user_id)
    limit = max(1, min(limit, 200))
    with Session(engine) as session:
        rows = session.scalars(
            select(RewardHistory)
            .where(RewardHistory.user_id == user_id)
            .order_by(RewardHistory.timestamp.desc(), RewardHistory.id.desc())
            .limit(limit)
        ).all()
        return [_history_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Core primitive (runs inside a caller's transaction)
# ---------------------------------------------------------------------------
def apply_award(
    session: Session,
    user: User,
    kind: RewardKind,
    amount: int,
    *,
    idempotency_key: str | None = None,
    actor_id: str | None = None,
    reason: str | None = None,
    civil_date_str: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> AwardResult:
    """Add *amount* XP to *user* and journal it, within *session*.

    The caller owns the transaction; *user* must have been loaded through
    :func:`load_user_for_update` in the same session.
    """
    if idempotency_key is not None:
        existing = find_history(session, user.id, idempotency_key)
        if existing is not None:
            logger.info(
                "Duplicate %s for user %s (key=%s) — returning recorded outcome",
                kind.value, user.id, idempotency_key,
            )
            return _result_from_history(existing)

    old_total = user.total_experience
    old_level = user.level
    if old_total + amount > MAX_TOTAL_EXPERIENCE:
        raise ValidationError(
            f"Awarding {amount} XP would take user {user.id} past the maximum total "
            f"of {MAX_TOTAL_EXPERIENCE}"
        )
    write_total(user, old_total + amount)

    session.add(RewardHistory(
        user_id=user.id,
        kind=kind.value,
        amount=amount,
        total_before=old_total,
        total_after=user.total_experience,
        level_before=old_level,
        level_after=user.level,
        actor_id=actor_id,
        reason=reason,
        idempotency_key=idempotency_key,
        civil_date=civil_date_str,
        metadata_=metadata,
        timestamp=_as_utc(now or utc_now()),
    ))

    return AwardResult(
        exp_awarded=amount,
        leveled_up=user.level > old_level,
        old_level=old_level,
        new_level=user.level,
        total_experience=user.total_experience,
    )


def _noop_result(user: User) -> AwardResult:
    return AwardResult(
        exp_awarded=0,
        leveled_up=False,
        old_level=user.level,
        new_level=user.level,
        total_experience=user.total_experience,
    )


def _log_award(user_id: str, kind: RewardKind, result: AwardResult) -> None:
    if result.was_duplicate:
        return
    logger.info(
        "Awarded %d XP (%s) to user %s → total %d, level %d",
        result.exp_awarded, kind.value, user_id, result.total_experience, result.new_level,
    )
    if result.leveled_up:
        logger.info(
            "User %s leveled up %d → %d", user_id, result.old_level, result.new_level,
        )


# ---------------------------------------------------------------------------
# Award
# ---------------------------------------------------------------------------
def award(
    engine: Engine,
    user_id: str,
    kind: RewardKind | str,
    amount: int,
    *,
    idempotency_key: str | None = None,
    actor_id: str | None = None,
    reason: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> AwardResult:
    """Atomically add *amount* XP of *kind* to a user.

    Raises
    ------
    ValidationError
        Bad user id, unknown kind, non-positive amount, or
        ``adminAdjustment`` (use :func:`admin_set_experience`).
    NotFoundError
        The user does not exist.
    TransientStoreError
        Every attempt lost a compare-and-swap race or timed out.
    """
    user_id = validate_user_id(user_id)
    kind = parse_kind(kind)
    amount = validate_amount(amount)
    if kind is RewardKind.ADMIN_ADJUSTMENT:
        raise ValidationError("adminAdjustment sets an absolute total; use admin_set_experience")

    def _work(session: Session) -> AwardResult:
        user = load_user_for_update(session, user_id)
        before = user.stats_snapshot()
        result = apply_award(
            session, user, kind, amount,
            idempotency_key=idempotency_key,
            actor_id=actor_id,
            reason=reason,
            metadata=metadata,
            now=now,
        )
        # Awards granted by a person are also audited
        if actor_id is not None and not result.was_duplicate:
            session.add(AdminLog(
                actor_id=actor_id,
                action_type=AdminActionType.MANUAL_AWARD.value,
                target_table="users",
                target_id=user.id,
                before_snapshot=before,
                after_snapshot={**user.stats_snapshot(), "kind": kind.value, "amount": amount},
                reason=reason,
            ))
        return result

    result = run_in_transaction(
        engine, _work, max_attempts=max_attempts, label=f"award {kind.value} to {user_id}",
    )
    _log_award(user_id, kind, result)
    return result


# ---------------------------------------------------------------------------
# Admin adjustment
# ---------------------------------------------------------------------------
def admin_set_experience(
    engine: Engine,
    user_id: str,
    new_total: int,
    reason: str,
    admin_id: str,
    *,
    now: datetime | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> AwardResult:
    """Set a user's ``total_experience`` to an absolute value.

    The only path that may lower XP.  Records a reward line of kind
    ``adminAdjustment`` (``amount`` is the signed delta) and an admin_log
    row with before/after stats.
    """
    user_id = validate_user_id(user_id)
    if isinstance(new_total, bool) or not isinstance(new_total, int) or new_total < 0:
        raise ValidationError(f"new_total must be a non-negative integer, got {new_total!r}")
    if new_total > MAX_TOTAL_EXPERIENCE:
        raise ValidationError(
            f"new_total {new_total} exceeds the maximum of {MAX_TOTAL_EXPERIENCE}"
        )
    if not reason or not reason.strip():
        raise ValidationError("A reason is required for experience adjustments")
    if not admin_id or not str(admin_id).strip():
        raise ValidationError("admin_id is required")
    reason = reason.strip()
    admin_id = str(admin_id).strip()

    def _work(session: Session) -> AwardResult:
        user = load_user_for_update(session, user_id)
        before = user.stats_snapshot()
        old_total = user.total_experience
        old_level = user.level
        write_total(user, new_total)

        session.add(RewardHistory(
            user_id=user.id,
            kind=RewardKind.ADMIN_ADJUSTMENT.value,
            amount=new_total - old_total,
            total_before=old_total,
            total_after=new_total,
            level_before=old_level,
            level_after=user.level,
            actor_id=admin_id,
            reason=reason,
            metadata_={"new_total": new_total},
            timestamp=_as_utc(now or utc_now()),
        ))
        session.add(AdminLog(
            actor_id=admin_id,
            action_type=AdminActionType.SET_EXPERIENCE.value,
            target_table="users",
            target_id=user.id,
            before_snapshot=before,
            after_snapshot=user.stats_snapshot(),
            reason=reason,
        ))
        return AwardResult(
            exp_awarded=new_total - old_total,
            leveled_up=user.level > old_level,
            old_level=old_level,
            new_level=user.level,
            total_experience=new_total,
        )

    result = run_in_transaction(
        engine, _work, max_attempts=max_attempts, label=f"set experience of {user_id}",
    )
    logger.info(
        "Admin %s set experience of %s to %d (level %d → %d): %s",
        admin_id, user_id, new_total, result.old_level, result.new_level, reason,
    )
    return result


# ---------------------------------------------------------------------------
# Rewarded ads
# ---------------------------------------------------------------------------
def _ad_guard(
    session: Session,
    settings: RewardSettings,
    user_id: str,
    now: datetime,
    today: str,
) -> AdRewardStatus:
    today_count = session.scalar(
        select(func.count()).select_from(RewardHistory).where(
            RewardHistory.user_id == user_id,
            RewardHistory.kind == RewardKind.AD_REWARD.value,
            RewardHistory.civil_date == today,
        )
    ) or 0
    if today_count >= settings.ad_daily_limit:
        return AdRewardStatus(
            can_watch=False,
            today_count=today_count,
            daily_limit=settings.ad_daily_limit,
            remaining_minutes=0,
            message="Daily rewarded ad limit reached",
        )

    last = session.scalar(
        select(func.max(RewardHistory.timestamp)).where(
            RewardHistory.user_id == user_id,
            RewardHistory.kind == RewardKind.AD_REWARD.value,
        )
    )
    if last is not None:
        cooldown = timedelta(minutes=settings.ad_cooldown_minutes)
        elapsed = _as_utc(now) - _as_utc(last)
        if elapsed < cooldown:
            remaining = math.ceil((cooldown - elapsed).total_seconds() / 60)
            return AdRewardStatus(
                can_watch=False,
                today_count=today_count,
                daily_limit=settings.ad_daily_limit,
                remaining_minutes=remaining,
                message=f"Next rewarded ad available in {remaining} minutes",
            )

    return AdRewardStatus(
        can_watch=True,
        today_count=today_count,
        daily_limit=settings.ad_daily_limit,
        remaining_minutes=0,
        message="Rewarded ad available",
    )


def get_ad_reward_status(
    engine: Engine,
    settings: RewardSettings,
    user_id: str,
    *,
    now: datetime | None = None,
    tz: ZoneInfo | None = None,
) -> AdRewardStatus:
    """Whether the user may claim a rewarded ad right now."""
    user_id = validate_user_id(user_id)
    now = now or utc_now()
    today = civil_date_string(civil_date(now, tz))
    with Session(engine) as session:
        return _ad_guard(session, settings, user_id, now, today)


def claim_ad_reward(
    engine: Engine,
    settings: RewardSettings,
    user_id: str,
    *,
    callback_id: str | None = None,
    now: datetime | None = None,
    tz: ZoneInfo | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> AwardResult:
    """Award the configured ad XP after an ad network reports a completed view.

    The callback is a trigger only: the amount always comes from
    ``settings.ad_reward_xp``.  The daily cap and cooldown are checked in
    the same transaction as the award, so racing claims serialise on the
    user row.  *callback_id* makes redelivered callbacks idempotent.

    Raises
    ------
    RewardLimitError
        Daily cap reached or still inside the cooldown window.
    """
    user_id = validate_user_id(user_id)
    amount = settings.ad_reward_xp
    if amount <= 0:
        raise ValidationError("Rewarded ads are disabled")
    now = now or utc_now()
    today = civil_date_string(civil_date(now, tz))
    key = f"adReward:{callback_id}" if callback_id else None

    def _work(session: Session) -> AwardResult:
        user = load_user_for_update(session, user_id)
        if key is not None:
            existing = find_history(session, user_id, key)
            if existing is not None:
                return _result_from_history(existing)

        status = _ad_guard(session, settings, user_id, now, today)
        if not status.can_watch:
            raise RewardLimitError(status.message, remaining_minutes=status.remaining_minutes)

        return apply_award(
            session, user, RewardKind.AD_REWARD, amount,
            idempotency_key=key,
            civil_date_str=today,
            metadata={"callback_id": callback_id} if callback_id else None,
            now=now,
        )

    result = run_in_transaction(
        engine, _work, max_attempts=max_attempts, label=f"ad reward for {user_id}",
    )
    _log_award(user_id, RewardKind.AD_REWARD, result)
    return result


# ---------------------------------------------------------------------------
# Referrals
# ---------------------------------------------------------------------------
def complete_referral(
    engine: Engine,
    settings: RewardSettings,
    referrer_id: str,
    referee_id: str,
    *,
    now: datetime | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> ReferralResult:
    """Award both sides of a completed referral, at most once per referee."""
    referrer_id = validate_user_id(referrer_id)
    referee_id = validate_user_id(referee_id)
    if referrer_id == referee_id:
        raise ValidationError("A user cannot refer themselves")
    if not settings.referral_enabled:
        raise ValidationError("Referral rewards are disabled")

    # Both lines share the key; each lives in its own user's key space
    key = f"referral:{referee_id}"

    def _work(session: Session) -> ReferralResult:
        referrer = load_user_for_update(session, referrer_id)
        referee = load_user_for_update(session, referee_id)

        joined = find_history(session, referee_id, key)
        if joined is not None:
            original = (joined.metadata_ or {}).get("referrer_id", referrer_id)
            line = find_history(session, original, key)
            return ReferralResult(
                referrer=_result_from_history(line) if line else _noop_result(referrer),
                referee=_result_from_history(joined),
                was_duplicate=True,
            )

        meta = {"referrer_id": referrer_id, "referee_id": referee_id}
        if settings.referral_referrer_xp > 0:
            referrer_result = apply_award(
                session, referrer, RewardKind.REFERRAL, settings.referral_referrer_xp,
                idempotency_key=key, metadata=meta, now=now,
            )
        else:
            referrer_result = _noop_result(referrer)
        if settings.referral_referee_xp > 0:
            referee_result = apply_award(
                session, referee, RewardKind.REFERRAL, settings.referral_referee_xp,
                idempotency_key=key, metadata=meta, now=now,
            )
        else:
            # Still journal the referee so a second referral is refused
            referee_result = _noop_result(referee)
            session.add(RewardHistory(
                user_id=referee.id,
                kind=RewardKind.REFERRAL.value,
                amount=0,
                total_before=referee.total_experience,
                total_after=referee.total_experience,
                level_before=referee.level,
                level_after=referee.level,
                idempotency_key=key,
                metadata_=meta,
                timestamp=_as_utc(now or utc_now()),
            ))
        return ReferralResult(referrer=referrer_result, referee=referee_result)

    result = run_in_transaction(
        engine, _work, max_attempts=max_attempts,
        label=f"referral {referrer_id} → {referee_id}",
    )
    if not result.was_duplicate:
        logger.info(
            "Referral %s → %s awarded %d / %d XP",
            referrer_id, referee_id,
            result.referrer.exp_awarded, result.referee.exp_awarded,
        )
    return result


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_progress(engine: Engine, user_id: str) -> dict[str, Any]:
    """Stats and level progress for display.

    Derived fields are always recomputed from ``total_experience`` so a
    drifted row is never shown; the drift itself is repaired on the next
    write or by the reconciliation job.
    """
    user_id = validate_user_id(user_id)
    with Session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if not derived_fields_match(user):
            logger.warning(
                "User %s has drifted level fields %s; serving recomputed values",
                user_id, user.stats_snapshot(),
            )
        progress = level_progress(user.total_experience)
        return {
            "user_id": user.id,
            "user_name": user.user_name,
            "total_experience": user.total_experience,
            "level": progress.level,
            "current_exp": progress.current_exp,
            "current_level_required_xp": progress.current_level_required_xp,
            "exp_to_next_level": progress.exp_to_next_level,
            "progress_percentage": progress.progress_percentage,
            "streak": user.streak,
        }
