"""
progression.services.reconciliation_service — Derived Stats Reconciliation
===========================================================================

Maintenance job that validates every user's cached ``level``,
``current_exp`` and ``current_level_required_xp`` against
``total_experience`` and rewrites the ones that drifted.

Writes normally repair drift on the fly (see
:func:`~progression.services.reward_service.load_user_for_update`); this
job catches users who have not been written to since.  Each repair is a
version-checked update, so it never overwrites a concurrent award.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from progression.constants import derived_fields_match
from progression.database.engine import run_in_transaction
from progression.database.models import AdminActionType, AdminLog, User
from progression.errors import TransientStoreError
from progression.services.reward_service import repair_derived_fields

logger = logging.getLogger(__name__)


def _repair_one(engine: Engine, user_id: str, actor_id: str | None) -> dict | None:
    def _work(session: Session) -> dict | None:
        user = session.get(User, user_id)
        if user is None:
            return None
        before = user.stats_snapshot()
        violation = repair_derived_fields(user)
        if violation is None:
            return None
        if actor_id is not None:
            session.add(AdminLog(
                actor_id=actor_id,
                action_type=AdminActionType.RECONCILE.value,
                target_table="users",
                target_id=user.id,
                before_snapshot=before,
                after_snapshot=user.stats_snapshot(),
                reason="derived stats reconciliation",
            ))
        return {
            "user_id": user.id,
            "stored": violation.stored,
            "expected": violation.expected,
        }

    return run_in_transaction(engine, _work, label=f"reconcile {user_id}")


def reconcile_user_stats(engine: Engine, *, actor_id: str | None = None) -> dict:
    """Scan all users and repair drifted derived fields.

    Returns ``{"checked": N, "corrected": M, "corrections": [...],
    "failed": [...], "timestamp": ...}``.
    """
    with Session(engine) as session:
        users = session.scalars(select(User)).all()
        checked = len(users)
        drifted = [u.id for u in users if not derived_fields_match(u)]

    corrections: list[dict] = []
    failed: list[str] = []
    for user_id in drifted:
        try:
            fixed = _repair_one(engine, user_id, actor_id)
        except TransientStoreError:
            logger.exception("Could not reconcile user %s", user_id)
            failed.append(user_id)
            continue
        if fixed is not None:
            corrections.append(fixed)

    if corrections:
        logger.warning(
            "Stats reconciliation: corrected %d/%d users: %s",
            len(corrections), checked, corrections,
        )
    else:
        logger.info("Stats reconciliation: all %d users consistent", checked)

    return {
        "checked": checked,
        "corrected": len(corrections),
        "corrections": corrections,
        "failed": failed,
        "timestamp": datetime.now(UTC).isoformat(),
    }
