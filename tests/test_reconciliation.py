"""
tests/test_reconciliation.py — Derived Stats Reconciliation
============================================================
"""

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from progression.database.models import AdminLog, User
from progression.services import reward_service
from progression.services.reconciliation_service import reconcile_user_stats


def test_all_consistent(db_engine, make_user):
    make_user("a")
    make_user("b")
    reward_service.award(db_engine, "a", "referral", 35)
    report = reconcile_user_stats(db_engine)
    assert report["checked"] == 2
    assert report["corrected"] == 0
    assert report["failed"] == []


def test_repairs_drift_and_audits(db_engine, make_user):
    make_user("a")
    reward_service.award(db_engine, "a", "referral", 35)
    with Session(db_engine) as session:
        session.execute(update(User).where(User.id == "a").values(level=1, current_exp=35))
        session.commit()

    report = reconcile_user_stats(db_engine, actor_id="admin-1")

    assert report["corrected"] == 1
    [fix] = report["corrections"]
    assert fix["user_id"] == "a"
    assert fix["stored"]["level"] == 1
    assert fix["expected"] == {"level": 3, "current_exp": 5, "current_level_required_xp": 30}

    with Session(db_engine) as session:
        user = session.get(User, "a")
        assert (user.level, user.current_exp, user.current_level_required_xp) == (3, 5, 30)
        log = session.scalars(select(AdminLog)).one()
        assert log.action_type == "RECONCILE"

    assert reconcile_user_stats(db_engine)["corrected"] == 0
