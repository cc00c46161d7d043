"""
progression.database.seed — Default Reward Catalog Seeder
==========================================================

Baseline reward settings seeded on first startup so the engine can award
XP immediately.  Admins tune them later from the settings endpoints.

Idempotent — only inserts keys that don't already exist.  Values edited
by admins are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from progression.database.models import Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    "attendance.daily_xp": (10, "attendance", "XP for the first check-in of a civil day"),
    "attendance.streak7_bonus_xp": (
        50, "attendance", "One-off bonus when a streak reaches 7 days",
    ),
    "attendance.streak30_bonus_xp": (
        200, "attendance", "One-off bonus when a streak reaches 30 days",
    ),
    "referral.enabled": (True, "referral", "Award XP for completed referrals"),
    "referral.referrer_xp": (30, "referral", "XP for the member who referred someone"),
    "referral.referee_xp": (20, "referral", "XP for the member who was referred"),
    "ads.reward_xp": (10, "ads", "XP per completed rewarded ad"),
    "ads.daily_limit": (3, "ads", "Rewarded ads per civil day"),
    "ads.cooldown_minutes": (30, "ads", "Minutes between rewarded ads"),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> int:
    """Insert default settings that don't yet exist.

    Returns the number of rows inserted.
    """
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            if session.get(Setting, key) is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default settings.", inserted)
    return inserted
