"""
progression.services.settings_service — Reward Catalog CRUD & NOTIFY
=====================================================================

Typed read/write access to the ``settings`` table that holds reward
amounts, the ad cap and the ad cooldown.  Every mutation:

* validates known reward keys (non-negative integers, booleans),
* records before/after snapshots in ``admin_log`` when an actor is given,
* fires a PG NOTIFY on commit so other processes reload their
  :class:`~progression.engine.cache.ConfigCache`,
* invalidates the in-process cache passed in by the caller.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from progression.database.models import AdminActionType, AdminLog, Setting
from progression.engine.cache import notify_before_commit
from progression.engine.catalog import validate_setting_value
from progression.errors import ValidationError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from progression.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


def _parse(value_json: str | None) -> Any:
    if value_json is None:
        return None
    try:
        return json.loads(value_json)
    except (json.JSONDecodeError, TypeError):
        return value_json


def _as_dict(row: Setting) -> dict[str, Any]:
    return {
        "key": row.key,
        "value": _parse(row.value_json),
        "category": row.category,
        "description": row.description,
    }


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_setting(engine: Engine, key: str) -> dict | None:
    """Fetch a single setting by key, returned as a plain dict."""
    with Session(engine) as session:
        row = session.get(Setting, key)
        return _as_dict(row) if row is not None else None


def get_setting_value(session: Session, key: str, default=None):
    """Read a single setting's parsed value from an existing session.

    Returns *default* when the key does not exist.
    """
    row = session.get(Setting, key)
    if row is None:
        return default
    return _parse(row.value_json)


def get_all_settings(engine: Engine) -> list[dict[str, Any]]:
    """Every setting, ordered by category then key."""
    with Session(engine) as session:
        rows = session.scalars(
            select(Setting).order_by(Setting.category, Setting.key)
        ).all()
        return [_as_dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def upsert_setting(
    engine: Engine,
    *,
    key: str,
    value: Any,
    category: str = "general",
    description: str | None = None,
    actor_id: str | None = None,
    cache: ConfigCache | None = None,
) -> dict | None:
    """Insert or update a single setting and return its stored form."""
    bulk_upsert(
        engine,
        [{"key": key, "value": value, "category": category, "description": description}],
        actor_id=actor_id,
        cache=cache,
    )
    return get_setting(engine, key)


def bulk_upsert(
    engine: Engine,
    settings: list[dict],
    *,
    actor_id: str | None = None,
    cache: ConfigCache | None = None,
) -> int:
    """Upsert many settings in one transaction.

    Each dict needs ``key`` and ``value``; ``category`` and ``description``
    are optional.  All values are validated before anything is written, so
    one bad value rejects the whole batch.

    When *actor_id* is provided, each actual change is recorded in
    ``admin_log`` with before/after snapshots.

    Returns the number of rows touched.
    """
    for item in settings:
        if "key" not in item or "value" not in item:
            raise ValidationError("Each setting needs a key and a value")
        validate_setting_value(item["key"], item["value"])

    count = 0
    with Session(engine) as session:
        for item in settings:
            key = item["key"]
            existing = session.get(Setting, key)
            before_snapshot = _as_dict(existing) if existing else None

            if existing:
                existing.value_json = json.dumps(item["value"])
                if item.get("category"):
                    existing.category = item["category"]
                if item.get("description") is not None:
                    existing.description = item["description"]
            else:
                existing = Setting(
                    key=key,
                    value_json=json.dumps(item["value"]),
                    category=item.get("category") or "general",
                    description=item.get("description"),
                )
                session.add(existing)

            if actor_id is not None:
                after_snapshot = _as_dict(existing)
                # Only log if something actually changed
                if before_snapshot != after_snapshot:
                    session.add(AdminLog(
                        actor_id=actor_id,
                        action_type=(
                            AdminActionType.UPDATE.value if before_snapshot
                            else AdminActionType.CREATE.value
                        ),
                        target_table="settings",
                        target_id=key,
                        before_snapshot=before_snapshot,
                        after_snapshot=after_snapshot,
                    ))

            count += 1

        notify_before_commit(session, "settings")
        session.commit()

    if cache is not None:
        cache.invalidate()
    logger.info("Updated %d setting(s) (actor=%s)", count, actor_id)
    return count
