"""
tests/test_settings_service.py — Reward Catalog CRUD
=====================================================
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from progression.database.models import AdminLog
from progression.engine.cache import ConfigCache
from progression.errors import ValidationError
from progression.services import settings_service


class TestReads:
    def test_get_all_sorted_by_category(self, db_engine):
        rows = settings_service.get_all_settings(db_engine)
        categories = [r["category"] for r in rows]
        assert categories == sorted(categories)
        assert {"key": "ads.daily_limit", "value": 3, "category": "ads",
                "description": "Rewarded ads per civil day"} in rows

    def test_get_missing(self, db_engine):
        assert settings_service.get_setting(db_engine, "missing") is None

    def test_get_value_from_session(self, db_session):
        assert settings_service.get_setting_value(db_session, "ads.reward_xp") == 10
        assert settings_service.get_setting_value(db_session, "missing", 4) == 4


class TestWrites:
    def test_bulk_upsert_audits_changes(self, db_engine):
        count = settings_service.bulk_upsert(
            db_engine,
            [{"key": "ads.reward_xp", "value": 15}, {"key": "ads.daily_limit", "value": 3}],
            actor_id="admin-1",
        )
        assert count == 2
        with Session(db_engine) as session:
            logs = session.scalars(select(AdminLog)).all()
        # The unchanged daily limit is not audited
        assert len(logs) == 1
        assert logs[0].target_id == "ads.reward_xp"
        assert logs[0].before_snapshot["value"] == 10
        assert logs[0].after_snapshot["value"] == 15
        assert logs[0].action_type == "UPDATE"

    def test_new_key_audited_as_create(self, db_engine):
        settings_service.upsert_setting(
            db_engine, key="ui.banner", value="hello", category="ui", actor_id="admin-1",
        )
        with Session(db_engine) as session:
            log = session.scalars(select(AdminLog)).one()
        assert log.action_type == "CREATE"
        assert log.before_snapshot is None

    def test_invalid_value_rejects_whole_batch(self, db_engine):
        with pytest.raises(ValidationError):
            settings_service.bulk_upsert(
                db_engine,
                [{"key": "ads.reward_xp", "value": 20}, {"key": "ads.daily_limit", "value": -1}],
            )
        assert settings_service.get_setting(db_engine, "ads.reward_xp")["value"] == 10

    def test_missing_value_rejected(self, db_engine):
        with pytest.raises(ValidationError):
            settings_service.bulk_upsert(db_engine, [{"key": "ads.reward_xp"}])

    def test_cache_invalidated(self, db_engine):
        cache = MagicMock(spec=ConfigCache)
        settings_service.upsert_setting(db_engine, key="ads.reward_xp", value=12, cache=cache)
        cache.invalidate.assert_called_once()

    def test_real_cache_sees_new_value(self, db_engine):
        cache = ConfigCache(db_engine)
        cache.load_all()
        settings_service.upsert_setting(db_engine, key="ads.reward_xp", value=12, cache=cache)
        assert cache.get_int("ads.reward_xp") == 12
