"""
tests/test_cache.py — Settings Cache & Reward Catalog
======================================================

Tests NOTIFY payload routing (without a real PG connection), the NOTIFY
allowlist, the typed accessors over seeded settings, and the
RewardSettings snapshot built from them.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.orm import Session

from progression.database.models import Setting
from progression.engine.cache import (
    ALLOWED_NOTIFY_TABLES,
    LISTENER_OFF,
    ConfigCache,
    notify_before_commit,
    reconnect_delay,
)
from progression.engine.catalog import RewardSettings, validate_setting_value
from progression.errors import ValidationError


class TestNotifyRouting:
    @pytest.fixture
    def cache(self):
        return ConfigCache(MagicMock())

    def test_settings_payload_reloads(self, cache):
        with patch.object(cache, "_load_settings") as mock_load:
            cache.handle_notify(" Settings ")
            mock_load.assert_called_once()

    def test_unknown_payload_ignored(self, cache):
        with patch.object(cache, "_load_settings") as mock_load:
            cache.handle_notify("users")
            mock_load.assert_not_called()


class TestNotifyAllowlist:
    def test_rejects_injection_payload(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            notify_before_commit(MagicMock(), "settings'; DROP TABLE users; --")

    def test_rejects_unknown_table_in_session(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            notify_before_commit(MagicMock(), "reward_history")

    def test_skipped_on_sqlite(self, db_session):
        for table in ALLOWED_NOTIFY_TABLES:
            notify_before_commit(db_session, table)

    def test_listener_is_noop_on_sqlite(self, db_engine):
        cache = ConfigCache(db_engine)
        cache.start_listener()
        assert cache.listener_state == LISTENER_OFF
        cache.stop_listener()
        assert cache.listener_state == LISTENER_OFF

    @pytest.mark.parametrize("attempt", [1, 3, 20])
    def test_reconnect_delay_bounded(self, attempt):
        base = min(2 ** (attempt - 1), 60.0)
        assert base <= reconnect_delay(attempt) <= base * 1.5


class TestTypedAccessors:
    def test_seeded_values_loaded(self, db_engine):
        cache = ConfigCache(db_engine)
        cache.load_all()
        assert cache.loaded
        assert cache.get_int("attendance.daily_xp") == 10
        assert cache.get_bool("referral.enabled") is True

    def test_missing_key_uses_default(self, db_engine):
        cache = ConfigCache(db_engine)
        cache.load_all()
        assert cache.get_int("nope", 7) == 7
        assert cache.get_bool("nope", True) is True

    def test_non_numeric_value_falls_back(self, db_engine):
        with Session(db_engine) as session:
            session.add(Setting(key="ads.reward_xp_bad", value_json=json.dumps("lots")))
            session.commit()
        cache = ConfigCache(db_engine)
        cache.load_all()
        assert cache.get_int("ads.reward_xp_bad", 3) == 3

    def test_invalidate_picks_up_changes(self, db_engine):
        cache = ConfigCache(db_engine)
        cache.load_all()
        with Session(db_engine) as session:
            session.get(Setting, "ads.daily_limit").value_json = json.dumps(9)
            session.commit()
        assert cache.get_int("ads.daily_limit") == 3
        cache.invalidate()
        assert cache.get_int("ads.daily_limit") == 9


class TestRewardSettings:
    def test_from_seeded_cache_matches_defaults(self, db_engine):
        cache = ConfigCache(db_engine)
        cache.load_all()
        assert RewardSettings.from_cache(cache) == RewardSettings()

    def test_from_mock_cache(self):
        cache = MagicMock(spec=ConfigCache)
        cache.get_int.side_effect = lambda k, d=0: 25 if k == "ads.reward_xp" else d
        cache.get_bool.side_effect = lambda k, d=False: False
        settings = RewardSettings.from_cache(cache)
        assert settings.ad_reward_xp == 25
        assert settings.attendance_xp == 10
        assert settings.referral_enabled is False

    def test_negative_values_clamped(self):
        cache = MagicMock(spec=ConfigCache)
        cache.get_int.side_effect = lambda k, d=0: -5
        cache.get_bool.side_effect = lambda k, d=False: d
        settings = RewardSettings.from_cache(cache)
        assert settings.attendance_xp == 0
        assert settings.ad_cooldown_minutes == 0

    def test_unknown_threshold(self):
        with pytest.raises(ValidationError):
            RewardSettings().streak_bonus(14)


class TestValidateSettingValue:
    @pytest.mark.parametrize("value", [-1, 1.5, "10", True, None])
    def test_bad_int_values(self, value):
        with pytest.raises(ValidationError):
            validate_setting_value("attendance.daily_xp", value)

    def test_values_past_maximum_total_rejected(self):
        with pytest.raises(ValidationError):
            validate_setting_value("attendance.daily_xp", 10**15)

    def test_zero_allowed(self):
        validate_setting_value("ads.cooldown_minutes", 0)

    def test_toggle_requires_bool(self):
        with pytest.raises(ValidationError):
            validate_setting_value("referral.enabled", 1)
        validate_setting_value("referral.enabled", False)

    def test_unknown_keys_pass(self):
        validate_setting_value("ui.banner", {"text": "hi"})
