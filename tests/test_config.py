"""
tests/test_config.py — config.yaml Loading
===========================================
"""

from __future__ import annotations

import pytest

from progression.config import DEFAULT_TIMEZONE, load_config


def test_missing_file_gives_defaults(tmp_path):
    cfg = load_config(tmp_path / "absent.yaml")
    assert cfg.timezone == DEFAULT_TIMEZONE
    assert cfg.award_max_attempts >= 1


def test_reads_values(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        'community_name: "Club"\ntimezone: "UTC"\naward_max_attempts: 8\n',
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.community_name == "Club"
    assert cfg.tzinfo.key == "UTC"
    assert cfg.award_max_attempts == 8
    assert cfg.request_timeout_seconds == 10.0


def test_unknown_timezone(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text('community_name: "Club"\ntimezone: "Mars/Olympus"\n', encoding="utf-8")
    with pytest.raises(ValueError, match="Unknown timezone"):
        load_config(path)


def test_requires_community_name(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text('timezone: "UTC"\n', encoding="utf-8")
    with pytest.raises(KeyError):
        load_config(path)


def test_rejects_zero_attempts(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text('community_name: "Club"\naward_max_attempts: 0\n', encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(path)
