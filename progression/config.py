"""
progression.config — YAML Configuration Loader
===============================================

This module reads ``config.yaml`` for **infrastructure-only** settings
(community identity, civil timezone, API port, retry and timeout budgets).
All reward tuning values (attendance XP, streak bonuses, referral and ad
rewards) live in the ``settings`` database table, editable by admins.

Usage::

    from progression.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.timezone)          # "Asia/Seoul"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

DEFAULT_TIMEZONE = "Asia/Seoul"


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure only.
# Reward tuning lives in the DB ``settings`` table.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ProgressionConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    community_name: str

    # Every civil date in the system is computed in this zone
    timezone: str = DEFAULT_TIMEZONE

    api_port: int = 8000

    # Bounded retries for compare-and-swap conflicts on a user row
    award_max_attempts: int = 5

    # Caller-side timeout for a single DB-backed request
    request_timeout_seconds: float = 10.0

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> ProgressionConfig:
    """Read *path* and return a :class:`ProgressionConfig` instance.

    A missing file yields the defaults so tests and first runs work without
    one; a present file must at least name the community.

    Raises
    ------
    KeyError
        If the file exists but ``community_name`` is missing.
    ValueError
        If ``timezone`` is not a known IANA zone or a budget is not positive.
    """
    config_path = Path(path)
    if not config_path.exists():
        return ProgressionConfig(community_name="Progression Dev")

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    timezone = str(raw.get("timezone") or DEFAULT_TIMEZONE)
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone in {config_path}: {timezone!r}") from exc

    cfg = ProgressionConfig(
        community_name=raw["community_name"],
        timezone=timezone,
        api_port=int(raw.get("api_port", 8000)),
        award_max_attempts=int(raw.get("award_max_attempts", 5)),
        request_timeout_seconds=float(raw.get("request_timeout_seconds", 10.0)),
    )
    if cfg.award_max_attempts < 1:
        raise ValueError("award_max_attempts must be at least 1")
    if cfg.request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")
    return cfg
