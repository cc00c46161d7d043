"""
progression.engine.catalog — Reward Catalog
============================================

:class:`RewardSettings` is the snapshot of reward tuning a request works
with.  It is built from the :class:`~progression.engine.cache.ConfigCache`
at the top of each request and passed explicitly into the services, so an
admin change applies to every reward not yet applied and tests can inject
fixed values without touching the database.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from progression.constants import MAX_TOTAL_EXPERIENCE, STREAK_BONUS_THRESHOLDS
from progression.errors import ValidationError

if TYPE_CHECKING:
    from progression.engine.cache import ConfigCache

# setting key → (RewardSettings field, type)
SETTING_FIELDS: dict[str, tuple[str, type]] = {
    "attendance.daily_xp": ("attendance_xp", int),
    "attendance.streak7_bonus_xp": ("attendance_streak7_bonus", int),
    "attendance.streak30_bonus_xp": ("attendance_streak30_bonus", int),
    "referral.enabled": ("referral_enabled", bool),
    "referral.referrer_xp": ("referral_referrer_xp", int),
    "referral.referee_xp": ("referral_referee_xp", int),
    "ads.reward_xp": ("ad_reward_xp", int),
    "ads.daily_limit": ("ad_daily_limit", int),
    "ads.cooldown_minutes": ("ad_cooldown_minutes", int),
}


@dataclass(frozen=True, slots=True)
class RewardSettings:
    """How much XP each reward kind grants, plus the ad-reward guards."""

    attendance_xp: int = 10
    attendance_streak7_bonus: int = 50
    attendance_streak30_bonus: int = 200
    referral_enabled: bool = True
    referral_referrer_xp: int = 30
    referral_referee_xp: int = 20
    ad_reward_xp: int = 10
    ad_daily_limit: int = 3
    ad_cooldown_minutes: int = 30

    @classmethod
    def from_cache(cls, cache: ConfigCache) -> RewardSettings:
        """Read the current values; missing keys fall back to the defaults."""
        defaults = cls()
        values: dict[str, object] = {}
        for key, (field_name, kind) in SETTING_FIELDS.items():
            fallback = getattr(defaults, field_name)
            if kind is bool:
                values[field_name] = cache.get_bool(key, fallback)
            else:
                values[field_name] = max(0, cache.get_int(key, fallback))
        return cls(**values)

    def streak_bonus(self, threshold: int) -> int:
        """Bonus XP for crossing the *threshold*-day streak."""
        if threshold == 7:
            return self.attendance_streak7_bonus
        if threshold == 30:
            return self.attendance_streak30_bonus
        raise ValidationError(
            f"No streak bonus configured for {threshold} days "
            f"(known: {STREAK_BONUS_THRESHOLDS})"
        )

    def to_dict(self) -> dict:
        return asdict(self)


def validate_setting_value(key: str, value: object) -> None:
    """Reject values that would break reward arithmetic.

    Unknown keys pass through untouched; known reward keys must be
    non-negative integers (or booleans for toggles).
    """
    field = SETTING_FIELDS.get(key)
    if field is None:
        return
    _, kind = field
    if kind is bool:
        if not isinstance(value, bool):
            raise ValidationError(f"Setting {key} must be a boolean, got {value!r}")
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(
            f"Setting {key} must be a non-negative integer, got {value!r}"
        )
    if value > MAX_TOTAL_EXPERIENCE:
        raise ValidationError(
            f"Setting {key} must not exceed {MAX_TOTAL_EXPERIENCE}, got {value}"
        )
