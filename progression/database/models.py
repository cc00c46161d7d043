"""
progression.database.models — SQLAlchemy 2.0 Data Models
=========================================================

Tables:
- users              — Member record with embedded progression stats
- attendance_records — Per-user civil-date attendance log and streak
- reward_history     — Append-only reward journal with idempotent keys
- admin_log          — Append-only admin audit trail
- settings           — Admin-editable reward catalog (key → JSON)

``users`` and ``attendance_records`` carry a ``version`` column wired to
SQLAlchemy's ``version_id_col``: every UPDATE is issued as
``... WHERE id = :id AND version = :seen`` and a lost race surfaces as
:class:`~sqlalchemy.orm.exc.StaleDataError` instead of a silent overwrite.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all progression ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class RewardKind(enum.StrEnum):
    """Every reason the engine may change a user's experience."""
    ATTENDANCE = "attendance"
    ATTENDANCE_STREAK = "attendanceStreak"
    REFERRAL = "referral"
    AD_REWARD = "adReward"
    ADMIN_ADJUSTMENT = "adminAdjustment"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    SET_EXPERIENCE = "SET_EXPERIENCE"
    MANUAL_AWARD = "MANUAL_AWARD"
    RECONCILE = "RECONCILE"


# ---------------------------------------------------------------------------
# Users — one row per member, stats embedded
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    # Ranking scopes
    school_id: Mapped[str | None] = mapped_column(String(64), default=None)
    school_name: Mapped[str | None] = mapped_column(String(200), default=None)
    sido: Mapped[str | None] = mapped_column(String(50), default=None)
    sigungu: Mapped[str | None] = mapped_column(String(50), default=None)

    # Stats — level/current_exp/current_level_required_xp are derived
    # from total_experience and rewritten with it in the same UPDATE.
    total_experience: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_exp: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_level_required_xp: Mapped[int] = mapped_column(
        Integer, default=10, nullable=False
    )
    streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    attendance: Mapped[AttendanceRecord | None] = relationship(
        back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    rewards: Mapped[list[RewardHistory]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_users_total_experience", "total_experience"),
        Index("ix_users_school_xp", "school_id", "total_experience"),
        Index("ix_users_region_xp", "sido", "sigungu", "total_experience"),
    )

    def stats_snapshot(self) -> dict[str, int]:
        return {
            "total_experience": self.total_experience,
            "level": self.level,
            "current_exp": self.current_exp,
            "current_level_required_xp": self.current_level_required_xp,
        }

    def __repr__(self) -> str:
        return (
            f"<User id={self.id!r} name={self.user_name!r} "
            f"lvl={self.level} xp={self.total_experience}>"
        )


# ---------------------------------------------------------------------------
# AttendanceRecord — one row per user
# ---------------------------------------------------------------------------
class AttendanceRecord(Base):
    """Civil-date attendance log for one user.

    ``attendances`` maps ``YYYY-MM-DD`` → ``True`` and is append-only.
    ``monthly_log`` maps ``YYYY-MM`` → number of days attended that month.
    ``last_check_in_result`` caches the payload returned by the check-in of
    ``last_check_in_date`` so a retried check-in can replay it verbatim.
    """
    __tablename__ = "attendance_records"

    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    attendances: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    monthly_log: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    last_attendance: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_check_in_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    last_check_in_result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    user: Mapped[User] = relationship(back_populates="attendance")

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<AttendanceRecord user={self.user_id!r} streak={self.streak} "
            f"last={self.last_check_in_date}>"
        )


# ---------------------------------------------------------------------------
# RewardHistory — append-only reward journal
# ---------------------------------------------------------------------------
class RewardHistory(Base):
    __tablename__ = "reward_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(30), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    total_before: Mapped[int] = mapped_column(Integer, nullable=False)
    total_after: Mapped[int] = mapped_column(Integer, nullable=False)
    level_before: Mapped[int] = mapped_column(Integer, nullable=False)
    level_after: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    civil_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    user: Mapped[User] = relationship(back_populates="rewards")

    __table_args__ = (
        # NULL keys never collide, so keyless lines always insert
        UniqueConstraint(
            "user_id", "idempotency_key", name="uq_reward_history_user_key",
        ),
        Index("ix_reward_history_user_time", "user_id", "timestamp"),
        Index("ix_reward_history_user_kind_date", "user_id", "kind", "civil_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<RewardHistory id={self.id} user={self.user_id!r} "
            f"kind={self.kind} amount={self.amount}>"
        )


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id!r} action={self.action_type}>"


# ---------------------------------------------------------------------------
# Setting — admin-configurable key-value store
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value configuration store for the reward catalog.

    Values are stored as JSON strings; typed accessors live in
    :class:`~progression.engine.cache.ConfigCache`.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_settings_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r} category={self.category!r}>"
