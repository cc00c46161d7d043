"""
progression.api.routes.admin — Admin endpoints (JWT-protected)
===============================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from progression.api.deps import (
    get_cache,
    get_config,
    get_current_admin,
    get_engine,
    get_session,
    run_request,
)
from progression.config import ProgressionConfig
from progression.constants import MAX_TOTAL_EXPERIENCE
from progression.database.models import AdminLog, RewardKind
from progression.engine.cache import ConfigCache
from progression.services import reconciliation_service, reward_service, settings_service
from progression.services.log_buffer import (
    VALID_LEVELS,
    get_current_level,
    get_logs,
    set_capture_level,
)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class UserProfile(BaseModel):
    user_name: str = Field(min_length=1, max_length=100)
    school_id: str | None = None
    school_name: str | None = None
    sido: str | None = None
    sigungu: str | None = None


class ExperienceSet(BaseModel):
    total_experience: int = Field(ge=0, le=MAX_TOTAL_EXPERIENCE)
    reason: str = Field(min_length=1)


class ManualAward(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    kind: RewardKind
    amount: int = Field(gt=0, le=MAX_TOTAL_EXPERIENCE)
    reason: str = ""
    idempotency_key: str | None = Field(default=None, max_length=200)


class SettingUpdate(BaseModel):
    key: str
    value: Any
    category: str | None = None
    description: str | None = None


class LogLevelUpdate(BaseModel):
    level: str


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.put("/users/{user_id}")
async def upsert_user(
    user_id: str,
    body: UserProfile,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    """Mirror a member's profile from the account system."""
    return await run_request(
        cfg, reward_service.upsert_user, engine, user_id,
        user_name=body.user_name,
        school_id=body.school_id,
        school_name=body.school_name,
        sido=body.sido,
        sigungu=body.sigungu,
    )


@router.put("/users/{user_id}/experience")
async def set_experience(
    user_id: str,
    body: ExperienceSet,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    result = await run_request(
        cfg, reward_service.admin_set_experience, engine, user_id,
        body.total_experience, body.reason, str(admin["sub"]),
        max_attempts=cfg.award_max_attempts,
    )
    return {"user_id": user_id, **result.to_dict()}


@router.get("/users/{user_id}/rewards")
async def get_user_rewards(
    user_id: str,
    limit: int = Query(50, ge=1, le=200),
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    rows = await run_request(cfg, reward_service.get_reward_history, engine, user_id, limit)
    return {"user_id": user_id, "entries": rows}


@router.post("/awards")
async def manual_award(
    body: ManualAward,
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    """Grant XP of a given kind on behalf of a member."""
    result = await run_request(
        cfg, reward_service.award, engine, body.user_id, body.kind, body.amount,
        idempotency_key=body.idempotency_key,
        actor_id=str(admin["sub"]),
        reason=body.reason or None,
        max_attempts=cfg.award_max_attempts,
    )
    return {"user_id": body.user_id, **result.to_dict()}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------
@router.get("/settings")
def get_all_settings(
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
):
    return {"settings": settings_service.get_all_settings(engine)}


@router.put("/settings")
def update_settings(
    body: list[SettingUpdate],
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cache: ConfigCache = Depends(get_cache),
):
    items = [
        {
            "key": s.key,
            "value": s.value,
            **({"category": s.category} if s.category else {}),
            **({"description": s.description} if s.description else {}),
        }
        for s in body
    ]
    count = settings_service.bulk_upsert(
        engine, items, actor_id=str(admin["sub"]), cache=cache,
    )
    return {"updated": count}


# ---------------------------------------------------------------------------
# Audit Log
# ---------------------------------------------------------------------------
@router.get("/audit")
def get_audit_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    admin: dict = Depends(get_current_admin),
    session: Session = Depends(get_session),
):
    """Paginated admin audit log."""
    total = session.scalar(
        select(func.count()).select_from(AdminLog)
    ) or 0
    offset = (page - 1) * page_size

    rows = session.scalars(
        select(AdminLog)
        .order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
        .offset(offset)
        .limit(page_size)
    ).all()

    return {
        "total": total,
        "page": page,
        "page_size": page_size,
        "entries": [
            {
                "id": r.id,
                "actor_id": r.actor_id,
                "action_type": r.action_type,
                "target_table": r.target_table,
                "target_id": r.target_id,
                "before_snapshot": r.before_snapshot,
                "after_snapshot": r.after_snapshot,
                "reason": r.reason,
                "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            }
            for r in rows
        ],
    }


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------
@router.post("/reconcile")
async def reconcile(
    admin: dict = Depends(get_current_admin),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    """Repair users whose level fields drifted from their XP total."""
    return await run_request(
        cfg, reconciliation_service.reconcile_user_stats, engine, actor_id=str(admin["sub"]),
    )


# ---------------------------------------------------------------------------
# Live Logs
# ---------------------------------------------------------------------------
@router.get("/logs")
def get_live_logs(
    tail: int = Query(200, ge=1, le=2000),
    level: str | None = Query(None),
    logger_filter: str | None = Query(None, alias="logger"),
    admin: dict = Depends(get_current_admin),
):
    """Return recent log entries from the in-memory ring buffer."""
    entries = get_logs(tail=tail, level=level, logger_filter=logger_filter)
    return {
        "entries": entries,
        "total": len(entries),
        "capture_level": get_current_level(),
        "valid_levels": list(VALID_LEVELS),
    }


@router.put("/logs/level")
def change_log_level(
    body: LogLevelUpdate,
    admin: dict = Depends(get_current_admin),
):
    """Change the capture level of the ring-buffer handler on-the-fly."""
    return {"level": set_capture_level(body.level)}
