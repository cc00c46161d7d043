"""
progression.api.routes.me — Endpoints acting on the token's own user
=====================================================================

The acting user is always the JWT ``sub``; clients never name the user
they are rewarding.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from progression.api.deps import (
    get_config,
    get_current_user,
    get_engine,
    get_reward_settings,
    run_request,
)
from progression.config import ProgressionConfig
from progression.engine.catalog import RewardSettings
from progression.services import attendance_service, reward_service

router = APIRouter(prefix="/me", tags=["me"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class AdRewardClaim(BaseModel):
    # Extra fields (an ad network's "amount") are ignored
    callback_id: str | None = Field(default=None, max_length=150)


class ReferralClaim(BaseModel):
    referrer_id: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------
@router.get("/attendance")
async def get_attendance(
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    result = await run_request(
        cfg, attendance_service.get_attendance, engine, user["sub"], tz=cfg.tzinfo,
    )
    return result.to_dict()


@router.get("/attendance/calendar")
async def get_attendance_calendar(
    month: str = Query(..., pattern=r"^\d{4}-\d{2}$"),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    days = await run_request(
        cfg, attendance_service.get_month_attendance, engine, user["sub"], month,
    )
    return {"month": month, "days": days, "count": len(days)}


@router.post("/attendance/check-in")
async def check_in(
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    settings: RewardSettings = Depends(get_reward_settings),
    cfg: ProgressionConfig = Depends(get_config),
):
    result = await run_request(
        cfg, attendance_service.check_in, engine, settings, user["sub"],
        tz=cfg.tzinfo, max_attempts=cfg.award_max_attempts,
    )
    return result.to_dict()


# ---------------------------------------------------------------------------
# Rewarded ads
# ---------------------------------------------------------------------------
@router.get("/ads/status")
async def get_ad_status(
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    settings: RewardSettings = Depends(get_reward_settings),
    cfg: ProgressionConfig = Depends(get_config),
):
    status = await run_request(
        cfg, reward_service.get_ad_reward_status, engine, settings, user["sub"],
        tz=cfg.tzinfo,
    )
    return status.to_dict()


@router.post("/ads/reward")
async def claim_ad_reward(
    body: AdRewardClaim,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    settings: RewardSettings = Depends(get_reward_settings),
    cfg: ProgressionConfig = Depends(get_config),
):
    result = await run_request(
        cfg, reward_service.claim_ad_reward, engine, settings, user["sub"],
        callback_id=body.callback_id, tz=cfg.tzinfo, max_attempts=cfg.award_max_attempts,
    )
    return result.to_dict()


# ---------------------------------------------------------------------------
# Referral & history
# ---------------------------------------------------------------------------
@router.post("/referral")
async def complete_referral(
    body: ReferralClaim,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    settings: RewardSettings = Depends(get_reward_settings),
    cfg: ProgressionConfig = Depends(get_config),
):
    result = await run_request(
        cfg, reward_service.complete_referral, engine, settings,
        body.referrer_id, user["sub"], max_attempts=cfg.award_max_attempts,
    )
    return result.to_dict()


@router.get("/rewards")
async def get_my_rewards(
    limit: int = Query(50, ge=1, le=200),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    rows = await run_request(cfg, reward_service.get_reward_history, engine, user["sub"], limit)
    return {"entries": rows}
