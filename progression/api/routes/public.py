"""
progression.api.routes.public — Read-only public endpoints
===========================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from progression.api.deps import get_config, get_engine, run_request
from progression.config import ProgressionConfig
from progression.constants import DEFAULT_RANKING_LIMIT, MAX_RANKING_LIMIT
from progression.services import ranking_service, reward_service

router = APIRouter(tags=["public"])


# ---------------------------------------------------------------------------
# GET /users/{user_id}/progress
# ---------------------------------------------------------------------------
@router.get("/users/{user_id}/progress")
async def get_progress(
    user_id: str,
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    """Level, XP into the current level and percentage to the next."""
    return await run_request(cfg, reward_service.get_progress, engine, user_id)


# ---------------------------------------------------------------------------
# Rankings
# ---------------------------------------------------------------------------
@router.get("/ranking/aggregated/regions")
async def get_region_ranking(
    limit: int = Query(DEFAULT_RANKING_LIMIT, ge=1, le=MAX_RANKING_LIMIT),
    offset: int = Query(0, ge=0),
    keyword: str | None = Query(None, max_length=100),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    rows = await run_request(
        cfg, ranking_service.get_aggregated_regions, engine, limit, offset, keyword,
    )
    return {"entries": rows}


@router.get("/ranking/aggregated/schools")
async def get_school_ranking(
    limit: int = Query(DEFAULT_RANKING_LIMIT, ge=1, le=MAX_RANKING_LIMIT),
    offset: int = Query(0, ge=0),
    keyword: str | None = Query(None, max_length=100),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    rows = await run_request(
        cfg, ranking_service.get_aggregated_schools, engine, limit, offset, keyword,
    )
    return {"entries": rows}


@router.get("/ranking/preview")
async def get_ranking_preview(
    school_id: str | None = Query(None),
    sido: str | None = Query(None),
    sigungu: str | None = Query(None),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    """Top five of each scope; regional and school need their parameters."""
    preview = await run_request(
        cfg, ranking_service.get_ranking_preview, engine,
        school_id=school_id, sido=sido, sigungu=sigungu,
    )
    return preview.to_dict()


@router.get("/ranking/{scope}")
async def get_ranking(
    scope: str,
    school_id: str | None = Query(None),
    sido: str | None = Query(None),
    sigungu: str | None = Query(None),
    cursor: str | None = Query(None),
    limit: int = Query(DEFAULT_RANKING_LIMIT),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    """One leaderboard page; pass ``next_cursor`` back to continue."""
    page = await run_request(
        cfg, ranking_service.get_ranking, engine, scope,
        school_id=school_id, sido=sido, sigungu=sigungu, cursor=cursor, limit=limit,
    )
    return {"scope": scope, **page.to_dict()}


@router.get("/ranking/{scope}/stats")
async def get_ranking_stats(
    scope: str,
    school_id: str | None = Query(None),
    sido: str | None = Query(None),
    sigungu: str | None = Query(None),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    return await run_request(
        cfg, ranking_service.get_ranking_stats, engine, scope,
        school_id=school_id, sido=sido, sigungu=sigungu,
    )


@router.get("/ranking/{scope}/users/{user_id}/rank")
async def get_user_rank(
    scope: str,
    user_id: str,
    school_id: str | None = Query(None),
    sido: str | None = Query(None),
    sigungu: str | None = Query(None),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    return await run_request(
        cfg, ranking_service.get_user_rank, engine, user_id, scope,
        school_id=school_id, sido=sido, sigungu=sigungu,
    )


@router.get("/ranking/{scope}/search")
async def search_ranking(
    scope: str,
    q: str = Query(..., min_length=1, max_length=100),
    school_id: str | None = Query(None),
    sido: str | None = Query(None),
    sigungu: str | None = Query(None),
    limit: int = Query(DEFAULT_RANKING_LIMIT),
    engine=Depends(get_engine),
    cfg: ProgressionConfig = Depends(get_config),
):
    """Members whose name starts with ``q``, each labelled with their rank."""
    entries = await run_request(
        cfg, ranking_service.search_users, engine, scope, q,
        school_id=school_id, sido=sido, sigungu=sigungu, limit=limit,
    )
    return {"scope": scope, "query": q, "entries": [e.to_dict() for e in entries]}
