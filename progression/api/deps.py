"""
progression.api.deps — FastAPI dependency injection
====================================================
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from functools import lru_cache
from typing import Annotated, Any

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from progression.config import ProgressionConfig, load_config
from progression.database.engine import create_db_engine, run_db
from progression.engine.cache import ConfigCache
from progression.engine.catalog import RewardSettings

logger = logging.getLogger(__name__)

_WEAK_SECRETS = frozenset({
    "progression-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "It must match the secret the auth provider signs tokens with."
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> ProgressionConfig:
    return load_config(os.getenv("PROGRESSION_CONFIG", "config.yaml"))


@lru_cache(maxsize=4)
def _cache_for(engine: Engine) -> ConfigCache:
    cache = ConfigCache(engine)
    cache.load_all()
    return cache


def get_cache(engine: Annotated[Engine, Depends(get_engine)]) -> ConfigCache:
    return _cache_for(engine)


def get_reward_settings(cache: Annotated[ConfigCache, Depends(get_cache)]) -> RewardSettings:
    """Fresh reward catalog snapshot for this request."""
    return RewardSettings.from_cache(cache)


def get_session(engine: Annotated[Engine, Depends(get_engine)]):
    with Session(engine) as session:
        yield session


# ---------------------------------------------------------------------------
# Auth — tokens are minted by the external auth provider
# ---------------------------------------------------------------------------
def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate the bearer JWT and return its payload. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("sub"):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token has no subject")
    return payload


def get_current_admin(user: Annotated[dict, Depends(get_current_user)]) -> dict:
    """Like :func:`get_current_user` but requires the ``is_admin`` claim."""
    if not user.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return user


# ---------------------------------------------------------------------------
# Deadline-bounded DB calls
# ---------------------------------------------------------------------------
async def run_request(
    cfg: ProgressionConfig, func: Callable[..., Any], *args: Any, **kwargs: Any,
) -> Any:
    """Run a sync service call off the event loop with the request deadline.

    A deadline hit answers 504: the write may or may not have landed, and
    retrying is safe because rewards are keyed by idempotency keys.
    """
    try:
        return await asyncio.wait_for(
            run_db(func, *args, **kwargs), timeout=cfg.request_timeout_seconds,
        )
    except TimeoutError:
        logger.warning(
            "%s exceeded %.1fs deadline", getattr(func, "__name__", func),
            cfg.request_timeout_seconds,
        )
        raise HTTPException(
            status.HTTP_504_GATEWAY_TIMEOUT,
            "Request timed out; the outcome is unknown and it is safe to retry",
        ) from None
