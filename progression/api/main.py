"""
progression.api.main — FastAPI application entry point
=======================================================

Run with::

    uvicorn progression.api.main:app --reload --port 8000

or ``python -m progression serve``.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from progression import __version__  # noqa: E402
from progression.api.deps import get_cache, get_engine  # noqa: E402
from progression.api.routes.admin import router as admin_router  # noqa: E402
from progression.api.routes.me import router as me_router  # noqa: E402
from progression.api.routes.public import router as public_router  # noqa: E402
from progression.engine.cache import ConfigCache  # noqa: E402
from progression.errors import (  # noqa: E402
    NotFoundError,
    RewardLimitError,
    TransientStoreError,
    ValidationError,
)
from progression.services.log_buffer import install_handler  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the engine and the settings cache."""
    # Uvicorn reconfigures logging on start, so attach the buffer afterwards
    install_handler()

    engine = get_engine()
    cache = get_cache(engine)
    cache.start_listener()
    logger.info("Progression API started — engine ready (%s)", engine.url.database)
    yield
    cache.stop_listener()
    logger.info("Progression API shutting down")


app = FastAPI(
    title="Progression Engine API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
@app.exception_handler(RewardLimitError)
async def _reward_limit(request: Request, exc: RewardLimitError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": str(exc), "remaining_minutes": exc.remaining_minutes},
    )


@app.exception_handler(ValidationError)
async def _validation(request: Request, exc: ValidationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})


@app.exception_handler(TransientStoreError)
async def _transient(request: Request, exc: TransientStoreError):
    logger.warning("%s %s failed transiently: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "The service is busy; please try again"},
    )


# Mount routers
app.include_router(public_router, prefix="/api")
app.include_router(me_router, prefix="/api")
app.include_router(admin_router, prefix="/api")


@app.get("/api/health")
def health(cache: ConfigCache = Depends(get_cache)):
    return {
        "status": "ok",
        "version": __version__,
        "settings_listener": cache.listener_state,
    }
