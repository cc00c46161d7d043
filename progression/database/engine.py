"""
progression.database.engine — Database Connection, Transactions & Async Bridge
===============================================================================

Three things live here:

1. **Engine creation** from ``DATABASE_URL`` with pool and statement
   timeouts, so no store call can block forever.
2. **run_in_transaction** — the one way the reward and attendance services
   write.  The callback runs inside a fresh session; if the commit loses a
   compare-and-swap race (``StaleDataError``), hits a lock timeout
   (``OperationalError``) or a concurrent insert of the same key
   (``IntegrityError``), the whole callback is re-run against fresh state.
   After ``max_attempts`` the failure surfaces as
   :class:`~progression.errors.TransientStoreError`.
3. **run_db** — ships a synchronous DB function to a worker thread so the
   FastAPI event loop stays free.

Usage::

    from progression.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    result = await run_db(reward_service.award, engine, user_id, kind, 10)
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from collections.abc import Callable
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from progression.database.models import Base
from progression.errors import TransientStoreError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
_BASE_BACKOFF = 0.02
_MAX_BACKOFF = 0.5

# Errors that mean "someone else got there first" or "the store was busy".
RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    StaleDataError,
    OperationalError,
    IntegrityError,
)


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    * ``pool_size=5`` / ``max_overflow=10`` — sized for one API process.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.
    * PostgreSQL only: ``statement_timeout`` from ``DB_STATEMENT_TIMEOUT_MS``
      (default 5000 ms).

    Raises
    ------
    RuntimeError
        If neither *url* nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    if url.startswith("sqlite"):
        engine = create_engine(url, echo=False)
    else:
        timeout_ms = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "5000"))
        engine = create_engine(
            url,
            echo=False,        # Set True for SQL debugging
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            pool_timeout=10,
            pool_recycle=3600,
            connect_args={"options": f"-c statement_timeout={timeout_ms}"},
        )
    logger.info("Database engine created → %s", engine.url.host or engine.url.database)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables and seed the default reward catalog.

    Safe to call on every startup.  In production the schema is managed by
    Alembic (``alembic upgrade head``); ``create_all`` is kept for dev/test
    environments where Alembic may not have run.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from progression.database.seed import seed_default_settings

    seed_default_settings(engine)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
def run_in_transaction(
    engine: Engine,
    work: Callable[[Session], T],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    label: str = "transaction",
) -> T:
    """Run *work(session)* and commit, retrying the whole unit on conflicts.

    *work* must re-read everything it depends on from the session it is
    given; a retry never replays a stale delta.  Objects are not expired on
    commit so *work* may return ORM attributes, though plain values are
    preferred.

    Raises
    ------
    TransientStoreError
        When every attempt lost a race or timed out.
    """
    last_exc: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        session = Session(engine, expire_on_commit=False)
        try:
            result = work(session)
            session.commit()
            return result
        except RETRYABLE_ERRORS as exc:
            session.rollback()
            last_exc = exc
            if attempt == max_attempts:
                break
            backoff = min(_BASE_BACKOFF * (2 ** (attempt - 1)), _MAX_BACKOFF)
            wait = backoff + random.uniform(0, backoff * 0.5)
            logger.warning(
                "%s conflict (attempt %d/%d, %s). Retrying in %.3fs",
                label, attempt, max_attempts, type(exc).__name__, wait,
            )
            time.sleep(wait)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    logger.error("%s gave up after %d attempts: %s", label, max_attempts, last_exc)
    raise TransientStoreError(
        f"{label} could not be applied after {max_attempts} attempts; try again"
    ) from last_exc


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Under the hood it calls :func:`asyncio.to_thread`, which schedules
    *func* on the default ``ThreadPoolExecutor`` so the event loop is never
    blocked.  Callers wrap it in :func:`asyncio.wait_for` to enforce a
    deadline; a deadline hit means the outcome is unknown, not failed.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
