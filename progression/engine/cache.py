"""
progression.engine.cache — In-Memory Settings Cache with PG LISTEN/NOTIFY
==========================================================================

Reward amounts, caps and cooldowns are read on every request, so the
``settings`` table is mirrored in memory.  Invalidation is explicit:

* in-process writers call :meth:`ConfigCache.invalidate`;
* other processes learn about changes through PostgreSQL
  ``LISTEN/NOTIFY`` on :data:`NOTIFY_CHANNEL`, queued by
  :func:`notify_before_commit` so the signal only fires if the write
  commits.

Readers never keep a value across requests; they build a fresh
:class:`~progression.engine.catalog.RewardSettings` from the cache at the
top of each request.
"""

from __future__ import annotations

import json
import logging
import random
import select as _select
import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import select, text
from sqlalchemy.orm import Session

from progression.database.models import Setting

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# The PG channel name used for settings invalidation
NOTIFY_CHANNEL = "config_changed"

# NOTIFY payloads are interpolated into SQL, so only these are accepted
ALLOWED_NOTIFY_TABLES: frozenset[str] = frozenset({"settings"})

# Listener states reported by ConfigCache.listener_state
LISTENER_OFF = "off"
LISTENER_CONNECTING = "connecting"
LISTENER_LISTENING = "listening"
LISTENER_FAILED = "failed"

_MAX_RECONNECT_ATTEMPTS = 10
_BASE_BACKOFF_SECONDS = 1.0
_MAX_BACKOFF_SECONDS = 60.0
_POLL_SECONDS = 5.0


def _check_notify_table(table_name: str) -> None:
    if table_name not in ALLOWED_NOTIFY_TABLES:
        raise ValueError(
            f"Invalid table name for NOTIFY: '{table_name}'. "
            f"Allowed: {sorted(ALLOWED_NOTIFY_TABLES)}"
        )


def reconnect_delay(attempt: int) -> float:
    """Exponential backoff with up to 50% jitter for the *attempt*-th retry."""
    backoff = min(_BASE_BACKOFF_SECONDS * (2 ** (attempt - 1)), _MAX_BACKOFF_SECONDS)
    return backoff + random.uniform(0, backoff * 0.5)


class ConfigCache:
    """Thread-safe in-memory copy of the ``settings`` table.

    Usage:
        cache = ConfigCache(engine)
        cache.load_all()
        cache.start_listener()

        daily = cache.get_int("attendance.daily_xp", default=10)
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()

        # key → parsed JSON value
        self._settings: dict[str, Any] = {}
        self._loaded = False

        self._listener_state = LISTENER_OFF
        self._listener_thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    # -------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Load every setting from the DB. Call on startup."""
        self._load_settings()
        logger.info("ConfigCache loaded: %d settings", len(self._settings))

    def _load_settings(self) -> None:
        with Session(self._engine) as session:
            parsed: dict[str, Any] = {}
            for row in session.scalars(select(Setting)):
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json

        with self._lock:
            self._settings = parsed
            self._loaded = True

    def invalidate(self) -> None:
        """Drop and reload the settings mirror."""
        self._load_settings()

    @property
    def loaded(self) -> bool:
        return self._loaded

    # -------------------------------------------------------------------
    # Typed accessors
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the parsed JSON value for *key*, or *default*."""
        with self._lock:
            return self._settings.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return int(val)
        except (TypeError, ValueError):
            logger.warning("Setting %s is not an int (%r); using %d", key, val, default)
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        val = self.get_setting(key)
        if val is None:
            return default
        return bool(val)

    # -------------------------------------------------------------------
    # Cross-process invalidation
    # -------------------------------------------------------------------
    def handle_notify(self, payload: str) -> None:
        """Reload the mirror when a NOTIFY names the settings table."""
        table_name = payload.strip().lower()
        if table_name == "settings":
            logger.info("Settings changed in another process; reloading")
            self._load_settings()
        else:
            logger.warning("Ignoring NOTIFY for unknown table %r", table_name)

    @property
    def listener_state(self) -> str:
        """One of ``off``, ``connecting``, ``listening`` or ``failed``."""
        return self._listener_state

    def start_listener(self) -> None:
        """Follow :data:`NOTIFY_CHANNEL` from a daemon thread.

        A no-op on non-PostgreSQL engines.  Lost connections are retried
        with :func:`reconnect_delay`; after ``_MAX_RECONNECT_ATTEMPTS``
        consecutive failures the listener gives up and reports ``failed``.
        """
        if self._engine.dialect.name != "postgresql":
            logger.info("LISTEN/NOTIFY unavailable on %s; relying on invalidate()",
                        self._engine.dialect.name)
            return

        self._shutdown_event.clear()
        self._listener_state = LISTENER_CONNECTING
        self._listener_thread = threading.Thread(
            target=self._run_listener, daemon=True, name="settings-notify-listener",
        )
        self._listener_thread.start()

    def stop_listener(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._listener_thread is not None and self._listener_thread.is_alive():
            self._listener_thread.join(timeout=5)
            logger.info("Settings listener stopped")
        if self._listener_state != LISTENER_FAILED:
            self._listener_state = LISTENER_OFF

    def _run_listener(self) -> None:
        # str(engine.url) masks the password; psycopg2 needs the real one
        dsn = self._engine.url.render_as_string(hide_password=False)
        dsn = dsn.replace("postgresql+psycopg2://", "postgresql://")
        failures = 0

        while not self._shutdown_event.is_set():
            try:
                self._listen(dsn)
            except Exception:
                # A connection that got as far as LISTEN starts a fresh count
                if self._listener_state == LISTENER_LISTENING:
                    failures = 0
                failures += 1
                self._listener_state = LISTENER_CONNECTING
                if failures >= _MAX_RECONNECT_ATTEMPTS:
                    self._listener_state = LISTENER_FAILED
                    logger.critical(
                        "Settings listener gave up after %d attempts; "
                        "other processes' changes will not be seen until restart",
                        failures,
                    )
                    return
                wait = reconnect_delay(failures)
                logger.exception(
                    "Settings listener lost its connection (%d/%d); retrying in %.1fs",
                    failures, _MAX_RECONNECT_ATTEMPTS, wait,
                )
                if self._shutdown_event.wait(timeout=wait):
                    return

    def _listen(self, dsn: str) -> None:
        """Hold one LISTEN connection until shutdown or a connection error."""
        import psycopg2

        conn = psycopg2.connect(dsn)
        try:
            conn.set_isolation_level(0)  # autocommit
            conn.cursor().execute(f"LISTEN {NOTIFY_CHANNEL};")
            self._listener_state = LISTENER_LISTENING
            logger.info("Listening for settings changes on '%s'", NOTIFY_CHANNEL)

            while not self._shutdown_event.is_set():
                if _select.select([conn], [], [], _POLL_SECONDS) == ([], [], []):
                    continue
                conn.poll()
                while conn.notifies:
                    payload = conn.notifies.pop(0).payload or ""
                    try:
                        self.handle_notify(payload)
                    except Exception:
                        logger.exception("Reload after NOTIFY %r failed", payload)
        finally:
            conn.close()


def notify_before_commit(session: Session, table_name: str) -> None:
    """Queue a NOTIFY inside the current transaction (fires on commit).

    Skipped on non-PostgreSQL dialects, where in-process
    :meth:`ConfigCache.invalidate` is the only invalidation path.
    """
    _check_notify_table(table_name)
    if session.get_bind().dialect.name != "postgresql":
        return
    session.execute(text(f"NOTIFY {NOTIFY_CHANNEL}, '{table_name}'"))
