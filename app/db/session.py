"""Database engine and session utilities.

Badge records are read and written through short synchronous sessions. The
module also offers a lightweight SQLite fallback for local development when
a PostgreSQL instance is unavailable.
"""

from __future__ import annotations

import logging
import os
from time import perf_counter
from typing import Any

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError, OperationalError
from sqlalchemy.orm import sessionmaker

from app.core.config import settings

logger = logging.getLogger(__name__)


def _connect_args_for(url: str) -> dict[str, Any]:
    try:
        drivername = make_url(url).drivername
    except ArgumentError:
        return {}
    if drivername.startswith("sqlite"):
        # Les sessions peuvent être ouvertes depuis le threadpool de FastAPI.
        return {"check_same_thread": False}
    return {}


def _should_enable_sqlite_fallback() -> bool:
    environment = (getattr(settings, "ENVIRONMENT", "development") or "").lower()
    if os.getenv("DISABLE_SQLITE_FALLBACK") == "1":
        return False
    return environment in {"development", "local"}


SQLITE_FALLBACK_URL = "sqlite:///./badgelife_local.db"

# These globals are populated by ``configure_database``.
sync_engine: Engine
SessionLocal: sessionmaker


def _install_slow_query_logger(engine: Engine) -> None:
    """Attach callbacks that warn when queries exceed the configured budget."""

    threshold_ms = max(getattr(settings, "SQLALCHEMY_SLOW_QUERY_THRESHOLD_MS", 0) or 0, 0)
    if threshold_ms == 0:
        return

    marker = "_badgelife_slow_query_hook"
    if getattr(engine, marker, False):
        return

    setattr(engine, marker, True)

    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):  # type: ignore[override]
        context._badgelife_query_start = perf_counter()

    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):  # type: ignore[override]
        start = getattr(context, "_badgelife_query_start", None)
        if start is None:
            return

        elapsed_ms = (perf_counter() - start) * 1000.0
        if elapsed_ms < threshold_ms:
            return

        snippet = " ".join(statement.split()) if isinstance(statement, str) else str(statement)
        if len(snippet) > 200:
            snippet = snippet[:197] + "..."

        params_preview = repr(parameters)
        if len(params_preview) > 200:
            params_preview = params_preview[:197] + "..."

        logger.warning(
            "SQL lente (%.1f ms) - %s | params=%s",
            elapsed_ms,
            snippet,
            params_preview,
        )

    event.listen(engine, "before_cursor_execute", _before_cursor_execute)
    event.listen(engine, "after_cursor_execute", _after_cursor_execute)


def _verify_database_connection(engine: Engine) -> None:
    with engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def configure_database(database_url: str | None = None, *, allow_fallback: bool = True) -> None:
    """Initialise the engine and session factory.

    ``database_url`` defaults to the environment configuration.  When the
    connection attempt fails locally we transparently fall back to a SQLite
    database so the API can boot without a running PostgreSQL instance.
    """

    global sync_engine, SessionLocal

    target_url = str(database_url or settings.DATABASE_URL)
    logger.info("Configuration de la base de données: %s", make_url(target_url).render_as_string(hide_password=True))

    candidate_engine = create_engine(
        target_url,
        pool_pre_ping=True,
        connect_args=_connect_args_for(target_url),
    )
    _install_slow_query_logger(candidate_engine)

    try:
        _verify_database_connection(candidate_engine)
    except (OperationalError, OSError) as exc:
        if allow_fallback and _should_enable_sqlite_fallback():
            logger.warning(
                "Impossible de joindre la base de données (%s). Bascule automatique vers SQLite.",
                exc,
            )
            candidate_engine.dispose()
            configure_database(SQLITE_FALLBACK_URL, allow_fallback=False)
            return

        logger.error("Connexion à la base de données échouée: %s", exc)
        raise

    sync_engine = candidate_engine
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=sync_engine)


# Initialise the engine at import time so the rest of the application can use
# it immediately.
configure_database()
