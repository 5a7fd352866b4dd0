"""Connection factories for the pattern store.

The store only needs a zero-argument callable returning a DB-API
connection.  PostgreSQL is used when ``PATTERN_DB_DSN`` (or the libpq
``PG*`` environment variables) are configured; otherwise a local SQLite
file under ``settings.pattern_db_path`` keeps the engine self-contained.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Any]


def _pg_dsn(settings: Optional[Any] = None) -> Optional[str]:
    explicit = getattr(settings, "pattern_db_dsn", None) if settings is not None else None
    if explicit:
        return str(explicit)

    host = os.environ.get("PGHOST")
    if not host:
        return None
    db = os.environ.get("PGDATABASE")
    user = os.environ.get("PGUSER")
    pwd = os.environ.get("PGPASSWORD")
    port = os.environ.get("PGPORT") or "5432"
    sslmode = os.environ.get("PGSSLMODE")

    parts = [f"host={host}", f"port={port}"]
    if db:
        parts.append(f"dbname={db}")
    if user:
        parts.append(f"user={user}")
    if pwd:
        parts.append(f"password={pwd}")
    if sslmode:
        parts.append(f"sslmode={sslmode}")
    return " ".join(parts)


def sqlite_connection_factory(path: str | Path, *, timeout: float = 30.0) -> ConnectionFactory:
    """Return a factory opening a fresh SQLite connection per call."""

    db_path = str(path)
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    def factory() -> sqlite3.Connection:
        conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    return factory


def postgres_connection_factory(dsn: str) -> ConnectionFactory:
    def factory():
        import psycopg2  # type: ignore

        return psycopg2.connect(dsn)

    return factory


def default_connection_factory(settings: Any) -> ConnectionFactory:
    """Select the backing database from ``settings``."""

    dsn = _pg_dsn(settings)
    if dsn:
        logger.info("Pattern store using PostgreSQL backend")
        return postgres_connection_factory(dsn)
    path = getattr(settings, "pattern_db_path", None) or "patterns.sqlite"
    logger.info("Pattern store using SQLite backend at %s", path)
    return sqlite_connection_factory(path)


__all__ = [
    "ConnectionFactory",
    "default_connection_factory",
    "postgres_connection_factory",
    "sqlite_connection_factory",
]
