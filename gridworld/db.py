"""
Database utilities for gridworld.
Provides connection management, common query helpers and versioned schema
migrations.

Two backends share one SQL dialect (``%s`` placeholders):
- PostgreSQL via psycopg3 when DATABASE_URL is set
- a local SQLite file otherwise (WAL journal, synchronous=FULL)

Every helper commits before returning, so nothing is buffered.

Usage:
    from gridworld.db import Database

    db = Database(sqlite_path=Path("data/chunks.db"))
    db.migrate()

    row = db.query_one("SELECT * FROM chunks WHERE x = %s AND y = %s", (1, 2))

    with db.transaction() as cur:
        cur.execute("DELETE FROM chunks WHERE prompt = %s", ("P",))
        deleted = cur.rowcount
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger("gridworld.db")

BACKEND_POSTGRES = "postgres"
BACKEND_SQLITE = "sqlite"

_SQLITE_BUSY_TIMEOUT = 30  # seconds


# ─────────────────────────────────────────────────────────────
# Custom Exceptions
# ─────────────────────────────────────────────────────────────
class DatabaseError(Exception):
    """Any storage failure. ``cause`` keeps the driver exception, if there was one."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class DatabaseNotConfiguredError(DatabaseError):
    def __init__(self, message: str = "no database URL or SQLite path given"):
        super().__init__(message)


class DatabaseConnectionError(DatabaseError):
    pass


class DatabaseQueryError(DatabaseError):
    pass


class DatabaseIntegrityError(DatabaseQueryError):
    """Unique/not-null/check constraint rejected the statement."""


_INTEGRITY_ERRORS = (sqlite3.IntegrityError, psycopg.IntegrityError)
_DRIVER_ERRORS = (sqlite3.Error, psycopg.Error)


# ─────────────────────────────────────────────────────────────
# Cursor wrapper
# ─────────────────────────────────────────────────────────────
def _row_to_dict(row: Any) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    if isinstance(row, dict):
        return row
    # sqlite3.Row
    return {key: row[key] for key in row.keys()}


class Cursor:
    """
    Dialect-neutral cursor handed out by ``Database.transaction()``.
    Accepts ``%s`` placeholders for both backends and returns dict rows.
    """

    def __init__(self, raw_cursor, backend: str):
        self._cur = raw_cursor
        self._backend = backend

    def execute(self, sql: str, params: Sequence[Any] = ()) -> "Cursor":
        if self._backend == BACKEND_SQLITE:
            sql = sql.replace("%s", "?")
        self._cur.execute(sql, tuple(params))
        return self

    @property
    def rowcount(self) -> int:
        return self._cur.rowcount

    def fetchone(self) -> Optional[Dict[str, Any]]:
        return _row_to_dict(self._cur.fetchone())

    def fetchall(self) -> List[Dict[str, Any]]:
        return [_row_to_dict(row) for row in self._cur.fetchall()]

    def fetch_scalar(self) -> Any:
        row = self.fetchone()
        if row is None:
            return None
        return next(iter(row.values()), None)


# ─────────────────────────────────────────────────────────────
# Schema Migrations
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: Tuple[str, ...]


MIGRATIONS: Tuple[Migration, ...] = (
    Migration(
        1,
        "create chunks table",
        (
            """
            CREATE TABLE IF NOT EXISTS chunks (
                x INTEGER NOT NULL,
                y INTEGER NOT NULL,
                prompt TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'generating',
                operation_id TEXT,
                world_id TEXT,
                asset_path TEXT,
                panorama_url TEXT,
                created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (x, y, prompt)
            )
            """,
        ),
    ),
    Migration(
        2,
        "track completion time and index prompt lookups",
        (
            "ALTER TABLE chunks ADD COLUMN completed_at TIMESTAMP",
            "CREATE INDEX IF NOT EXISTS idx_chunks_prompt_status ON chunks (prompt, status)",
        ),
    ),
)

_SCHEMA_MIGRATIONS_DDL = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        description TEXT NOT NULL,
        applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
"""


# ─────────────────────────────────────────────────────────────
# Connection Management
# ─────────────────────────────────────────────────────────────
class Database:
    """
    Connection factory for one configured backend.

    A new connection is opened per ``get_conn()``/``transaction()`` call,
    which keeps the object safe to share between Flask request threads and
    generation workers.
    """

    def __init__(
        self,
        url: str = "",
        sqlite_path: Optional[Path] = None,
        connect_timeout: int = 10,
        migrations: Sequence[Migration] = MIGRATIONS,
    ):
        if not url and sqlite_path is None:
            raise DatabaseNotConfiguredError("Either DATABASE_URL or a SQLite path is required")
        self.url = url
        self.sqlite_path = Path(sqlite_path) if sqlite_path is not None else None
        self.connect_timeout = connect_timeout
        self.migrations = tuple(sorted(migrations, key=lambda m: m.version))

    @classmethod
    def from_config(cls, cfg) -> "Database":
        if cfg.HAS_DATABASE:
            return cls(url=cfg.DATABASE_URL, connect_timeout=cfg.DB_CONNECT_TIMEOUT)
        return cls(sqlite_path=cfg.DB_PATH)

    @property
    def backend(self) -> str:
        return BACKEND_POSTGRES if self.url else BACKEND_SQLITE

    def describe(self) -> str:
        if self.backend == BACKEND_POSTGRES:
            return "postgres"
        return f"sqlite:{self.sqlite_path}"

    def _create_connection(self):
        """
        Open a connection for the configured backend.
        SQLite connections are shared across threads, one per transaction.
        """
        if self.backend == BACKEND_POSTGRES:
            try:
                return psycopg.connect(
                    self.url,
                    connect_timeout=self.connect_timeout,
                    row_factory=dict_row,
                )
            except psycopg.OperationalError as e:
                raise DatabaseConnectionError(f"Failed to connect to database: {e}", cause=e) from e

        try:
            self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.sqlite_path),
                timeout=_SQLITE_BUSY_TIMEOUT,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            return conn
        except sqlite3.Error as e:
            raise DatabaseConnectionError(f"Failed to open SQLite database: {e}", cause=e) from e

    @contextmanager
    def get_conn(self):
        """
        Raw connection, closed on exit. Nothing is committed for the caller.
        """
        conn = self._create_connection()
        try:
            yield conn
        finally:
            try:
                conn.close()
            except _DRIVER_ERRORS as e:
                logger.warning("[DB] Failed to close connection: %s", e)

    @contextmanager
    def transaction(self) -> Iterator[Cursor]:
        """
        One commit per block; any exception rolls the whole block back.
        Driver errors surface as DatabaseIntegrityError or DatabaseQueryError.
        """
        with self.get_conn() as conn:
            raw = conn.cursor()
            try:
                yield Cursor(raw, self.backend)
                conn.commit()
            except _INTEGRITY_ERRORS as e:
                conn.rollback()
                raise DatabaseIntegrityError(f"Constraint violation: {e}", cause=e) from e
            except _DRIVER_ERRORS as e:
                conn.rollback()
                raise DatabaseQueryError(f"Database error: {e}", cause=e) from e
            except Exception:
                conn.rollback()
                raise
            finally:
                raw.close()

    # ─────────────────────────────────────────────────────────────
    # One-shot helpers, each in its own transaction
    # ─────────────────────────────────────────────────────────────
    def query_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Execute a query and return one row as dict."""
        with self.transaction() as cur:
            return cur.execute(sql, params).fetchone()

    def query_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Execute a query and return all rows as list of dicts."""
        with self.transaction() as cur:
            return cur.execute(sql, params).fetchall()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute a statement and return affected row count."""
        with self.transaction() as cur:
            return cur.execute(sql, params).rowcount

    def verify_connection(self) -> bool:
        """
        True when a trivial SELECT round-trips; failures are logged, not raised.
        """
        try:
            result = self.query_one("SELECT 1 AS ok")
            return result is not None and result.get("ok") == 1
        except DatabaseError as e:
            logger.warning("[DB] Connectivity check failed: %s", e)
            return False

    # ─────────────────────────────────────────────────────────────
    # Migrations
    # ─────────────────────────────────────────────────────────────
    def current_version(self) -> int:
        """Highest applied migration version (0 for a fresh database)."""
        with self.transaction() as cur:
            cur.execute(_SCHEMA_MIGRATIONS_DDL)
            version = cur.execute("SELECT MAX(version) AS version FROM schema_migrations").fetch_scalar()
        return int(version or 0)

    def migrate(self) -> int:
        """
        Apply every pending migration in order, one transaction each.
        Returns the number of migrations applied.
        """
        current = self.current_version()
        applied = 0
        for migration in self.migrations:
            if migration.version <= current:
                continue
            with self.transaction() as cur:
                for statement in migration.statements:
                    cur.execute(statement)
                cur.execute(
                    "INSERT INTO schema_migrations (version, description) VALUES (%s, %s)",
                    (migration.version, migration.description),
                )
            logger.info("[DB] Applied migration %s: %s", migration.version, migration.description)
            applied += 1
        if applied == 0:
            logger.info("[DB] Schema up to date (version %s)", current)
        return applied


__all__ = [
    "BACKEND_POSTGRES",
    "BACKEND_SQLITE",
    "Cursor",
    "Database",
    "DatabaseConnectionError",
    "DatabaseError",
    "DatabaseIntegrityError",
    "DatabaseNotConfiguredError",
    "DatabaseQueryError",
    "MIGRATIONS",
    "Migration",
]
