"""
Connection management for the telemetry store (DB-API 2.0).

SQLite by default, PostgreSQL when DATABASE_URL is a postgres URL. Callers
write SQLite-flavoured SQL ('?' placeholders, AUTOINCREMENT, BIGINT_MS for
epoch-millisecond columns) and this module adapts it for the backend in use.
No ORM.

Usage:
    from core.db import DatabaseManager

    dm = DatabaseManager(db_url=settings.database.database_url,
                         db_path=settings.database.sqlite_path)
    with dm.connect() as conn:
        conn.execute("DELETE FROM ping_history WHERE timestamp < ?", (cutoff,))
"""

import logging
import queue
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = Path("data") / "telemetry.db"


def is_postgres(db_url: Optional[str] = None) -> bool:
    """True for postgresql:// and postgres:// URLs."""
    if db_url is None:
        return False
    return db_url.startswith(("postgresql://", "postgres://"))


def _pg_placeholders(sql: str) -> str:
    return sql.replace("?", "%s")


class _CompatCursor:
    """psycopg2 cursor that takes '?' placeholders like sqlite3 does."""

    def __init__(self, cursor):
        self._cursor = cursor

    def execute(self, sql, params=None):
        self._cursor.execute(_pg_placeholders(sql), params)
        return self

    def executemany(self, sql, params_seq):
        self._cursor.executemany(_pg_placeholders(sql), params_seq)
        return self

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    @property
    def rowcount(self):
        return self._cursor.rowcount

    def close(self):
        self._cursor.close()


class _CompatConnection:
    """
    psycopg2 connection with the subset of the sqlite3.Connection API the
    store uses: execute/executemany return a cursor, rows are dict-like.
    """

    def __init__(self, conn):
        self._conn = conn

    @property
    def raw(self):
        return self._conn

    def cursor(self) -> _CompatCursor:
        import psycopg2.extras
        return _CompatCursor(self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor))

    def execute(self, sql, params=None) -> _CompatCursor:
        return self.cursor().execute(sql, params)

    def executemany(self, sql, params_seq) -> _CompatCursor:
        return self.cursor().executemany(sql, params_seq)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


# =============================================================================
# Dialect adaptation
# =============================================================================

def adapt_schema_sql(sql: str, db_url: Optional[str] = None) -> str:
    """
    Rewrite SQLite DDL for PostgreSQL; SQLite SQL passes through unchanged.

    - INTEGER PRIMARY KEY AUTOINCREMENT -> SERIAL PRIMARY KEY
    - BIGINT_MS (epoch milliseconds) -> BIGINT
    """
    if not is_postgres(db_url):
        return sql

    adapted = re.sub(
        r'INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT',
        'SERIAL PRIMARY KEY',
        sql,
        flags=re.IGNORECASE,
    )
    return re.sub(r'\bBIGINT_MS\b', 'BIGINT', adapted)


def sqlite_schema_sql(sql: str) -> str:
    """SQLite stores any INTEGER as up to 8 bytes, so BIGINT_MS is plain INTEGER."""
    return re.sub(r'\bBIGINT_MS\b', 'INTEGER', sql)


_IDENTIFIER_RE = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*$')


def validate_identifier(name: str, label: str) -> None:
    """Reject table/column names that cannot be safely interpolated into SQL."""
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid {label} name: {name!r}")


# =============================================================================
# DatabaseManager
# =============================================================================

class DatabaseManager:
    """
    Pooled connections for the telemetry store.

    Connections are taken from worker threads (flushes run through
    asyncio.to_thread), so SQLite connections are opened with
    check_same_thread=False. A connection is held by one thread at a time.

    Usage:
        dm = DatabaseManager(db_path=Path("data/telemetry.db"))
        with dm.connect() as conn:
            conn.execute("SELECT ...")
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        db_path: Optional[Path] = None,
        pool_size: int = 5,
    ):
        self._db_url = db_url if is_postgres(db_url) else None
        self._db_path = Path(db_path) if db_path else DEFAULT_SQLITE_PATH
        self._pool_size = pool_size
        self._idle: queue.Queue = queue.Queue(maxsize=pool_size)
        self._pg_pool = None

        if self.use_postgres:
            import psycopg2.pool
            self._pg_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=pool_size,
                dsn=self._db_url,
            )
        else:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

    def _open_sqlite(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def get_connection(self):
        if self.use_postgres:
            raw = self._pg_pool.getconn()
            raw.autocommit = False
            return _CompatConnection(raw)

        try:
            conn = self._idle.get_nowait()
        except queue.Empty:
            return self._open_sqlite()

        try:
            conn.execute("SELECT 1")
            return conn
        except sqlite3.Error:
            logger.debug("Discarding stale SQLite connection")
            return self._open_sqlite()

    def release_connection(self, conn):
        if self.use_postgres:
            self._pg_pool.putconn(conn.raw if isinstance(conn, _CompatConnection) else conn)
            return

        try:
            self._idle.put_nowait(conn)
        except queue.Full:
            conn.close()

    @contextmanager
    def connect(self):
        """One transaction: commit on success, roll back on any exception."""
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.release_connection(conn)

    def adapt(self, sql: str) -> str:
        """Dialect-adapt a schema statement for this database."""
        if self.use_postgres:
            return adapt_schema_sql(sql, self._db_url)
        return sqlite_schema_sql(sql)

    def close(self):
        while True:
            try:
                self._idle.get_nowait().close()
            except queue.Empty:
                break
        if self._pg_pool is not None:
            self._pg_pool.closeall()
            self._pg_pool = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def db_url(self) -> Optional[str]:
        return self._db_url

    @property
    def use_postgres(self) -> bool:
        return self._db_url is not None
