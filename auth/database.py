"""
auth/database.py -- Schema and the injected database handle for auth entities.

Pattern: one explicitly constructed Database per process. The FastAPI lifespan
opens it at startup, hands it to UserStore and RefreshTokenStore, and closes
it at shutdown. No module reads a connection from global scope.

Timestamps are stored as fixed-width ISO 8601 UTC strings
("2026-01-01T00:00:00.000000+00:00"). Because every value has the same width
and offset, string comparison in SQL is chronological comparison, which lets
the refresh-token validity check (expires_at > now) run inside a single
UPDATE/SELECT statement.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.pool import SingletonThreadPool

from auth.errors import StoreUnavailable

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("provider", String(30), nullable=False, server_default="email"),
    Column("provider_id", Text),  # provider's stable user ID
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("full_name", String(255)),
    Column("created_at", String(32), nullable=False),
)

businesses = Table(
    "businesses",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)

# Integer autoincrement key doubles as the membership enumeration order.
business_users = Table(
    "business_users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), nullable=False),
    Column("business_id", String(36), nullable=False),
    Column("role", String(50), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("user_id", "business_id", name="uq_business_users_user_business"),
    Index("ix_business_users_user_id", "user_id"),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),  # NULL while the token is usable
    Index("ix_refresh_tokens_user_id", "user_id"),
)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: datetime) -> str:
    """Render an aware datetime as the fixed-width UTC string stored in the DB."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _is_sqlite_memory(db_url: str) -> bool:
    return db_url.startswith("sqlite") and (":memory:" in db_url or "mode=memory" in db_url)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases silently keep their
    "memory" journal, which is fine for tests.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------


class Database:
    """Owns the SQLAlchemy engine shared by the auth stores.

    Usage:
        db = Database("sqlite:///bizpilot_auth.db", timeout=10.0)
        users = UserStore(db)
        tokens = RefreshTokenStore(db, settings)
        ...
        db.close()

    connect() and begin() translate driver-level connectivity failures
    (OperationalError, InterfaceError) into StoreUnavailable. IntegrityError
    passes through untouched -- it is a data condition, not an outage.
    """

    def __init__(self, db_url: str, timeout: float = 10.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        else:
            connect_args["connect_timeout"] = int(timeout)
        engine_args: dict = {}
        if _is_sqlite_memory(db_url):
            # One connection per thread keeps a named shared-cache database alive.
            engine_args["poolclass"] = SingletonThreadPool
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    @contextmanager
    def connect(self) -> Iterator[Connection]:
        """Yield a connection for single-statement reads and writes."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable() from exc

    @contextmanager
    def begin(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction.

        Commits on normal exit, rolls back on any exception -- including task
        cancellation -- so a multi-statement operation never leaves partial
        state behind.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable() from exc

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by GET /health."""
        try:
            with self.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
        except StoreUnavailable:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()
