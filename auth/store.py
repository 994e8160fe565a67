"""
auth/store.py -- SQLAlchemy Core persistence layer for user records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. The service and the refresh ledger never touch SQL directly.

Repository capability consumed by the auth core:
  get_by_email / get_by_id / get_by_refresh_token   (find)
  create_user                                       (save)
  update_user / set_refresh_token                   (update)

Any SQLAlchemy URL works; swapping SQLite for PostgreSQL is a connection
string change.

Security:
  All queries use bound parameters. No f-strings in SQL.

  set_refresh_token() writes refresh_token and refresh_token_expires_at in a
  single UPDATE so the pair can never be half-written. With `expected=` it
  becomes a compare-and-set: the WHERE clause includes the currently stored
  value, and rowcount tells the caller whether it won.

Errors:
  sqlalchemy OperationalError (locked DB, lost connection, ...) is re-raised
  as StoreFailureError. IntegrityError is left alone -- callers treat it as a
  uniqueness conflict.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, Index, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from auth.errors import StoreFailureError
from auth.models import User
from core.config import get_settings

logger = logging.getLogger("keyturn.store")

# Sentinel for set_refresh_token(expected=...): "no precondition".
_ANY = object()

# Columns update_user() accepts. Refresh fields go through set_refresh_token().
_UPDATABLE_FIELDS = frozenset({"email", "name", "password_hash"})

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # normalized
    Column("password_hash", Text, nullable=False),
    Column("name", String(100), nullable=False),
    Column("refresh_token", Text),  # NULL = no live session
    Column("refresh_token_expires_at", String(32)),  # ISO 8601, NULL with refresh_token
    Column("created_at", String(32), nullable=False),
)

Index("ix_users_refresh_token", _users.c.refresh_token)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except OperationalError as exc:
        logger.error("Store operation %s failed: %s", operation, exc.__class__.__name__)
        raise StoreFailureError(f"Persistence failure during {operation}.") from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore()
        user_id = store.create_user(User(email="ann@example.com", password_hash=h, name="Ann"))
        user = store.get_by_email("ann@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        except OperationalError:
            return False

    def create_user(self, user: User) -> str:
        """Insert a new user and return its assigned UUID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        A concurrent registration for the same email surfaces here even when
        the caller's earlier get_by_email() saw nothing.
        """
        user_id = str(uuid.uuid4())
        with _store_errors("create_user"), self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    password_hash=user.password_hash,
                    name=user.name,
                    created_at=_to_iso(user.created_at) or _now_iso(),
                )
            )
            conn.commit()
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact (already normalized) email. Returns None if not found."""
        with _store_errors("get_by_email"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with _store_errors("get_by_id"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_refresh_token(self, token: str) -> User | None:
        """Look up the user whose stored refresh token equals `token` exactly."""
        if not token:
            return None
        with _store_errors("get_by_refresh_token"), self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.refresh_token == token)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_user(self, user_id: str, **fields) -> bool:
        """Update profile fields on an existing user.

        Accepted fields: email, name, password_hash. Unknown keys raise
        ValueError rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        Raises IntegrityError if the new email belongs to another user.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return self.get_by_id(user_id) is not None
        with _store_errors("update_user"), self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def set_refresh_token(
        self,
        user_id: str,
        token: str | None,
        expires_at: datetime | None,
        expected=_ANY,
    ) -> bool:
        """Write (or clear, with token=None) the user's refresh token and expiry together.

        expected: when given, the UPDATE only applies if the stored token
            currently equals this value (None matches a cleared slot). Two
            racing callers presenting the same expected value cannot both
            match -- the database applies the first UPDATE and the second one
            finds the row already changed.

        Returns True if a row was written.
        """
        if (token is None) != (expires_at is None):
            raise ValueError("refresh_token and refresh_token_expires_at are set and cleared together.")
        condition = _users.c.id == user_id
        if expected is not _ANY:
            if expected is None:
                condition = condition & _users.c.refresh_token.is_(None)
            else:
                condition = condition & (_users.c.refresh_token == expected)
        with _store_errors("set_refresh_token"), self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(condition)
                .values(refresh_token=token, refresh_token_expires_at=_to_iso(expires_at))
            )
            conn.commit()
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        name=row.name,
        refresh_token=row.refresh_token,
        refresh_token_expires_at=_from_iso(row.refresh_token_expires_at),
        created_at=_from_iso(row.created_at),
    )
