"""
auth/store.py -- SQLAlchemy Core persistence for users and sessions.

Pattern: Repository + Data Mapper. SqlUserStore and SqlSessionStore are the
repositories; _row_to_user / _row_to_session are the mappers. The
orchestrator never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Refresh tokens and password hashes are never logged.

Uniqueness:
  users.email and sessions.refresh_token are UNIQUE in SQL.
  UNIQUE(oauth_provider, oauth_id) is also declared in SQL: both SQLite and
  PostgreSQL treat NULLs as distinct, so password-only users (both columns
  NULL) never collide with each other.

Atomic rotation:
  rotate() runs the conditional revoke and the insert in one transaction.
  The revoke is "UPDATE ... WHERE refresh_token = :old AND revoked = 0 AND
  expires_at > :now" and the insert only runs when exactly one row changed.
  On PostgreSQL (READ COMMITTED) a concurrent updater blocks on the row lock
  and re-evaluates the WHERE clause after the winner commits, so it sees
  revoked = 1 and changes nothing. On SQLite every writing transaction starts with
  BEGIN IMMEDIATE (see write_connection), so concurrent writers are
  serialized outright. Reads use a deferred BEGIN and never wait on them.

Timestamps:
  Stored as DateTime(timezone=True) and always written as UTC. SQLite drops
  the offset, so the mappers re-attach UTC to naive values on the way out.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.contracts import SessionStore, UserStore
from auth.errors import AccountAlreadyExists, StorageUnavailable
from auth.models import Session, User, normalize_email

logger = logging.getLogger("credkeep.auth.store")

# Execution option marking a connection whose transactions will write.
_WRITE_INTENT = "credkeep_write_intent"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("oauth_provider", String(30)),  # "google", "github", "oidc"
    Column("oauth_id", String(255)),  # provider's stable user ID
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("email_verified", Boolean, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("oauth_provider", "oauth_id", name="uq_users_oauth_identity"),
)

sessions = Table(
    "sessions",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False, index=True),
    Column("refresh_token", String(500), nullable=False, unique=True),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("revoked", Boolean, nullable=False, server_default="0"),
)

# Fields update() accepts. id, email and created_at are immutable here.
_USER_UPDATABLE = frozenset(
    {
        "password_hash",
        "oauth_provider",
        "oauth_id",
        "first_name",
        "last_name",
        "email_verified",
        "is_active",
    }
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def write_connection(engine: Engine) -> Connection:
    """Open a connection whose transactions take the write lock up front.

    Every store method that writes uses this. Reads use plain connect() and
    a deferred BEGIN, so under WAL they never wait on a writer.
    """
    return engine.connect().execution_options(**{_WRITE_INTENT: True})


def create_store_engine(db_url: str, busy_timeout: float = 5.0) -> Engine:
    """Create an engine suitable for concurrent request handling.

    SQLite needs three adjustments:
      check_same_thread=False -- request handlers run in a thread pool.
      WAL journal mode        -- readers do not block behind writers.
      BEGIN IMMEDIATE         -- on write_connection() transactions only: take
                                 the write lock at transaction start so two
                                 rotations of one token serialize instead of
                                 failing with a lock-upgrade error.
    The pysqlite driver's own transaction handling is switched off so the
    BEGIN emitted from the "begin" event is the one that counts.
    """
    if not db_url.startswith("sqlite"):
        return create_engine(db_url, pool_pre_ping=True)

    engine = create_engine(
        db_url,
        connect_args={"check_same_thread": False, "timeout": busy_timeout},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_conn, connection_record) -> None:
        dbapi_conn.isolation_level = None
        if ":memory:" not in db_url and "mode=memory" not in db_url:
            dbapi_conn.execute("PRAGMA journal_mode=WAL")
        dbapi_conn.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        if conn.get_execution_options().get(_WRITE_INTENT):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")

    return engine


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class SqlUserStore(UserStore):
    """UserStore over a SQLAlchemy engine.

    Usage:
        engine = create_store_engine("sqlite:///credkeep.db")
        users = SqlUserStore(engine)
        alice = users.create(User(email="alice@example.com", password_hash=...))
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = _utcnow) -> None:
        self.engine = engine
        self._clock = clock
        metadata.create_all(self.engine)

    def find_by_id(self, user_id: str) -> User | None:
        return self._fetch_one(select(users).where(users.c.id == user_id))

    def find_by_email(self, email: str) -> User | None:
        return self._fetch_one(select(users).where(users.c.email == normalize_email(email)))

    def find_by_oauth_identity(self, provider: str, provider_id: str) -> User | None:
        return self._fetch_one(
            select(users).where((users.c.oauth_provider == provider) & (users.c.oauth_id == provider_id))
        )

    def create(self, user: User) -> User:
        """Insert a new user.

        Raises AccountAlreadyExists on an email or OAuth identity collision,
        which is how a concurrent registration with the same email surfaces.
        """
        if not user.has_password and not user.has_oauth_identity:
            raise ValueError("A user needs a password hash or an OAuth identity.")
        now = self._clock()
        values = {
            "id": _new_id(),
            "email": normalize_email(user.email),
            "password_hash": user.password_hash,
            "oauth_provider": user.oauth_provider,
            "oauth_id": user.oauth_id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email_verified": user.email_verified,
            "is_active": user.is_active,
            "created_at": now,
            "updated_at": now,
        }
        try:
            with write_connection(self.engine) as conn:
                conn.execute(users.insert().values(**values))
                conn.commit()
        except IntegrityError as exc:
            raise AccountAlreadyExists() from exc
        except SQLAlchemyError as exc:
            logger.error("User insert failed: %s", type(exc).__name__)
            raise StorageUnavailable("User store unavailable.") from exc
        return _row_to_user_values(values)

    def update(self, user_id: str, **fields) -> User | None:
        """Apply a partial update. Returns the fresh record or None if absent.

        Only fields in _USER_UPDATABLE are accepted; unknown keys raise
        ValueError rather than being silently ignored. An update that would
        leave the user with no authentication method raises ValueError.
        """
        unknown = set(fields) - _USER_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown or immutable user fields: {sorted(unknown)!r}")
        try:
            with write_connection(self.engine) as conn:
                row = conn.execute(select(users).where(users.c.id == user_id)).fetchone()
                if row is None:
                    conn.rollback()
                    return None
                merged = {**row._mapping, **fields}
                if merged["password_hash"] is None and (merged["oauth_provider"] is None or merged["oauth_id"] is None):
                    conn.rollback()
                    raise ValueError("Update would leave the user without an authentication method.")
                conn.execute(users.update().where(users.c.id == user_id).values(**fields, updated_at=self._clock()))
                fresh = conn.execute(select(users).where(users.c.id == user_id)).fetchone()
                conn.commit()
        except IntegrityError as exc:
            raise AccountAlreadyExists("OAuth identity already linked to another user.") from exc
        except SQLAlchemyError as exc:
            logger.error("User update failed: %s", type(exc).__name__)
            raise StorageUnavailable("User store unavailable.") from exc
        return _row_to_user(fresh)

    def _fetch_one(self, stmt) -> User | None:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).fetchone()
        except SQLAlchemyError as exc:
            logger.error("User lookup failed: %s", type(exc).__name__)
            raise StorageUnavailable("User store unavailable.") from exc
        return _row_to_user(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


class SqlSessionStore(SessionStore):
    """SessionStore over a SQLAlchemy engine. Shares the users table's metadata."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = _utcnow) -> None:
        self.engine = engine
        self._clock = clock
        metadata.create_all(self.engine)

    def create(self, user_id: str, refresh_token: str, expires_at: datetime) -> Session:
        now = self._clock()
        values = self._new_session_values(user_id, refresh_token, expires_at, now)
        try:
            with write_connection(self.engine) as conn:
                conn.execute(sessions.insert().values(**values))
                conn.commit()
        except IntegrityError as exc:
            raise ValueError("Refresh token is already bound to a session.") from exc
        except SQLAlchemyError as exc:
            logger.error("Session insert failed: %s", type(exc).__name__)
            raise StorageUnavailable("Session store unavailable.") from exc
        logger.debug("Session %s created for user %s", values["id"], user_id)
        return _row_to_session_values(values)

    def find_valid(self, refresh_token: str) -> Session | None:
        stmt = select(sessions).where(
            (sessions.c.refresh_token == refresh_token)
            & (sessions.c.revoked.is_(False))
            & (sessions.c.expires_at > self._clock())
        )
        try:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).fetchone()
        except SQLAlchemyError as exc:
            logger.error("Session lookup failed: %s", type(exc).__name__)
            raise StorageUnavailable("Session store unavailable.") from exc
        return _row_to_session(row) if row is not None else None

    def revoke(self, user_id: str, refresh_token: str) -> None:
        """Revoke one session. Already-revoked or unknown sessions are a no-op."""
        stmt = (
            sessions.update()
            .where((sessions.c.user_id == user_id) & (sessions.c.refresh_token == refresh_token))
            .values(revoked=True)
        )
        try:
            with write_connection(self.engine) as conn:
                conn.execute(stmt)
                conn.commit()
        except SQLAlchemyError as exc:
            logger.error("Session revoke failed: %s", type(exc).__name__)
            raise StorageUnavailable("Session store unavailable.") from exc

    def rotate(
        self,
        user_id: str,
        old_refresh_token: str,
        new_refresh_token: str,
        expires_at: datetime,
    ) -> Session | None:
        now = self._clock()
        values = self._new_session_values(user_id, new_refresh_token, expires_at, now)
        revoke_old = (
            sessions.update()
            .where(
                (sessions.c.refresh_token == old_refresh_token)
                & (sessions.c.user_id == user_id)
                & (sessions.c.revoked.is_(False))
                & (sessions.c.expires_at > now)
            )
            .values(revoked=True)
        )
        try:
            with write_connection(self.engine) as conn, conn.begin():
                result = conn.execute(revoke_old)
                if result.rowcount != 1:
                    # Lost the race, replayed, expired, or someone else's token.
                    # Nothing was written; leaving the block commits a no-op.
                    return None
                conn.execute(sessions.insert().values(**values))
        except IntegrityError as exc:
            raise ValueError("Refresh token is already bound to a session.") from exc
        except SQLAlchemyError as exc:
            logger.error("Session rotation failed: %s", type(exc).__name__)
            raise StorageUnavailable("Session store unavailable.") from exc
        return _row_to_session_values(values)

    def revoke_all(self, user_id: str) -> int:
        stmt = (
            sessions.update()
            .where((sessions.c.user_id == user_id) & (sessions.c.revoked.is_(False)))
            .values(revoked=True)
        )
        try:
            with write_connection(self.engine) as conn:
                result = conn.execute(stmt)
                conn.commit()
        except SQLAlchemyError as exc:
            logger.error("Session revoke_all failed: %s", type(exc).__name__)
            raise StorageUnavailable("Session store unavailable.") from exc
        return result.rowcount

    def count_live(self, user_id: str) -> int:
        """Number of valid sessions for a user. Only the tests call this."""
        stmt = (
            select(func.count())
            .select_from(sessions)
            .where(
                (sessions.c.user_id == user_id)
                & (sessions.c.revoked.is_(False))
                & (sessions.c.expires_at > self._clock())
            )
        )
        try:
            with self.engine.connect() as conn:
                return conn.execute(stmt).scalar() or 0
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Session store unavailable.") from exc

    def _new_session_values(self, user_id: str, refresh_token: str, expires_at: datetime, now: datetime) -> dict:
        if _as_utc(expires_at) <= now:
            raise ValueError("Session expiry must be in the future.")
        return {
            "id": _new_id(),
            "user_id": user_id,
            "refresh_token": refresh_token,
            "expires_at": _as_utc(expires_at),
            "created_at": now,
            "revoked": False,
        }

    def close(self) -> None:
        self.engine.dispose()


def ping(engine: Engine) -> bool:
    """Return True if the database answers a trivial query."""
    try:
        with engine.connect() as conn:
            conn.execute(select(1))
            conn.rollback()
    except SQLAlchemyError:
        logger.warning("Database ping failed")
        return False
    return True


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return _row_to_user_values(row._mapping)


def _row_to_user_values(values) -> User:
    return User(
        id=values["id"],
        email=values["email"],
        password_hash=values["password_hash"],
        oauth_provider=values["oauth_provider"],
        oauth_id=values["oauth_id"],
        first_name=values["first_name"] or "",
        last_name=values["last_name"] or "",
        email_verified=bool(values["email_verified"]),
        is_active=bool(values["is_active"]),
        created_at=_as_utc(values["created_at"]),
        updated_at=_as_utc(values["updated_at"]),
    )


def _row_to_session(row) -> Session:
    return _row_to_session_values(row._mapping)


def _row_to_session_values(values) -> Session:
    return Session(
        id=values["id"],
        user_id=values["user_id"],
        refresh_token=values["refresh_token"],
        expires_at=_as_utc(values["expires_at"]),
        created_at=_as_utc(values["created_at"]),
        revoked=bool(values["revoked"]),
    )
