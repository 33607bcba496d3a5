"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore and SessionStore are the repositories; the _row_to_* functions are
the mappers. Route, resolver and provider code never touches SQL directly.

Both stores share one Engine built by create_auth_engine(), so a single
SQLite file (or any SQLAlchemy URL) holds the four auth tables:

  users              -- registered identities
  accounts           -- external provider links, PK (provider, providerAccountId)
  sessions           -- login sessions, PK sessionToken
  verificationToken  -- email-link tokens, PK (identifier, token)

Column names follow the camelCase layout of the existing auth schema so a
database created by another adapter can be opened unchanged.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Session tokens are generated here, never by callers: secrets.token_urlsafe(32)
  gives 256 bits of entropy. Collision avoidance relies on that entropy; there
  is no read-before-insert uniqueness check.

  sessions.userId and accounts.userId cascade on user delete. SQLite only
  enforces foreign keys when PRAGMA foreign_keys=ON is set per connection,
  which _set_sqlite_pragmas() does.

Expiry:
  Timestamps are stored as integer epoch milliseconds. SessionStore.get()
  filters on expires > now, so an expired row is never returned even before
  delete_expired() has removed it.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Account, ActiveSession, SessionUser, User, VerificationToken

logger = logging.getLogger("sessiongate.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", Text),
    Column("email", String(255), nullable=False, unique=True),
    Column("emailVerified", Integer),  # epoch ms
    Column("image", Text),
    Column("hashedPassword", Text),  # NULL for provider-only users
)

_accounts = Table(
    "accounts",
    _metadata,
    Column("userId", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("type", String(30), nullable=False),
    Column("provider", String(100), nullable=False),
    Column("providerAccountId", String(255), nullable=False),
    Column("refresh_token", Text),
    Column("access_token", Text),
    Column("expires_at", Integer),
    Column("token_type", String(50)),
    Column("scope", Text),
    Column("id_token", Text),
    Column("session_state", Text),
    PrimaryKeyConstraint("provider", "providerAccountId"),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("sessionToken", String(128), primary_key=True),
    Column("userId", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("expires", Integer, nullable=False),  # epoch ms
)

_verification_tokens = Table(
    "verificationToken",
    _metadata,
    Column("identifier", String(255), nullable=False),
    Column("token", String(255), nullable=False),
    Column("expires", Integer, nullable=False),  # epoch ms
    PrimaryKeyConstraint("identifier", "token"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign-key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Without foreign_keys=ON the ON DELETE CASCADE
    clauses on sessions and accounts are silently ignored.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def create_auth_engine(db_url: str) -> Engine:
    """Build the shared Engine and create any missing auth tables.

    Usage:
        engine = create_auth_engine("sqlite:///auth.db")
        users = UserStore(engine)
        sessions = SessionStore(engine)
        ...
        engine.dispose()
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    _metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_ms(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Users, accounts, verification tokens
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User, Account and VerificationToken entities.

    Usage:
        store = UserStore(engine)
        user_id = store.create_user(User(email="a@x.com", hashed_password=hash_password("secret")))
        user = store.get_by_email("a@x.com")
    """

    # Columns update_user() may touch. Validated before any SQL write so
    # callers cannot rename arbitrary columns through **fields.
    _UPDATABLE_FIELDS: dict = {
        "name": "name",
        "image": "image",
        "hashed_password": "hashedPassword",
        "email_verified": "emailVerified",
    }

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its assigned id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        user_id = user.id or str(uuid.uuid4())
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    name=user.name,
                    email=_normalize_email(user.email),
                    emailVerified=_to_ms(user.email_verified) if user.email_verified else None,
                    image=user.image,
                    hashedPassword=user.hashed_password,
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == _normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_hashed_password(self, email: str) -> str | None:
        """Return only the stored password hash for an email.

        The credentials provider validates against this narrow read first and
        fetches the full record only after the password matched.
        """
        with self.engine.connect() as conn:
            return conn.execute(
                select(_users.c.hashedPassword).where(_users.c.email == _normalize_email(email))
            ).scalar()

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: name, image, hashed_password, email_verified.
        Unknown fields raise ValueError rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - set(self._UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        values = {}
        for key, value in fields.items():
            if key == "email_verified" and value is not None:
                value = _to_ms(value)
            values[self._UPDATABLE_FIELDS[key]] = value
        if not values:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user. Sessions and accounts go with it (cascade).

        Returns True if deleted, False if not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def link_account(self, account: Account) -> None:
        """Associate an external provider identity with an existing user.

        Raises sqlalchemy.exc.IntegrityError if (provider, provider_account_id)
        is already linked or the user does not exist.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _accounts.insert().values(
                    userId=account.user_id,
                    type=account.type,
                    provider=account.provider,
                    providerAccountId=account.provider_account_id,
                    refresh_token=account.refresh_token,
                    access_token=account.access_token,
                    expires_at=account.expires_at,
                    token_type=account.token_type,
                    scope=account.scope,
                    id_token=account.id_token,
                    session_state=account.session_state,
                )
            )
            conn.commit()

    def get_user_by_account(self, provider: str, provider_account_id: str) -> User | None:
        """Return the user linked to (provider, provider_account_id), or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users)
                .select_from(_accounts.join(_users, _users.c.id == _accounts.c.userId))
                .where((_accounts.c.provider == provider) & (_accounts.c.providerAccountId == provider_account_id))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def unlink_account(self, provider: str, provider_account_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _accounts.delete().where(
                    (_accounts.c.provider == provider) & (_accounts.c.providerAccountId == provider_account_id)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(self, token: VerificationToken) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _verification_tokens.insert().values(
                    identifier=token.identifier,
                    token=token.token,
                    expires=_to_ms(token.expires),
                )
            )
            conn.commit()

    def use_verification_token(self, identifier: str, token: str) -> VerificationToken | None:
        """Consume a verification token: delete it and return it if still valid.

        The row is deleted whether or not it has expired, so an expired token
        can never be replayed. Returns None for unknown or expired tokens.

        Only the caller whose DELETE removed the row gets the token back. Two
        concurrent consumers may both read it, but only one delete hits.
        """
        where = (_verification_tokens.c.identifier == identifier) & (_verification_tokens.c.token == token)
        with self.engine.connect() as conn:
            row = conn.execute(_verification_tokens.select().where(where)).fetchone()
            if row is None:
                return None
            deleted = conn.execute(_verification_tokens.delete().where(where)).rowcount
            conn.commit()
        if deleted != 1 or row.expires <= _now_ms():
            return None
        return VerificationToken(identifier=row.identifier, token=row.token, expires=_from_ms(row.expires))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for Session records.

    Usage:
        sessions = SessionStore(engine)
        token = sessions.create(user_id, expires_at)
        active = sessions.get(token)   # ActiveSession or None
        sessions.delete(token)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, user_id: str, expires_at: datetime) -> str:
        """Persist a new session for user_id and return its freshly generated token.

        Raises sqlalchemy.exc.IntegrityError if user_id does not reference an
        existing user.
        """
        token = secrets.token_urlsafe(32)
        with self.engine.connect() as conn:
            conn.execute(_sessions.insert().values(sessionToken=token, userId=user_id, expires=_to_ms(expires_at)))
            conn.commit()
        return token

    def get(self, token: str) -> ActiveSession | None:
        """Return the unexpired session for token joined with its user, or None.

        One query: sessions INNER JOIN users, filtered on expires > now. An
        expired row is treated as absent even if it has not been purged yet.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    _sessions.c.sessionToken,
                    _sessions.c.expires,
                    _users.c.id,
                    _users.c.name,
                    _users.c.email,
                )
                .select_from(_sessions.join(_users, _users.c.id == _sessions.c.userId))
                .where((_sessions.c.sessionToken == token) & (_sessions.c.expires > _now_ms()))
                .limit(1)
            ).fetchone()
        return _row_to_active_session(row) if row is not None else None

    def delete(self, token: str) -> None:
        """Delete the session for token. Unknown tokens are a no-op."""
        with self.engine.connect() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.sessionToken == token))
            conn.commit()

    def delete_for_user(self, user_id: str) -> int:
        """Delete every session belonging to user_id. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.userId == user_id))
            conn.commit()
        return result.rowcount

    def delete_expired(self) -> int:
        """Delete all sessions whose expiry has passed. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires <= _now_ms()))
            conn.commit()
        if result.rowcount:
            logger.info("Purged %d expired session(s)", result.rowcount)
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        image=row.image,
        hashed_password=row.hashedPassword,
        email_verified=_from_ms(row.emailVerified),
    )


def _row_to_active_session(row) -> ActiveSession:
    return ActiveSession(
        session_token=row.sessionToken,
        expires=_from_ms(row.expires),
        user=SessionUser(id=row.id, email=row.email, name=row.name),
    )
