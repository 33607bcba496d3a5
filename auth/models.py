"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores and routes do the work.

All timestamps are timezone-aware UTC datetimes. The store converts them to
and from epoch milliseconds at the persistence boundary.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class User:
    """Represents a registered identity.

    id is an opaque string (uuid4) assigned by the store and never changes.
    email is unique and stored lowercased so lookups are case-insensitive.

    hashed_password is None for users who only sign in through an external
    provider -- the credentials provider treats them like unknown users.
    """

    email: str
    id: str | None = None
    name: str | None = None
    image: str | None = None
    hashed_password: str | None = None  # None = no local password
    email_verified: datetime | None = None


@dataclass(frozen=True)
class SessionUser:
    """The {id, name, email} projection returned by the sessions/users join.

    This is what "current user" means to request handlers. It deliberately
    omits hashed_password so it is safe to serialize into a response.
    """

    id: str
    email: str
    name: str | None = None


@dataclass(frozen=True)
class ActiveSession:
    """An unexpired session together with its user projection."""

    session_token: str
    expires: datetime
    user: SessionUser


@dataclass
class Account:
    """Link between a user and an external provider identity.

    Composite key (provider, provider_account_id). Token columns mirror what
    an OAuth provider hands back; none of them are populated by the
    credentials path.
    """

    user_id: str
    type: str  # "oauth", "oidc", "email", "credentials"
    provider: str
    provider_account_id: str
    refresh_token: str | None = None
    access_token: str | None = None
    expires_at: int | None = None
    token_type: str | None = None
    scope: str | None = None
    id_token: str | None = None
    session_state: str | None = None


@dataclass
class VerificationToken:
    """One-time token for email-link sign-in. Composite key (identifier, token)."""

    identifier: str
    token: str
    expires: datetime
