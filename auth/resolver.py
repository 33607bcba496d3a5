"""
auth/resolver.py -- Resolve the current user from a request's cookies.

resolve_session_user() is the one place that turns a cookie jar into a user.
It takes the cookies and the SessionStore as plain arguments, so it works
with a Starlette request's cookies, a dict in a test, or anything else that
maps names to values.

Contract:
  - The session token is read from SESSION_COOKIE_NAMES in order; the first
    cookie present wins. Values are never merged.
  - No token -> None, without touching the store.
  - Otherwise exactly one SessionStore.get() call (a sessions/users join).
    Unknown, tampered and expired tokens all come back as None.
  - No side effects. Reading a session never extends it.

Store errors propagate. The FastAPI dependency in auth/dependencies.py
decides how a request should degrade when the database is unreachable.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from collections.abc import Mapping

from auth.models import ActiveSession, SessionUser
from auth.store import SessionStore
from auth.tokens import SESSION_COOKIE_NAMES


def session_token_from_cookies(cookies: Mapping[str, str]) -> str | None:
    """Return the session token from the first known cookie name present."""
    for name in SESSION_COOKIE_NAMES:
        token = cookies.get(name)
        if token:
            return token
    return None


def resolve_session(cookies: Mapping[str, str], store: SessionStore) -> ActiveSession | None:
    token = session_token_from_cookies(cookies)
    if token is None:
        return None
    return store.get(token)


def resolve_session_user(cookies: Mapping[str, str], store: SessionStore) -> SessionUser | None:
    """Return the signed-in user's {id, name, email}, or None for anonymous requests."""
    session = resolve_session(cookies, store)
    return session.user if session is not None else None
