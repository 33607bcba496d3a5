"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Authentication is cookie-only: the session cookie set by the sign-in route
is resolved against the sessions table by auth.resolver.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: no imports from client/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from auth.models import ActiveSession, SessionUser
from auth.resolver import resolve_session

logger = logging.getLogger("sessiongate.auth")


def try_get_current_session(request: Request) -> ActiveSession | None:
    """Resolve the request's session cookie. Never raises.

    A database failure here degrades the request to anonymous rather than
    failing it: pages that merely show "signed in as" keep working while the
    store is down. The failure is logged with its traceback.
    """
    session_store = request.app.state.session_store
    try:
        return resolve_session(request.cookies, session_store)
    except SQLAlchemyError:
        logger.exception("Session lookup failed; treating request as anonymous")
        return None


def try_get_current_user(request: Request) -> SessionUser | None:
    """Return the signed-in user for the request, or None."""
    session = try_get_current_session(request)
    return session.user if session is not None else None


def get_current_user(request: Request) -> SessionUser:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: SessionUser = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user
