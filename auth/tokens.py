"""
auth/tokens.py -- Password hashing, CSRF tokens, and cookie helpers.

Security design decisions:
  Passwords: bcrypt, used directly. Bcrypt is the right choice for
       low-entropy secrets (passwords) because its cost factor makes brute-force
       expensive, and checkpw is salt-aware. The _DUMMY_HASH constant enables
       timing equalization in the credentials provider so response time does
       not reveal whether an email is registered [C1].

  CSRF: double-submit cookie. GET /csrf hands the page a random token and
       stores the same token in an httpOnly cookie, wrapped in a python-jose
       HS256 JWT signed with SECRET_KEY and carrying its own expiry. A
       state-changing POST must echo the token in its form body; verify_csrf()
       checks the cookie signature and expiry, then compares the two values in
       constant time. A cross-site form can send the cookie but cannot read it
       to put the token in the body.

  Cookies: httpOnly, SameSite=Lax, Path=/. Under SECURE_COOKIES the session
       cookie takes the __Secure- prefix and the CSRF cookie the __Host-
       prefix, and both carry the Secure flag.

  SECRET_KEY: sourced from core.config.get_settings(). The Settings class
       validates the key at startup [M6].

Layer rule: no imports from api/ or client/. Import from core/ is allowed --
core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import CsrfMismatchError
from core.config import get_settings

logger = logging.getLogger("sessiongate.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# Cookie names. The session cookie is looked up under both the plain and the
# __Secure- name because a deployment may switch SECURE_COOKIES while
# sessions issued under the other name are still live.
SESSION_COOKIE = "next-auth.session-token"
SECURE_SESSION_COOKIE = "__Secure-next-auth.session-token"
SESSION_COOKIE_NAMES: tuple[str, ...] = (SESSION_COOKIE, SECURE_SESSION_COOKIE)

CSRF_COOKIE = "next-auth.csrf-token"
SECURE_CSRF_COOKIE = "__Host-next-auth.csrf-token"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are silently truncated by bcrypt (this is
    a known bcrypt limitation).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash makes bcrypt raise ValueError; that is reported as
    a mismatch rather than a server error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sessiongate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# CSRF double-submit tokens
# ---------------------------------------------------------------------------


def csrf_cookie_name() -> str:
    return SECURE_CSRF_COOKIE if _settings.secure_cookies else CSRF_COOKIE


def create_csrf_token() -> tuple[str, str]:
    """Return (token, cookie_value) for a fresh CSRF token.

    token goes to the page in the GET /csrf JSON body. cookie_value is a
    signed JWT wrapping the same token with an exp claim of CSRF_MAX_AGE.
    """
    token = secrets.token_hex(32)
    expire = datetime.now(timezone.utc) + timedelta(seconds=_settings.csrf_max_age)
    cookie_value = jwt.encode({"csrf": token, "exp": expire}, _settings.secret_key, algorithm=_ALGORITHM)
    return token, cookie_value


def verify_csrf(cookie_value: str | None, submitted: str | None) -> None:
    """Raise CsrfMismatchError unless submitted matches the token in a valid CSRF cookie.

    Returning None (rather than a bool) keeps the call sites honest: a failed
    check cannot be accidentally ignored.
    """
    if not cookie_value or not submitted:
        raise CsrfMismatchError("CSRF token missing")
    try:
        payload = jwt.decode(cookie_value, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError as exc:
        raise CsrfMismatchError("CSRF cookie invalid or expired") from exc
    expected = payload.get("csrf")
    if not isinstance(expected, str) or not hmac.compare_digest(expected, submitted):
        raise CsrfMismatchError("CSRF token mismatch")


def set_csrf_cookie(response, cookie_value: str) -> None:
    response.set_cookie(
        csrf_cookie_name(),
        value=cookie_value,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.csrf_max_age,
        path="/",
    )


# ---------------------------------------------------------------------------
# Session cookie helpers
# ---------------------------------------------------------------------------


def session_cookie_name() -> str:
    """Name the session cookie is written under for this deployment."""
    return SECURE_SESSION_COOKIE if _settings.secure_cookies else SESSION_COOKIE


def session_expiry() -> datetime:
    """Absolute expiry for a session created now. Fixed, never refreshed."""
    return datetime.now(timezone.utc) + timedelta(seconds=_settings.session_max_age)


def set_session_cookie(response, token: str, expires: datetime) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": cookie sent on same-site navigations and top-level GET
        links, but not on cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the session row's expiry so both lapse together.
    """
    max_age = max(int((expires - datetime.now(timezone.utc)).total_seconds()), 0)
    response.set_cookie(
        session_cookie_name(),
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=max_age,
        path="/",
    )


def clear_session_cookies(response) -> None:
    """Expire the session cookie under both of its names."""
    for name in SESSION_COOKIE_NAMES:
        response.delete_cookie(
            name,
            path="/",
            httponly=True,
            samesite="lax",
            secure=name == SECURE_SESSION_COOKIE or _settings.secure_cookies,
        )
