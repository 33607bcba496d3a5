"""
api/routes/auth.py -- Session sign-in / sign-out endpoints.

Mounted at AUTH_BASE_PATH (default /api/auth) by api/main.py.

Routes:
  GET  /csrf                   -- issue a CSRF token (JSON body + signed cookie)
  GET  /session                -- current session as an ok result (payload null if anonymous)
  GET  /providers              -- registered sign-in providers (public)
  POST /signin/{provider}      -- start sign-in for a provider
  POST /callback/{provider}    -- complete sign-in; credentials providers post here
  POST /signout                -- delete the session and clear its cookie

Result negotiation:
  Every POST answers with a core.results model. When the request carries
  X-Auth-Return-Redirect, the model is returned as JSON and the client
  decides how to navigate. Without the header the handler answers with a
  classic 302 to the model's url. Cookies are set on either response.

  Failed sign-in is reported in-band: the JSON is an ErrorResult with status
  200, whether the credentials were wrong or missing or the provider is
  unknown. Only a CSRF rejection uses 403, because the request is refused
  before any sign-in logic runs. Clients branch on `kind`, not on the status
  code.

Security:
  [CSRF] Every POST checks the double-submit token before any provider or
         store code runs. See auth/tokens.py.
  [C1]   The credentials provider equalizes timing for unknown emails; the
         route never inlines a user lookup.
  [C2]   callbackUrl is restricted to relative paths or the request's own
         origin so the flow cannot be used as an open redirect.
  [M5]   Cache-Control: no-store on every auth response.
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Union
from urllib.parse import urlencode, urlsplit

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response
from starlette.concurrency import run_in_threadpool

from api.models import CsrfResponse, ProviderInfo, SessionPayload
from auth.dependencies import try_get_current_session
from auth.errors import (
    AuthError,
    CsrfMismatchError,
    MissingCredentialsError,
    UnknownProviderError,
    UnsupportedProviderError,
)
from auth.providers import CredentialsProvider, Provider
from auth.resolver import session_token_from_cookies
from auth.store import SessionStore
from auth.tokens import (
    clear_session_cookies,
    create_csrf_token,
    csrf_cookie_name,
    session_expiry,
    set_csrf_cookie,
    set_session_cookie,
    verify_csrf,
)
from core.config import get_settings
from core.results import ErrorResult, OkResult, RedirectResult

logger = logging.getLogger("sessiongate.auth")

RETURN_REDIRECT_HEADER = "X-Auth-Return-Redirect"

# Message for rejected credentials. Identical for unknown email and wrong
# password so the response cannot be used to enumerate accounts.
_CREDENTIALS_SIGNIN_MESSAGE = "Sign in failed. Check the details you provided are correct."

# C0 controls, space, DEL and backslash. Never valid in a callback URL. [C2]
_UNSAFE_URL_CHARS = re.compile(r"[\x00-\x20\x7f\\]")

# Auth policy: every route here is public. Sign-in cannot require a session,
# and sign-out of an already-anonymous browser is a harmless no-op.
router = APIRouter()


# ---------------------------------------------------------------------------
# Read-only endpoints
# ---------------------------------------------------------------------------


@router.get("/csrf", response_model=CsrfResponse)
def csrf() -> JSONResponse:
    """Issue a fresh CSRF token and bind it to the browser with a signed cookie.

    A new token is minted on every call. The client fetches one before each
    state-changing request.
    """
    token, cookie_value = create_csrf_token()
    resp = JSONResponse(content=CsrfResponse(csrfToken=token).model_dump())
    set_csrf_cookie(resp, cookie_value)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/session", response_model=OkResult)
def session(request: Request) -> JSONResponse:
    """Return the current session, or an ok result with a null payload when anonymous."""
    active = try_get_current_session(request)
    payload = SessionPayload.from_active(active).model_dump() if active is not None else None
    resp = JSONResponse(content=OkResult(payload=payload).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/providers", response_model=dict[str, ProviderInfo])
def providers(request: Request) -> dict[str, ProviderInfo]:
    """Return every registered provider keyed by id.

    Public endpoint -- a sign-in page calls this to decide which forms and
    buttons to render.
    """
    base_path = get_settings().auth_base_path
    registry: dict[str, Provider] = request.app.state.providers
    return {pid: ProviderInfo(**p.describe(base_path)) for pid, p in registry.items()}


# ---------------------------------------------------------------------------
# State-changing endpoints
# ---------------------------------------------------------------------------


@router.post("/signin/{provider_id}")
async def signin(request: Request, provider_id: str) -> Response:
    """Start sign-in. For credentials providers this is the same as the callback."""
    return await _handle_signin(request, provider_id)


@router.post("/callback/{provider_id}")
async def callback(request: Request, provider_id: str) -> Response:
    """Complete sign-in with the proof carried in the form body."""
    return await _handle_signin(request, provider_id)


@router.post("/signout")
async def signout(request: Request) -> Response:
    """Delete the current session and clear the session cookie.

    Idempotent: a browser with no session (or an already-deleted one) still
    gets a redirect result and a cleared cookie.
    """
    form = await request.form()
    callback_url = _safe_callback_url(_form_str(form, "callbackUrl"), request)
    try:
        verify_csrf(request.cookies.get(csrf_cookie_name()), _form_str(form, "csrfToken"))
    except CsrfMismatchError as exc:
        return _csrf_rejected(request, exc, "signout")
    return await run_in_threadpool(_complete_signout, request, callback_url)


# ---------------------------------------------------------------------------
# Flow implementation
# ---------------------------------------------------------------------------


async def _handle_signin(request: Request, provider_id: str) -> Response:
    form = await request.form()
    fields = {k: v for k, v in form.items() if isinstance(v, str)}
    callback_url = _safe_callback_url(fields.pop("callbackUrl", None), request)
    submitted_csrf = fields.pop("csrfToken", None)

    # [CSRF] rejected before any provider or store work
    try:
        verify_csrf(request.cookies.get(csrf_cookie_name()), submitted_csrf)
    except CsrfMismatchError as exc:
        return _csrf_rejected(request, exc, f"signin/{provider_id}")

    # bcrypt and the session insert are blocking; keep them off the event loop.
    return await run_in_threadpool(_complete_signin, request, provider_id, fields, callback_url)


def _complete_signin(request: Request, provider_id: str, fields: dict[str, str], callback_url: str) -> Response:
    registry: dict[str, Provider] = request.app.state.providers
    session_store: SessionStore = request.app.state.session_store

    provider = registry.get(provider_id)
    if provider is None:
        return _auth_error(request, UnknownProviderError(provider_id))
    if not isinstance(provider, CredentialsProvider):
        return _auth_error(request, UnsupportedProviderError(provider.id, provider.type))

    try:
        user = provider.authorize(fields)
    except MissingCredentialsError as exc:
        logger.info("Sign-in rejected via %s: missing credentials", provider.id)
        return _auth_error(request, exc)

    if user is None:
        logger.info("Sign-in rejected via %s: invalid credentials", provider.id)
        result = ErrorResult(
            error="CredentialsSignin",
            message=_CREDENTIALS_SIGNIN_MESSAGE,
            url=_error_page_url(error="CredentialsSignin"),
        )
        return _respond(request, result)

    expires = session_expiry()
    token = session_store.create(user.id, expires)
    logger.info("Sign-in succeeded for user %s via %s", user.id, provider.id)

    resp = _respond(request, RedirectResult(url=callback_url))
    set_session_cookie(resp, token, expires)
    return resp


def _complete_signout(request: Request, callback_url: str) -> Response:
    session_store: SessionStore = request.app.state.session_store
    token = session_token_from_cookies(request.cookies)
    if token is not None:
        session_store.delete(token)
        logger.info("Signed out; session deleted")
    resp = _respond(request, RedirectResult(url=callback_url))
    clear_session_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _respond(request: Request, result: Union[RedirectResult, ErrorResult], status_code: int = 200) -> Response:
    """Render a result as JSON or as a 302, depending on X-Auth-Return-Redirect."""
    if RETURN_REDIRECT_HEADER in request.headers:
        resp: Response = JSONResponse(status_code=status_code, content=result.model_dump())
    else:
        resp = RedirectResponse(result.url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _auth_error(request: Request, exc: AuthError) -> Response:
    result = ErrorResult(error=exc.code, message=str(exc), url=_error_page_url(error=exc.code))
    return _respond(request, result)


def _csrf_rejected(request: Request, exc: CsrfMismatchError, action: str) -> Response:
    logger.warning(
        "CSRF check failed on %s from %s: %s",
        action,
        request.client.host if request.client else "unknown",
        exc,
    )
    result = ErrorResult(error=exc.code, message=str(exc), url=_error_page_url(csrf="true"))
    return _respond(request, result, status_code=403)


def _error_page_url(**params: str) -> str:
    return f"{get_settings().signin_page}?{urlencode(params)}"


def _form_str(form, key: str) -> Optional[str]:
    value = form.get(key)
    return value if isinstance(value, str) else None


def _safe_callback_url(url: Optional[str], request: Request) -> str:
    """Validate a post-flow redirect target. [C2]

    Accepted:
      - server-local paths: start with "/" and parse with neither scheme nor
        host
      - absolute http(s) URLs whose host:port is the request's own

    Control characters, whitespace and backslashes are rejected outright.
    Browsers and urlsplit() drop tab/CR/LF and read "\\" as "/", so
    "/\\t/evil.example" or "/\\evil.example" would otherwise turn into a
    protocol-relative, off-site URL after this check had passed it.

    Anything else, including a missing value, becomes "/".
    """
    if not url or _UNSAFE_URL_CHARS.search(url):
        return "/"
    parts = urlsplit(url)
    if not parts.scheme and not parts.netloc:
        return url if url.startswith("/") else "/"
    if parts.scheme in ("http", "https") and parts.netloc == request.base_url.netloc:
        return url
    return "/"
