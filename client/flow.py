"""
client/flow.py -- Async helper that drives sign-in and sign-out against SessionGate.

The browser-side flow, expressed for Python callers (scripts, CLIs, tests,
server-side rendering that acts on behalf of a user):

  1. GET  {base}/csrf                     -- every call, never cached
  2. POST {base}/callback/{id}            -- credentials providers
     POST {base}/signin/{id}              -- every other provider
     form body: provider fields + csrfToken + callbackUrl
     header:    X-Auth-Return-Redirect: 1 (always ask for JSON)
  3. Parse the JSON body once into a core.results model.
  4. Either navigate to the result's url, or hand the response back.

The two requests are sequential: the POST needs the token from the GET.
Both share one httpx.AsyncClient, so its cookie jar carries the CSRF cookie
from step 1 to step 2 and keeps the session cookie for later requests.

Navigation is injected through the Navigator protocol. HttpNavigator follows
targets with GET requests on the same client; tests pass a recording fake.
Navigation is always the last thing a flow does.

Layer rule: client/ imports from core/ only. It never imports api/ or auth/,
so it can be shipped without the server's dependencies beyond core.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol, Union
from urllib.parse import urljoin

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from core.results import ErrorResult, OkResult, RedirectResult, parse_auth_result

logger = logging.getLogger("sessiongate.client")

RETURN_REDIRECT_HEADER = "X-Auth-Return-Redirect"

# Provider ids that can report the outcome back to the caller instead of
# forcing a navigation. Everything else (OAuth) always navigates.
RETURN_CAPABLE_PROVIDERS: frozenset[str] = frozenset({"credentials", "email"})

# Form fields the flow fills in itself. Provider fields may not shadow them.
_RESERVED_FIELDS = frozenset({"csrfToken", "callbackUrl", "callback_url", "redirect"})

_DEFAULT_TIMEOUT = 10.0


class AuthClientError(Exception):
    """The server answered with something that is not a valid auth result."""

    def __init__(self, message: str, response: Optional[httpx.Response] = None) -> None:
        super().__init__(message)
        self.response = response


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class SignInOptions(BaseModel):
    """Options for AuthClient.sign_in().

    callback_url: where to land after sign-in (defaults to the navigator's
        current location).
    redirect: navigate even for return-capable providers. Default True.
    Any other keyword is a provider field (e.g. email=, password=) and is
    posted in the form body. Provider fields must be scalars.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")
    redirect: bool = True

    @model_validator(mode="after")
    def check_provider_fields(self) -> "SignInOptions":
        for key, value in (self.model_extra or {}).items():
            if key in _RESERVED_FIELDS:
                raise ValueError(f"{key!r} is set by the sign-in flow and cannot be a provider field")
            if value is not None and not isinstance(value, (str, int, float, bool)):
                raise ValueError(f"Provider field {key!r} must be a string, number or bool")
        return self

    def provider_fields(self) -> dict[str, str]:
        """Provider fields serialized for a form body. None values are dropped."""
        fields: dict[str, str] = {}
        for key, value in (self.model_extra or {}).items():
            if value is None:
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            fields[key] = str(value)
        return fields


class SignOutOptions(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------


class Navigator(Protocol):
    """Where a completed flow sends the user."""

    @property
    def location(self) -> str: ...

    async def assign(self, url: str) -> None: ...

    async def reload(self) -> None: ...


class HttpNavigator:
    """Navigator that "visits" targets by GETting them with an httpx client.

    A target that differs from the current location only by its #fragment
    would not trigger a document load in a browser. The flow therefore calls
    reload() after assigning a URL that contains '#', and this navigator
    re-fetches the current location.
    """

    def __init__(self, http: httpx.AsyncClient, location: str = "") -> None:
        self._http = http
        self._location = location
        self.last_response: Optional[httpx.Response] = None

    @property
    def location(self) -> str:
        return self._location

    async def assign(self, url: str) -> None:
        self._location = urljoin(self._location or str(self._http.base_url), url)
        await self._visit()

    async def reload(self) -> None:
        await self._visit()

    async def _visit(self) -> None:
        target = self._location.split("#", 1)[0]
        self.last_response = await self._http.get(target, follow_redirects=True)
        logger.debug("Navigated to %s (%d)", target, self.last_response.status_code)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class AuthClient:
    """Sign-in / sign-out flows against one SessionGate server.

    Usage:
        async with AuthClient("http://localhost:8000") as auth:
            await auth.sign_in("credentials", {"email": "a@x.com", "password": "secret"})
            session = await auth.get_session()

    Args:
        base_url:   Server origin.
        navigator:  Navigation target. Defaults to an HttpNavigator sharing
                    this client's connection and cookie jar.
        base_path:  Mount point of the auth routes on the server.
        timeout:    Seconds for every request. A bounded timeout keeps a
                    stalled server from hanging the flow forever.
        transport:  Optional httpx transport (e.g. httpx.ASGITransport in tests).
    """

    def __init__(
        self,
        base_url: str,
        navigator: Optional[Navigator] = None,
        base_path: str = "/api/auth",
        timeout: float = _DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_path = base_path.rstrip("/")
        self.http = httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout), transport=transport)
        self.navigator: Navigator = navigator if navigator is not None else HttpNavigator(self.http)

    async def __aenter__(self) -> "AuthClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.http.aclose()

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_csrf_token(self) -> str:
        """Fetch a fresh CSRF token. The server also sets the matching cookie on this client."""
        resp = await self.http.get(f"{self.base_path}/csrf")
        resp.raise_for_status()
        try:
            token = resp.json()["csrfToken"]
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthClientError("CSRF endpoint returned no csrfToken", resp) from exc
        if not isinstance(token, str) or not token:
            raise AuthClientError("CSRF endpoint returned an empty csrfToken", resp)
        return token

    async def get_session(self) -> Optional[dict[str, Any]]:
        """Return the current session payload ({user, expires}) or None when signed out."""
        resp = await self.http.get(f"{self.base_path}/session")
        result = self._parse(resp)
        if not isinstance(result, OkResult):
            raise AuthClientError(f"Unexpected {result.kind!r} result from session endpoint", resp)
        return result.payload

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def sign_in(
        self,
        provider_id: str,
        options: Union[SignInOptions, dict[str, Any], None] = None,
        authorization_params: Optional[dict[str, str]] = None,
    ) -> Optional[httpx.Response]:
        """Run the sign-in flow for provider_id.

        Returns None after navigating, or the raw httpx.Response when the
        caller passed redirect=False for a return-capable provider. In the
        latter case nothing is navigated; inspect the JSON body (a
        core.results model) to see whether sign-in succeeded.

        Raises pydantic.ValidationError for malformed options (before any
        request is made), AuthClientError for a malformed server answer, and
        httpx.HTTPError for transport failures and timeouts.
        """
        opts = options if isinstance(options, SignInOptions) else SignInOptions.model_validate(options or {})
        callback_url = opts.callback_url or self.navigator.location or "/"
        supports_return = provider_id in RETURN_CAPABLE_PROVIDERS
        action = "callback" if provider_id == "credentials" else "signin"

        csrf_token = await self.get_csrf_token()
        resp = await self.http.post(
            f"{self.base_path}/{action}/{provider_id}",
            params=authorization_params or {},
            data={**opts.provider_fields(), "csrfToken": csrf_token, "callbackUrl": callback_url},
            headers={RETURN_REDIRECT_HEADER: "1"},
        )
        result = self._parse(resp)
        logger.debug("Sign-in via %s answered %s (%d)", provider_id, result.kind, resp.status_code)

        if opts.redirect or not supports_return:
            await self._navigate(self._redirect_target(result, callback_url))
            return None
        return resp

    async def sign_out(self, options: Union[SignOutOptions, dict[str, Any], None] = None) -> None:
        """Delete the server session, then navigate. Sign-out always navigates."""
        opts = options if isinstance(options, SignOutOptions) else SignOutOptions.model_validate(options or {})
        callback_url = opts.callback_url or self.navigator.location or "/"

        csrf_token = await self.get_csrf_token()
        resp = await self.http.post(
            f"{self.base_path}/signout",
            data={"csrfToken": csrf_token, "callbackUrl": callback_url},
            headers={RETURN_REDIRECT_HEADER: "1"},
        )
        result = self._parse(resp)
        await self._navigate(self._redirect_target(result, callback_url))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(resp: httpx.Response) -> Union[RedirectResult, ErrorResult, OkResult]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise AuthClientError(f"Expected a JSON auth result, got HTTP {resp.status_code}", resp) from exc
        try:
            return parse_auth_result(data)
        except ValidationError as exc:
            raise AuthClientError(f"Malformed auth result (HTTP {resp.status_code})", resp) from exc

    @staticmethod
    def _redirect_target(result: Union[RedirectResult, ErrorResult, OkResult], callback_url: str) -> str:
        if isinstance(result, (RedirectResult, ErrorResult)):
            return result.url
        return callback_url

    async def _navigate(self, target: str) -> None:
        await self.navigator.assign(target)
        # Assigning a URL with a fragment does not reload the document.
        if "#" in target:
            await self.navigator.reload()
