"""
tests/test_client_flow.py -- Tests for client/flow.py (AuthClient).

Two harnesses:
  - ASGI: httpx.ASGITransport against the real app (conftest `wired_app`),
    exercising the full CSRF -> POST -> result -> navigate sequence.
  - Mock: httpx.MockTransport with a scripted handler, for request shape,
    transport failures and malformed answers.

Navigation is observed through RecordingNavigator instead of a browser.
"""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs

import httpx
import pytest
from pydantic import ValidationError

from client.flow import AuthClient, AuthClientError, HttpNavigator, SignInOptions

from conftest import TEST_EMAIL, TEST_PASSWORD

_ORIGIN = "http://testserver"


class RecordingNavigator:
    def __init__(self, location: str = "/home") -> None:
        self.location = location
        self.calls: list[tuple[str, str | None]] = []

    async def assign(self, url: str) -> None:
        self.calls.append(("assign", url))
        self.location = url

    async def reload(self) -> None:
        self.calls.append(("reload", None))


def _run(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Against the real app
# ---------------------------------------------------------------------------


@pytest.fixture
def asgi_transport(wired_app):
    return httpx.ASGITransport(app=wired_app)


class TestFlowAgainstApp:
    def test_sign_in_without_redirect_returns_response(self, asgi_transport):
        nav = RecordingNavigator()

        async def flow():
            async with AuthClient(_ORIGIN, navigator=nav, transport=asgi_transport) as auth:
                resp = await auth.sign_in(
                    "credentials",
                    {"email": TEST_EMAIL, "password": TEST_PASSWORD, "callbackUrl": "/dashboard", "redirect": False},
                )
                return resp, await auth.get_session()

        resp, session = _run(flow())
        assert resp is not None
        assert resp.json() == {"kind": "redirect", "url": "/dashboard"}
        assert session["user"]["email"] == TEST_EMAIL
        assert nav.calls == []

    def test_wrong_password_without_redirect(self, asgi_transport):
        nav = RecordingNavigator()

        async def flow():
            async with AuthClient(_ORIGIN, navigator=nav, transport=asgi_transport) as auth:
                resp = await auth.sign_in(
                    "credentials", SignInOptions(email=TEST_EMAIL, password="wrong", redirect=False)
                )
                return resp, await auth.get_session()

        resp, session = _run(flow())
        body = resp.json()
        assert body["kind"] == "error"
        assert body["error"] == "CredentialsSignin"
        assert session is None
        assert nav.calls == []

    def test_sign_in_navigates_to_callback(self, asgi_transport):
        nav = RecordingNavigator()

        async def flow():
            async with AuthClient(_ORIGIN, navigator=nav, transport=asgi_transport) as auth:
                result = await auth.sign_in(
                    "credentials", {"email": TEST_EMAIL, "password": TEST_PASSWORD, "callbackUrl": "/dashboard"}
                )
                return result, await auth.get_session()

        result, session = _run(flow())
        assert result is None
        assert nav.calls == [("assign", "/dashboard")]
        assert session is not None

    def test_failed_sign_in_navigates_to_error_page(self, asgi_transport):
        nav = RecordingNavigator()

        async def flow():
            async with AuthClient(_ORIGIN, navigator=nav, transport=asgi_transport) as auth:
                await auth.sign_in("credentials", {"email": TEST_EMAIL, "password": "wrong"})

        _run(flow())
        assert nav.calls == [("assign", "/signin?error=CredentialsSignin")]

    def test_callback_defaults_to_current_location(self, asgi_transport):
        nav = RecordingNavigator(location="/settings")

        async def flow():
            async with AuthClient(_ORIGIN, navigator=nav, transport=asgi_transport) as auth:
                await auth.sign_in("credentials", {"email": TEST_EMAIL, "password": TEST_PASSWORD})

        _run(flow())
        assert nav.calls == [("assign", "/settings")]

    def test_fragment_target_reloads(self, asgi_transport):
        nav = RecordingNavigator()

        async def flow():
            async with AuthClient(_ORIGIN, navigator=nav, transport=asgi_transport) as auth:
                await auth.sign_in(
                    "credentials", {"email": TEST_EMAIL, "password": TEST_PASSWORD, "callbackUrl": "/page#section"}
                )

        _run(flow())
        assert nav.calls == [("assign", "/page#section"), ("reload", None)]

    def test_sign_out_navigates_and_ends_session(self, asgi_transport):
        nav = RecordingNavigator()

        async def flow():
            async with AuthClient(_ORIGIN, navigator=nav, transport=asgi_transport) as auth:
                await auth.sign_in("credentials", {"email": TEST_EMAIL, "password": TEST_PASSWORD, "redirect": False})
                await auth.sign_out({"callbackUrl": "/goodbye"})
                return await auth.get_session()

        assert _run(flow()) is None
        assert nav.calls == [("assign", "/goodbye")]

    def test_http_navigator_follows_target(self, asgi_transport):
        async def flow():
            async with AuthClient(_ORIGIN, transport=asgi_transport) as auth:
                await auth.sign_in(
                    "credentials", {"email": TEST_EMAIL, "password": TEST_PASSWORD, "callbackUrl": "/api/v1/health"}
                )
                return auth.navigator

        nav = _run(flow())
        assert isinstance(nav, HttpNavigator)
        assert nav.location == "http://testserver/api/v1/health"
        assert nav.last_response.status_code == 200


# ---------------------------------------------------------------------------
# Against a scripted transport
# ---------------------------------------------------------------------------


class ScriptedServer:
    """MockTransport handler that records requests and answers like the server would."""

    def __init__(self, post_body=None, post_status: int = 200, raw_post: bytes | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self.post_body = post_body if post_body is not None else {"kind": "redirect", "url": "/done"}
        self.post_status = post_status
        self.raw_post = raw_post
        self._issued = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET" and request.url.path.endswith("/csrf"):
            self._issued += 1
            return httpx.Response(200, json={"csrfToken": f"tok{self._issued}"})
        if request.method == "POST":
            if self.raw_post is not None:
                return httpx.Response(self.post_status, content=self.raw_post)
            return httpx.Response(self.post_status, json=self.post_body)
        return httpx.Response(404)

    def posts(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == "POST"]

    def csrf_fetches(self) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith("/csrf"))


def _form(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


def _client(server: ScriptedServer, nav=None) -> AuthClient:
    return AuthClient(_ORIGIN, navigator=nav or RecordingNavigator(), transport=httpx.MockTransport(server))


class TestRequestShape:
    def test_csrf_fetched_for_every_call(self):
        server = ScriptedServer()

        async def flow():
            async with _client(server) as auth:
                await auth.sign_in("credentials", {"email": "e", "password": "p", "redirect": False})
                await auth.sign_in("credentials", {"email": "e", "password": "p", "redirect": False})

        _run(flow())
        assert server.csrf_fetches() == 2
        tokens = [_form(r)["csrfToken"] for r in server.posts()]
        assert tokens == ["tok1", "tok2"]

    def test_credentials_post_body_and_header(self):
        server = ScriptedServer()

        async def flow():
            async with _client(server) as auth:
                await auth.sign_in(
                    "credentials",
                    {"email": TEST_EMAIL, "password": TEST_PASSWORD, "remember": True, "callbackUrl": "/x"},
                )

        _run(flow())
        (post,) = server.posts()
        assert post.url.path == "/api/auth/callback/credentials"
        assert post.headers["x-auth-return-redirect"] == "1"
        assert _form(post) == {
            "email": TEST_EMAIL,
            "password": TEST_PASSWORD,
            "remember": "true",
            "csrfToken": "tok1",
            "callbackUrl": "/x",
        }

    def test_authorization_params_go_in_query(self):
        server = ScriptedServer()

        async def flow():
            async with _client(server) as auth:
                await auth.sign_in("email", {"email": TEST_EMAIL}, authorization_params={"login_hint": "ada"})

        _run(flow())
        (post,) = server.posts()
        assert post.url.path == "/api/auth/signin/email"
        assert post.url.params["login_hint"] == "ada"

    def test_non_return_capable_provider_always_navigates(self):
        server = ScriptedServer(post_body={"kind": "redirect", "url": "https://idp.example/authorize"})
        nav = RecordingNavigator()

        async def flow():
            async with _client(server, nav) as auth:
                return await auth.sign_in("github", {"redirect": False})

        assert _run(flow()) is None
        assert server.posts()[0].url.path == "/api/auth/signin/github"
        assert nav.calls == [("assign", "https://idp.example/authorize")]

    def test_ok_result_navigates_to_callback(self):
        server = ScriptedServer(post_body={"kind": "ok", "payload": None})
        nav = RecordingNavigator()

        async def flow():
            async with _client(server, nav) as auth:
                await auth.sign_in("credentials", {"email": "e", "password": "p", "callbackUrl": "/cb"})

        _run(flow())
        assert nav.calls == [("assign", "/cb")]


class TestFailures:
    def test_invalid_options_rejected_before_any_request(self):
        server = ScriptedServer()

        async def flow():
            async with _client(server) as auth:
                await auth.sign_in("credentials", {"email": {"nested": "no"}})

        with pytest.raises(ValidationError):
            _run(flow())
        assert server.requests == []

    def test_reserved_field_rejected(self):
        with pytest.raises(ValidationError):
            SignInOptions.model_validate({"csrfToken": "mine"})

    def test_signout_rejects_unknown_options(self):
        server = ScriptedServer()

        async def flow():
            async with _client(server) as auth:
                await auth.sign_out({"email": "x"})

        with pytest.raises(ValidationError):
            _run(flow())
        assert server.requests == []

    def test_non_json_answer_raises(self):
        server = ScriptedServer(raw_post=b"<html>Bad gateway</html>", post_status=502)
        nav = RecordingNavigator()

        async def flow():
            async with _client(server, nav) as auth:
                await auth.sign_in("credentials", {"email": "e", "password": "p"})

        with pytest.raises(AuthClientError):
            _run(flow())
        assert nav.calls == []

    def test_malformed_result_raises(self):
        server = ScriptedServer(post_body={"kind": "teleport"})

        async def flow():
            async with _client(server) as auth:
                await auth.sign_in("credentials", {"email": "e", "password": "p"})

        with pytest.raises(AuthClientError):
            _run(flow())

    def test_timeout_propagates(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        nav = RecordingNavigator()

        async def flow():
            async with AuthClient(_ORIGIN, navigator=nav, transport=httpx.MockTransport(handler)) as auth:
                await auth.sign_in("credentials", {"email": "e", "password": "p"})

        with pytest.raises(httpx.TimeoutException):
            _run(flow())
        assert nav.calls == []
