"""
tests/test_credentials.py -- Unit tests for the password credential verifier and CSRF tokens.

Coverage:
  - verify(): match, wrong password, unknown email, password-less user,
    malformed stored hash -- all failures are an indistinguishable None
  - verify()/authorize(): missing values fail fast with MissingCredentialsError
  - Provider registry and return-capable types
  - CSRF: matching token passes; missing, mismatched, tampered and expired
    cookies raise CsrfMismatchError
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import CsrfMismatchError, MissingCredentialsError
from auth.models import User
from auth.providers import (
    RETURN_CAPABLE_TYPES,
    CredentialsProvider,
    PasswordCredentialsProvider,
    build_providers,
)
from auth.tokens import create_csrf_token, verify_csrf
from core.config import get_settings

from conftest import TEST_EMAIL, TEST_PASSWORD


@pytest.fixture
def provider(user_store) -> PasswordCredentialsProvider:
    return PasswordCredentialsProvider(user_store)


class TestPasswordVerify:
    def test_matching_pair_returns_user(self, provider, seeded_user):
        user = provider.verify(TEST_EMAIL, TEST_PASSWORD)
        assert user is not None
        assert user.id == seeded_user.id
        assert user.email == TEST_EMAIL

    def test_email_case_does_not_matter(self, provider, seeded_user):
        user = provider.verify("A@X.com", TEST_PASSWORD)
        assert user is not None
        assert user.id == seeded_user.id

    def test_wrong_password_returns_none(self, provider, seeded_user):
        assert provider.verify(TEST_EMAIL, "not-the-password") is None

    def test_unknown_email_returns_none(self, provider, seeded_user):
        assert provider.verify("ghost@x.com", TEST_PASSWORD) is None

    def test_user_without_password_returns_none(self, provider, user_store):
        user_store.create_user(User(email="oauth-only@x.com"))
        assert provider.verify("oauth-only@x.com", TEST_PASSWORD) is None

    def test_malformed_stored_hash_returns_none(self, provider, user_store):
        user_store.create_user(User(email="broken@x.com", hashed_password="not-bcrypt"))
        assert provider.verify("broken@x.com", TEST_PASSWORD) is None

    @pytest.mark.parametrize("email,password", [("", TEST_PASSWORD), (TEST_EMAIL, ""), ("", "")])
    def test_missing_values_fail_fast(self, provider, seeded_user, email, password):
        with pytest.raises(MissingCredentialsError):
            provider.verify(email, password)


class TestAuthorize:
    def test_form_with_credentials(self, provider, seeded_user):
        user = provider.authorize({"email": TEST_EMAIL, "password": TEST_PASSWORD})
        assert user is not None
        assert user.id == seeded_user.id

    def test_empty_form_raises(self, provider):
        with pytest.raises(MissingCredentialsError):
            provider.authorize({})

    def test_form_without_password_raises(self, provider):
        with pytest.raises(MissingCredentialsError):
            provider.authorize({"email": TEST_EMAIL})


class TestRegistry:
    def test_credentials_provider_registered(self, user_store):
        registry = build_providers(user_store)
        assert set(registry) == {"credentials"}
        assert isinstance(registry["credentials"], CredentialsProvider)
        assert registry["credentials"].return_capable

    def test_return_capable_types(self):
        assert RETURN_CAPABLE_TYPES == {"credentials", "email"}

    def test_describe_lists_urls_and_fields(self, provider):
        info = provider.describe("/api/auth")
        assert info["signinUrl"] == "/api/auth/signin/credentials"
        assert info["callbackUrl"] == "/api/auth/callback/credentials"
        assert info["fields"] == ["email", "password"]


class TestCsrf:
    def test_matching_token_passes(self):
        token, cookie = create_csrf_token()
        verify_csrf(cookie, token)

    def test_fresh_token_every_time(self):
        assert create_csrf_token()[0] != create_csrf_token()[0]

    @pytest.mark.parametrize("which", ["cookie", "submitted"])
    def test_missing_value_rejected(self, which):
        token, cookie = create_csrf_token()
        with pytest.raises(CsrfMismatchError):
            verify_csrf(None if which == "cookie" else cookie, None if which == "submitted" else token)

    def test_token_from_other_issuance_rejected(self):
        token_a, _cookie_a = create_csrf_token()
        _token_b, cookie_b = create_csrf_token()
        with pytest.raises(CsrfMismatchError):
            verify_csrf(cookie_b, token_a)

    def test_tampered_cookie_rejected(self):
        token, cookie = create_csrf_token()
        forged = jwt.encode({"csrf": token}, "x" * 64, algorithm="HS256")
        with pytest.raises(CsrfMismatchError):
            verify_csrf(forged, token)
        with pytest.raises(CsrfMismatchError):
            verify_csrf(cookie[:-2] + "xx", token)

    def test_expired_cookie_rejected(self):
        expired = jwt.encode(
            {"csrf": "abc", "exp": datetime.now(timezone.utc) - timedelta(seconds=5)},
            get_settings().secret_key,
            algorithm="HS256",
        )
        with pytest.raises(CsrfMismatchError):
            verify_csrf(expired, "abc")
