"""
auth/providers.py -- Pluggable sign-in providers and the password credential verifier.

A Provider describes one way of proving identity. The route layer looks the
provider up by id in the registry built by build_providers() and dispatches
on its type:

  credentials -- the form itself carries the proof (email + password). The
                 provider's authorize() returns a User or None synchronously,
                 so the outcome can be handed back to the caller.
  email       -- an emailed one-time link. Also return-capable: the sign-in
                 POST only reports "check your inbox".
  oauth       -- browser round trip to a third party. Not return-capable: the
                 browser must follow the provider's redirect.

Only PasswordCredentialsProvider is implemented. OAuth and email flows are
outside this service; registering one makes the route answer
UnsupportedProvider instead of silently misbehaving.

Security:
  [C1] verify() always runs bcrypt, whether or not the email is registered.
       An unknown email is compared against auth.tokens._DUMMY_HASH so the
       response time does not reveal which addresses have accounts.
  Wrong password and unknown email both return None -- callers cannot tell
  them apart, and neither can the HTTP client.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from auth.errors import MissingCredentialsError
from auth.models import User
from auth.store import UserStore
from auth.tokens import burn_password_check, verify_password

logger = logging.getLogger("sessiongate.auth")

CREDENTIALS = "credentials"
EMAIL = "email"
OAUTH = "oauth"

# Provider types that can report success/failure back to the caller instead
# of forcing a browser redirect.
RETURN_CAPABLE_TYPES: frozenset[str] = frozenset({CREDENTIALS, EMAIL})


class Provider:
    """A registered sign-in method."""

    type: str = OAUTH

    def __init__(self, id: str, name: str) -> None:
        self.id = id
        self.name = name

    @property
    def return_capable(self) -> bool:
        return self.type in RETURN_CAPABLE_TYPES

    def describe(self, base_path: str) -> dict:
        """Public metadata for GET /providers. Never includes secrets."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "signinUrl": f"{base_path}/signin/{self.id}",
            "callbackUrl": f"{base_path}/callback/{self.id}",
        }


class CredentialsProvider(Provider):
    """A provider whose proof arrives in the sign-in form body.

    Subclasses implement authorize(). It returns the signed-in User, None for
    rejected credentials, and raises MissingCredentialsError when the form
    lacks the fields it needs.
    """

    type = CREDENTIALS

    # Form fields the provider reads. Shown on GET /providers so a sign-in
    # page can render inputs for them.
    fields: tuple[str, ...] = ()

    def authorize(self, form: Mapping[str, str]) -> User | None:
        raise NotImplementedError

    def describe(self, base_path: str) -> dict:
        info = super().describe(base_path)
        info["fields"] = list(self.fields)
        return info


class PasswordCredentialsProvider(CredentialsProvider):
    """Email + password checked against the bcrypt hash in the users table."""

    fields = ("email", "password")

    def __init__(self, user_store: UserStore, id: str = CREDENTIALS, name: str = "Credentials") -> None:
        super().__init__(id, name)
        self.user_store = user_store

    def authorize(self, form: Mapping[str, str]) -> User | None:
        if not form:
            raise MissingCredentialsError("Missing credentials")
        return self.verify(form.get("email", ""), form.get("password", ""))

    def verify(self, email: str, password: str) -> User | None:
        """Return the User for a matching email/password pair, None otherwise.

        Two steps: validate the password against the stored hash, then read
        the full user record. The second read is not atomic with the first;
        a password change in between still signs in with the old one, which
        is accepted for a single sign-in.

        Raises MissingCredentialsError if either value is empty.
        """
        if not email or not password:
            raise MissingCredentialsError("Email and password are required")

        hashed = self.user_store.get_hashed_password(email)
        if hashed is None:
            # Equalize timing -- do NOT return early before running bcrypt [C1]
            burn_password_check(password)
            return None
        if not verify_password(password, hashed):
            return None
        return self.user_store.get_by_email(email)


def build_providers(user_store: UserStore) -> dict[str, Provider]:
    """Return the provider registry keyed by provider id."""
    providers: list[Provider] = [PasswordCredentialsProvider(user_store)]
    logger.info("Sign-in providers registered: %s", ", ".join(p.id for p in providers))
    return {p.id: p for p in providers}
