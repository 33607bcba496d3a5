"""
auth/errors.py -- Exception taxonomy for the sign-in/sign-out protocol.

Each exception carries a stable machine-readable `code`. The route layer
copies that code into the `error` field of the JSON result (or the ?error=
query parameter of the redirect) so clients branch on a fixed vocabulary.

Invalid credentials are deliberately NOT an exception: the credentials
provider returns None, and the route reports CredentialsSignin in-band.
An absent or expired session is not an error either -- the resolver returns
None.

Store failures are not wrapped. sqlalchemy.exc.SQLAlchemyError propagates to
the app's catch-all handler unchanged.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for protocol errors raised inside auth/."""

    code = "AuthError"


class MissingCredentialsError(AuthError):
    """Sign-in was attempted without an email or password."""

    code = "MissingCredentials"


class CsrfMismatchError(AuthError):
    """The submitted csrfToken is absent or does not match the CSRF cookie."""

    code = "CsrfMismatch"


class UnknownProviderError(AuthError):
    """The provider id in the URL is not registered."""

    code = "UnknownProvider"

    def __init__(self, provider_id: str) -> None:
        super().__init__(f"Unknown provider: {provider_id!r}")
        self.provider_id = provider_id


class UnsupportedProviderError(AuthError):
    """The provider is registered but its flow is not served by this handler."""

    code = "UnsupportedProvider"

    def __init__(self, provider_id: str, provider_type: str) -> None:
        super().__init__(f"Provider {provider_id!r} of type {provider_type!r} cannot sign in here")
        self.provider_id = provider_id
        self.provider_type = provider_type
