"""
API request and response models for SessionGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

The sign-in/sign-out result envelope lives in core/results.py because the
client package consumes it as well.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from auth.models import ActiveSession

# ---------------------------------------------------------------------------
# Auth responses
# ---------------------------------------------------------------------------


class CsrfResponse(BaseModel):
    """Response for GET {AUTH_BASE_PATH}/csrf. Field name matches the form field."""

    model_config = ConfigDict(frozen=True)

    csrfToken: str


class SessionUserOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str]
    email: str


class SessionPayload(BaseModel):
    """Payload of the ok result returned by GET {AUTH_BASE_PATH}/session."""

    model_config = ConfigDict(frozen=True)

    user: SessionUserOut
    expires: str  # ISO 8601, UTC

    @classmethod
    def from_active(cls, session: ActiveSession) -> "SessionPayload":
        """Build the public view of a session. The token itself is never echoed back."""
        return cls(
            user=SessionUserOut(id=session.user.id, name=session.user.name, email=session.user.email),
            expires=session.expires.isoformat(),
        )


class ProviderInfo(BaseModel):
    """One entry of GET {AUTH_BASE_PATH}/providers."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: str
    signinUrl: str
    callbackUrl: str
    fields: list[str] = []


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses outside the auth flow."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
