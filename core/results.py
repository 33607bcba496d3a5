"""
core/results.py -- Wire contract for auth flow outcomes.

The sign-in, sign-out and session endpoints answer with one of three result
shapes, discriminated on `kind`:

  {"kind": "redirect", "url": ...}                        -- go to url
  {"kind": "error", "error": code, "message": ..., "url": ...}
                                                          -- flow failed; url is
                                                             the error landing page
  {"kind": "ok", "payload": ...}                          -- data for the caller

The server decides the kind. The client parses the body once with
parse_auth_result() and reads `url` from the parsed model instead of probing
untyped JSON for whichever key happens to be present.

Lives in core/ because both api/ (producer) and client/ (consumer) use it and
neither may import the other.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class RedirectResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["redirect"] = "redirect"
    url: str


class ErrorResult(BaseModel):
    """A failed flow. `error` is a stable code from auth.errors or CredentialsSignin."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["error"] = "error"
    error: str
    message: str
    url: str


class OkResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["ok"] = "ok"
    payload: Any = None


AuthResult = Annotated[Union[RedirectResult, ErrorResult, OkResult], Field(discriminator="kind")]

_auth_result_adapter: TypeAdapter = TypeAdapter(AuthResult)


def parse_auth_result(data: Any) -> Union[RedirectResult, ErrorResult, OkResult]:
    """Validate a decoded JSON body into one of the result models.

    Raises pydantic.ValidationError if `kind` is missing or unknown, or a
    required field for that kind is absent.
    """
    return _auth_result_adapter.validate_python(data)
