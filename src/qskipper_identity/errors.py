# src/qskipper_identity/errors.py
from __future__ import annotations

from typing import Optional


class IdentityError(Exception):
    """Base for every error the session engine raises. `code` is stable for callers."""

    code = "identity.error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(IdentityError):
    """Malformed caller input. Raised before any authority call."""

    code = "identity.invalid_input"


class AuthorityError(IdentityError):
    """Remote authority unreachable, non-2xx, or returned an undecodable body."""

    code = "identity.authority_unavailable"

    def __init__(self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.status_code = status_code


class DeniedError(IdentityError):
    """Authority was reachable and explicitly rejected the request (bad OTP, bad password)."""

    code = "identity.denied"


class MissingCredentialError(IdentityError):
    """A required credential (e.g. provider identity token) was not supplied."""

    code = "identity.missing_credential"


class FlowInProgressError(IdentityError):
    """Another authentication flow is still running on this manager."""

    code = "identity.flow_in_progress"
