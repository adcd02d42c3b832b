# src/qskipper_identity/adapters/base.py
from __future__ import annotations

from typing import Optional, Protocol

from qskipper_identity.models import OtpResponse, ProviderResponse, VerifyResponse


class RemoteAuthority(Protocol):
    """
    The backend that validates credentials and issues canonical identity data.

    Contract:
      - a reachable authority answers with a response model; a rejection is
        `success=False` (+ message), not an exception
      - transport failures, non-2xx statuses and undecodable bodies raise
        qskipper_identity.errors.AuthorityError
      - provider-token calls have no success flag: any error raises
    """

    async def request_otp(self, email: str) -> OtpResponse: ...

    async def verify(self, email: str, otp: str) -> VerifyResponse: ...

    async def register(self, email: str, name: str, phone: str) -> OtpResponse: ...

    async def verify_registration(self, email: str, otp: str) -> VerifyResponse: ...

    async def verify_provider_token(self, identity_token: str, external_id: str) -> ProviderResponse: ...

    async def register_provider_token(
        self,
        identity_token: str,
        external_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> ProviderResponse: ...

    async def password_login(self, email: str, password: str) -> VerifyResponse: ...
