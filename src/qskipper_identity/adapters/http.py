# src/qskipper_identity/adapters/http.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from qskipper_identity.core.config import AuthoritySettings
from qskipper_identity.core.trace import mask, session_trace
from qskipper_identity.errors import AuthorityError
from qskipper_identity.models import OtpResponse, ProviderResponse, VerifyResponse

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _message_of(r: httpx.Response) -> str:
    """Prefer the JSON `message` field; fall back to a truncated body."""
    try:
        body = r.json()
    except ValueError:
        return r.text[:200]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return r.text[:200]


class HttpRemoteAuthority:
    """
    httpx implementation of the RemoteAuthority contract.

    One POST per call with the configured timeout; no retries. An
    injected `client` is reused and never closed here (tests pass one
    bound to httpx_mock); otherwise a client is created per request.
    """

    def __init__(self, settings: AuthoritySettings, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings
        self._client = client

    def _url(self, path: str) -> str:
        return self.settings.base_url.rstrip("/") + "/" + path.lstrip("/")

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = self._url(path)
        own = self._client or httpx.AsyncClient(timeout=self.settings.timeout_sec)
        try:
            r = await own.post(url, json=payload, headers={"Accept": "application/json"})
        except httpx.HTTPError as ex:
            logger.warning("Authority request to %s failed: %s", url, ex)
            raise AuthorityError(f"authority unreachable: {ex.__class__.__name__}: {ex}") from ex
        finally:
            if self._client is None:
                await own.aclose()

        session_trace("authority.response", url=url, status=r.status_code)

        # Rejections the caller can act on arrive as 2xx {"status": false, ...};
        # any other status is a transport-level failure.
        if not r.is_success:
            raise AuthorityError(
                f"authority error {r.status_code}: {_message_of(r)}",
                status_code=r.status_code,
            )
        try:
            data = r.json()
        except ValueError as ex:
            raise AuthorityError(
                f"authority returned non-JSON body ({r.status_code})",
                status_code=r.status_code,
            ) from ex
        if not isinstance(data, dict):
            raise AuthorityError("authority returned unexpected JSON shape", status_code=r.status_code)
        return data

    @staticmethod
    def _decode(model: Type[M], data: Dict[str, Any]) -> M:
        try:
            return model.model_validate(data)
        except PydanticValidationError as ex:
            raise AuthorityError(f"undecodable authority response: {ex.error_count()} field error(s)") from ex

    # --- RemoteAuthority ------------------------------------------------------

    async def request_otp(self, email: str) -> OtpResponse:
        data = await self._post(self.settings.endpoints.request_otp, {"email": email})
        return self._decode(OtpResponse, data)

    async def verify(self, email: str, otp: str) -> VerifyResponse:
        data = await self._post(self.settings.endpoints.verify_otp, {"email": email, "otp": otp})
        return self._decode(VerifyResponse, data)

    async def register(self, email: str, name: str, phone: str) -> OtpResponse:
        data = await self._post(
            self.settings.endpoints.register_otp,
            {"email": email, "name": name, "phone": phone},
        )
        return self._decode(OtpResponse, data)

    async def verify_registration(self, email: str, otp: str) -> VerifyResponse:
        data = await self._post(self.settings.endpoints.verify_registration, {"email": email, "otp": otp})
        return self._decode(VerifyResponse, data)

    async def verify_provider_token(self, identity_token: str, external_id: str) -> ProviderResponse:
        session_trace("authority.provider_sign_in", user=external_id, token=mask(identity_token))
        data = await self._post(
            self.settings.endpoints.provider_sign_in,
            {"identityToken": identity_token, "user": external_id},
        )
        if data.get("status") is False or data.get("success") is False:
            raise AuthorityError(data.get("message") or "provider token rejected by authority")
        return self._decode(ProviderResponse, data)

    async def register_provider_token(
        self,
        identity_token: str,
        external_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> ProviderResponse:
        payload: Dict[str, Any] = {"identityToken": identity_token, "user": external_id}
        if email:
            payload["email"] = email
        if name:
            payload["name"] = name
        data = await self._post(self.settings.endpoints.provider_register, payload)
        if data.get("status") is False or data.get("success") is False:
            raise AuthorityError(data.get("message") or "provider registration rejected by authority")
        return self._decode(ProviderResponse, data)

    async def password_login(self, email: str, password: str) -> VerifyResponse:
        data = await self._post(self.settings.endpoints.password_login, {"email": email, "password": password})
        return self._decode(VerifyResponse, data)
