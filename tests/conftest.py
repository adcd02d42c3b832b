# tests/conftest.py
from __future__ import annotations

from typing import Callable
from unittest.mock import AsyncMock, Mock

import pytest

from qskipper_identity.core.config import IdentitySettings
from qskipper_identity.manager import AuthSessionManager
from qskipper_identity.memory.store import InMemoryDurableStore
from qskipper_identity.models import OtpResponse, ProviderResponse, VerifyResponse

AUTHORITY_METHODS = (
    "request_otp",
    "verify",
    "register",
    "verify_registration",
    "verify_provider_token",
    "register_provider_token",
    "password_login",
)

# Env vars read by load_settings / setup_logging / session_trace
IDENTITY_ENV = (
    "IDENTITY_CONFIG",
    "IDENTITY_PROVIDER",
    "SESSION_STORE_PATH",
    "AUTHORITY_BASE_URL",
    "AUTHORITY_TIMEOUT_SEC",
    "LOG_LEVEL",
    "SESSION_TRACE",
)


@pytest.fixture(autouse=True)
def _clean_identity_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in IDENTITY_ENV:
        monkeypatch.delenv(name, raising=False)


def make_authority() -> Mock:
    """
    A RemoteAuthority fake: every method is an AsyncMock that answers with
    a happy-path response unless a test overrides return_value/side_effect.
    """
    authority = Mock()
    for name in AUTHORITY_METHODS:
        setattr(authority, name, AsyncMock())

    authority.request_otp.return_value = OtpResponse(success=True, user_id="u-1", username="Alice")
    authority.register.return_value = OtpResponse(success=True, user_id="u-2")
    authority.verify.return_value = VerifyResponse(success=True, user_id="u-1", token="srv-token")
    authority.verify_registration.return_value = VerifyResponse(success=True, user_id="u-2", token="srv-token")
    authority.verify_provider_token.return_value = ProviderResponse(user_id="srv-apple-1", username=None)
    authority.register_provider_token.return_value = ProviderResponse(user_id="srv-apple-1", username=None)
    authority.password_login.return_value = VerifyResponse(success=True, user_id="u-3", username="Pat")
    return authority


@pytest.fixture
def store() -> InMemoryDurableStore:
    return InMemoryDurableStore()


@pytest.fixture
def settings() -> IdentitySettings:
    return IdentitySettings()


@pytest.fixture
def authority() -> Mock:
    return make_authority()


@pytest.fixture
def make_manager(authority: Mock, store: InMemoryDurableStore, settings: IdentitySettings) -> Callable[..., AuthSessionManager]:
    """Build a manager over the shared store, e.g. to simulate an app restart."""

    def _make(**kw) -> AuthSessionManager:
        return AuthSessionManager(
            kw.get("authority", authority),
            kw.get("store", store),
            settings=kw.get("settings", settings),
        )

    return _make


@pytest.fixture
def manager(make_manager) -> AuthSessionManager:
    return make_manager()
