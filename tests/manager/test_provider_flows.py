# tests/manager/test_provider_flows.py
import logging

import httpx
import jwt
import pytest

from qskipper_identity.errors import AuthorityError, FlowInProgressError, MissingCredentialError
from qskipper_identity.models import ProviderResponse

OPAQUE_ID = "001234.5f6e7d8c9b0a1234.0987"


def _id_token(**claims) -> str:
    return jwt.encode(claims, "provider-signing-secret-for-tests-only", algorithm="HS256")


@pytest.mark.asyncio
async def test_fallback_when_authority_unreachable(manager, authority):
    authority.verify_provider_token.side_effect = httpx.ConnectError("no route to host")

    ok = await manager.sign_in_with_provider("abc123", None, None, "tok")

    assert ok is True
    assert manager.is_logged_in
    assert manager.current_user_id() == "apple_abc123"
    assert manager.error and manager.error.startswith("Server error:")
    assert manager.error.endswith("Using local authentication.")
    assert manager.current_user().token == "tok"
    assert manager.current_user_email() == "apple_user_abc123@example.com"
    assert not manager.is_loading


@pytest.mark.asyncio
async def test_authority_ids_are_adopted(manager, authority):
    authority.verify_provider_token.return_value = ProviderResponse(user_id="srv-7", username="Server Name")

    assert await manager.sign_in_with_provider("abc", "a@x.com", "Ann", "tok")

    user = manager.current_user()
    assert (user.id, user.email, user.name) == ("srv-7", "a@x.com", "Server Name")
    assert manager.error is None
    authority.verify_provider_token.assert_awaited_once_with("tok", "abc")


@pytest.mark.asyncio
async def test_cache_fills_in_withheld_disclosure(manager, authority):
    await manager.sign_in_with_provider("abc", "a@x.com", "Ann Lee", "tok")
    manager.logout()

    # the provider sends email/name only on first authorization
    await manager.sign_in_with_provider("abc", "", None, "tok")

    assert manager.current_user_email() == "a@x.com"
    assert manager.current_user_name() == "Ann Lee"


@pytest.mark.asyncio
async def test_cache_retains_email_across_restart(make_manager, store, authority):
    first = make_manager()
    await first.sign_in_with_provider("abc", "a@x.com", None, "tok")
    first.logout()

    second = make_manager()
    await second.sign_in_with_provider("abc", "", "", "tok")

    assert store.get("apple_real_email_abc") == "a@x.com"
    assert second.current_user_email() == "a@x.com"
    assert "example.com" not in second.current_user_email()


@pytest.mark.asyncio
async def test_missing_token_is_hard_failure_but_disclosure_is_cached(manager, authority, store):
    with pytest.raises(MissingCredentialError):
        await manager.sign_in_with_provider("abc", "a@x.com", "Ann", None)

    assert not manager.is_logged_in
    assert manager.error == "Missing identity token"
    assert not manager.is_loading
    authority.verify_provider_token.assert_not_awaited()
    assert store.get("apple_real_email_abc") == "a@x.com"
    assert store.get("apple_real_name_abc") == "Ann"


@pytest.mark.asyncio
async def test_opaque_external_id_gets_placeholder_name(manager, authority):
    authority.verify_provider_token.side_effect = AuthorityError("authority error 500: oops", status_code=500)

    await manager.sign_in_with_provider(OPAQUE_ID, None, None, "tok")

    assert manager.current_user_id() == f"apple_{OPAQUE_ID}"
    assert manager.current_user_name() == "Apple User"


@pytest.mark.asyncio
async def test_token_email_claim_is_used_when_nothing_disclosed(manager, authority):
    token = _id_token(sub="abc", email="hidden@privaterelay.appleid.com")

    await manager.sign_in_with_provider("abc", None, None, token)

    assert manager.current_user_email() == "hidden@privaterelay.appleid.com"
    assert manager.current_user_name() == "hidden"


@pytest.mark.asyncio
async def test_subject_mismatch_is_logged_not_fatal(manager, authority, caplog):
    token = _id_token(sub="someone-else")
    with caplog.at_level(logging.WARNING, logger="qskipper_identity.manager"):
        assert await manager.sign_in_with_provider("abc", "a@x.com", "Ann", token)
    assert "does not match" in caplog.text
    assert manager.is_logged_in


@pytest.mark.asyncio
async def test_stored_name_of_other_account_is_ignored(manager, authority):
    authority.password_login.return_value.username = "Pat From Password"
    await manager.login_with_password("pat@x.com", "pw")
    assert manager.current_user_name() == "Pat From Password"

    await manager.sign_in_with_provider("abc", None, None, "tok")
    # "Pat From Password" belongs to u-3, not this provider account
    assert manager.current_user_name() == "Apple User"


@pytest.mark.asyncio
async def test_register_with_provider_sends_resolved_identity(manager, authority):
    authority.register_provider_token.return_value = ProviderResponse(user_id="srv-9")

    assert await manager.register_with_provider("abc", "a@x.com", "Ann", "tok")

    authority.register_provider_token.assert_awaited_once_with("tok", "abc", "a@x.com", "Ann")
    assert manager.current_user_id() == "srv-9"
    assert manager.current_user_name() == "Ann"


@pytest.mark.asyncio
async def test_register_with_provider_falls_back_locally(manager, authority):
    authority.register_provider_token.side_effect = AuthorityError("authority unreachable: ConnectTimeout")

    assert await manager.register_with_provider("abc", None, "Ann", "tok")

    assert manager.current_user_id() == "apple_abc"
    assert "Using local authentication" in manager.error
    assert manager.is_logged_in


@pytest.mark.asyncio
async def test_credential_revoked_logs_out_provider_session(manager, authority):
    authority.verify_provider_token.side_effect = AuthorityError("down")
    await manager.sign_in_with_provider("abc", "a@x.com", "Ann", "tok")

    assert manager.handle_credential_revoked() is True
    assert not manager.is_logged_in
    assert manager.current_user() is None


@pytest.mark.asyncio
async def test_credential_revoked_keeps_otp_session(manager, authority):
    await manager.verify_otp("alice@x.com", "1")
    assert manager.handle_credential_revoked() is False
    assert manager.is_logged_in


@pytest.mark.asyncio
async def test_second_flow_while_loading_is_rejected(manager, authority):
    async def _slow(identity_token, external_id):
        with pytest.raises(FlowInProgressError):
            await manager.request_otp("alice@x.com")
        return ProviderResponse(user_id="srv-1")

    authority.verify_provider_token.side_effect = _slow

    assert await manager.sign_in_with_provider("abc", "a@x.com", "Ann", "tok")
    authority.request_otp.assert_not_awaited()
    assert manager.current_user_id() == "srv-1"
    assert not manager.is_loading
