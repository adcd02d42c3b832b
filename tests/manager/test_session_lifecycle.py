# tests/manager/test_session_lifecycle.py
import pytest

from qskipper_identity.errors import AuthorityError, DeniedError, ValidationError
from qskipper_identity.memory.session_store import LOGGED_IN_KEY
from qskipper_identity.models import AuthorityUser, AuthPhase, VerifyResponse

SESSION_KEYS = ("user_id", "user_email", "user_name", "user_phone", "user_token", LOGGED_IN_KEY)


# --- password ----------------------------------------------------------------

@pytest.mark.asyncio
async def test_password_login_ignores_stored_name(manager, authority, store):
    store.set("user_name", "Old Local Name")
    authority.password_login.return_value = VerifyResponse(success=True, user_id="u-3")

    assert await manager.login_with_password("pat@x.com", "s3cret") is True

    assert manager.is_logged_in
    assert manager.current_user_id() == "u-3"
    assert manager.current_user_name() == "User"
    authority.password_login.assert_awaited_once_with("pat@x.com", "s3cret")


@pytest.mark.asyncio
async def test_password_login_user_object(manager, authority):
    authority.password_login.return_value = VerifyResponse(
        success=True, token="srv", user=AuthorityUser(id="u-4", email="p@x.com", name="Pat", phone="555")
    )
    assert await manager.login_with_password("pat@x.com", "pw")
    user = manager.current_user()
    assert (user.id, user.email, user.name, user.phone, user.token) == ("u-4", "p@x.com", "Pat", "555", "srv")


@pytest.mark.asyncio
async def test_password_login_denied_raises(manager, authority):
    authority.password_login.return_value = VerifyResponse(success=False, message="Wrong password")
    with pytest.raises(DeniedError):
        await manager.login_with_password("pat@x.com", "bad")
    assert manager.error == "Wrong password"
    assert not manager.is_logged_in
    assert not manager.is_loading


@pytest.mark.asyncio
async def test_password_login_transport_failure(manager, authority):
    authority.password_login.side_effect = TimeoutError("read timed out")
    with pytest.raises(AuthorityError) as exc:
        await manager.login_with_password("pat@x.com", "pw")
    assert "TimeoutError" in exc.value.message
    assert manager.error
    assert not manager.is_loading


@pytest.mark.asyncio
@pytest.mark.parametrize("email,password", [("pat@", "pw"), ("pat@x.com", "")])
async def test_password_login_validation(manager, authority, email, password):
    with pytest.raises(ValidationError):
        await manager.login_with_password(email, password)
    authority.password_login.assert_not_awaited()


# --- logout ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_logout_is_idempotent(manager, authority, store):
    await manager.verify_otp("alice@x.com", "1")
    store.set("user_cart", "[]")
    store.set("apple_real_email_abc", "a@x.com")

    manager.logout()
    after_once = {k: store.get(k) for k in store.keys()}
    manager.logout()

    assert {k: store.get(k) for k in store.keys()} == after_once
    assert not manager.is_logged_in
    assert manager.phase is AuthPhase.LOGGED_OUT
    assert manager.current_user() is None
    for key in SESSION_KEYS + ("user_cart",):
        assert store.get(key) is None
    assert store.get("apple_real_email_abc") == "a@x.com"


@pytest.mark.asyncio
async def test_logout_clears_pending_otp_and_error(manager, authority):
    await manager.request_otp("alice@x.com")
    manager.state.error = "stale"
    manager.logout()
    assert manager.pending_otp is None
    assert manager.error is None


@pytest.mark.asyncio
async def test_login_transitions_are_published_once(manager, authority):
    transitions = []
    manager.on_login_change(lambda old, new: transitions.append(new))

    await manager.verify_otp("alice@x.com", "1")
    await manager.login_with_password("pat@x.com", "pw")
    manager.logout()
    manager.logout()

    assert transitions == [True, False]


@pytest.mark.asyncio
async def test_is_loading_is_observed_during_flow(manager, authority):
    loading = []
    manager.subscribe(lambda change: loading.append(change.new) if change.field == "is_loading" else None)

    await manager.request_otp("alice@x.com")
    with pytest.raises(ValidationError):
        await manager.request_otp("bad")

    assert loading == [True, False, True, False]


# --- restore -----------------------------------------------------------------

@pytest.mark.asyncio
async def test_restore_picks_up_persisted_session(make_manager, authority):
    first = make_manager()
    await first.verify_otp("alice@x.com", "1")

    second = make_manager()
    assert second.is_logged_in
    assert second.phase is AuthPhase.LOGGED_IN
    assert second.current_user_id() == "u-1"


def test_restore_clears_inconsistent_record(make_manager, store):
    store.set(LOGGED_IN_KEY, True)
    store.set("user_name", "Orphan")
    store.set("user_cart", "[]")

    manager = make_manager()

    assert not manager.is_logged_in
    assert manager.phase is AuthPhase.LOGGED_OUT
    assert store.get(LOGGED_IN_KEY) is None
    assert store.get("user_name") is None
    assert store.get("user_cart") is None


def test_fresh_store_starts_logged_out(manager):
    assert not manager.is_logged_in
    assert not manager.is_authenticated()
    assert manager.current_user() is None
    assert manager.error is None
