# src/qskipper_identity/manager.py
"""
AuthSessionManager: the session state machine.

    LOGGED_OUT -> OTP_REQUESTED -> VERIFYING -> LOGGED_IN
    LOGGED_OUT -> LOGGED_IN                      (provider / password)
    any        -> LOGGED_OUT                     (logout)

Each public flow runs through `_run`, which owns the is_loading/error
bookkeeping and turns the flow's tagged result (Success / Denied / Failed)
into the caller-facing contract:

    flow                      Denied            Failed (authority down)
    request_otp / register    raise Denied      raise AuthorityError
    verify_* OTP              return False      raise AuthorityError
    login_with_password       raise Denied      raise AuthorityError
    provider sign-in/up       n/a               local fallback, error = diagnostic
"""

from __future__ import annotations

import logging
import re
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

from qskipper_identity.adapters.base import RemoteAuthority
from qskipper_identity.core.config import IdentitySettings
from qskipper_identity.core.resolve import NameCandidates, resolve_email, resolve_name
from qskipper_identity.core.state import Listener, LoginListener, SessionState
from qskipper_identity.core.tokens import email_hint, subject_matches
from qskipper_identity.core.trace import mask, session_trace
from qskipper_identity.errors import (
    AuthorityError,
    DeniedError,
    FlowInProgressError,
    IdentityError,
    MissingCredentialError,
    ValidationError,
)
from qskipper_identity.memory.identity_cache import IdentityCache
from qskipper_identity.memory.session_store import SessionStore
from qskipper_identity.memory.store import DurableStore
from qskipper_identity.models import AuthPhase, PendingOtp, User, VerifyResponse
from qskipper_identity.results import AuthResult, Denied, Failed, Success, describe

logger = logging.getLogger(__name__)

T = TypeVar("T")

EMAIL_RE = re.compile(r"[A-Z0-9a-z._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,64}")

CHANNEL_OTP = "otp"
CHANNEL_PROVIDER = "provider"
CHANNEL_PASSWORD = "password"


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_RE.fullmatch(email.strip()) is not None


class AuthSessionManager:
    def __init__(
        self,
        authority: RemoteAuthority,
        store: DurableStore,
        *,
        settings: Optional[IdentitySettings] = None,
    ) -> None:
        self.settings = settings or IdentitySettings()
        self.authority = authority
        self.sessions = SessionStore(store, self.settings.scratch_keys)
        self.identities = IdentityCache(store, self.settings.provider.name)
        self.state = SessionState()
        self.pending_otp: Optional[PendingOtp] = None
        self.restore()

    # ------------------------------------------------------------------
    # Published state
    # ------------------------------------------------------------------

    @property
    def is_logged_in(self) -> bool:
        return self.state.is_logged_in

    @property
    def is_loading(self) -> bool:
        return self.state.is_loading

    @property
    def error(self) -> Optional[str]:
        return self.state.error

    @property
    def phase(self) -> AuthPhase:
        return self.state.phase

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.state.subscribe(listener)

    def on_login_change(self, listener: LoginListener) -> Callable[[], None]:
        return self.state.on_login_change(listener)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_user(self) -> Optional[User]:
        return self.sessions.current_user()

    def current_user_id(self) -> Optional[str]:
        return self.sessions.stored_id()

    def current_user_email(self) -> Optional[str]:
        return self.sessions.stored_email()

    def current_user_name(self) -> Optional[str]:
        return self.sessions.stored_name()

    def is_authenticated(self) -> bool:
        return self.sessions.is_logged_in() and self.sessions.is_consistent()

    # ------------------------------------------------------------------
    # Startup / integrity
    # ------------------------------------------------------------------

    def restore(self) -> bool:
        """
        Re-read the persisted login flag. A flag without id/email is
        corrupted state and is cleared. Returns the resulting login status.
        """
        if not self.sessions.is_consistent():
            logger.warning(
                "Logged-in flag set but user record incomplete (id=%s, email=%s); clearing session",
                self.sessions.stored_id(), self.sessions.stored_email(),
            )
            self.sessions.clear()
        logged_in = self.sessions.is_logged_in()
        self.state.is_logged_in = logged_in
        self.state.phase = AuthPhase.LOGGED_IN if logged_in else AuthPhase.LOGGED_OUT
        logger.info("Session restored with isLoggedIn=%s", logged_in)
        return logged_in

    # ------------------------------------------------------------------
    # Flow plumbing
    # ------------------------------------------------------------------

    async def _run(self, flow: str, body: Callable[[], Awaitable[AuthResult]]) -> AuthResult:
        if self.state.is_loading:
            raise FlowInProgressError(f"{flow}: another authentication flow is in progress")

        self.state.is_loading = True
        self.state.error = None
        session_trace("flow.begin", flow=flow)
        try:
            result = await body()
            if isinstance(result, (Denied, Failed)):
                self.state.error = result.reason
                logger.info("%s ended %s: %s", flow, describe(result), result.reason)
            elif result.diagnostic:
                self.state.error = result.diagnostic
                logger.warning("%s succeeded with diagnostic: %s", flow, result.diagnostic)
            session_trace("flow.end", flow=flow, result=describe(result))
            return result
        except IdentityError as ex:
            self.state.error = ex.message
            session_trace("flow.error", flow=flow, code=ex.code)
            raise
        except Exception as ex:
            self.state.error = str(ex) or ex.__class__.__name__
            logger.exception("%s failed unexpectedly", flow)
            raise
        finally:
            self.state.is_loading = False

    async def _call(self, op: str, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Await an authority call; any non-IdentityError becomes AuthorityError."""
        try:
            return await fn(*args)
        except IdentityError:
            raise
        except Exception as ex:
            raise AuthorityError(f"{op} failed: {ex.__class__.__name__}: {ex}") from ex

    @staticmethod
    def _value_or_raise(result: AuthResult) -> Any:
        if isinstance(result, Success):
            return result.value
        if isinstance(result, Denied):
            raise DeniedError(result.reason)
        raise result.cause

    @staticmethod
    def _bool_or_raise(result: AuthResult) -> bool:
        if isinstance(result, Success):
            return True
        if isinstance(result, Denied):
            return False
        raise result.cause

    def _validated_email(self, email: Optional[str]) -> str:
        if not is_valid_email(email):
            raise ValidationError("Please enter a valid email address")
        return email.strip()

    def _set_phase(self, phase: AuthPhase) -> None:
        # an active session keeps LOGGED_IN until logout
        if self.state.is_logged_in and phase is not AuthPhase.LOGGED_OUT:
            phase = AuthPhase.LOGGED_IN
        self.state.phase = phase

    def _establish(self, user: User, channel: str) -> None:
        self.sessions.save(user, channel=channel)
        self.pending_otp = None
        self.state.is_logged_in = True
        self.state.phase = AuthPhase.LOGGED_IN

    @property
    def _provider(self) -> str:
        return self.settings.provider.name

    def local_fallback_id(self, external_id: str) -> str:
        return f"{self._provider}_{external_id}"

    def _provisional_for(self, email: str) -> Tuple[Optional[str], Optional[str]]:
        """(name, phone) of the provisional record, only when it was started for `email`."""
        pending = self.sessions.provisional_email()
        if not pending or pending.lower() != (email or "").strip().lower():
            return None, None
        return self.sessions.provisional_name(), self.sessions.provisional_phone()

    # ------------------------------------------------------------------
    # Email + OTP
    # ------------------------------------------------------------------

    async def request_otp(self, email: str) -> str:
        """
        Ask the authority to send a login OTP. Returns the OTP when the
        authority echoes it (dev deployments), else "" meaning "check your email".
        """
        result = await self._run("request_otp", lambda: self._request_otp(email))
        return self._value_or_raise(result)

    async def _request_otp(self, email: str) -> AuthResult:
        email = self._validated_email(email)
        logger.info("Requesting login OTP for %s", email)
        try:
            resp = await self._call("request_otp", self.authority.request_otp, email)
        except AuthorityError as ex:
            return Failed(ex)

        if not resp.success:
            return Denied(resp.message or "Could not send OTP")

        name = None
        if resp.user_id:
            name = (resp.username or "").strip() or self.settings.default_name
        self.sessions.begin_provisional(email=email, id=resp.user_id, name=name)

        otp = resp.otp or ""
        self.pending_otp = PendingOtp(email=email, otp=otp, sent=True)
        self._set_phase(AuthPhase.OTP_REQUESTED)
        return Success(otp)

    async def verify_otp(self, email: str, otp: str) -> bool:
        """True on login; False (with `error` set) when the authority rejects the OTP."""
        result = await self._run("verify_otp", lambda: self._verify(email, otp, registration=False))
        return self._bool_or_raise(result)

    async def register(self, email: str, name: str, phone: str = "") -> str:
        """
        Start registration. The caller's name/phone are stored in the
        provisional record before the authority is contacted, so they are
        available to verify_register_otp even if the authority never echoes them.
        """
        result = await self._run("register", lambda: self._register(email, name, phone))
        return self._value_or_raise(result)

    async def _register(self, email: str, name: str, phone: str) -> AuthResult:
        email = self._validated_email(email)
        name = (name or "").strip()
        phone = (phone or "").strip()

        self.sessions.begin_provisional(email=email, name=name, phone=phone)
        logger.info("Registering %s (name=%r)", email, name)

        try:
            resp = await self._call("register", self.authority.register, email, name, phone)
        except AuthorityError as ex:
            return Failed(ex)

        if not resp.success:
            return Denied(resp.message or "Registration failed")

        if resp.user_id:
            self.sessions.save_provisional(
                id=resp.user_id,
                email=email,
                name=name or (resp.username or "").strip() or self.settings.default_name,
            )

        otp = resp.otp or ""
        self.pending_otp = PendingOtp(email=email, otp=otp, sent=True, is_registration=True)
        self._set_phase(AuthPhase.OTP_REQUESTED)
        return Success(otp)

    async def verify_register_otp(self, email: str, otp: str) -> bool:
        result = await self._run("verify_register_otp", lambda: self._verify(email, otp, registration=True))
        return self._bool_or_raise(result)

    async def resend_otp(self, email: str, is_registration: bool = False) -> str:
        """Re-issue an OTP, reusing the provisional name/phone for registrations."""
        if is_registration:
            name, phone = self._provisional_for(email)
            name, phone = name or "", phone or ""
            result = await self._run("resend_otp", lambda: self._register(email, name, phone))
        else:
            result = await self._run("resend_otp", lambda: self._request_otp(email))
        return self._value_or_raise(result)

    async def _verify(self, email: str, otp: str, *, registration: bool) -> AuthResult:
        email = (email or "").strip()
        otp = (otp or "").strip()
        if not otp:
            raise ValidationError("Please enter the OTP sent to your email")

        self._set_phase(AuthPhase.VERIFYING)
        op = "verify_registration" if registration else "verify"
        call = self.authority.verify_registration if registration else self.authority.verify
        try:
            resp = await self._call(op, call, email, otp)
        except AuthorityError as ex:
            self._set_phase(AuthPhase.OTP_REQUESTED)
            return Failed(ex)

        provisional_name, provisional_phone = self._provisional_for(email)
        user = self._user_from_verification(resp, email, stored_name=provisional_name)
        if isinstance(user, Denied):
            self._set_phase(AuthPhase.OTP_REQUESTED)
            return user

        if registration and not user.phone:
            user.phone = provisional_phone

        self._establish(user, CHANNEL_OTP)
        logger.info("OTP %s verified for %s", "registration" if registration else "login", user.email)
        return Success(True)

    def _user_from_verification(
        self,
        resp: VerifyResponse,
        email: str,
        *,
        stored_name: Optional[str] = None,
        failure_message: str = "Verification failed",
    ) -> User | Denied:
        """
        Build the User for a successful OTP or password response.

        Name: authority username > user-object name > provisional name > "User".
        """
        if not resp.success:
            return Denied(resp.message or failure_message)

        u = resp.user
        user_id = u.id if u else resp.user_id
        if not user_id:
            return Denied(resp.message or "No user data or ID received")

        name = resolve_name(
            NameCandidates(
                disclosed=[resp.username, u.name if u else None],
                stored=stored_name,
            ),
            provider_placeholder=self.settings.provider.placeholder_name,
            fallback=self.settings.default_name,
            policy=self.settings.opaque_id,
            derive_from_email=False,
        )
        user_email = resolve_email(
            [u.email if u else None, email],
            provider=self._provider,
        )
        return User(
            id=user_id,
            email=user_email,
            name=name,
            phone=u.phone if u else None,
            token=(u.token if u else None) or resp.token,
        )

    # ------------------------------------------------------------------
    # Provider (Sign in with Apple style)
    # ------------------------------------------------------------------

    async def sign_in_with_provider(
        self,
        external_id: str,
        email: Optional[str],
        name: Optional[str],
        identity_token: Optional[str],
    ) -> bool:
        """
        Sign in with a provider credential.

        Fails only when `identity_token` is missing. If the authority cannot
        verify the token the session is established locally with id
        "<provider>_<external_id>" and `error` carries the diagnostic.
        """
        result = await self._run(
            "sign_in_with_provider",
            lambda: self._provider_flow(external_id, email, name, identity_token, registration=False),
        )
        return self._value_or_raise(result)

    async def register_with_provider(
        self,
        external_id: str,
        email: Optional[str],
        name: Optional[str],
        identity_token: Optional[str],
    ) -> bool:
        result = await self._run(
            "register_with_provider",
            lambda: self._provider_flow(external_id, email, name, identity_token, registration=True),
        )
        return self._value_or_raise(result)

    async def _provider_flow(
        self,
        external_id: str,
        email: Optional[str],
        name: Optional[str],
        identity_token: Optional[str],
        *,
        registration: bool,
    ) -> AuthResult:
        external_id = (external_id or "").strip()
        if not external_id:
            raise ValidationError("Missing provider user id")

        session_trace(
            "provider.begin",
            external_id=external_id,
            registration=registration,
            email=bool(email),
            name=bool(name),
            token=mask(identity_token),
        )

        # capture first-time disclosure before anything can fail
        self.identities.put(external_id, email, name)
        cached = self.identities.get(external_id)

        local_id = self.local_fallback_id(external_id)
        user_email = resolve_email(
            [email, cached.email, email_hint(identity_token)],
            provider=self._provider,
            external_id=external_id,
        )
        # a stored name only counts when it belongs to this provider account
        stored_name = None
        if self.sessions.stored_id() in (external_id, local_id):
            stored_name = self.sessions.stored_name()
        user_name = resolve_name(
            NameCandidates(
                disclosed=[name],
                cached=cached.name,
                stored=stored_name,
                external_id=external_id,
                email=user_email,
            ),
            provider_placeholder=self.settings.provider.placeholder_name,
            fallback=self.settings.provider.placeholder_name,
            provider=self._provider,
            policy=self.settings.opaque_id,
        )

        if not identity_token or not identity_token.strip():
            raise MissingCredentialError("Missing identity token")

        if subject_matches(identity_token, external_id) is False:
            logger.warning("Identity token subject does not match provider user %s", external_id)

        user_id = local_id
        diagnostic = None
        try:
            if registration:
                resp = await self._call(
                    "register_provider_token",
                    self.authority.register_provider_token, identity_token, external_id, user_email, user_name,
                )
            else:
                resp = await self._call(
                    "verify_provider_token",
                    self.authority.verify_provider_token, identity_token, external_id,
                )
        except IdentityError as ex:
            logger.warning("Authority unavailable for %s user %s, falling back to local authentication: %s",
                           self._provider, external_id, ex.message)
            diagnostic = f"Server error: {ex.message}. Using local authentication."
            session_trace("provider.fallback", external_id=external_id, local_id=local_id)
        else:
            if resp.user_id:
                user_id = resp.user_id
            if resp.username and resp.username.strip():
                user_name = resp.username.strip()

        self._establish(
            User(id=user_id, email=user_email, name=user_name, phone=None, token=identity_token),
            CHANNEL_PROVIDER,
        )
        logger.info("Provider %s complete: id=%s email=%s name=%s",
                    "registration" if registration else "sign-in", user_id, user_email, user_name)
        return Success(True, diagnostic=diagnostic)

    def handle_credential_revoked(self) -> bool:
        """
        The provider reported its credential revoked. Logs out a
        provider-originated session; returns whether a logout happened.
        """
        channel = self.sessions.stored_channel()
        uid = self.sessions.stored_id() or ""
        if channel == CHANNEL_PROVIDER or uid.startswith(f"{self._provider}_"):
            logger.warning("Provider credential revoked; logging out %s", uid)
            self.logout()
            return True
        return False

    # ------------------------------------------------------------------
    # Password fallback
    # ------------------------------------------------------------------

    async def login_with_password(self, email: str, password: str) -> bool:
        """
        Authority-led login: the stored local name is never consulted.
        Raises DeniedError on a wrong password.
        """
        result = await self._run("login_with_password", lambda: self._password_login(email, password))
        return self._value_or_raise(result)

    async def _password_login(self, email: str, password: str) -> AuthResult:
        email = self._validated_email(email)
        if not password:
            raise ValidationError("Please enter your password")

        logger.info("Attempting password login for %s", email)
        try:
            resp = await self._call("password_login", self.authority.password_login, email, password)
        except AuthorityError as ex:
            return Failed(ex)

        user = self._user_from_verification(resp, email, failure_message="Login failed")
        if isinstance(user, Denied):
            return user

        self._establish(user, CHANNEL_PASSWORD)
        return Success(True)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self) -> None:
        """Synchronous and idempotent. Identity cache entries survive."""
        logger.info(
            "Logout: user_id=%s name=%s email=%s isLoggedIn=%s",
            self.sessions.stored_id(), self.sessions.stored_name(),
            self.sessions.stored_email(), self.state.is_logged_in,
        )
        self.sessions.clear()
        self.pending_otp = None
        self.state.is_logged_in = False
        self.state.phase = AuthPhase.LOGGED_OUT
        self.state.error = None
        session_trace("logout.done")
