# src/qskipper_identity/memory/session_store.py
from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from qskipper_identity.core.trace import mask, session_trace
from qskipper_identity.memory.store import DurableStore
from qskipper_identity.models import User

logger = logging.getLogger(__name__)

# Durable keys for the current user
USER_ID_KEY = "user_id"
USER_EMAIL_KEY = "user_email"
USER_NAME_KEY = "user_name"
USER_PHONE_KEY = "user_phone"
USER_TOKEN_KEY = "user_token"
LOGGED_IN_KEY = "user_logged_in"
AUTH_CHANNEL_KEY = "user_auth_channel"  # otp | provider | password

USER_KEYS = (USER_ID_KEY, USER_EMAIL_KEY, USER_NAME_KEY, USER_PHONE_KEY, USER_TOKEN_KEY, AUTH_CHANNEL_KEY)

# Unverified OTP-flow record; kept apart so it never replaces the logged-in user
PENDING_ID_KEY = "pending_user_id"
PENDING_EMAIL_KEY = "pending_user_email"
PENDING_NAME_KEY = "pending_user_name"
PENDING_PHONE_KEY = "pending_user_phone"

PENDING_KEYS = (PENDING_ID_KEY, PENDING_EMAIL_KEY, PENDING_NAME_KEY, PENDING_PHONE_KEY)


class SessionStore:
    """
    The single current user plus the login flag.

    save()             -> full user, then flag=True; drops the provisional record
    begin_provisional() -> fresh provisional record for a new OTP attempt
    save_provisional() -> merge into the provisional record, user keys untouched
    clear()            -> user fields, flag, provisional record and scratch keys
                          (IdentityCache keys are left alone)
    """

    def __init__(self, store: DurableStore, scratch_keys: Sequence[str] = ()) -> None:
        self._store = store
        self._scratch_keys = tuple(scratch_keys)

    # --- writes -------------------------------------------------------------

    def _put(self, key: str, value: Optional[str]) -> None:
        # "" and None both mean absent
        if value is None or not value.strip():
            self._store.remove(key)
        else:
            self._store.set(key, value)

    def save(self, user: User, *, channel: Optional[str] = None) -> None:
        self._put(USER_ID_KEY, user.id)
        self._put(USER_EMAIL_KEY, user.email)
        self._put(USER_NAME_KEY, user.name)
        self._put(USER_PHONE_KEY, user.phone)
        self._put(USER_TOKEN_KEY, user.token)
        self._put(AUTH_CHANNEL_KEY, channel)
        # flag last: a crash mid-save leaves a logged-out partial record, never the reverse
        self._store.set(LOGGED_IN_KEY, True)
        self._drop_provisional()
        logger.info("Saved session user id=%s email=%s name=%s", user.id, user.email, user.name)
        session_trace("session_store.save", user_id=user.id, token=mask(user.token))

    def begin_provisional(
        self,
        *,
        email: str,
        id: Optional[str] = None,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> None:
        """Start a new OTP attempt: nothing from an earlier attempt survives."""
        self._drop_provisional()
        self.save_provisional(id=id, email=email, name=name, phone=phone)

    def save_provisional(
        self,
        *,
        id: Optional[str] = None,
        email: Optional[str] = None,
        name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> None:
        """Merge the given non-empty fields into the provisional record."""
        for key, value in (
            (PENDING_ID_KEY, id),
            (PENDING_EMAIL_KEY, email),
            (PENDING_NAME_KEY, name),
            (PENDING_PHONE_KEY, phone),
        ):
            if value is not None and value.strip():
                self._store.set(key, value)
        session_trace("session_store.provisional", user_id=id, email=email, name=name)

    def _drop_provisional(self) -> None:
        for key in PENDING_KEYS:
            self._store.remove(key)

    def clear(self) -> None:
        for key in self._all_session_keys():
            self._store.remove(key)
        logger.info("Session data cleared")

    def _all_session_keys(self) -> Iterable[str]:
        yield from USER_KEYS
        yield LOGGED_IN_KEY
        yield from PENDING_KEYS
        yield from self._scratch_keys

    # --- reads --------------------------------------------------------------

    def _str(self, key: str) -> Optional[str]:
        value = self._store.get(key)
        return value if isinstance(value, str) and value else None

    def stored_id(self) -> Optional[str]:
        return self._str(USER_ID_KEY)

    def stored_email(self) -> Optional[str]:
        return self._str(USER_EMAIL_KEY)

    def stored_name(self) -> Optional[str]:
        return self._str(USER_NAME_KEY)

    def stored_phone(self) -> Optional[str]:
        return self._str(USER_PHONE_KEY)

    def stored_token(self) -> Optional[str]:
        return self._str(USER_TOKEN_KEY)

    def stored_channel(self) -> Optional[str]:
        return self._str(AUTH_CHANNEL_KEY)

    def provisional_id(self) -> Optional[str]:
        return self._str(PENDING_ID_KEY)

    def provisional_email(self) -> Optional[str]:
        return self._str(PENDING_EMAIL_KEY)

    def provisional_name(self) -> Optional[str]:
        return self._str(PENDING_NAME_KEY)

    def provisional_phone(self) -> Optional[str]:
        return self._str(PENDING_PHONE_KEY)

    def is_logged_in(self) -> bool:
        return self._store.get(LOGGED_IN_KEY) is True

    def is_consistent(self) -> bool:
        """A set login flag requires id and email to be present."""
        if not self.is_logged_in():
            return True
        return bool(self.stored_id() and self.stored_email())

    def current_user(self) -> Optional[User]:
        if not self.is_logged_in():
            return None
        uid, email = self.stored_id(), self.stored_email()
        if not uid or not email:
            return None
        return User(
            id=uid,
            email=email,
            name=self.stored_name(),
            phone=self.stored_phone(),
            token=self.stored_token(),
        )
