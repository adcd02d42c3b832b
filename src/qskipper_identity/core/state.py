# src/qskipper_identity/core/state.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from qskipper_identity.models import AuthPhase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateChange:
    field: str
    old: Any
    new: Any


Listener = Callable[[StateChange], None]
LoginListener = Callable[[bool, bool], None]  # (old, new)


class SessionState:
    """
    Published session fields: is_logged_in, is_loading, error, phase.

    Setters compare old vs new and notify only on a real change, so a
    subscriber to `on_login_change` sees each login/logout transition once
    even when the manager re-asserts the same value.
    """

    def __init__(self, *, is_logged_in: bool = False) -> None:
        self._is_logged_in = is_logged_in
        self._is_loading = False
        self._error: Optional[str] = None
        self._phase = AuthPhase.LOGGED_IN if is_logged_in else AuthPhase.LOGGED_OUT
        self._listeners: List[Listener] = []
        self._login_listeners: List[LoginListener] = []

    # --- subscriptions ------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Notify `listener` of every field change. Returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._remove(self._listeners, listener)

    def on_login_change(self, listener: LoginListener) -> Callable[[], None]:
        """Notify `listener(old, new)` on each is_logged_in transition only."""
        self._login_listeners.append(listener)
        return lambda: self._remove(self._login_listeners, listener)

    @staticmethod
    def _remove(items: list, item: Any) -> None:
        if item in items:
            items.remove(item)

    def _emit(self, name: str, old: Any, new: Any) -> None:
        change = StateChange(name, old, new)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                # listener errors are logged, never propagated
                logger.exception("session state listener failed on %s", name)

    # --- fields -------------------------------------------------------------

    @property
    def is_logged_in(self) -> bool:
        return self._is_logged_in

    @is_logged_in.setter
    def is_logged_in(self, value: bool) -> None:
        old = self._is_logged_in
        if old == value:
            return
        self._is_logged_in = value
        logger.info("isLoggedIn changed from %s to %s", old, value)
        self._emit("is_logged_in", old, value)
        for listener in list(self._login_listeners):
            try:
                listener(old, value)
            except Exception:
                logger.exception("login transition listener failed")

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @is_loading.setter
    def is_loading(self, value: bool) -> None:
        old = self._is_loading
        if old == value:
            return
        self._is_loading = value
        self._emit("is_loading", old, value)

    @property
    def error(self) -> Optional[str]:
        return self._error

    @error.setter
    def error(self, value: Optional[str]) -> None:
        old = self._error
        if old == value:
            return
        self._error = value
        self._emit("error", old, value)

    @property
    def phase(self) -> AuthPhase:
        return self._phase

    @phase.setter
    def phase(self, value: AuthPhase) -> None:
        old = self._phase
        if old == value:
            return
        self._phase = value
        self._emit("phase", old, value)

    def snapshot(self) -> dict:
        return {
            "is_logged_in": self._is_logged_in,
            "is_loading": self._is_loading,
            "error": self._error,
            "phase": self._phase.value,
        }
