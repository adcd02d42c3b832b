# src/qskipper_identity/memory/identity_cache.py
from __future__ import annotations

import logging
from typing import Optional

from qskipper_identity.core.trace import session_trace
from qskipper_identity.memory.store import DurableStore
from qskipper_identity.models import IdentityCacheEntry

logger = logging.getLogger(__name__)


class IdentityCache:
    """
    Logout-surviving record of what a provider disclosed for each of its user ids.

    Providers such as Sign in with Apple send email/name only on the first
    authorization, so these entries are the only copy. SessionStore.clear()
    never touches them. Writes go straight to the DurableStore.
    """

    def __init__(self, store: DurableStore, provider: str = "apple") -> None:
        self._store = store
        self.provider = provider

    def _email_key(self, external_id: str) -> str:
        return f"{self.provider}_real_email_{external_id}"

    def _name_key(self, external_id: str) -> str:
        return f"{self.provider}_real_name_{external_id}"

    def put(self, external_id: str, email: Optional[str] = None, name: Optional[str] = None) -> None:
        """Write non-empty fields; an empty value never erases a stored one."""
        email = (email or "").strip()
        name = (name or "").strip()
        if email:
            self._store.set(self._email_key(external_id), email)
            logger.info("Cached disclosed email for %s user %s", self.provider, external_id)
        if name:
            self._store.set(self._name_key(external_id), name)
            logger.info("Cached disclosed name for %s user %s", self.provider, external_id)
        if email or name:
            session_trace("identity_cache.put", external_id=external_id, email=bool(email), name=bool(name))

    def get(self, external_id: str) -> IdentityCacheEntry:
        email = self._store.get(self._email_key(external_id))
        name = self._store.get(self._name_key(external_id))
        return IdentityCacheEntry(
            email=email if isinstance(email, str) and email else None,
            name=name if isinstance(name, str) and name else None,
        )

    def evict(self, external_id: str) -> None:
        """Administrative removal. Not used by any sign-in or logout flow."""
        self._store.remove(self._email_key(external_id))
        self._store.remove(self._name_key(external_id))
        logger.warning("Evicted identity cache entry for %s user %s", self.provider, external_id)
