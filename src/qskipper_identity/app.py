# src/qskipper_identity/app.py
from __future__ import annotations

import logging
from typing import Optional

import httpx

from qskipper_identity.adapters.http import HttpRemoteAuthority
from qskipper_identity.core.config import IdentitySettings, load_settings
from qskipper_identity.core.logging import setup_logging
from qskipper_identity.manager import AuthSessionManager
from qskipper_identity.memory.store import DurableStore, SqliteDurableStore

logger = logging.getLogger(__name__)


def build_session_manager(
    settings: Optional[IdentitySettings] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    store: Optional[DurableStore] = None,
) -> AuthSessionManager:
    """
    Wire settings, logging, the SQLite store and the HTTP authority into a
    ready AuthSessionManager. The manager restores the persisted session
    before this returns.
    """
    settings = settings or load_settings()
    setup_logging(settings.log_level)

    store = store if store is not None else SqliteDurableStore(settings.store_path)
    authority = HttpRemoteAuthority(settings.authority, client=client)

    logger.info(
        "Identity bootstrap: provider=%s authority=%s store=%s",
        settings.provider.name, settings.authority.base_url, settings.store_path,
    )
    return AuthSessionManager(authority, store, settings=settings)
