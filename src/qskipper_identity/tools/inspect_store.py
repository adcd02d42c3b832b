"""CLI helpers to inspect the persisted session and identity cache."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from qskipper_identity.core.config import load_settings
from qskipper_identity.core.logging import setup_logging
from qskipper_identity.core.trace import mask
from qskipper_identity.memory.identity_cache import IdentityCache
from qskipper_identity.memory.session_store import LOGGED_IN_KEY, PENDING_KEYS, USER_KEYS, USER_TOKEN_KEY, SessionStore
from qskipper_identity.memory.store import SqliteDurableStore

logger = logging.getLogger(__name__)


def _session_lines(store: SqliteDurableStore) -> List[str]:
    lines = []
    for key in (*USER_KEYS, LOGGED_IN_KEY, *PENDING_KEYS):
        value = store.get(key)
        if key == USER_TOKEN_KEY and isinstance(value, str):
            value = mask(value)
        lines.append(f"{key:<20} {value if value is not None else '-'}")
    return lines


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Inspect or clear the persisted identity session.")
    parser.add_argument("--store", default=None, help="SQLite store path (default: settings store_path).")
    parser.add_argument("--config", default=None, help="identity.yml path (default: IDENTITY_CONFIG or ./identity.yml).")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING).")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("session", help="Print the stored session fields.")

    cache_parser = subparsers.add_parser("cache", help="Print the identity cache entry for a provider user id.")
    cache_parser.add_argument("external_id", help="Provider user id.")

    subparsers.add_parser("cache-keys", help="List every identity cache key in the store.")

    subparsers.add_parser("clear", help="Clear the session (identity cache is kept).")

    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    settings = load_settings(Path(args.config) if args.config else None)
    store = SqliteDurableStore(args.store or settings.store_path)
    provider = settings.provider.name

    if args.command == "session":
        for line in _session_lines(store):
            print(line)
        return 0

    if args.command == "cache":
        entry = IdentityCache(store, provider).get(args.external_id)
        if entry.email is None and entry.name is None:
            print(f"No cached identity for {provider} user {args.external_id}")
            return 1
        print(f"email {entry.email or '-'}")
        print(f"name  {entry.name or '-'}")
        return 0

    if args.command == "cache-keys":
        keys = store.keys(f"{provider}_real_")
        if not keys:
            print("No identity cache entries found.")
        for key in keys:
            print(key)
        return 0

    if args.command == "clear":
        SessionStore(store, settings.scratch_keys).clear()
        print(f"Cleared session in {store.db_path}")
        return 0

    parser.error(f"Unknown command {args.command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
