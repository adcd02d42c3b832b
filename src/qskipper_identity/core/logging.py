# src/qskipper_identity/core/logging.py
from __future__ import annotations
import logging
import os
from typing import Optional

_FMT = "%(asctime)s.%(msecs)03d %(levelname)-8s %(name)s %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def _resolve_level(level: Optional[str]) -> int:
    """Explicit level, else LOG_LEVEL, else INFO. Unknown names count as unset."""
    for candidate in (level, os.getenv("LOG_LEVEL")):
        name = (candidate or "").strip().upper()
        value = logging.getLevelName(name) if name else None
        if isinstance(value, int):
            return value
    return logging.INFO


def setup_logging(level: Optional[str] = None) -> int:
    """
    Configure root logging once; later calls only adjust the level.
    `level` (e.g. from identity.yml) wins over LOG_LEVEL. Returns the level applied.
    """
    resolved = _resolve_level(level)
    root = logging.getLogger()
    root.setLevel(resolved)

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=_FMT, datefmt=_DATEFMT))
        root.addHandler(handler)
    return resolved
