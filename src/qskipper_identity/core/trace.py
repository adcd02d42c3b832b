# src/qskipper_identity/core/trace.py
from __future__ import annotations
import logging
import os
import time
from typing import Any, Mapping, Optional

_log = logging.getLogger("qskipper.session")


def trace_enabled() -> bool:
    return (os.getenv("SESSION_TRACE", "")).lower() in ("1", "true", "yes", "on")


def mask(value: Optional[str], keep: int = 8) -> str:
    """Shorten a bearer credential for logs: first `keep` chars + length."""
    if not value:
        return "<none>"
    if len(value) <= keep:
        return f"<{len(value)} chars>"
    return f"{value[:keep]}...({len(value)} chars)"


def _fmt_kv(d: Mapping[str, Any]) -> str:
    return " ".join(f"{k}={d[k]}" for k in d)


def session_trace(event: str, **kv: Any) -> None:
    """
    Emit a single-line structured log ONLY when SESSION_TRACE=true.
    Example:
      [session] provider.fallback ts=... external_id=001234.abc reason=timeout
    """
    if not trace_enabled():
        return
    kv2 = {"ts": int(time.time()), **kv}
    _log.info("[session] %s %s", event, _fmt_kv(kv2))
