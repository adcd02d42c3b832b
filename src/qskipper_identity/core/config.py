from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# --- Settings model ----------------------------------------------------------

class OpaqueIdPolicy(BaseModel):
    """
    Knobs for the "looks like a provider's opaque user id" name filter.
    Best effort only: an id matches when it is longer than `min_length`
    and contains every marker.
    """
    min_length: int = 20
    markers: List[str] = Field(default_factory=lambda: [".", "0"])


class ProviderSettings(BaseModel):
    name: str = "apple"          # prefix for local fallback ids and cache keys
    label: str = "Apple"         # used in "<label> User" placeholders

    @property
    def placeholder_name(self) -> str:
        return f"{self.label} User"


class AuthorityEndpoints(BaseModel):
    request_otp: str = "/login"
    verify_otp: str = "/verify-login"
    register_otp: str = "/register"
    verify_registration: str = "/verify-register"
    provider_sign_in: str = "/apple-login"
    provider_register: str = "/apple-register"
    password_login: str = "/login"


class AuthoritySettings(BaseModel):
    base_url: str = "http://localhost:3000"
    timeout_sec: float = 15.0
    endpoints: AuthorityEndpoints = Field(default_factory=AuthorityEndpoints)


class IdentitySettings(BaseModel):
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    opaque_id: OpaqueIdPolicy = Field(default_factory=OpaqueIdPolicy)
    authority: AuthoritySettings = Field(default_factory=AuthoritySettings)
    default_name: str = "User"
    store_path: str = "session.db"
    # session-scoped scratch data owned by other parts of the app
    scratch_keys: List[str] = Field(default_factory=lambda: ["user_cart", "selected_payment_method"])
    log_level: Optional[str] = None


# --- Loading -----------------------------------------------------------------

CONFIG_FILENAME = "identity.yml"


def _read_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")
    return data


def _env_overrides() -> Dict[str, Any]:
    """Map the supported environment variables onto the settings tree."""
    out: Dict[str, Any] = {}

    provider = os.getenv("IDENTITY_PROVIDER")
    if provider:
        out.setdefault("provider", {})["name"] = provider.strip().lower()

    store_path = os.getenv("SESSION_STORE_PATH")
    if store_path:
        out["store_path"] = store_path.strip()

    base_url = os.getenv("AUTHORITY_BASE_URL")
    if base_url:
        out.setdefault("authority", {})["base_url"] = base_url.strip()

    timeout = os.getenv("AUTHORITY_TIMEOUT_SEC")
    if timeout:
        try:
            out.setdefault("authority", {})["timeout_sec"] = float(timeout)
        except ValueError:
            logger.warning("Invalid AUTHORITY_TIMEOUT_SEC=%r; keeping configured value", timeout)

    level = os.getenv("LOG_LEVEL")
    if level:
        out["log_level"] = level.strip().upper()

    return out


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, val in extra.items():
        if isinstance(val, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], val)
        else:
            merged[key] = val
    return merged


def load_settings(path: Optional[Path] = None, *, use_env: bool = True) -> IdentitySettings:
    """
    Build settings from defaults < identity.yml < environment.

    - `path` wins over IDENTITY_CONFIG, which wins over ./identity.yml.
    - A missing file is fine (defaults); a malformed one raises.
    - .env is loaded without overriding variables already set.
    """
    if use_env:
        load_dotenv(override=False)

    cfg_path = path
    if cfg_path is None and use_env and os.getenv("IDENTITY_CONFIG"):
        cfg_path = Path(os.environ["IDENTITY_CONFIG"])
    if cfg_path is None:
        cfg_path = Path.cwd() / CONFIG_FILENAME

    raw: Dict[str, Any] = {}
    if cfg_path.exists():
        raw = _read_yaml(cfg_path)
        logger.debug("Loaded identity settings from %s", cfg_path)

    if use_env:
        raw = _merge(raw, _env_overrides())

    return IdentitySettings(**raw)
