# src/qskipper_identity/core/resolve.py
"""
Precedence rules for picking the email and display name of a session.

Every flow feeds its candidates through these functions so that OTP,
provider and password logins agree on which source wins. Pure and total:
no I/O, no exceptions, never an empty result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from qskipper_identity.core.config import OpaqueIdPolicy

SYNTHETIC_EMAIL_DOMAIN = "example.com"
DEFAULT_NAME = "User"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def first_present(values: Iterable[Optional[str]]) -> Optional[str]:
    for v in values:
        c = _clean(v)
        if c:
            return c
    return None


def looks_like_opaque_id(value: Optional[str], policy: Optional[OpaqueIdPolicy] = None) -> bool:
    """
    Heuristic: does `value` look like a provider's internal user id
    (e.g. "001234.5f6e7d8c9b0a1234.0987") rather than a human name?

    Best-effort filter, not a guarantee. Default policy: longer than 20
    chars and contains both "." and "0".
    """
    if not value:
        return False
    policy = policy or OpaqueIdPolicy()
    if len(value) <= policy.min_length:
        return False
    return all(m in value for m in policy.markers)


def synthetic_email(provider: str, external_id: Optional[str] = None) -> str:
    if external_id:
        return f"{provider}_user_{external_id}@{SYNTHETIC_EMAIL_DOMAIN}"
    return f"{provider}_user@{SYNTHETIC_EMAIL_DOMAIN}"


def is_synthetic_email(email: Optional[str], provider: str) -> bool:
    if not email:
        return False
    return email.startswith(f"{provider}_user") and email.endswith(f"@{SYNTHETIC_EMAIL_DOMAIN}")


def resolve_email(
    candidates: Sequence[Optional[str]],
    *,
    provider: str,
    external_id: Optional[str] = None,
) -> str:
    """First present, non-empty candidate; else a deterministic placeholder."""
    return first_present(candidates) or synthetic_email(provider, external_id)


def local_part(email: Optional[str]) -> Optional[str]:
    email = _clean(email)
    if not email or "@" not in email:
        return None
    return _clean(email.split("@", 1)[0])


@dataclass
class NameCandidates:
    """
    Inputs for `resolve_name`, one field per precedence tier.

    disclosed:  values the authority/provider returned in THIS call, in order
    cached:     IdentityCache value for `external_id`
    stored:     name already in the SessionStore (prior session / provisional)
    external_id: provider user id, used by the opaque-id tier
    email:      resolved email, used by the email-local-part tier
    """
    disclosed: List[Optional[str]] = field(default_factory=list)
    cached: Optional[str] = None
    stored: Optional[str] = None
    external_id: Optional[str] = None
    email: Optional[str] = None


def resolve_name(
    c: NameCandidates,
    *,
    provider_placeholder: str,
    fallback: str,
    provider: str = "",
    policy: Optional[OpaqueIdPolicy] = None,
    use_stored: bool = True,
    derive_from_email: bool = True,
) -> str:
    """
    Pick the display name. Highest first:
      1. disclosed in this call
      2. cached for the external id
      3. stored from a prior session, unless it looks like an opaque id
      4. provider placeholder when the external id looks opaque
      5. local part of a real (non-synthetic) email
      6. `fallback`
    """
    disclosed = first_present(c.disclosed)
    if disclosed:
        return disclosed

    cached = _clean(c.cached)
    if cached:
        return cached

    if use_stored:
        stored = _clean(c.stored)
        if stored and not looks_like_opaque_id(stored, policy):
            return stored

    if looks_like_opaque_id(c.external_id, policy):
        return provider_placeholder

    if derive_from_email and not (provider and is_synthetic_email(c.email, provider)):
        derived = local_part(c.email)
        if derived:
            return derived

    return _clean(fallback) or _clean(provider_placeholder) or DEFAULT_NAME
