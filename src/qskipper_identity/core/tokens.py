# src/qskipper_identity/core/tokens.py
from __future__ import annotations

import base64
import json
from typing import Any, Dict, Optional

import jwt


def peek_claims(token: Optional[str]) -> Dict[str, Any]:
    """
    Read a provider identity token's payload WITHOUT verifying it.

    Diagnostics and hints only (e.g. an `email` claim when the provider
    withheld the email from the authorization callback). Never use the
    result as proof of identity. Returns {} for anything that is not a JWT.
    """
    if not token or token.count(".") != 2:
        return {}
    try:
        return jwt.decode(token, options={"verify_signature": False, "verify_aud": False, "verify_exp": False})
    except jwt.PyJWTError:
        # best-effort parse for debugging
        p = token.split(".")[1]
        p += "=" * ((4 - len(p) % 4) % 4)
        try:
            data = json.loads(base64.urlsafe_b64decode(p.encode("ascii")))
        except (ValueError, UnicodeError):
            return {}
        return data if isinstance(data, dict) else {}


def email_hint(token: Optional[str]) -> Optional[str]:
    """`email` claim from an identity token, if present and non-empty."""
    email = peek_claims(token).get("email")
    if isinstance(email, str) and email.strip():
        return email.strip()
    return None


def subject_matches(token: Optional[str], external_id: str) -> Optional[bool]:
    """True/False when the token carries a `sub`; None when it cannot tell."""
    sub = peek_claims(token).get("sub")
    if not isinstance(sub, str) or not sub:
        return None
    return sub == external_id
