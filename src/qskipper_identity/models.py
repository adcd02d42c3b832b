# src/qskipper_identity/models.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class User(BaseModel):
    """The canonical authenticated identity (one current user at a time)."""

    id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    token: Optional[str] = None  # server token, provider identity token, or none

    @field_validator("name", "phone", "token", mode="before")
    @classmethod
    def _blank_is_none(cls, v):
        # the store cannot tell "" from absent
        if isinstance(v, str) and not v.strip():
            return None
        return v


class IdentityCacheEntry(BaseModel):
    """Personal data a provider disclosed once for one of its user ids."""

    email: Optional[str] = None
    name: Optional[str] = None


class AuthPhase(str, Enum):
    LOGGED_OUT = "logged_out"
    OTP_REQUESTED = "otp_requested"
    VERIFYING = "verifying"
    LOGGED_IN = "logged_in"


@dataclass
class PendingOtp:
    """Transient per-attempt OTP bookkeeping. Never persisted."""

    email: str
    otp: str = ""
    sent: bool = False
    is_registration: bool = False


# --- Remote authority payloads ------------------------------------------------
# Backends disagree on spelling ("status" vs "success", "id" vs "userId"),
# so every field accepts the known aliases.

class _AuthorityModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)


class AuthorityUser(_AuthorityModel):
    id: str = Field(validation_alias=AliasChoices("id", "_id", "userId", "user_id"))
    email: Optional[str] = None
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("name", "username"))
    phone: Optional[str] = None
    token: Optional[str] = None


class OtpResponse(_AuthorityModel):
    success: bool = Field(default=False, validation_alias=AliasChoices("success", "status"))
    message: Optional[str] = None
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_id", "id", "userId"))
    username: Optional[str] = None
    otp: Optional[str] = None


class VerifyResponse(_AuthorityModel):
    success: bool = Field(default=False, validation_alias=AliasChoices("success", "status"))
    message: Optional[str] = None
    token: Optional[str] = None
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_id", "id", "userId"))
    username: Optional[str] = None
    user: Optional[AuthorityUser] = None


class ProviderResponse(_AuthorityModel):
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_id", "id", "userId"))
    username: Optional[str] = None
