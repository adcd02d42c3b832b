# src/qskipper_identity/results.py
"""Tagged outcome of one authentication flow: Success | Denied | Failed."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from qskipper_identity.errors import AuthorityError

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T
    # non-fatal note, e.g. "authority unreachable, signed in locally"
    diagnostic: str | None = None


@dataclass(frozen=True)
class Denied:
    reason: str


@dataclass(frozen=True)
class Failed:
    cause: AuthorityError

    @property
    def reason(self) -> str:
        return self.cause.message


AuthResult = Union[Success[Any], Denied, Failed]


def describe(result: AuthResult) -> str:
    if isinstance(result, Success):
        return "success" if result.diagnostic is None else "success(degraded)"
    if isinstance(result, Denied):
        return "denied"
    return "failed"
