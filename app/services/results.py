"""
Tagged results for calls to external services.

Every call site that talks to Ollama returns a ``ServiceResult`` instead of
raising.  ``ok`` and ``fallback`` both carry a usable value and are treated
identically downstream; ``failed`` carries only the error text.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class CallStatus(str, Enum):
    OK = "ok"
    FALLBACK = "fallback"
    FAILED = "failed"


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """Outcome of one external call."""

    status: CallStatus
    value: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, value: T) -> "ServiceResult[T]":
        return cls(status=CallStatus.OK, value=value)

    @classmethod
    def fallback(cls, value: T, error: Optional[str] = None) -> "ServiceResult[T]":
        return cls(status=CallStatus.FALLBACK, value=value, error=error)

    @classmethod
    def failed(cls, error: str) -> "ServiceResult[Any]":
        return cls(status=CallStatus.FAILED, error=error)

    @property
    def usable(self) -> bool:
        return self.status in (CallStatus.OK, CallStatus.FALLBACK)

    @property
    def is_fallback(self) -> bool:
        return self.status is CallStatus.FALLBACK
