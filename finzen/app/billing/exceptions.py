"""Typed failures raised by the subscription and billing layer."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..entitlements.catalog import PlanNotFoundError


class ErrorKind(str, Enum):
    """How a failure should be treated by callers."""

    VALIDATION = "validation"
    DECLINED = "declined"
    PROVIDER = "provider"
    RECONCILIATION = "reconciliation"


@dataclass
class SubscriptionError(Exception):
    """Base error carrying a stable code and a user facing message."""

    code: str
    message: str
    detail: Optional[Mapping[str, Any]] = None

    kind = ErrorKind.PROVIDER

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message, "kind": self.kind.value}
        if self.detail:
            body.update(self.detail)
        return body


class InvalidStateError(SubscriptionError):
    """A command was issued against a subscription state that forbids it."""

    kind = ErrorKind.VALIDATION


class PackageNotFoundError(SubscriptionError):
    """No native store package matches the requested plan and period."""

    kind = ErrorKind.VALIDATION


@dataclass
class ExternallyManagedError(SubscriptionError):
    """The subscription is billed by the native store and managed there."""

    manage_url: str = ""

    kind = ErrorKind.VALIDATION

    @property
    def payload(self) -> Mapping[str, Any]:
        body = dict(super().payload)
        body["manage_url"] = self.manage_url
        return body


class ProviderError(SubscriptionError):
    """The backend, a billing provider or the network failed."""

    kind = ErrorKind.PROVIDER


class NativePurchaseError(Exception):
    """Error surfaced by the native purchase SDK."""

    def __init__(self, message: str, *, user_cancelled: bool = False, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_cancelled = user_cancelled
        self.code = code


class PurchaseCancelledError(NativePurchaseError):
    """The user dismissed the native purchase sheet."""

    def __init__(self, message: str = "Purchase cancelled by user") -> None:
        super().__init__(message, user_cancelled=True, code="user_cancelled")


__all__ = [
    "ErrorKind",
    "ExternallyManagedError",
    "InvalidStateError",
    "NativePurchaseError",
    "PackageNotFoundError",
    "PlanNotFoundError",
    "ProviderError",
    "PurchaseCancelledError",
    "SubscriptionError",
]
