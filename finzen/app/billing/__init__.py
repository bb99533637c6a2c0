"""Billing domain package: providers, trials, reconciliation and commands."""

from .client import HttpSubscriptionsBackend, SubscriptionsBackend
from .exceptions import (
    ErrorKind,
    ExternallyManagedError,
    InvalidStateError,
    NativePurchaseError,
    PackageNotFoundError,
    PlanNotFoundError,
    ProviderError,
    PurchaseCancelledError,
    SubscriptionError,
)
from .models import (
    CancellationReceipt,
    CheckoutSession,
    CheckoutSessionStatus,
    CustomerInfo,
    DeviceRegistration,
    NativePackage,
    Offerings,
    Payment,
    PaymentStatus,
    Platform,
    PurchaseOutcome,
    PurchaseStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    StoreProduct,
    SubscriptionAuditEvent,
    SubscriptionAuditEventType,
)
from .native import NativePurchasesSession, PurchasesSdk, find_package, package_identifier
from .providers import (
    BillingProvider,
    CheckoutRedirectProvider,
    NativePurchaseProvider,
    select_billing_provider,
)
from .reconciliation import Reconciler
from .service import SubscriptionEventLogger, SubscriptionService
from .trials import TrialManager

__all__ = [
    "BillingProvider",
    "CancellationReceipt",
    "CheckoutRedirectProvider",
    "CheckoutSession",
    "CheckoutSessionStatus",
    "CustomerInfo",
    "DeviceRegistration",
    "ErrorKind",
    "ExternallyManagedError",
    "HttpSubscriptionsBackend",
    "InvalidStateError",
    "NativePackage",
    "NativePurchaseError",
    "NativePurchaseProvider",
    "NativePurchasesSession",
    "Offerings",
    "PackageNotFoundError",
    "Payment",
    "PaymentStatus",
    "PlanNotFoundError",
    "Platform",
    "ProviderError",
    "PurchaseCancelledError",
    "PurchaseOutcome",
    "PurchaseStatus",
    "PurchasesSdk",
    "Reconciler",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "StoreProduct",
    "SubscriptionAuditEvent",
    "SubscriptionAuditEventType",
    "SubscriptionError",
    "SubscriptionEventLogger",
    "SubscriptionService",
    "SubscriptionsBackend",
    "TrialManager",
    "find_package",
    "package_identifier",
    "select_billing_provider",
]
