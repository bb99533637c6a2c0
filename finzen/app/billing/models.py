"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from ..entitlements.models import BillingPeriod, PlanId, Subscription


class Platform(str, Enum):
    """Runtime platform the client is executing on."""

    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


class DeviceRegistration(BaseModel):
    """Device details sent with a trial request."""

    device_id: str = Field(alias="deviceId")
    platform: Platform
    device_name: Optional[str] = Field(default=None, alias="deviceName")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSession(BaseModel):
    """Hosted checkout page created for a plan purchase."""

    url: str
    session_id: str = Field(alias="sessionId")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSessionStatus(BaseModel):
    """Terminal state of a hosted checkout session as seen by the backend."""

    status: str = "open"
    payment_status: str = Field(default="unpaid", alias="paymentStatus")
    subscription: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_paid(self) -> bool:
        """Only ``complete`` sessions with ``paid`` payment are confirmed."""
        return self.status == "complete" and self.payment_status == "paid"


class CancellationReceipt(BaseModel):
    """Backend acknowledgement of a cancellation request."""

    message: str = ""
    cancel_at_period_end: bool = Field(default=True, alias="cancelAtPeriodEnd")
    current_period_end: Optional[datetime] = Field(default=None, alias="currentPeriodEnd")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentStatus(str, Enum):
    """Status of a recorded payment."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    PENDING = "PENDING"
    REFUNDED = "REFUNDED"


class Payment(BaseModel):
    """Past charge shown in the payment history."""

    id: str
    amount: float
    currency: str = "USD"
    status: PaymentStatus
    description: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class StoreProduct(BaseModel):
    """Product sold through the native store."""

    identifier: str
    price_string: str = Field(default="", alias="priceString")
    price: float = 0.0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class NativePackage(BaseModel):
    """Purchasable package from the native store offerings."""

    identifier: str
    product: StoreProduct

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Offerings(BaseModel):
    """Packages of the current offering."""

    available_packages: Tuple[NativePackage, ...] = Field(
        default=(),
        validation_alias=AliasChoices("available_packages", "availablePackages"),
    )

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CustomerInfo(BaseModel):
    """Native store view of what a customer currently owns."""

    app_user_id: Optional[str] = Field(default=None, alias="originalAppUserId")
    active_entitlements: Tuple[str, ...] = Field(default=(), alias="activeEntitlements")
    active_subscriptions: Tuple[str, ...] = Field(default=(), alias="activeSubscriptions")
    latest_expiration_date: Optional[datetime] = Field(default=None, alias="latestExpirationDate")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PurchaseStatus(str, Enum):
    """Outcome of a purchase attempt."""

    COMPLETED = "completed"
    PENDING = "pending"
    DECLINED = "declined"


class PurchaseOutcome(BaseModel):
    """Provisional purchase result returned by a billing provider."""

    status: PurchaseStatus
    plan: PlanId
    billing_period: BillingPeriod
    session_id: Optional[str] = None
    checkout_url: Optional[str] = None
    customer_info: Optional[CustomerInfo] = None

    model_config = ConfigDict(frozen=True)


class ReconciliationOutcome(str, Enum):
    """Possible results of a reconciliation attempt."""

    CONFIRMED = "confirmed"
    PENDING = "pending"
    IN_SYNC = "in_sync"
    DRIFT = "drift"
    FAILED = "failed"


class ReconciliationResult(BaseModel):
    """Outcome of pulling authoritative state after an asynchronous event."""

    outcome: ReconciliationOutcome
    subscription: Optional[Subscription] = None
    session_id: Optional[str] = None
    native_plan: Optional[PlanId] = None
    detail: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionAuditEventType(str, Enum):
    """Audit event categories emitted by the subscription layer."""

    TRIAL_STARTED = "trial_started"
    TRIAL_CANCELED = "trial_canceled"
    TRIAL_PLAN_CHANGED = "trial_plan_changed"
    CHECKOUT_STARTED = "checkout_started"
    PURCHASE_COMPLETED = "purchase_completed"
    PURCHASE_DECLINED = "purchase_declined"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    PLAN_CHANGED = "plan_changed"
    RECONCILED = "reconciled"


class SubscriptionAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: SubscriptionAuditEventType
    subscription_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
