"""Domain models for plans, subscriptions and derived entitlements."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

UNLIMITED = -1


class PlanId(str, Enum):
    """Canonical identifiers for subscription plans."""

    FREE = "FREE"
    PREMIUM = "PREMIUM"
    PRO = "PRO"

    @property
    def is_paid(self) -> bool:
        return self != PlanId.FREE


class BillingPeriod(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    """Lifecycle state for subscriptions."""

    ACTIVE = "ACTIVE"
    TRIALING = "TRIALING"
    CANCELED = "CANCELED"
    PAST_DUE = "PAST_DUE"
    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"
    UNPAID = "UNPAID"


# Statuses after which the record no longer grants the plan it names.
LAPSED_STATUSES = frozenset(
    {
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.INCOMPLETE_EXPIRED,
    }
)


class BillingProviderKind(str, Enum):
    """Which billing channel owns a subscription."""

    CHECKOUT = "checkout"
    NATIVE_IAP = "native-iap"
    NONE = "none"


_PROVIDER_ALIASES = {
    "stripe": BillingProviderKind.CHECKOUT,
    "apple": BillingProviderKind.NATIVE_IAP,
    "app_store": BillingProviderKind.NATIVE_IAP,
    "revenuecat": BillingProviderKind.NATIVE_IAP,
}


class Quota(str, Enum):
    """Countable resources limited per plan."""

    BUDGETS = "budgets"
    GOALS = "goals"
    REMINDERS = "reminders"
    ASSISTANT_QUERIES = "assistant_queries"


class Feature(str, Enum):
    """Boolean capabilities unlocked by paid plans."""

    ADVANCED_REPORTS = "advanced_reports"
    DATA_EXPORT = "data_export"
    PDF_EXPORT = "pdf_export"
    TEXT_TO_SPEECH = "text_to_speech"
    BUDGET_ALERTS = "budget_alerts"
    ADVANCED_CALCULATORS = "advanced_calculators"
    BANK_INTEGRATION = "bank_integration"
    PRO_NOTIFICATIONS = "pro_notifications"


class AntExpenseAnalysis(str, Enum):
    """Depth of the small recurring expense detector."""

    BASIC = "basic"
    FULL = "full"


class PlanLimits(BaseModel):
    """Quota and feature table attached to a plan. ``-1`` means unlimited."""

    budgets: int
    goals: int
    assistant_queries: int = Field(
        validation_alias=AliasChoices("assistant_queries", "assistantQueries", "zenioQueries")
    )
    reminders: int = 2
    advanced_reports: bool = Field(default=False, alias="advancedReports")
    data_export: bool = Field(
        default=False, validation_alias=AliasChoices("data_export", "dataExport", "exportData")
    )
    pdf_export: bool = Field(
        default=False, validation_alias=AliasChoices("pdf_export", "pdfExport", "exportPdf")
    )
    text_to_speech: bool = Field(default=False, alias="textToSpeech")
    budget_alerts: bool = Field(default=False, alias="budgetAlerts")
    advanced_calculators: bool = Field(default=False, alias="advancedCalculators")
    bank_integration: bool = Field(default=False, alias="bankIntegration")
    ant_expense_analysis: AntExpenseAnalysis = Field(
        default=AntExpenseAnalysis.BASIC, alias="antExpenseAnalysis"
    )

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("budgets", "goals", "assistant_queries", "reminders")
    @classmethod
    def _validate_quota(cls, value: int) -> int:
        if value < UNLIMITED:
            raise ValueError("quota limits must be >= -1")
        return value

    def limit_for(self, quota: Quota) -> int:
        return int(getattr(self, quota.value))

    def flag_for(self, feature: Feature) -> bool:
        return bool(getattr(self, feature.value, False))


class FlatPrice(BaseModel):
    """A single monthly amount; yearly billing is twelve months of it."""

    kind: Literal["flat"] = "flat"
    amount: float = Field(ge=0)

    model_config = ConfigDict(frozen=True)

    @property
    def monthly(self) -> float:
        return self.amount

    @property
    def yearly(self) -> float:
        return round(self.amount * 12, 2)

    def amount_for(self, period: BillingPeriod) -> float:
        return self.monthly if period == BillingPeriod.MONTHLY else self.yearly


class PeriodicPrice(BaseModel):
    """Separately quoted monthly and yearly amounts."""

    kind: Literal["periodic"] = "periodic"
    monthly: float = Field(ge=0)
    yearly: float = Field(ge=0)

    model_config = ConfigDict(frozen=True)

    def amount_for(self, period: BillingPeriod) -> float:
        return self.monthly if period == BillingPeriod.MONTHLY else self.yearly


PlanPrice = Annotated[Union[FlatPrice, PeriodicPrice], Field(discriminator="kind")]


def normalize_price(value: object) -> object:
    """Tag a raw price (bare number or ``{monthly, yearly}``) with its variant."""

    if isinstance(value, (FlatPrice, PeriodicPrice)):
        return value
    if isinstance(value, bool):
        raise ValueError("price must be numeric")
    if isinstance(value, (int, float)):
        return {"kind": "flat", "amount": value}
    if isinstance(value, dict):
        if "kind" in value:
            return value
        if "monthly" in value:
            monthly = value["monthly"]
            yearly = value.get("yearly")
            if yearly is None:
                return {"kind": "flat", "amount": monthly}
            return {"kind": "periodic", "monthly": monthly, "yearly": yearly}
    raise ValueError(f"Unsupported price value: {value!r}")


class PlanSavings(BaseModel):
    """Yearly savings against paying monthly for twelve months."""

    yearly: float
    percentage: int

    model_config = ConfigDict(frozen=True)


class Plan(BaseModel):
    """Immutable catalog entry."""

    id: PlanId
    name: str
    price: PlanPrice
    limits: PlanLimits
    features: Tuple[str, ...] = ()

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("price", mode="before")
    @classmethod
    def _tag_price(cls, value: object) -> object:
        return normalize_price(value)

    @property
    def savings(self) -> Optional[PlanSavings]:
        if not isinstance(self.price, PeriodicPrice) or self.price.monthly <= 0:
            return None
        full_year = self.price.monthly * 12
        saved = round(full_year - self.price.yearly, 2)
        if saved <= 0:
            return None
        return PlanSavings(yearly=saved, percentage=round(saved / full_year * 100))


class AssistantUsage(BaseModel):
    """Monthly assistant query usage as reported by the backend."""

    used: int = Field(default=0, ge=0)
    limit: int = 15
    remaining: int = 15

    model_config = ConfigDict(frozen=True)

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription(BaseModel):
    """Authoritative per-user subscription record."""

    id: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")
    plan: PlanId = PlanId.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_provider: BillingProviderKind = Field(
        default=BillingProviderKind.NONE,
        alias="billingProvider",
        validation_alias=AliasChoices("billing_provider", "billingProvider", "paymentProvider"),
    )
    external_customer_id: Optional[str] = Field(
        default=None,
        alias="externalCustomerId",
        validation_alias=AliasChoices(
            "external_customer_id", "externalCustomerId", "stripeCustomerId"
        ),
    )
    external_subscription_id: Optional[str] = Field(
        default=None,
        alias="externalSubscriptionId",
        validation_alias=AliasChoices(
            "external_subscription_id", "externalSubscriptionId", "stripeSubscriptionId"
        ),
    )
    current_period_start: Optional[datetime] = Field(default=None, alias="currentPeriodStart")
    current_period_end: Optional[datetime] = Field(default=None, alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(default=False, alias="cancelAtPeriodEnd")
    trial_ends_at: Optional[datetime] = Field(default=None, alias="trialEndsAt")
    can_use_trial: bool = Field(default=True, alias="canUseTrial")
    assistant_usage: Optional[AssistantUsage] = Field(
        default=None,
        alias="assistantUsage",
        validation_alias=AliasChoices("assistant_usage", "assistantUsage", "zenioUsage"),
    )
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("billing_provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: object) -> object:
        if value is None:
            return BillingProviderKind.NONE
        if isinstance(value, str):
            return _PROVIDER_ALIASES.get(value.strip().lower(), value.strip().lower())
        return value

    @field_validator(
        "current_period_start",
        "current_period_end",
        "trial_ends_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_trialing(self) -> bool:
        return self.status == SubscriptionStatus.TRIALING

    @property
    def is_lapsed(self) -> bool:
        return self.status in LAPSED_STATUSES

    @property
    def is_paid(self) -> bool:
        """``True`` for a paid plan that is not a trial."""
        return self.plan.is_paid and not self.is_trialing and not self.is_lapsed

    def invariant_violations(self) -> List[str]:
        """Describe every record invariant this subscription breaks."""

        violations: List[str] = []
        if self.is_trialing and self.trial_ends_at is None:
            violations.append("trialing subscription has no trial end")
        if self.is_trialing and self.plan == PlanId.FREE:
            violations.append("trialing subscription is on the FREE plan")
        if self.cancel_at_period_end and self.billing_provider == BillingProviderKind.NONE:
            violations.append("pending cancellation without a billing provider")
        if self.cancel_at_period_end and self.status not in {
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.TRIALING,
        }:
            violations.append(f"pending cancellation in status {self.status.value}")
        if self.plan == PlanId.FREE and self.external_subscription_id:
            violations.append("FREE plan still references an external subscription")
        return violations


class Usage(BaseModel):
    """Current resource counts for a user."""

    budgets: int = Field(default=0, ge=0)
    goals: int = Field(default=0, ge=0)
    reminders: int = Field(default=0, ge=0)
    assistant_queries: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)

    def count_for(self, quota: Quota) -> int:
        return int(getattr(self, quota.value))


class QuotaState(BaseModel):
    """Resolved limit for one quota. ``remaining`` is ``None`` when unlimited."""

    limit: int
    used: int = 0
    remaining: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED

    def allows(self, current_count: int) -> bool:
        if self.is_unlimited:
            return True
        return current_count < self.limit


class Entitlements(BaseModel):
    """Read-only capability and quota projection of a subscription."""

    plan: PlanId
    status: SubscriptionStatus
    quotas: Dict[Quota, QuotaState]
    features: Dict[Feature, bool]
    ant_expense_analysis: AntExpenseAnalysis = AntExpenseAnalysis.BASIC

    model_config = ConfigDict(frozen=True)

    def quota(self, quota: Quota) -> QuotaState:
        return self.quotas[quota]

    def limit(self, quota: Quota) -> int:
        return self.quotas[quota].limit

    def remaining(self, quota: Quota) -> Optional[int]:
        return self.quotas[quota].remaining

    def can_create(self, quota: Quota, current_count: int) -> bool:
        return self.quotas[quota].allows(current_count)

    def has(self, feature: Feature) -> bool:
        return bool(self.features.get(feature, False))

    def to_flags(self) -> Dict[str, Union[int, bool, str]]:
        """Serialize to flattened flag keys."""

        flags: Dict[str, Union[int, bool, str]] = {
            f"{quota.value}.limit": state.limit for quota, state in self.quotas.items()
        }
        flags.update({feature.value: enabled for feature, enabled in self.features.items()})
        flags["ant_expense_analysis"] = self.ant_expense_analysis.value
        return flags
