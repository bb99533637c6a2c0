"""Plan catalog, subscription models and the entitlement resolver."""

from .catalog import (
    DEFAULT_PLAN_CATALOG,
    DEFAULT_PLANS,
    FREE_LIMITS,
    PlanCatalog,
    PlanNotFoundError,
    get_plan_definition,
)
from .models import (
    UNLIMITED,
    AntExpenseAnalysis,
    AssistantUsage,
    BillingPeriod,
    BillingProviderKind,
    Entitlements,
    Feature,
    FlatPrice,
    PeriodicPrice,
    Plan,
    PlanId,
    PlanLimits,
    PlanSavings,
    Quota,
    QuotaState,
    Subscription,
    SubscriptionStatus,
    Usage,
)
from .resolver import PRO_ONLY_FEATURES, effective_plan, resolve

__all__ = [
    "DEFAULT_PLAN_CATALOG",
    "DEFAULT_PLANS",
    "FREE_LIMITS",
    "PRO_ONLY_FEATURES",
    "UNLIMITED",
    "AntExpenseAnalysis",
    "AssistantUsage",
    "BillingPeriod",
    "BillingProviderKind",
    "Entitlements",
    "Feature",
    "FlatPrice",
    "PeriodicPrice",
    "Plan",
    "PlanCatalog",
    "PlanId",
    "PlanLimits",
    "PlanNotFoundError",
    "PlanSavings",
    "Quota",
    "QuotaState",
    "Subscription",
    "SubscriptionStatus",
    "Usage",
    "effective_plan",
    "get_plan_definition",
    "resolve",
]
