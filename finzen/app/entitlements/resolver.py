"""Pure projection of a subscription onto per-feature entitlements."""
from __future__ import annotations

from typing import Dict, Optional

from .catalog import PlanCatalog
from .models import (
    Entitlements,
    Feature,
    PlanId,
    Quota,
    QuotaState,
    Subscription,
    SubscriptionStatus,
    Usage,
)

# Features granted by plan identity alone, whatever the limits table says.
PRO_ONLY_FEATURES = (Feature.PDF_EXPORT, Feature.TEXT_TO_SPEECH)


def effective_plan(subscription: Optional[Subscription]) -> PlanId:
    """Plan whose limits apply: FREE when nothing is loaded or the record lapsed."""

    if subscription is None or subscription.is_lapsed:
        return PlanId.FREE
    return subscription.plan


def quota_state(limit: int, used: int) -> QuotaState:
    if limit < 0:
        return QuotaState(limit=limit, used=used, remaining=None)
    return QuotaState(limit=limit, used=used, remaining=max(0, limit - used))


def resolve(
    subscription: Optional[Subscription],
    catalog: PlanCatalog,
    usage: Optional[Usage] = None,
) -> Entitlements:
    """Compute entitlements for ``subscription`` against ``catalog``."""

    plan_id = effective_plan(subscription)
    limits = catalog.get_plan(plan_id).limits
    counts = usage or Usage()

    quotas: Dict[Quota, QuotaState] = {
        quota: quota_state(limits.limit_for(quota), counts.count_for(quota)) for quota in Quota
    }

    features: Dict[Feature, bool] = {
        feature: limits.flag_for(feature) for feature in Feature if feature != Feature.PRO_NOTIFICATIONS
    }
    for feature in PRO_ONLY_FEATURES:
        features[feature] = plan_id == PlanId.PRO
    features[Feature.PRO_NOTIFICATIONS] = plan_id == PlanId.PRO

    status = subscription.status if subscription is not None else SubscriptionStatus.ACTIVE
    return Entitlements(
        plan=plan_id,
        status=status,
        quotas=quotas,
        features=features,
        ant_expense_analysis=limits.ant_expense_analysis,
    )
