"""Helpers for enforcing entitlement checks on API and service layers."""
from __future__ import annotations

from typing import Optional

from ..entitlements.catalog import DEFAULT_PLAN_CATALOG, PlanCatalog
from ..entitlements.models import Entitlements, Feature, PlanId
from ..entitlements.resolver import PRO_ONLY_FEATURES
from .exceptions import FeatureGateError


def upgrade_target(feature: Feature, catalog: PlanCatalog = DEFAULT_PLAN_CATALOG) -> Optional[PlanId]:
    """Return the cheapest plan that unlocks ``feature``."""

    if feature in PRO_ONLY_FEATURES or feature == Feature.PRO_NOTIFICATIONS:
        return PlanId.PRO
    plan = catalog.cheapest_plan_with(feature)
    return plan.id if plan is not None else None


def require_entitlement(
    entitlements: Entitlements,
    feature: Feature,
    *,
    catalog: PlanCatalog = DEFAULT_PLAN_CATALOG,
    error_code: str = "entitlement_required",
    message: Optional[str] = None,
) -> None:
    """Ensure a feature is unlocked before proceeding.

    Parameters
    ----------
    entitlements:
        Entitlements resolved for the current subscription.
    feature:
        The capability that must be granted.
    catalog:
        Catalog used to suggest the plan that unlocks the feature.
    error_code:
        Optional override for the surfaced error code. Defaults to
        ``"entitlement_required"``.
    message:
        Optional human-friendly message. If omitted, a default message
        naming the missing feature is used.
    """

    if entitlements.has(feature):
        return

    raise FeatureGateError(
        code=error_code,
        message=message or f"Feature '{feature.value}' is not included in the {entitlements.plan.value} plan.",
        detail={"missing_entitlement": feature.value},
        upgrade_to=upgrade_target(feature, catalog),
    )
