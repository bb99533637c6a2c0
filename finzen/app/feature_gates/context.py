"""Convenience wrapper around resolved entitlements for feature gating."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Optional, Union

from ..entitlements.catalog import DEFAULT_PLAN_CATALOG, PlanCatalog
from ..entitlements.models import Entitlements, Feature, PlanId, Quota
from .enforcement import require_entitlement
from .quota import QuotaEvaluation, assert_quota, evaluate_quota


@dataclass(frozen=True)
class EntitlementContext:
    """Facade exposing gating-centric helpers for a user's entitlements."""

    entitlements: Entitlements
    catalog: PlanCatalog = field(default=DEFAULT_PLAN_CATALOG)

    @property
    def plan(self) -> PlanId:
        return self.entitlements.plan

    @property
    def flags(self) -> Dict[str, Union[int, bool, str]]:
        return self.entitlements.to_flags()

    def has(self, feature: Feature) -> bool:
        return self.entitlements.has(feature)

    def require(self, feature: Feature, *, error_code: str = "entitlement_required") -> None:
        """Ensure a feature is unlocked."""

        require_entitlement(self.entitlements, feature, catalog=self.catalog, error_code=error_code)

    def can_create(self, quota: Quota, current_count: int) -> bool:
        return self.entitlements.can_create(quota, current_count)

    def evaluate(self, quota: Quota, current_count: int) -> QuotaEvaluation:
        return evaluate_quota(quota, self.entitlements.quota(quota), current_count=current_count)

    def assert_can_create(
        self,
        quota: Quota,
        current_count: int,
        *,
        error_code: Optional[str] = None,
    ) -> QuotaEvaluation:
        """Raise when ``current_count`` already uses up the quota."""

        return assert_quota(
            quota,
            self.entitlements.quota(quota),
            current_count=current_count,
            plan=self.plan,
            error_code=error_code or "quota_exceeded",
        )
