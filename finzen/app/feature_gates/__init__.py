"""Feature gating utilities coordinating entitlement enforcement."""
from .context import EntitlementContext
from .enforcement import require_entitlement, upgrade_target
from .exceptions import FeatureGateError
from .quota import QuotaEvaluation, assert_quota, evaluate_quota

__all__ = [
    "EntitlementContext",
    "FeatureGateError",
    "QuotaEvaluation",
    "assert_quota",
    "evaluate_quota",
    "require_entitlement",
    "upgrade_target",
]
