"""Count based quota evaluation utilities for feature gating."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..entitlements.models import PlanId, Quota, QuotaState
from .exceptions import FeatureGateError

_DEFAULT_WARN_RATIO = 0.8


@dataclass(frozen=True)
class QuotaEvaluation:
    """Represents the outcome of a quota check before creating one more item."""

    quota: Quota
    limit: int
    current_count: int
    remaining: Optional[int]
    unlimited: bool
    should_warn: bool
    allowed: bool

    def to_dict(self) -> dict[str, object]:
        """Serialize the evaluation for logging or telemetry."""

        return {
            "quota": self.quota.value,
            "limit": self.limit,
            "current_count": self.current_count,
            "remaining": self.remaining,
            "unlimited": self.unlimited,
            "should_warn": self.should_warn,
            "allowed": self.allowed,
        }


def evaluate_quota(
    quota: Quota,
    state: QuotaState,
    *,
    current_count: int,
    warn_ratio: float = _DEFAULT_WARN_RATIO,
) -> QuotaEvaluation:
    """Determine whether one more item may be created under ``state``."""

    count = max(current_count, 0)
    if state.is_unlimited:
        return QuotaEvaluation(
            quota=quota,
            limit=state.limit,
            current_count=count,
            remaining=None,
            unlimited=True,
            should_warn=False,
            allowed=True,
        )

    allowed = count < state.limit
    return QuotaEvaluation(
        quota=quota,
        limit=state.limit,
        current_count=count,
        remaining=max(0, state.limit - count),
        unlimited=False,
        should_warn=state.limit > 0 and (count + 1) >= state.limit * warn_ratio,
        allowed=allowed,
    )


def assert_quota(
    quota: Quota,
    state: QuotaState,
    *,
    current_count: int,
    plan: Optional[PlanId] = None,
    error_code: str = "quota_exceeded",
) -> QuotaEvaluation:
    """Raise when creating one more item would exceed the quota."""

    evaluation = evaluate_quota(quota, state, current_count=current_count)
    if not evaluation.allowed:
        raise FeatureGateError(
            code=error_code,
            message=f"The {quota.value} limit of {state.limit} has been reached.",
            detail={
                "quota": quota.value,
                "limit": state.limit,
                "current_count": evaluation.current_count,
            },
            upgrade_to=PlanId.PREMIUM if plan in (None, PlanId.FREE) else PlanId.PRO,
        )
    return evaluation
