"""Free trial lifecycle on the FREE to paid boundary."""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..entitlements.models import BillingPeriod, PlanId, Subscription, SubscriptionStatus
from .client import SubscriptionsBackend
from .exceptions import InvalidStateError
from .models import DeviceRegistration

logger = logging.getLogger("billing")

DEFAULT_TRIAL_DAYS = 7
_DAY_SECONDS = 24 * 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_can_start_trial(subscription: Subscription, plan_id: PlanId) -> None:
    if not plan_id.is_paid:
        raise InvalidStateError(code="trial_plan_invalid", message="Trials are only available for paid plans.")
    if subscription.plan != PlanId.FREE:
        raise InvalidStateError(
            code="trial_requires_free_plan",
            message="A trial can only be started from the free plan.",
        )
    if not subscription.can_use_trial:
        raise InvalidStateError(code="trial_already_used", message="The free trial has already been used.")
    if subscription.external_subscription_id:
        raise InvalidStateError(
            code="trial_has_subscription",
            message="A trial cannot start while a paid subscription exists.",
        )


def ensure_trialing(subscription: Subscription) -> None:
    if not subscription.is_trialing:
        raise InvalidStateError(code="not_trialing", message="There is no active trial.")


def start_trial(
    subscription: Subscription,
    plan_id: PlanId,
    *,
    now: Optional[datetime] = None,
    trial_days: int = DEFAULT_TRIAL_DAYS,
) -> Subscription:
    """Return ``subscription`` moved into a trial of ``plan_id``."""

    ensure_can_start_trial(subscription, plan_id)
    moment = now or _utcnow()
    return subscription.model_copy(
        update={
            "plan": plan_id,
            "status": SubscriptionStatus.TRIALING,
            "trial_ends_at": moment + timedelta(days=trial_days),
            "can_use_trial": False,
            "updated_at": moment,
        }
    )


def cancel_trial(subscription: Subscription, *, now: Optional[datetime] = None) -> Subscription:
    """Return ``subscription`` reverted to FREE; no money was charged."""

    ensure_trialing(subscription)
    return subscription.model_copy(
        update={
            "plan": PlanId.FREE,
            "status": SubscriptionStatus.ACTIVE,
            "trial_ends_at": None,
            "cancel_at_period_end": False,
            "updated_at": now or _utcnow(),
        }
    )


def change_plan_during_trial(
    subscription: Subscription,
    new_plan_id: PlanId,
    *,
    now: Optional[datetime] = None,
) -> Subscription:
    """Return ``subscription`` trialing ``new_plan_id``; the trial end carries over."""

    ensure_trialing(subscription)
    if not new_plan_id.is_paid:
        raise InvalidStateError(code="trial_plan_invalid", message="Trials are only available for paid plans.")
    if new_plan_id == subscription.plan:
        raise InvalidStateError(code="plan_unchanged", message=f"The trial is already on {new_plan_id.value}.")
    return subscription.model_copy(update={"plan": new_plan_id, "updated_at": now or _utcnow()})


def trial_days_remaining(subscription: Optional[Subscription], *, now: Optional[datetime] = None) -> int:
    """Whole days left in the trial, rounded up and never negative."""

    if subscription is None or subscription.trial_ends_at is None:
        return 0
    delta = (subscription.trial_ends_at - (now or _utcnow())).total_seconds()
    return max(0, math.ceil(delta / _DAY_SECONDS))


class TrialManager:
    """Validates trial commands locally, then asks the backend to apply them.

    Trial cancellation goes straight to the backend; no billing provider is
    involved because nothing was charged.
    """

    def __init__(
        self,
        backend: SubscriptionsBackend,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        trial_days: int = DEFAULT_TRIAL_DAYS,
    ) -> None:
        if trial_days < 1:
            raise ValueError("trial_days must be >= 1")
        self._backend = backend
        self._clock = clock or _utcnow
        self.trial_days = trial_days

    def now(self) -> datetime:
        return self._clock()

    async def start_trial(
        self,
        subscription: Subscription,
        plan_id: PlanId,
        device: DeviceRegistration,
    ) -> Subscription:
        expected = start_trial(subscription, plan_id, now=self.now(), trial_days=self.trial_days)
        await self._backend.start_trial(plan_id, device)
        logger.info(
            "Trial started plan=%s device=%s ends_at=%s",
            plan_id.value,
            device.device_id,
            expected.trial_ends_at,
        )
        return expected

    async def cancel_trial(self, subscription: Subscription) -> Subscription:
        expected = cancel_trial(subscription, now=self.now())
        await self._backend.cancel()
        logger.info("Trial canceled for subscription=%s", subscription.id)
        return expected

    async def change_plan_during_trial(
        self,
        subscription: Subscription,
        new_plan_id: PlanId,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    ) -> Subscription:
        expected = change_plan_during_trial(subscription, new_plan_id, now=self.now())
        await self._backend.change_plan(new_plan_id, billing_period)
        logger.info(
            "Trial plan changed subscription=%s %s -> %s",
            subscription.id,
            subscription.plan.value,
            new_plan_id.value,
        )
        return expected

    def days_remaining(self, subscription: Optional[Subscription]) -> int:
        return trial_days_remaining(subscription, now=self.now())


__all__ = [
    "DEFAULT_TRIAL_DAYS",
    "TrialManager",
    "cancel_trial",
    "change_plan_during_trial",
    "ensure_can_start_trial",
    "ensure_trialing",
    "start_trial",
    "trial_days_remaining",
]
