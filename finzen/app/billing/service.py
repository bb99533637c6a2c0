"""Command service routing subscription intents to the right collaborator."""
from __future__ import annotations

import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol

from ..entitlements.models import BillingPeriod, PlanId, Subscription, SubscriptionStatus
from .client import SubscriptionsBackend
from .exceptions import InvalidStateError
from .models import (
    CancellationReceipt,
    CheckoutSession,
    DeviceRegistration,
    PurchaseOutcome,
    PurchaseStatus,
    SubscriptionAuditEvent,
    SubscriptionAuditEventType,
)
from .providers import BillingProvider, CheckoutRedirectProvider, DisclosurePrompt, UrlOpener
from .trials import TrialManager


class SubscriptionEventLogger(Protocol):
    """Captures structured subscription audit events."""

    def log(self, event: SubscriptionAuditEvent) -> None:
        ...


_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class SubscriptionService:
    """Validates intents against the current record, then executes them.

    Every check here runs before any network call. Trial commands go to the
    :class:`TrialManager`; paid commands go to the active
    :class:`BillingProvider`.
    """

    backend: SubscriptionsBackend
    provider: BillingProvider
    trial_manager: TrialManager
    event_logger: SubscriptionEventLogger

    def _now(self) -> datetime:
        return self.trial_manager.now()

    async def start_trial(
        self,
        subscription: Subscription,
        plan_id: PlanId,
        device: DeviceRegistration,
    ) -> Subscription:
        expected = await self.trial_manager.start_trial(subscription, plan_id, device)
        self._log(
            SubscriptionAuditEventType.TRIAL_STARTED,
            subscription,
            plan=plan_id.value,
            platform=device.platform.value,
        )
        return expected

    async def purchase(
        self,
        subscription: Subscription,
        plan_id: PlanId,
        billing_period: BillingPeriod,
        *,
        confirm: Optional[DisclosurePrompt] = None,
        open_url: Optional[UrlOpener] = None,
    ) -> PurchaseOutcome:
        self._ensure_purchasable(subscription, plan_id)
        outcome = await self.provider.purchase(plan_id, billing_period, confirm=confirm, open_url=open_url)

        if outcome.status == PurchaseStatus.DECLINED:
            event_type = SubscriptionAuditEventType.PURCHASE_DECLINED
        elif outcome.status == PurchaseStatus.PENDING:
            event_type = SubscriptionAuditEventType.CHECKOUT_STARTED
        else:
            event_type = SubscriptionAuditEventType.PURCHASE_COMPLETED
        self._log(
            event_type,
            subscription,
            plan=plan_id.value,
            billing_period=billing_period.value,
            provider=self.provider.kind.value,
        )
        return outcome

    async def create_checkout(
        self,
        subscription: Subscription,
        plan_id: PlanId,
        billing_period: BillingPeriod,
    ) -> CheckoutSession:
        if not isinstance(self.provider, CheckoutRedirectProvider):
            raise InvalidStateError(
                code="checkout_unavailable",
                message="Hosted checkout is not available on this platform.",
            )
        self._ensure_purchasable(subscription, plan_id)
        session = await self.provider.create_checkout_session(plan_id, billing_period)
        self._log(
            SubscriptionAuditEventType.CHECKOUT_STARTED,
            subscription,
            plan=plan_id.value,
            session_id=session.session_id,
        )
        return session

    async def cancel_subscription(self, subscription: Subscription) -> Optional[CancellationReceipt]:
        """Cancel a trial immediately, or a paid plan at the end of its period."""

        if subscription.is_trialing:
            await self.trial_manager.cancel_trial(subscription)
            self._log(SubscriptionAuditEventType.TRIAL_CANCELED, subscription, plan=subscription.plan.value)
            return None

        if not subscription.is_paid:
            raise InvalidStateError(
                code="no_active_subscription",
                message="There is no active paid subscription to cancel.",
            )
        if subscription.cancel_at_period_end:
            raise InvalidStateError(
                code="cancellation_pending",
                message="The subscription is already set to cancel at the end of the period.",
            )

        receipt = await self.provider.cancel_subscription(subscription)
        self._log(SubscriptionAuditEventType.SUBSCRIPTION_CANCELED, subscription, plan=subscription.plan.value)
        return receipt

    async def reactivate_subscription(self, subscription: Subscription) -> Mapping[str, Any]:
        if not subscription.cancel_at_period_end:
            raise InvalidStateError(
                code="not_pending_cancellation",
                message="The subscription is not scheduled for cancellation.",
            )
        lapsed_period = subscription.current_period_end is not None and subscription.current_period_end <= self._now()
        if subscription.status not in {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING} or lapsed_period:
            raise InvalidStateError(
                code="subscription_lapsed",
                message="The subscription period has already ended.",
            )

        result = await self.provider.reactivate_subscription(subscription)
        self._log(SubscriptionAuditEventType.SUBSCRIPTION_REACTIVATED, subscription, plan=subscription.plan.value)
        return result

    async def change_plan(
        self,
        subscription: Subscription,
        plan_id: PlanId,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    ) -> None:
        """Trial plan changes keep the trial end; paid changes are prorated."""

        if subscription.cancel_at_period_end:
            raise InvalidStateError(
                code="cancellation_pending",
                message="Reactivate the subscription before changing plans.",
            )
        if subscription.is_trialing:
            await self.trial_manager.change_plan_during_trial(subscription, plan_id, billing_period)
            self._log(
                SubscriptionAuditEventType.TRIAL_PLAN_CHANGED,
                subscription,
                plan=plan_id.value,
                previous_plan=subscription.plan.value,
            )
            return

        if not plan_id.is_paid:
            raise InvalidStateError(
                code="plan_invalid",
                message="Downgrading to the free plan is done by canceling.",
            )
        if not subscription.is_paid or subscription.status != SubscriptionStatus.ACTIVE:
            raise InvalidStateError(
                code="no_active_subscription",
                message="Only an active paid subscription can change plans.",
            )
        if plan_id == subscription.plan:
            raise InvalidStateError(code="plan_unchanged", message=f"You are already on {plan_id.value}.")

        await self.provider.change_plan(subscription, plan_id, billing_period)
        self._log(
            SubscriptionAuditEventType.PLAN_CHANGED,
            subscription,
            plan=plan_id.value,
            previous_plan=subscription.plan.value,
            billing_period=billing_period.value,
        )

    def _ensure_purchasable(self, subscription: Subscription, plan_id: PlanId) -> None:
        if not plan_id.is_paid:
            raise InvalidStateError(code="plan_invalid", message="The free plan cannot be purchased.")
        if subscription.is_paid:
            if subscription.plan == plan_id:
                raise InvalidStateError(code="plan_already_active", message=f"You already have {plan_id.value}.")
            raise InvalidStateError(
                code="subscription_exists",
                message="Change the plan of your current subscription instead of buying a new one.",
            )

    def _log(self, event_type: SubscriptionAuditEventType, subscription: Subscription, **metadata: str) -> None:
        self.event_logger.log(
            SubscriptionAuditEvent(
                event_type=event_type,
                subscription_id=subscription.id,
                actor_id=subscription.user_id,
                metadata=metadata,
                occurred_at=self._now(),
            )
        )


__all__ = ["SubscriptionEventLogger", "SubscriptionService"]
