from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import pytest

from finzen.app.billing import (
    BillingProvider,
    CheckoutRedirectProvider,
    DeviceRegistration,
    ExternallyManagedError,
    InvalidStateError,
    NativePurchaseProvider,
    Platform,
    PurchaseStatus,
    SubscriptionAuditEvent,
    SubscriptionAuditEventType,
    SubscriptionService,
    TrialManager,
)
from finzen.app.entitlements import BillingPeriod, BillingProviderKind, PlanId, Subscription, SubscriptionStatus
from finzen.app.services.subscriptions import InMemorySubscriptionsBackend, SandboxPurchasesSdk

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
DEVICE = DeviceRegistration(device_id="web_1709294400000_ab12", platform=Platform.WEB)


class RecordingEventLogger:
    def __init__(self) -> None:
        self.events: List[SubscriptionAuditEvent] = []

    def log(self, event: SubscriptionAuditEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[SubscriptionAuditEventType]:
        return [event.event_type for event in self.events]


class SpyBackend(InMemorySubscriptionsBackend):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.mutations: List[str] = []

    async def cancel(self):
        self.mutations.append("cancel")
        return await super().cancel()

    async def reactivate(self):
        self.mutations.append("reactivate")
        return await super().reactivate()

    async def change_plan(self, plan_id, billing_period):
        self.mutations.append("change_plan")
        return await super().change_plan(plan_id, billing_period)


class SpyCheckoutProvider(CheckoutRedirectProvider):
    def __init__(self, backend) -> None:
        super().__init__(backend)
        self.calls: List[str] = []

    async def cancel_subscription(self, subscription):
        self.calls.append("cancel_subscription")
        return await super().cancel_subscription(subscription)

    async def change_plan(self, subscription, plan_id, billing_period):
        self.calls.append("change_plan")
        return await super().change_plan(subscription, plan_id, billing_period)


def _active(plan: PlanId = PlanId.PRO, **updates) -> Subscription:
    subscription = Subscription(
        id="sub-1",
        user_id="user-1",
        plan=plan,
        status=SubscriptionStatus.ACTIVE,
        billing_provider=BillingProviderKind.CHECKOUT,
        external_customer_id="cus_1",
        external_subscription_id="ext_1",
        current_period_start=NOW - timedelta(days=5),
        current_period_end=NOW + timedelta(days=25),
        can_use_trial=False,
    )
    return subscription.model_copy(update=updates)


def _trialing() -> Subscription:
    return Subscription(
        id="sub-1",
        user_id="user-1",
        plan=PlanId.PREMIUM,
        status=SubscriptionStatus.TRIALING,
        trial_ends_at=NOW + timedelta(days=5),
        can_use_trial=False,
    )


def _build(
    subscription: Subscription,
    provider: Optional[BillingProvider] = None,
) -> Tuple[SubscriptionService, SpyBackend, SpyCheckoutProvider, RecordingEventLogger]:
    backend = SpyBackend(subscription, clock=lambda: NOW)
    spy = SpyCheckoutProvider(backend)
    events = RecordingEventLogger()
    service = SubscriptionService(
        backend=backend,
        provider=provider or spy,
        trial_manager=TrialManager(backend, clock=lambda: NOW),
        event_logger=events,
    )
    return service, backend, spy, events


@pytest.mark.asyncio
async def test_start_trial_logs_event() -> None:
    service, backend, _, events = _build(Subscription(id="sub-1", plan=PlanId.FREE))

    expected = await service.start_trial(backend.subscription, PlanId.PREMIUM, DEVICE)

    assert expected.status == SubscriptionStatus.TRIALING
    assert backend.subscription.trial_ends_at == NOW + timedelta(days=7)
    assert backend.devices == [DEVICE]
    assert events.types == [SubscriptionAuditEventType.TRIAL_STARTED]
    assert events.events[0].metadata["platform"] == "web"


@pytest.mark.asyncio
async def test_cancel_during_trial_bypasses_provider() -> None:
    service, backend, spy, events = _build(_trialing())

    receipt = await service.cancel_subscription(backend.subscription)

    assert receipt is None
    assert spy.calls == []
    assert backend.mutations == ["cancel"]
    assert backend.subscription.plan == PlanId.FREE
    assert backend.subscription.status == SubscriptionStatus.ACTIVE
    assert backend.subscription.trial_ends_at is None
    assert events.types == [SubscriptionAuditEventType.TRIAL_CANCELED]


@pytest.mark.asyncio
async def test_cancel_active_subscription_only_schedules_cancellation() -> None:
    service, backend, spy, events = _build(_active(PlanId.PRO))

    receipt = await service.cancel_subscription(backend.subscription)

    assert receipt is not None
    assert receipt.cancel_at_period_end is True
    assert spy.calls == ["cancel_subscription"]
    assert backend.subscription.status == SubscriptionStatus.ACTIVE
    assert backend.subscription.plan == PlanId.PRO
    assert backend.subscription.cancel_at_period_end is True
    assert events.types == [SubscriptionAuditEventType.SUBSCRIPTION_CANCELED]


@pytest.mark.asyncio
async def test_cancel_rejects_pending_cancellation_without_network() -> None:
    service, backend, _, _ = _build(_active(cancel_at_period_end=True))

    with pytest.raises(InvalidStateError) as exc:
        await service.cancel_subscription(backend.subscription)

    assert exc.value.code == "cancellation_pending"
    assert backend.mutations == []


@pytest.mark.asyncio
async def test_cancel_rejects_free_plan() -> None:
    service, backend, _, _ = _build(Subscription(id="sub-1", plan=PlanId.FREE))

    with pytest.raises(InvalidStateError) as exc:
        await service.cancel_subscription(backend.subscription)

    assert exc.value.code == "no_active_subscription"


@pytest.mark.asyncio
async def test_cancel_past_due_subscription_schedules_cancellation() -> None:
    service, backend, spy, _ = _build(_active(PlanId.PREMIUM, status=SubscriptionStatus.PAST_DUE))

    receipt = await service.cancel_subscription(backend.subscription)

    assert receipt is not None
    assert spy.calls == ["cancel_subscription"]
    assert backend.subscription.cancel_at_period_end is True


@pytest.mark.asyncio
async def test_cancel_rejects_lapsed_subscription() -> None:
    service, backend, _, _ = _build(_active(PlanId.PRO, status=SubscriptionStatus.CANCELED))

    with pytest.raises(InvalidStateError) as exc:
        await service.cancel_subscription(backend.subscription)

    assert exc.value.code == "no_active_subscription"
    assert backend.mutations == []


@pytest.mark.asyncio
async def test_reactivate_clears_pending_cancellation() -> None:
    service, backend, _, events = _build(_active(cancel_at_period_end=True))

    await service.reactivate_subscription(backend.subscription)

    assert backend.subscription.cancel_at_period_end is False
    assert backend.subscription.status == SubscriptionStatus.ACTIVE
    assert events.types == [SubscriptionAuditEventType.SUBSCRIPTION_REACTIVATED]


@pytest.mark.asyncio
async def test_reactivate_requires_pending_cancellation() -> None:
    service, backend, _, _ = _build(_active())

    with pytest.raises(InvalidStateError) as exc:
        await service.reactivate_subscription(backend.subscription)

    assert exc.value.code == "not_pending_cancellation"
    assert backend.mutations == []


@pytest.mark.asyncio
async def test_reactivate_rejects_lapsed_period() -> None:
    service, backend, _, _ = _build(
        _active(cancel_at_period_end=True, current_period_end=NOW - timedelta(minutes=1))
    )

    with pytest.raises(InvalidStateError) as exc:
        await service.reactivate_subscription(backend.subscription)

    assert exc.value.code == "subscription_lapsed"


@pytest.mark.asyncio
async def test_change_plan_while_cancellation_pending_is_rejected() -> None:
    service, backend, spy, _ = _build(_active(PlanId.PREMIUM, cancel_at_period_end=True))

    with pytest.raises(InvalidStateError) as exc:
        await service.change_plan(backend.subscription, PlanId.PRO, BillingPeriod.YEARLY)

    assert exc.value.code == "cancellation_pending"
    assert spy.calls == []
    assert backend.mutations == []


@pytest.mark.asyncio
async def test_trial_plan_change_while_cancellation_pending_is_rejected() -> None:
    service, backend, spy, events = _build(_trialing().model_copy(update={"cancel_at_period_end": True}))

    with pytest.raises(InvalidStateError) as exc:
        await service.change_plan(backend.subscription, PlanId.PRO)

    assert exc.value.code == "cancellation_pending"
    assert backend.mutations == []
    assert spy.calls == []
    assert backend.subscription.plan == PlanId.PREMIUM
    assert events.events == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("target", "code"),
    [(PlanId.FREE, "plan_invalid"), (PlanId.PREMIUM, "plan_unchanged")],
)
async def test_change_plan_validation(target: PlanId, code: str) -> None:
    service, backend, _, _ = _build(_active(PlanId.PREMIUM))

    with pytest.raises(InvalidStateError) as exc:
        await service.change_plan(backend.subscription, target)

    assert exc.value.code == code


@pytest.mark.asyncio
async def test_change_plan_routes_paid_change_through_provider() -> None:
    service, backend, spy, events = _build(_active(PlanId.PREMIUM))

    await service.change_plan(backend.subscription, PlanId.PRO, BillingPeriod.YEARLY)

    assert spy.calls == ["change_plan"]
    assert backend.subscription.plan == PlanId.PRO
    assert events.types == [SubscriptionAuditEventType.PLAN_CHANGED]
    assert events.events[0].metadata["previous_plan"] == "PREMIUM"


@pytest.mark.asyncio
async def test_change_plan_during_trial_uses_trial_manager() -> None:
    trialing = _trialing()
    service, backend, spy, events = _build(trialing)

    await service.change_plan(backend.subscription, PlanId.PRO)

    assert spy.calls == []
    assert backend.subscription.plan == PlanId.PRO
    assert backend.subscription.status == SubscriptionStatus.TRIALING
    assert backend.subscription.trial_ends_at == trialing.trial_ends_at
    assert events.types == [SubscriptionAuditEventType.TRIAL_PLAN_CHANGED]


@pytest.mark.asyncio
async def test_store_billed_cancel_points_to_store_settings() -> None:
    service, backend, _, _ = _build(_active(billing_provider=BillingProviderKind.NATIVE_IAP))

    with pytest.raises(ExternallyManagedError) as exc:
        await service.cancel_subscription(backend.subscription)

    assert exc.value.payload["manage_url"].startswith("https://")
    assert backend.mutations == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("plan", "code"),
    [(PlanId.PRO, "plan_already_active"), (PlanId.PREMIUM, "subscription_exists")],
)
async def test_purchase_rejects_existing_paid_subscription(plan: PlanId, code: str) -> None:
    service, backend, _, _ = _build(_active(PlanId.PRO))

    with pytest.raises(InvalidStateError) as exc:
        await service.purchase(backend.subscription, plan, BillingPeriod.MONTHLY)

    assert exc.value.code == code


@pytest.mark.asyncio
async def test_purchase_rejects_free_plan() -> None:
    service, backend, _, _ = _build(Subscription(id="sub-1"))

    with pytest.raises(InvalidStateError) as exc:
        await service.purchase(backend.subscription, PlanId.FREE, BillingPeriod.MONTHLY)

    assert exc.value.code == "plan_invalid"


@pytest.mark.asyncio
async def test_declined_purchase_is_logged_as_declined() -> None:
    service, backend, _, events = _build(Subscription(id="sub-1"))

    async def decline(plan_id: PlanId, period: BillingPeriod) -> bool:
        return False

    async def open_url(url: str) -> None:
        raise AssertionError("URL must not open after a declined disclosure")

    outcome = await service.purchase(
        backend.subscription, PlanId.PREMIUM, BillingPeriod.MONTHLY, confirm=decline, open_url=open_url
    )

    assert outcome.status == PurchaseStatus.DECLINED
    assert events.types == [SubscriptionAuditEventType.PURCHASE_DECLINED]


@pytest.mark.asyncio
async def test_native_purchase_is_logged_as_completed() -> None:
    backend = SpyBackend(Subscription(id="sub-1"), clock=lambda: NOW)
    provider = NativePurchaseProvider(backend, SandboxPurchasesSdk(on_purchase=backend.apply_native_purchase))
    service, _, _, events = _build(backend.subscription, provider=provider)

    outcome = await service.purchase(backend.subscription, PlanId.PREMIUM, BillingPeriod.YEARLY)

    assert outcome.status == PurchaseStatus.COMPLETED
    assert backend.subscription.billing_provider == BillingProviderKind.NATIVE_IAP
    assert events.types == [SubscriptionAuditEventType.PURCHASE_COMPLETED]
    assert events.events[0].metadata["provider"] == "native-iap"


@pytest.mark.asyncio
async def test_hosted_checkout_unavailable_for_native_provider() -> None:
    backend = SpyBackend(Subscription(id="sub-1"))
    provider = NativePurchaseProvider(backend, SandboxPurchasesSdk())
    service, _, _, _ = _build(backend.subscription, provider=provider)

    with pytest.raises(InvalidStateError) as exc:
        await service.create_checkout(backend.subscription, PlanId.PRO, BillingPeriod.MONTHLY)

    assert exc.value.code == "checkout_unavailable"


@pytest.mark.asyncio
async def test_create_checkout_returns_session() -> None:
    service, backend, _, events = _build(Subscription(id="sub-1"))

    session = await service.create_checkout(backend.subscription, PlanId.PRO, BillingPeriod.MONTHLY)

    assert session.url.endswith(session.session_id)
    assert events.types == [SubscriptionAuditEventType.CHECKOUT_STARTED]
