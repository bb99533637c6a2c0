from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from finzen.app.billing import (
    DeviceRegistration,
    ErrorKind,
    Platform,
    ProviderError,
    PurchaseStatus,
    ReconciliationOutcome,
)
from finzen.app.billing.providers import DEFAULT_STORE_MANAGE_URL
from finzen.app.config import SubscriptionConfig
from finzen.app.entitlements import (
    DEFAULT_PLAN_CATALOG,
    AssistantUsage,
    BillingPeriod,
    BillingProviderKind,
    PlanCatalog,
    PlanId,
    Subscription,
    SubscriptionStatus,
)
from finzen.app.services.subscriptions import (
    InMemorySubscriptionsBackend,
    SandboxPurchasesSdk,
    create_subscription_store,
    open_native_session,
)
from finzen.app.store import CommandStatus, SubscriptionStore, default_device_info

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _config(platform: Platform = Platform.WEB) -> SubscriptionConfig:
    return SubscriptionConfig(
        api_base_url="http://api.test/api",
        api_timeout=1.0,
        platform=platform,
        trial_days=7,
        native_api_key="appl_test",
        store_manage_url=DEFAULT_STORE_MANAGE_URL,
        native_sandbox=True,
    )


def _store(backend: InMemorySubscriptionsBackend, platform: Platform = Platform.WEB) -> SubscriptionStore:
    return create_subscription_store(_config(platform), backend=backend, clock=lambda: NOW)


def _paid(plan: PlanId, **updates) -> Subscription:
    subscription = Subscription(
        id="sub-1",
        user_id="user-1",
        plan=plan,
        status=SubscriptionStatus.ACTIVE,
        billing_provider=BillingProviderKind.CHECKOUT,
        external_customer_id="cus_1",
        external_subscription_id="ext_1",
        current_period_start=NOW - timedelta(days=3),
        current_period_end=NOW + timedelta(days=27),
        can_use_trial=False,
    )
    return subscription.model_copy(update=updates)


async def _accept(plan_id: PlanId, period: BillingPeriod) -> bool:
    return True


async def _decline(plan_id: PlanId, period: BillingPeriod) -> bool:
    return False


class BlockingCancelBackend(InMemorySubscriptionsBackend):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.release = asyncio.Event()

    async def cancel(self):
        await self.release.wait()
        return await super().cancel()


class FailingCancelBackend(InMemorySubscriptionsBackend):
    async def cancel(self):
        raise ProviderError(code="network_error", message="Could not reach the subscription service.")


@pytest.fixture
def backend() -> InMemorySubscriptionsBackend:
    return InMemorySubscriptionsBackend(user_id="user-1", clock=lambda: NOW)


def test_defaults_before_anything_loads(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)

    assert store.subscription is None
    assert store.get_current_plan() == PlanId.FREE
    assert store.is_free_plan() is True
    assert store.is_trialing() is False
    assert store.get_trial_days_remaining() == 0
    assert store.get_trial_ends_at() is None
    assert store.get_plan_limits().budgets == 2
    assert store.get_reminders_limit() == 2
    assert store.can_create_budget(1) is True
    assert store.can_create_budget(2) is False
    assert store.can_create_goal(1) is False
    assert store.can_ask_assistant(14) is True
    assert store.get_assistant_usage() == AssistantUsage(used=0, limit=15, remaining=15)
    assert store.has_advanced_calculators() is False


@pytest.mark.asyncio
async def test_start_trial_refetches_canonical_record(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)
    await store.fetch_subscription()

    result = await store.start_trial(PlanId.PREMIUM)

    assert result.ok
    assert store.subscription is backend.subscription
    assert store.subscription.plan == PlanId.PREMIUM
    assert store.subscription.status == SubscriptionStatus.TRIALING
    assert store.get_trial_ends_at() == NOW + timedelta(days=7)
    assert store.subscription.can_use_trial is False
    assert store.is_trialing() is True
    assert store.get_trial_days_remaining() == 7
    assert backend.devices[0].platform == Platform.WEB
    assert backend.devices[0].device_id.startswith("web_")


@pytest.mark.asyncio
async def test_second_trial_fails_as_validation(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)
    await store.start_trial(PlanId.PREMIUM)
    before = store.subscription

    result = await store.start_trial(PlanId.PRO)

    assert result.status == CommandStatus.FAILED
    assert result.error_kind == ErrorKind.VALIDATION
    assert result.error_code == "trial_requires_free_plan"
    assert result.retryable is False
    assert store.subscription is before
    assert store.error == result.message


@pytest.mark.asyncio
async def test_trial_plan_change_and_cancel(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)
    await store.start_trial(PlanId.PREMIUM)
    trial_end = store.get_trial_ends_at()

    changed = await store.change_plan(PlanId.PRO)

    assert changed.ok
    assert store.is_pro_plan() is True
    assert store.get_trial_ends_at() == trial_end

    cancelled = await store.cancel_subscription()

    assert cancelled.ok
    assert store.is_free_plan() is True
    assert store.subscription.status == SubscriptionStatus.ACTIVE
    assert store.get_trial_ends_at() is None


@pytest.mark.asyncio
async def test_cancel_then_reactivate_paid_subscription() -> None:
    backend = InMemorySubscriptionsBackend(_paid(PlanId.PRO), clock=lambda: NOW)
    store = _store(backend)
    await store.fetch_subscription()

    cancelled = await store.cancel_subscription()

    assert cancelled.ok
    assert store.subscription.status == SubscriptionStatus.ACTIVE
    assert store.subscription.plan == PlanId.PRO
    assert store.subscription.cancel_at_period_end is True
    assert store.can_export_pdf() is True

    reactivated = await store.reactivate_subscription()

    assert reactivated.ok
    assert store.subscription.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_provider_failure_is_retryable_and_leaves_state() -> None:
    backend = FailingCancelBackend(_paid(PlanId.PREMIUM), clock=lambda: NOW)
    store = _store(backend)
    await store.fetch_subscription()
    before = store.subscription

    result = await store.cancel_subscription()

    assert result.failed
    assert result.error_kind == ErrorKind.PROVIDER
    assert result.error_code == "network_error"
    assert result.retryable is True
    assert store.subscription is before
    assert store.loading is False


@pytest.mark.asyncio
async def test_concurrent_mutation_is_rejected() -> None:
    backend = BlockingCancelBackend(_paid(PlanId.PREMIUM), clock=lambda: NOW)
    store = _store(backend)
    await store.fetch_subscription()

    pending = asyncio.ensure_future(store.cancel_subscription())
    await asyncio.sleep(0)

    assert store.loading is True
    rejected = await store.change_plan(PlanId.PRO)

    assert rejected.failed
    assert rejected.error_code == "mutation_in_progress"

    backend.release.set()
    finished = await pending

    assert finished.ok
    assert store.loading is False
    assert store.subscription.cancel_at_period_end is True


@pytest.mark.asyncio
async def test_declined_checkout_disclosure_is_a_no_op(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)
    opened: List[str] = []

    async def open_url(url: str) -> None:
        opened.append(url)

    result = await store.purchase(PlanId.PREMIUM, BillingPeriod.MONTHLY, confirm=_decline, open_url=open_url)

    assert result.status == CommandStatus.DECLINED
    assert result.declined is True
    assert result.error_kind == ErrorKind.DECLINED
    assert result.retryable is False
    assert opened == []
    assert backend.checkout_sessions == {}
    assert store.error is None


@pytest.mark.asyncio
async def test_checkout_purchase_confirms_through_sync(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)
    opened: List[str] = []

    async def open_url(url: str) -> None:
        opened.append(url)

    result = await store.purchase(PlanId.PREMIUM, BillingPeriod.YEARLY, confirm=_accept, open_url=open_url)

    assert result.ok
    assert result.value.status == PurchaseStatus.PENDING
    assert opened == [result.value.checkout_url]
    assert store.is_free_plan() is True

    pending = await store.sync_checkout_session(result.value.session_id)
    assert pending.outcome == ReconciliationOutcome.PENDING
    assert store.is_free_plan() is True

    backend.complete_checkout_session(result.value.session_id)
    confirmed = await store.sync_checkout_session(result.value.session_id)

    assert confirmed.outcome == ReconciliationOutcome.CONFIRMED
    assert store.is_premium_plan() is True
    assert store.has_budget_alerts() is True
    assert store.can_export_data() is True
    assert store.can_export_pdf() is False
    assert store.can_use_text_to_speech() is False
    assert store.has_advanced_reports() is False
    assert store.can_use_pro_notifications() is False

    payments = await store.fetch_payments(limit=5)
    assert [payment.amount for payment in payments] == [pytest.approx(49.99)]

    portal = await store.open_customer_portal()
    assert portal.ok
    assert portal.value.endswith(store.subscription.external_customer_id)


@pytest.mark.asyncio
async def test_create_checkout_returns_session(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)

    result = await store.create_checkout(PlanId.PRO, BillingPeriod.MONTHLY)

    assert result.ok
    assert result.value.session_id in backend.checkout_sessions


@pytest.mark.asyncio
async def test_customer_portal_without_customer_fails(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)

    result = await store.open_customer_portal()

    assert result.failed
    assert result.error_code == "no_customer"


@pytest.mark.asyncio
async def test_sync_failure_never_raises(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)
    await store.fetch_subscription()
    before = store.subscription

    result = await store.sync_checkout_session("cs_missing")

    assert result.outcome == ReconciliationOutcome.FAILED
    assert store.subscription is before


@pytest.mark.asyncio
async def test_unlimited_budgets_allow_any_count() -> None:
    store = _store(InMemorySubscriptionsBackend(_paid(PlanId.PREMIUM), clock=lambda: NOW))
    await store.fetch_subscription()

    assert store.get_plan_limits().budgets == -1
    assert store.can_create_budget(1000) is True
    assert store.has_advanced_calculators() is True
    assert store.get_reminders_limit() == 10


@pytest.mark.asyncio
async def test_finite_budgets_block_at_limit(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)
    await store.fetch_subscription()

    assert store.get_plan_limits().budgets == 2
    assert store.can_create_budget(2) is False
    assert store.can_create_reminder(1) is True
    assert store.can_create_reminder(2) is False


@pytest.mark.asyncio
async def test_native_purchase_flow_on_ios(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend, Platform.IOS)

    result = await store.purchase(PlanId.PRO, BillingPeriod.MONTHLY)

    assert result.ok
    assert result.value.status == PurchaseStatus.COMPLETED
    assert store.is_pro_plan() is True
    assert store.subscription.billing_provider == BillingProviderKind.NATIVE_IAP
    assert store.can_use_pro_notifications() is True

    cancel = await store.cancel_subscription()

    assert cancel.failed
    assert cancel.error_kind == ErrorKind.VALIDATION
    assert cancel.error_code == "managed_by_store"
    assert cancel.detail["manage_url"] == DEFAULT_STORE_MANAGE_URL
    assert store.subscription.cancel_at_period_end is False


@pytest.mark.asyncio
async def test_restore_purchases_is_idempotent(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend, Platform.IOS)
    await store.purchase(PlanId.PREMIUM, BillingPeriod.YEARLY)

    first = await store.restore_purchases()
    snapshot = store.entitlements()
    second = await store.restore_purchases()

    assert first.outcome == second.outcome == ReconciliationOutcome.IN_SYNC
    assert store.entitlements() == snapshot

    foreground = await store.on_foreground()
    assert foreground.outcome == ReconciliationOutcome.IN_SYNC


@pytest.mark.asyncio
async def test_fetch_plans_replaces_catalog(backend: InMemorySubscriptionsBackend) -> None:
    backend.catalog = PlanCatalog(plans=(DEFAULT_PLAN_CATALOG.get_plan(PlanId.FREE),))
    store = _store(backend)

    catalog = await store.fetch_plans()

    assert [plan.id for plan in catalog.list_plans()] == [PlanId.FREE]


@pytest.mark.asyncio
async def test_missing_catalog_plan_falls_back_to_built_in_limits() -> None:
    backend = InMemorySubscriptionsBackend(_paid(PlanId.PRO), clock=lambda: NOW)
    backend.catalog = PlanCatalog(plans=(DEFAULT_PLAN_CATALOG.get_plan(PlanId.FREE),))
    store = _store(backend)
    await store.fetch_plans()
    await store.fetch_subscription()

    assert store.get_plan_limits().reminders == -1
    assert store.can_export_pdf() is True


@pytest.mark.asyncio
async def test_invariant_violations_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    broken = Subscription(id="sub-x", plan=PlanId.PREMIUM, status=SubscriptionStatus.TRIALING)
    store = _store(InMemorySubscriptionsBackend(broken))
    caplog.set_level(logging.WARNING, logger="subscriptions.store")

    await store.fetch_subscription()

    assert any("no trial end" in record.getMessage() for record in caplog.records)
    assert store.is_trialing() is True


@pytest.mark.asyncio
async def test_assistant_usage_updates_locally(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)
    await store.fetch_subscription()

    store.update_assistant_usage(AssistantUsage(used=4, limit=15, remaining=11))

    assert store.get_assistant_usage().remaining == 11
    assert backend.subscription.assistant_usage is None


@pytest.mark.asyncio
async def test_reset_clears_state(backend: InMemorySubscriptionsBackend) -> None:
    store = _store(backend)
    await store.fetch_subscription()
    await store.fetch_plans()
    await store.open_customer_portal()

    store.reset()

    assert store.subscription is None
    assert store.payments == []
    assert store.error is None
    assert store.catalog is DEFAULT_PLAN_CATALOG
    assert store.is_free_plan() is True


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [SubscriptionStatus.CANCELED, SubscriptionStatus.UNPAID])
async def test_lapsed_paid_record_reads_as_free(status: SubscriptionStatus) -> None:
    backend = InMemorySubscriptionsBackend(_paid(PlanId.PRO, status=status), clock=lambda: NOW)
    store = _store(backend)
    await store.fetch_subscription()

    assert store.get_current_plan() == PlanId.FREE
    assert store.is_free_plan() is True
    assert store.is_pro_plan() is False
    assert store.entitlements().plan == PlanId.FREE
    assert store.can_export_pdf() is False


@pytest.mark.asyncio
async def test_past_due_record_keeps_its_plan() -> None:
    backend = InMemorySubscriptionsBackend(_paid(PlanId.PREMIUM, status=SubscriptionStatus.PAST_DUE), clock=lambda: NOW)
    store = _store(backend)
    await store.fetch_subscription()

    assert store.is_premium_plan() is True
    assert store.is_free_plan() is False


class CountingBackend(InMemorySubscriptionsBackend):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.change_plan_calls = 0

    async def change_plan(self, plan_id, billing_period):
        self.change_plan_calls += 1
        return await super().change_plan(plan_id, billing_period)


@pytest.mark.asyncio
async def test_trial_plan_change_with_pending_cancellation_makes_no_call() -> None:
    trialing = Subscription(
        id="sub-1",
        user_id="user-1",
        plan=PlanId.PREMIUM,
        status=SubscriptionStatus.TRIALING,
        billing_provider=BillingProviderKind.CHECKOUT,
        trial_ends_at=NOW + timedelta(days=4),
        cancel_at_period_end=True,
        can_use_trial=False,
    )
    backend = CountingBackend(trialing, clock=lambda: NOW)
    store = _store(backend)
    await store.fetch_subscription()

    result = await store.change_plan(PlanId.PRO)

    assert result.failed
    assert result.error_kind == ErrorKind.VALIDATION
    assert result.error_code == "cancellation_pending"
    assert backend.change_plan_calls == 0
    assert store.subscription.plan == PlanId.PREMIUM


@pytest.mark.asyncio
async def test_reset_keeps_in_flight_guard() -> None:
    backend = BlockingCancelBackend(_paid(PlanId.PREMIUM), clock=lambda: NOW)
    store = _store(backend)
    await store.fetch_subscription()

    pending = asyncio.ensure_future(store.cancel_subscription())
    await asyncio.sleep(0)
    store.reset()

    assert store.loading is True
    rejected = await store.change_plan(PlanId.PRO)
    assert rejected.error_code == "mutation_in_progress"

    backend.release.set()
    finished = await pending

    assert finished.ok
    assert store.loading is False


def test_default_device_info_is_stable() -> None:
    provider = default_device_info(Platform.ANDROID, "Pixel")

    first = provider()
    second = provider()

    assert first == second
    assert isinstance(first, DeviceRegistration)
    platform, epoch_ms, suffix = first.device_id.split("_")
    assert platform == "android"
    assert epoch_ms.isdigit()
    assert suffix


@pytest.mark.asyncio
async def test_native_session_opens_only_on_ios() -> None:
    sdk = SandboxPurchasesSdk()

    assert await open_native_session(_config(Platform.WEB), sdk, "user-1") is None

    session = await open_native_session(_config(Platform.IOS), sdk, "user-1")

    assert session is not None
    assert session.is_configured is True
    info = await sdk.get_customer_info()
    assert info.app_user_id == "user-1"
