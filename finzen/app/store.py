"""Client side subscription store.

The store is the single cache of the user's subscription record and the
plan catalog. Every mutating command validates against the cached record,
calls the backend or billing provider, and then refetches the canonical
record instead of patching local state from the command's response. A
command that fails leaves the cached record untouched.

Commands return a :class:`CommandResult` with a succeeded / declined /
failed trichotomy so callers can tell a dismissed purchase sheet (no alert)
from a provider failure (alert with retry).

While a command is in flight further commands are rejected; the backend is
still the component that actually serialises writes for a subscription.
"""
from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, List, Mapping, Optional, TypeVar

from .billing.exceptions import ErrorKind, InvalidStateError, SubscriptionError
from .billing.models import (
    CheckoutSession,
    DeviceRegistration,
    Payment,
    Platform,
    PurchaseOutcome,
    PurchaseStatus,
    ReconciliationResult,
)
from .billing.providers import DisclosurePrompt, UrlOpener
from .billing.reconciliation import Reconciler
from .billing.service import SubscriptionService
from .billing.trials import trial_days_remaining
from .entitlements.catalog import DEFAULT_PLAN_CATALOG, PlanCatalog, PlanNotFoundError
from .entitlements.models import (
    AssistantUsage,
    BillingPeriod,
    Entitlements,
    Feature,
    PlanId,
    PlanLimits,
    Quota,
    Subscription,
    Usage,
)
from .entitlements.resolver import effective_plan, resolve
from .feature_gates.context import EntitlementContext

logger = logging.getLogger("subscriptions.store")

T = TypeVar("T")


class CommandStatus(str, Enum):
    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    FAILED = "failed"


@dataclass(frozen=True)
class CommandResult(Generic[T]):
    """Typed outcome of a store command."""

    status: CommandStatus
    value: Optional[T] = None
    error_kind: Optional[ErrorKind] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    detail: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: Optional[T] = None) -> "CommandResult[T]":
        return cls(status=CommandStatus.SUCCEEDED, value=value)

    @classmethod
    def declined_by_user(cls, value: Optional[T] = None) -> "CommandResult[T]":
        return cls(status=CommandStatus.DECLINED, value=value, error_kind=ErrorKind.DECLINED)

    @classmethod
    def from_error(cls, error: SubscriptionError) -> "CommandResult[T]":
        return cls(
            status=CommandStatus.FAILED,
            error_kind=error.kind,
            error_code=error.code,
            message=error.message,
            detail=dict(error.payload),
        )

    @property
    def ok(self) -> bool:
        return self.status == CommandStatus.SUCCEEDED

    @property
    def declined(self) -> bool:
        return self.status == CommandStatus.DECLINED

    @property
    def failed(self) -> bool:
        return self.status == CommandStatus.FAILED

    @property
    def retryable(self) -> bool:
        return self.failed and self.error_kind == ErrorKind.PROVIDER


DeviceInfoProvider = Callable[[], DeviceRegistration]


def default_device_info(platform: Platform, device_name: Optional[str] = None) -> DeviceInfoProvider:
    """Generate one device id per store: ``{platform}_{epoch_ms}_{random}``."""

    registration = DeviceRegistration(
        device_id=f"{platform.value}_{int(time.time() * 1000)}_{secrets.token_hex(6)}",
        platform=platform,
        device_name=device_name,
    )
    return lambda: registration


class SubscriptionStore:
    """Facade over the subscription engine consumed by the rest of the app."""

    def __init__(
        self,
        service: SubscriptionService,
        reconciler: Reconciler,
        *,
        platform: Platform = Platform.WEB,
        device_info: Optional[DeviceInfoProvider] = None,
        catalog: Optional[PlanCatalog] = None,
    ) -> None:
        self._service = service
        self._backend = service.backend
        self._reconciler = reconciler
        self._device_info = device_info or default_device_info(platform)
        self._catalog = catalog
        self._busy = False
        self.subscription: Optional[Subscription] = None
        self.payments: List[Payment] = []
        self.error: Optional[str] = None

    # -- state -----------------------------------------------------------

    @property
    def catalog(self) -> PlanCatalog:
        return self._catalog or DEFAULT_PLAN_CATALOG

    @property
    def loading(self) -> bool:
        return self._busy

    def _apply(self, subscription: Subscription) -> None:
        for violation in subscription.invariant_violations():
            logger.warning("Subscription %s from backend: %s", subscription.id, violation)
        self.subscription = subscription
        logger.debug(
            "Subscription refreshed plan=%s status=%s cancel_at_period_end=%s",
            subscription.plan.value,
            subscription.status.value,
            subscription.cancel_at_period_end,
        )

    async def fetch_subscription(self) -> Optional[Subscription]:
        try:
            subscription = await self._backend.get_current_subscription()
        except SubscriptionError as exc:
            logger.error("Fetching subscription failed: %s", exc.message)
            self.error = exc.message
            return None
        self._apply(subscription)
        return subscription

    async def fetch_plans(self) -> PlanCatalog:
        try:
            self._catalog = await self._backend.get_plans()
        except SubscriptionError as exc:
            logger.error("Fetching plans failed: %s", exc.message)
            self.error = exc.message
        return self.catalog

    async def fetch_payments(self, limit: int = 10) -> List[Payment]:
        try:
            self.payments = list(await self._backend.get_payments(limit))
        except SubscriptionError as exc:
            logger.error("Fetching payments failed: %s", exc.message)
            self.error = exc.message
        return self.payments

    def reset(self) -> None:
        self.subscription = None
        self._catalog = None
        self.payments = []
        self.error = None

    # -- commands --------------------------------------------------------

    async def _execute(
        self,
        name: str,
        operation: Callable[[Subscription], Awaitable[T]],
    ) -> CommandResult[T]:
        if self._busy:
            return CommandResult.from_error(
                InvalidStateError(code="mutation_in_progress", message="Another subscription change is in progress.")
            )

        self._busy = True
        self.error = None
        try:
            if self.subscription is None:
                self._apply(await self._backend.get_current_subscription())
            value = await operation(self.subscription)
            if isinstance(value, PurchaseOutcome) and value.status == PurchaseStatus.DECLINED:
                return CommandResult.declined_by_user(value)
            await self._refresh_after(name)
            return CommandResult.success(value)
        except SubscriptionError as exc:
            if exc.kind == ErrorKind.VALIDATION:
                logger.info("%s rejected: %s", name, exc.code)
            else:
                logger.error("%s failed: %s", name, exc.message)
            self.error = exc.message
            return CommandResult.from_error(exc)
        finally:
            self._busy = False

    async def _refresh_after(self, name: str) -> None:
        try:
            self._apply(await self._backend.get_current_subscription())
        except SubscriptionError as exc:
            # Mutation went through; the next fetch will pick up the new record.
            logger.warning("Refetch after %s failed: %s", name, exc.message)

    async def start_trial(self, plan_id: PlanId) -> CommandResult[Subscription]:
        device = self._device_info()
        return await self._execute(
            "start_trial",
            lambda current: self._service.start_trial(current, plan_id, device),
        )

    async def cancel_subscription(self) -> CommandResult[Any]:
        return await self._execute("cancel_subscription", self._service.cancel_subscription)

    async def reactivate_subscription(self) -> CommandResult[Any]:
        return await self._execute("reactivate_subscription", self._service.reactivate_subscription)

    async def change_plan(
        self,
        plan_id: PlanId,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    ) -> CommandResult[None]:
        return await self._execute(
            "change_plan",
            lambda current: self._service.change_plan(current, plan_id, billing_period),
        )

    async def create_checkout(
        self,
        plan_id: PlanId,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
    ) -> CommandResult[CheckoutSession]:
        return await self._execute(
            "create_checkout",
            lambda current: self._service.create_checkout(current, plan_id, billing_period),
        )

    async def purchase(
        self,
        plan_id: PlanId,
        billing_period: BillingPeriod = BillingPeriod.MONTHLY,
        *,
        confirm: Optional[DisclosurePrompt] = None,
        open_url: Optional[UrlOpener] = None,
    ) -> CommandResult[PurchaseOutcome]:
        return await self._execute(
            "purchase",
            lambda current: self._service.purchase(
                current, plan_id, billing_period, confirm=confirm, open_url=open_url
            ),
        )

    async def open_customer_portal(self) -> CommandResult[str]:
        try:
            url = await self._backend.create_customer_portal()
        except SubscriptionError as exc:
            self.error = exc.message
            return CommandResult.from_error(exc)
        return CommandResult.success(url)

    # -- reconciliation --------------------------------------------------

    def _absorb(self, result: ReconciliationResult) -> ReconciliationResult:
        if result.subscription is not None:
            self._apply(result.subscription)
        return result

    async def sync_checkout_session(self, session_id: str) -> ReconciliationResult:
        return self._absorb(await self._reconciler.sync_checkout_session(session_id))

    async def restore_purchases(self) -> ReconciliationResult:
        return self._absorb(await self._reconciler.restore_or_sync_native_purchases(restore=True))

    async def on_foreground(self) -> ReconciliationResult:
        return self._absorb(await self._reconciler.restore_or_sync_native_purchases())

    # -- derived reads ---------------------------------------------------

    def _resolving_catalog(self) -> PlanCatalog:
        plan_id = effective_plan(self.subscription)
        try:
            self.catalog.get_plan(plan_id)
        except PlanNotFoundError:
            logger.warning("Plan %s missing from fetched catalog, using built-in limits", plan_id.value)
            return DEFAULT_PLAN_CATALOG
        return self.catalog

    def entitlements(self, usage: Optional[Usage] = None) -> Entitlements:
        return resolve(self.subscription, self._resolving_catalog(), usage)

    def gate(self, usage: Optional[Usage] = None) -> EntitlementContext:
        return EntitlementContext(self.entitlements(usage), catalog=self.catalog)

    def get_current_plan(self) -> PlanId:
        return effective_plan(self.subscription)

    def is_free_plan(self) -> bool:
        return self.get_current_plan() == PlanId.FREE

    def is_premium_plan(self) -> bool:
        return self.get_current_plan() == PlanId.PREMIUM

    def is_pro_plan(self) -> bool:
        return self.get_current_plan() == PlanId.PRO

    def is_trialing(self) -> bool:
        return self.subscription is not None and self.subscription.is_trialing

    def get_trial_days_remaining(self) -> int:
        return trial_days_remaining(self.subscription, now=self._service.trial_manager.now())

    def get_trial_ends_at(self) -> Optional[datetime]:
        return self.subscription.trial_ends_at if self.subscription is not None else None

    def get_plan_limits(self) -> PlanLimits:
        return self._resolving_catalog().get_plan(effective_plan(self.subscription)).limits

    def can_create_budget(self, current_count: int) -> bool:
        return self.entitlements().can_create(Quota.BUDGETS, current_count)

    def can_create_goal(self, current_count: int) -> bool:
        return self.entitlements().can_create(Quota.GOALS, current_count)

    def can_create_reminder(self, current_count: int) -> bool:
        return self.entitlements().can_create(Quota.REMINDERS, current_count)

    def can_ask_assistant(self, current_count: int) -> bool:
        return self.entitlements().can_create(Quota.ASSISTANT_QUERIES, current_count)

    def get_reminders_limit(self) -> int:
        return self.get_plan_limits().reminders

    def has_advanced_reports(self) -> bool:
        return self.entitlements().has(Feature.ADVANCED_REPORTS)

    def can_export_data(self) -> bool:
        return self.entitlements().has(Feature.DATA_EXPORT)

    def can_export_pdf(self) -> bool:
        return self.entitlements().has(Feature.PDF_EXPORT)

    def can_use_text_to_speech(self) -> bool:
        return self.entitlements().has(Feature.TEXT_TO_SPEECH)

    def has_budget_alerts(self) -> bool:
        return self.entitlements().has(Feature.BUDGET_ALERTS)

    def has_advanced_calculators(self) -> bool:
        return self.entitlements().has(Feature.ADVANCED_CALCULATORS)

    def can_use_pro_notifications(self) -> bool:
        return self.entitlements().has(Feature.PRO_NOTIFICATIONS)

    def get_assistant_usage(self) -> AssistantUsage:
        if self.subscription is not None and self.subscription.assistant_usage is not None:
            return self.subscription.assistant_usage
        limit = self.get_plan_limits().assistant_queries
        return AssistantUsage(used=0, limit=limit, remaining=limit)

    def update_assistant_usage(self, usage: AssistantUsage) -> None:
        """Record usage reported by the assistant endpoint after each query."""

        if self.subscription is not None:
            self.subscription = self.subscription.model_copy(update={"assistant_usage": usage})


__all__ = [
    "CommandResult",
    "CommandStatus",
    "DeviceInfoProvider",
    "SubscriptionStore",
    "default_device_info",
]
