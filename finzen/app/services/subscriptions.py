"""Application wiring for the subscription store."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Set
from uuid import uuid4

from dotenv import load_dotenv

from ..billing import (
    CancellationReceipt,
    CheckoutSession,
    CheckoutSessionStatus,
    CustomerInfo,
    DeviceRegistration,
    HttpSubscriptionsBackend,
    InvalidStateError,
    NativePackage,
    NativePurchasesSession,
    Offerings,
    Payment,
    PaymentStatus,
    Platform,
    ProviderError,
    PurchasesSdk,
    Reconciler,
    StoreProduct,
    SubscriptionAuditEvent,
    SubscriptionEventLogger,
    SubscriptionService,
    SubscriptionsBackend,
    TrialManager,
    package_identifier,
    select_billing_provider,
)
from ..billing import trials
from ..billing.client import TokenProvider
from ..billing.native import parse_product_identifier
from ..config import SubscriptionConfig, load_subscription_config
from ..entitlements import (
    DEFAULT_PLAN_CATALOG,
    BillingPeriod,
    BillingProviderKind,
    PlanCatalog,
    PlanId,
    Subscription,
    SubscriptionStatus,
)
from ..store import DeviceInfoProvider, SubscriptionStore

logger = logging.getLogger("billing")

_PERIOD_DAYS = {BillingPeriod.MONTHLY: 30, BillingPeriod.YEARLY: 365}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoggingSubscriptionEventLogger(SubscriptionEventLogger):
    """Simple event logger forwarding subscription audit events to logging."""

    def log(self, event: SubscriptionAuditEvent) -> None:
        logger.info(
            "Subscription event %s subscription=%s actor=%s metadata=%s",
            event.event_type.value,
            event.subscription_id,
            event.actor_id,
            event.metadata,
        )


class InMemorySubscriptionsBackend:
    """Sandbox backend for local development and tests.

    Applies the same trial transitions the client validates against and
    keeps checkout sessions open until :meth:`complete_checkout_session`
    is called, the way a hosted page completes out of process.
    """

    def __init__(
        self,
        subscription: Optional[Subscription] = None,
        *,
        user_id: Optional[str] = None,
        catalog: PlanCatalog = DEFAULT_PLAN_CATALOG,
        clock: Optional[Callable[[], datetime]] = None,
        trial_days: int = trials.DEFAULT_TRIAL_DAYS,
        portal_url: str = "https://billing.local/portal",
    ) -> None:
        self._clock = clock or _utcnow
        self.subscription = subscription or Subscription(
            id=f"sub_{uuid4().hex[:12]}",
            user_id=user_id,
            created_at=self._clock(),
            updated_at=self._clock(),
        )
        self.catalog = catalog
        self.trial_days = trial_days
        self.portal_url = portal_url
        self.checkout_sessions: Dict[str, CheckoutSessionStatus] = {}
        self.checkout_plans: Dict[str, tuple] = {}
        self.devices: List[DeviceRegistration] = []
        self.payments: List[Payment] = []

    async def get_current_subscription(self) -> Subscription:
        return self.subscription

    async def get_plans(self) -> PlanCatalog:
        return self.catalog

    async def start_trial(self, plan_id: PlanId, device: DeviceRegistration) -> Mapping[str, Any]:
        self.subscription = self._guard(
            lambda: trials.start_trial(self.subscription, plan_id, now=self._clock(), trial_days=self.trial_days)
        )
        self.devices.append(device)
        return {
            "message": "Trial started",
            "trialEndsAt": self.subscription.trial_ends_at.isoformat() if self.subscription.trial_ends_at else None,
        }

    async def create_checkout_session(self, plan_id: PlanId, billing_period: BillingPeriod) -> CheckoutSession:
        session_id = f"cs_{uuid4().hex}"
        self.checkout_sessions[session_id] = CheckoutSessionStatus(status="open", payment_status="unpaid")
        self.checkout_plans[session_id] = (plan_id, billing_period)
        return CheckoutSession(url=f"https://billing.local/checkout/{session_id}", session_id=session_id)

    async def get_checkout_session(self, session_id: str) -> CheckoutSessionStatus:
        try:
            return self.checkout_sessions[session_id]
        except KeyError:
            raise ProviderError(code="checkout_session_not_found", message="Checkout session not found.") from None

    def complete_checkout_session(self, session_id: str, *, paid: bool = True) -> None:
        """Simulate the hosted page finishing; only a paid session activates the plan."""

        plan_id, billing_period = self.checkout_plans[session_id]
        if not paid:
            self.checkout_sessions[session_id] = CheckoutSessionStatus(status="complete", payment_status="unpaid")
            return
        self._activate(plan_id, billing_period, BillingProviderKind.CHECKOUT)
        self.checkout_sessions[session_id] = CheckoutSessionStatus(
            status="complete",
            payment_status="paid",
            subscription=self.subscription.external_subscription_id,
        )

    def apply_native_purchase(self, plan_id: PlanId, billing_period: BillingPeriod) -> None:
        """Simulate the store notification for a native purchase."""

        self._activate(plan_id, billing_period, BillingProviderKind.NATIVE_IAP)

    async def cancel(self) -> CancellationReceipt:
        current = self.subscription
        if current.is_trialing:
            self.subscription = trials.cancel_trial(current, now=self._clock())
            return CancellationReceipt(message="Trial canceled", cancel_at_period_end=False)
        if not current.is_paid:
            raise ProviderError(code="no_active_subscription", message="There is no active subscription.")
        self.subscription = current.model_copy(update={"cancel_at_period_end": True, "updated_at": self._clock()})
        return CancellationReceipt(
            message="Subscription will cancel at the end of the period",
            cancel_at_period_end=True,
            current_period_end=current.current_period_end,
        )

    async def reactivate(self) -> Mapping[str, Any]:
        if not self.subscription.cancel_at_period_end:
            raise ProviderError(code="not_pending_cancellation", message="The subscription is not being canceled.")
        self.subscription = self.subscription.model_copy(
            update={"cancel_at_period_end": False, "updated_at": self._clock()}
        )
        return {"message": "Subscription reactivated"}

    async def change_plan(self, plan_id: PlanId, billing_period: BillingPeriod) -> Mapping[str, Any]:
        current = self.subscription
        if current.is_trialing:
            self.subscription = self._guard(
                lambda: trials.change_plan_during_trial(current, plan_id, now=self._clock())
            )
        else:
            self.subscription = current.model_copy(update={"plan": plan_id, "updated_at": self._clock()})
        return {"message": f"Plan changed to {plan_id.value}", "billingPeriod": billing_period.value}

    async def get_payments(self, limit: int = 10) -> List[Payment]:
        return list(reversed(self.payments))[:limit]

    async def create_customer_portal(self) -> str:
        customer_id = self.subscription.external_customer_id
        if not customer_id:
            raise ProviderError(code="no_customer", message="No billing customer exists yet.")
        return f"{self.portal_url}/{customer_id}"

    def _activate(self, plan_id: PlanId, billing_period: BillingPeriod, provider: BillingProviderKind) -> None:
        now = self._clock()
        current = self.subscription
        self.subscription = current.model_copy(
            update={
                "plan": plan_id,
                "status": SubscriptionStatus.ACTIVE,
                "billing_provider": provider,
                "external_customer_id": current.external_customer_id or f"cus_{uuid4().hex[:12]}",
                "external_subscription_id": f"ext_{uuid4().hex[:12]}",
                "current_period_start": now,
                "current_period_end": now + timedelta(days=_PERIOD_DAYS[billing_period]),
                "cancel_at_period_end": False,
                "trial_ends_at": None,
                "updated_at": now,
            }
        )
        plan = self.catalog.get_plan(plan_id)
        self.payments.append(
            Payment(
                id=f"pay_{uuid4().hex[:12]}",
                amount=plan.price.amount_for(billing_period),
                status=PaymentStatus.SUCCEEDED,
                description=f"{plan.name} ({billing_period.value})",
                created_at=now,
            )
        )

    @staticmethod
    def _guard(transition: Callable[[], Subscription]) -> Subscription:
        try:
            return transition()
        except InvalidStateError as exc:
            raise ProviderError(code=exc.code, message=exc.message) from exc


class SandboxPurchasesSdk:
    """In-process stand-in for the native purchases SDK."""

    def __init__(
        self,
        *,
        catalog: PlanCatalog = DEFAULT_PLAN_CATALOG,
        on_purchase: Optional[Callable[[PlanId, BillingPeriod], None]] = None,
        product_prefix: str = "com.finzen.app",
    ) -> None:
        self._packages = tuple(
            NativePackage(
                identifier=package_identifier(plan.id, period),
                product=StoreProduct(
                    identifier=f"{product_prefix}.{package_identifier(plan.id, period)}",
                    price_string=f"${plan.price.amount_for(period):.2f}",
                    price=plan.price.amount_for(period),
                ),
            )
            for plan in catalog.paid_plans()
            for period in BillingPeriod
        )
        self._on_purchase = on_purchase
        self._app_user_id: Optional[str] = None
        self._active: Set[str] = set()

    def configure(self, api_key: str, app_user_id: str) -> None:
        self._app_user_id = app_user_id

    async def log_in(self, user_id: str) -> CustomerInfo:
        self._app_user_id = user_id
        return self._customer_info()

    async def log_out(self) -> None:
        self._app_user_id = None
        self._active.clear()

    async def get_offerings(self) -> Offerings:
        return Offerings(available_packages=self._packages)

    async def purchase_package(self, package: NativePackage) -> CustomerInfo:
        self._active = {package.product.identifier}
        parsed = parse_product_identifier(package.product.identifier)
        if parsed is not None and self._on_purchase is not None:
            self._on_purchase(*parsed)
        return self._customer_info()

    async def restore_purchases(self) -> CustomerInfo:
        return self._customer_info()

    async def get_customer_info(self) -> CustomerInfo:
        return self._customer_info()

    def _customer_info(self) -> CustomerInfo:
        entitlements = []
        for product in sorted(self._active):
            parsed = parse_product_identifier(product)
            if parsed is not None:
                entitlements.append(parsed[0].value.lower())
        return CustomerInfo(
            app_user_id=self._app_user_id,
            active_entitlements=tuple(entitlements),
            active_subscriptions=tuple(sorted(self._active)),
        )


def create_subscription_store(
    config: Optional[SubscriptionConfig] = None,
    *,
    token_provider: Optional[TokenProvider] = None,
    backend: Optional[SubscriptionsBackend] = None,
    sdk: Optional[PurchasesSdk] = None,
    device_info: Optional[DeviceInfoProvider] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SubscriptionStore:
    """Build a store with the billing provider chosen once for the platform."""

    if config is None:
        load_dotenv()
        config = load_subscription_config()

    if backend is None:
        backend = HttpSubscriptionsBackend(
            config.api_base_url,
            token_provider=token_provider,
            timeout=config.api_timeout,
        )

    if config.platform == Platform.IOS and sdk is None and config.native_sandbox:
        on_purchase = backend.apply_native_purchase if isinstance(backend, InMemorySubscriptionsBackend) else None
        sdk = SandboxPurchasesSdk(on_purchase=on_purchase)

    provider = select_billing_provider(
        config.platform,
        backend,
        sdk=sdk,
        store_manage_url=config.store_manage_url,
    )
    trial_manager = TrialManager(backend, clock=clock, trial_days=config.trial_days)
    service = SubscriptionService(
        backend=backend,
        provider=provider,
        trial_manager=trial_manager,
        event_logger=LoggingSubscriptionEventLogger(),
    )
    logger.info(
        "Subscription store wired platform=%s provider=%s",
        config.platform.value,
        provider.kind.value,
    )
    return SubscriptionStore(
        service,
        Reconciler(backend, provider),
        platform=config.platform,
        device_info=device_info,
    )


async def open_native_session(
    config: SubscriptionConfig,
    sdk: PurchasesSdk,
    user_id: str,
) -> Optional[NativePurchasesSession]:
    """Configure the native SDK for ``user_id`` on iOS; other platforms skip it."""

    if config.platform != Platform.IOS:
        return None
    if not config.native_api_key and not config.native_sandbox:
        logger.warning("Native purchases API key is not configured")
        return None
    session = NativePurchasesSession(sdk, config.native_api_key)
    await session.initialize(user_id)
    return session


__all__ = [
    "InMemorySubscriptionsBackend",
    "LoggingSubscriptionEventLogger",
    "SandboxPurchasesSdk",
    "create_subscription_store",
    "open_native_session",
]
