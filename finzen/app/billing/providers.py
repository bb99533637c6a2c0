"""Billing provider strategies for checkout redirects and native purchases."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Mapping, Optional

from ..entitlements.models import BillingPeriod, BillingProviderKind, PlanId, Subscription
from .client import SubscriptionsBackend
from .exceptions import ExternallyManagedError, NativePurchaseError, ProviderError
from .models import (
    CancellationReceipt,
    CheckoutSession,
    CustomerInfo,
    Offerings,
    Platform,
    PurchaseOutcome,
    PurchaseStatus,
)
from .native import PurchasesSdk, find_package

logger = logging.getLogger("billing")

DEFAULT_STORE_MANAGE_URL = "https://apps.apple.com/account/subscriptions"

DisclosurePrompt = Callable[[PlanId, BillingPeriod], Awaitable[bool]]
UrlOpener = Callable[[str], Awaitable[None]]


class BillingProvider(ABC):
    """Payment channel used to buy and manage paid plans."""

    kind: BillingProviderKind

    def __init__(
        self,
        backend: SubscriptionsBackend,
        *,
        store_manage_url: str = DEFAULT_STORE_MANAGE_URL,
    ) -> None:
        self._backend = backend
        self.store_manage_url = store_manage_url

    @abstractmethod
    async def purchase(
        self,
        plan_id: PlanId,
        billing_period: BillingPeriod,
        *,
        confirm: Optional[DisclosurePrompt] = None,
        open_url: Optional[UrlOpener] = None,
    ) -> PurchaseOutcome:
        """Buy ``plan_id``. A declined prompt or dismissed sheet yields ``DECLINED``."""

    @abstractmethod
    async def restore(self) -> Optional[CustomerInfo]:
        """Re-apply purchases already owned; safe to repeat."""

    @abstractmethod
    async def get_customer_info(self) -> Optional[CustomerInfo]:
        """Current ownership as seen by the provider, when it tracks one."""

    async def cancel_subscription(self, subscription: Subscription) -> CancellationReceipt:
        self._ensure_app_managed(subscription)
        receipt = await self._backend.cancel()
        logger.info(
            "Cancellation scheduled subscription=%s period_end=%s",
            subscription.id,
            receipt.current_period_end,
        )
        return receipt

    async def reactivate_subscription(self, subscription: Subscription) -> Mapping[str, Any]:
        self._ensure_app_managed(subscription)
        result = await self._backend.reactivate()
        logger.info("Subscription reactivated subscription=%s", subscription.id)
        return result

    async def change_plan(
        self,
        subscription: Subscription,
        plan_id: PlanId,
        billing_period: BillingPeriod,
    ) -> Mapping[str, Any]:
        """Switch paid plans; proration is computed by the payment provider."""

        self._ensure_app_managed(subscription)
        result = await self._backend.change_plan(plan_id, billing_period)
        logger.info(
            "Plan change requested subscription=%s %s -> %s (%s)",
            subscription.id,
            subscription.plan.value,
            plan_id.value,
            billing_period.value,
        )
        return result

    def _ensure_app_managed(self, subscription: Subscription) -> None:
        if subscription.billing_provider == BillingProviderKind.NATIVE_IAP:
            raise ExternallyManagedError(
                code="managed_by_store",
                message="This subscription is managed from the App Store settings.",
                manage_url=self.store_manage_url,
            )


class CheckoutRedirectProvider(BillingProvider):
    """Hosted checkout page opened in an external browser."""

    kind = BillingProviderKind.CHECKOUT

    async def create_checkout_session(self, plan_id: PlanId, billing_period: BillingPeriod) -> CheckoutSession:
        session = await self._backend.create_checkout_session(plan_id, billing_period)
        logger.info("Checkout session %s created for %s (%s)", session.session_id, plan_id.value, billing_period.value)
        return session

    async def purchase(
        self,
        plan_id: PlanId,
        billing_period: BillingPeriod,
        *,
        confirm: Optional[DisclosurePrompt] = None,
        open_url: Optional[UrlOpener] = None,
    ) -> PurchaseOutcome:
        if confirm is None or open_url is None:
            raise ValueError("checkout purchases require a disclosure prompt and a URL opener")

        if not await confirm(plan_id, billing_period):
            logger.info("Checkout disclosure declined for %s", plan_id.value)
            return PurchaseOutcome(status=PurchaseStatus.DECLINED, plan=plan_id, billing_period=billing_period)

        session = await self.create_checkout_session(plan_id, billing_period)
        await open_url(session.url)
        return PurchaseOutcome(
            status=PurchaseStatus.PENDING,
            plan=plan_id,
            billing_period=billing_period,
            session_id=session.session_id,
            checkout_url=session.url,
        )

    async def restore(self) -> Optional[CustomerInfo]:
        return None

    async def get_customer_info(self) -> Optional[CustomerInfo]:
        return None


class NativePurchaseProvider(BillingProvider):
    """Store-mediated purchase sheet on iOS."""

    kind = BillingProviderKind.NATIVE_IAP

    def __init__(
        self,
        backend: SubscriptionsBackend,
        sdk: PurchasesSdk,
        *,
        store_manage_url: str = DEFAULT_STORE_MANAGE_URL,
    ) -> None:
        super().__init__(backend, store_manage_url=store_manage_url)
        self._sdk = sdk

    async def get_offerings(self) -> Offerings:
        try:
            return await self._sdk.get_offerings()
        except Exception as exc:
            logger.error("Fetching store offerings failed: %s", exc)
            raise ProviderError(code="offerings_unavailable", message="Store products are unavailable.") from exc

    async def purchase(
        self,
        plan_id: PlanId,
        billing_period: BillingPeriod,
        *,
        confirm: Optional[DisclosurePrompt] = None,
        open_url: Optional[UrlOpener] = None,
    ) -> PurchaseOutcome:
        offerings = await self.get_offerings()
        package = find_package(offerings, plan_id, billing_period)
        try:
            info = await self._sdk.purchase_package(package)
        except NativePurchaseError as exc:
            if exc.user_cancelled:
                logger.info("Native purchase sheet dismissed for %s", package.identifier)
                return PurchaseOutcome(status=PurchaseStatus.DECLINED, plan=plan_id, billing_period=billing_period)
            logger.error("Native purchase of %s failed: %s", package.identifier, exc)
            raise ProviderError(code=exc.code or "purchase_failed", message=str(exc)) from exc

        logger.info("Native purchase of %s completed", package.identifier)
        return PurchaseOutcome(
            status=PurchaseStatus.COMPLETED,
            plan=plan_id,
            billing_period=billing_period,
            customer_info=info,
        )

    async def restore(self) -> Optional[CustomerInfo]:
        try:
            info = await self._sdk.restore_purchases()
        except Exception as exc:
            raise ProviderError(code="restore_failed", message="Purchases could not be restored.") from exc
        logger.info("Native purchases restored active=%s", list(info.active_subscriptions))
        return info

    async def get_customer_info(self) -> Optional[CustomerInfo]:
        try:
            return await self._sdk.get_customer_info()
        except Exception as exc:
            raise ProviderError(code="customer_info_unavailable", message="Store purchases are unavailable.") from exc


def select_billing_provider(
    platform: Platform,
    backend: SubscriptionsBackend,
    *,
    sdk: Optional[PurchasesSdk] = None,
    store_manage_url: str = DEFAULT_STORE_MANAGE_URL,
) -> BillingProvider:
    """Pick the provider for ``platform`` once, at composition time."""

    if platform == Platform.IOS:
        if sdk is None:
            raise ValueError("iOS requires a native purchases SDK")
        return NativePurchaseProvider(backend, sdk, store_manage_url=store_manage_url)
    return CheckoutRedirectProvider(backend, store_manage_url=store_manage_url)


__all__ = [
    "BillingProvider",
    "CheckoutRedirectProvider",
    "DEFAULT_STORE_MANAGE_URL",
    "DisclosurePrompt",
    "NativePurchaseProvider",
    "UrlOpener",
    "select_billing_provider",
]
