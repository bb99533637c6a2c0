"""Native in-app purchase SDK surface and package identifier helpers."""
from __future__ import annotations

import logging
from typing import Optional, Protocol, Tuple

from ..entitlements.models import BillingPeriod, PlanId
from .exceptions import PackageNotFoundError
from .models import CustomerInfo, NativePackage, Offerings

logger = logging.getLogger("billing.native")


class PurchasesSdk(Protocol):
    """Store purchase SDK as consumed by the app.

    ``purchase_package`` raises :class:`~.exceptions.NativePurchaseError`;
    ``user_cancelled`` distinguishes a dismissed sheet from a failure.
    """

    def configure(self, api_key: str, app_user_id: str) -> None:
        ...

    async def log_in(self, user_id: str) -> CustomerInfo:
        ...

    async def log_out(self) -> None:
        ...

    async def get_offerings(self) -> Offerings:
        ...

    async def purchase_package(self, package: NativePackage) -> CustomerInfo:
        ...

    async def restore_purchases(self) -> CustomerInfo:
        ...

    async def get_customer_info(self) -> CustomerInfo:
        ...


def package_identifier(plan_id: PlanId, billing_period: BillingPeriod) -> str:
    """Identifier convention shared by packages and products, e.g. ``premium_monthly``."""

    return f"{plan_id.value.lower()}_{billing_period.value}"


def find_package(offerings: Offerings, plan_id: PlanId, billing_period: BillingPeriod) -> NativePackage:
    """Match by package identifier first, then by underlying product identifier."""

    wanted = package_identifier(plan_id, billing_period)
    packages = offerings.available_packages
    for package in packages:
        if package.identifier == wanted:
            return package
    for package in packages:
        if package.product.identifier == wanted:
            return package
    raise PackageNotFoundError(
        code="package_not_found",
        message=f"No store package is available for {wanted}.",
        detail={"package": wanted},
    )


def parse_product_identifier(identifier: str) -> Optional[Tuple[PlanId, BillingPeriod]]:
    """Reverse of :func:`package_identifier`; tolerates reverse-DNS prefixes."""

    tail = identifier.rsplit(".", 1)[-1].lower()
    plan_part, _, period_part = tail.rpartition("_")
    try:
        return PlanId(plan_part.upper()), BillingPeriod(period_part)
    except ValueError:
        return None


def plan_from_customer_info(info: Optional[CustomerInfo]) -> PlanId:
    """Highest plan the native store says the customer currently owns."""

    if info is None:
        return PlanId.FREE
    owned = set()
    for entitlement in info.active_entitlements:
        try:
            owned.add(PlanId(entitlement.upper()))
        except ValueError:
            logger.debug("Ignoring unknown native entitlement %s", entitlement)
    for product in info.active_subscriptions:
        parsed = parse_product_identifier(product)
        if parsed is not None:
            owned.add(parsed[0])
    if PlanId.PRO in owned:
        return PlanId.PRO
    if PlanId.PREMIUM in owned:
        return PlanId.PREMIUM
    return PlanId.FREE


class NativePurchasesSession:
    """Tracks SDK configuration for the signed-in user."""

    def __init__(self, sdk: PurchasesSdk, api_key: str) -> None:
        self._sdk = sdk
        self._api_key = api_key
        self._configured = False

    @property
    def is_configured(self) -> bool:
        return self._configured

    async def initialize(self, user_id: str) -> None:
        if self._configured:
            logger.info("Native purchases already configured, identifying %s", user_id)
            await self.log_in(user_id)
            return
        self._sdk.configure(self._api_key, user_id)
        self._configured = True
        logger.info("Native purchases configured for %s", user_id)

    async def log_in(self, user_id: str) -> Optional[CustomerInfo]:
        try:
            info = await self._sdk.log_in(user_id)
        except Exception:
            logger.error("Native purchases login failed for %s", user_id, exc_info=True)
            return None
        logger.info("Native purchases login for %s", user_id)
        return info

    async def log_out(self) -> None:
        try:
            await self._sdk.log_out()
        except Exception:
            logger.error("Native purchases logout failed", exc_info=True)
            return
        self._configured = False
        logger.info("Native purchases logout")


__all__ = [
    "NativePurchasesSession",
    "PurchasesSdk",
    "find_package",
    "package_identifier",
    "parse_product_identifier",
    "plan_from_customer_info",
]
