"""REST client for the backend subscription API."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, TypeVar

import httpx
from pydantic import ValidationError

from ..entitlements.catalog import PlanCatalog
from ..entitlements.models import BillingPeriod, PlanId, Subscription
from .exceptions import ProviderError
from .models import (
    CancellationReceipt,
    CheckoutSession,
    CheckoutSessionStatus,
    DeviceRegistration,
    Payment,
)

logger = logging.getLogger("billing")

T = TypeVar("T")


class SubscriptionsBackend(Protocol):
    """Operations the client needs from the backend subscription API."""

    async def get_current_subscription(self) -> Subscription:
        ...

    async def get_plans(self) -> PlanCatalog:
        ...

    async def start_trial(self, plan_id: PlanId, device: DeviceRegistration) -> Mapping[str, Any]:
        ...

    async def create_checkout_session(self, plan_id: PlanId, billing_period: BillingPeriod) -> CheckoutSession:
        ...

    async def get_checkout_session(self, session_id: str) -> CheckoutSessionStatus:
        ...

    async def cancel(self) -> CancellationReceipt:
        ...

    async def reactivate(self) -> Mapping[str, Any]:
        ...

    async def change_plan(self, plan_id: PlanId, billing_period: BillingPeriod) -> Mapping[str, Any]:
        ...

    async def get_payments(self, limit: int = 10) -> Sequence[Payment]:
        ...

    async def create_customer_portal(self) -> str:
        ...


TokenProvider = Callable[[], Optional[str]]


class HttpSubscriptionsBackend:
    """:class:`SubscriptionsBackend` speaking JSON over HTTP with ``httpx``."""

    def __init__(
        self,
        base_url: str,
        *,
        token_provider: Optional[TokenProvider] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HttpSubscriptionsBackend":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self._token_provider() if self._token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Subscription API %s %s failed: %s", method, path, exc)
            raise ProviderError(
                code="network_error",
                message="Could not reach the subscription service.",
                detail={"path": path},
            ) from exc

        if response.is_error:
            body = _safe_json(response)
            logger.error(
                "Subscription API %s %s returned %s: %s",
                method,
                path,
                response.status_code,
                body,
            )
            raise ProviderError(
                code=str(body.get("error") or "backend_error"),
                message=str(body.get("message") or f"Subscription service error ({response.status_code})."),
                detail={"status_code": response.status_code, "path": path},
            )

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("Subscription API %s %s returned a body that is not JSON", method, path)
            raise _invalid_response(path) from exc
        if not isinstance(payload, dict):
            logger.error("Subscription API %s %s returned a non-object body", method, path)
            raise _invalid_response(path)
        return payload

    async def get_current_subscription(self) -> Subscription:
        path = "/subscriptions/current"
        payload = await self._request("GET", path)
        return _parse(path, Subscription.model_validate, _unwrap(payload, "subscription"))

    async def get_plans(self) -> PlanCatalog:
        path = "/subscriptions/plans"
        payload = await self._request("GET", path)
        return _parse(path, PlanCatalog.from_payload, payload.get("plans", []))

    async def start_trial(self, plan_id: PlanId, device: DeviceRegistration) -> Mapping[str, Any]:
        body = {"plan": plan_id.value, **device.model_dump(by_alias=True, mode="json")}
        return await self._request("POST", "/subscriptions/start-trial", json=body)

    async def create_checkout_session(self, plan_id: PlanId, billing_period: BillingPeriod) -> CheckoutSession:
        path = "/subscriptions/checkout"
        payload = await self._request(
            "POST",
            path,
            json={"plan": plan_id.value, "billingPeriod": billing_period.value},
        )
        return _parse(path, CheckoutSession.model_validate, payload)

    async def get_checkout_session(self, session_id: str) -> CheckoutSessionStatus:
        path = f"/subscriptions/checkout/{session_id}"
        payload = await self._request("GET", path)
        return _parse(path, CheckoutSessionStatus.model_validate, payload)

    async def cancel(self) -> CancellationReceipt:
        path = "/subscriptions/cancel"
        payload = await self._request("POST", path)
        return _parse(path, CancellationReceipt.model_validate, payload)

    async def reactivate(self) -> Mapping[str, Any]:
        return await self._request("POST", "/subscriptions/reactivate")

    async def change_plan(self, plan_id: PlanId, billing_period: BillingPeriod) -> Mapping[str, Any]:
        return await self._request(
            "POST",
            "/subscriptions/change-plan",
            json={"plan": plan_id.value, "billingPeriod": billing_period.value},
        )

    async def get_payments(self, limit: int = 10) -> List[Payment]:
        path = "/subscriptions/payments"
        payload = await self._request("GET", path, params={"limit": limit})
        return _parse(path, lambda items: [Payment.model_validate(item) for item in items], payload.get("payments", []))

    async def create_customer_portal(self) -> str:
        payload = await self._request("POST", "/subscriptions/customer-portal")
        return str(payload.get("url", ""))


def _invalid_response(path: str) -> ProviderError:
    return ProviderError(
        code="invalid_response",
        message="The subscription service sent an unexpected response.",
        detail={"path": path},
    )


def _parse(path: str, build: Callable[[Any], T], payload: Any) -> T:
    try:
        return build(payload)
    except (ValidationError, TypeError) as exc:
        logger.error("Subscription API %s returned a malformed body: %s", path, exc)
        raise _invalid_response(path) from exc


def _safe_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _unwrap(payload: Any, key: str) -> Any:
    if isinstance(payload, dict) and isinstance(payload.get(key), dict):
        return payload[key]
    return payload


__all__ = ["HttpSubscriptionsBackend", "SubscriptionsBackend", "TokenProvider"]
