"""Pull authoritative billing state after asynchronous purchase events."""
from __future__ import annotations

import logging

from ..entitlements.models import PlanId
from .client import SubscriptionsBackend
from .models import ReconciliationOutcome, ReconciliationResult
from .native import plan_from_customer_info
from .providers import BillingProvider

logger = logging.getLogger("billing.reconciliation")


class Reconciler:
    """Idempotent synchronisation paths. Failures are logged, never raised.

    Checkout redirects finish in an external browser after the user has
    already returned, so a failed sync must not block the caller: the
    payment may still have succeeded and the next poll or foreground will
    pick it up.
    """

    def __init__(self, backend: SubscriptionsBackend, provider: BillingProvider) -> None:
        self._backend = backend
        self._provider = provider

    async def sync_checkout_session(self, session_id: str) -> ReconciliationResult:
        """Confirm a checkout session; only ``complete``/``paid`` updates state."""

        try:
            session = await self._backend.get_checkout_session(session_id)
            if not session.is_paid:
                logger.info(
                    "Checkout session %s not confirmed status=%s payment=%s",
                    session_id,
                    session.status,
                    session.payment_status,
                )
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.PENDING,
                    session_id=session_id,
                    detail=f"{session.status}/{session.payment_status}",
                )
            subscription = await self._backend.get_current_subscription()
        except Exception as exc:
            logger.warning("Checkout session %s sync failed: %s", session_id, exc, exc_info=True)
            return ReconciliationResult(
                outcome=ReconciliationOutcome.FAILED,
                session_id=session_id,
                detail=str(exc),
            )

        logger.info("Checkout session %s confirmed plan=%s", session_id, subscription.plan.value)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.CONFIRMED,
            subscription=subscription,
            session_id=session_id,
        )

    async def restore_or_sync_native_purchases(self, *, restore: bool = False) -> ReconciliationResult:
        """Compare native store ownership with the canonical backend record.

        Safe on every app foreground. ``restore`` asks the store to replay
        purchases first, which is only needed when the user requests it.
        """

        try:
            if restore:
                info = await self._provider.restore()
            else:
                info = await self._provider.get_customer_info()
            subscription = await self._backend.get_current_subscription()
        except Exception as exc:
            logger.warning("Native purchase sync failed: %s", exc, exc_info=True)
            return ReconciliationResult(outcome=ReconciliationOutcome.FAILED, detail=str(exc))

        if info is None:
            return ReconciliationResult(outcome=ReconciliationOutcome.IN_SYNC, subscription=subscription)

        native_plan = plan_from_customer_info(info)
        if native_plan != PlanId.FREE and native_plan != subscription.plan:
            # The store confirmed a purchase the backend has not processed yet.
            logger.warning(
                "Native ownership %s differs from backend plan %s for subscription=%s",
                native_plan.value,
                subscription.plan.value,
                subscription.id,
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.DRIFT,
                subscription=subscription,
                native_plan=native_plan,
                detail="backend has not confirmed the store purchase yet",
            )

        return ReconciliationResult(
            outcome=ReconciliationOutcome.IN_SYNC,
            subscription=subscription,
            native_plan=native_plan,
        )


__all__ = ["Reconciler"]
