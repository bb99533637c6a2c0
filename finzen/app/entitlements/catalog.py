"""Static catalog definitions for purchasable plans."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Tuple

from .models import (
    AntExpenseAnalysis,
    Feature,
    PeriodicPrice,
    Plan,
    PlanId,
    PlanLimits,
    UNLIMITED,
)


class PlanNotFoundError(LookupError):
    """Raised when a plan id is not part of the catalog."""

    def __init__(self, plan_id: object) -> None:
        self.plan_id = plan_id
        super().__init__(f"Unknown plan: {plan_id}")


FREE_LIMITS = PlanLimits(
    budgets=2,
    goals=1,
    assistant_queries=15,
    reminders=2,
)

PREMIUM_LIMITS = PlanLimits(
    budgets=UNLIMITED,
    goals=UNLIMITED,
    assistant_queries=UNLIMITED,
    reminders=10,
    data_export=True,
    text_to_speech=True,
    budget_alerts=True,
    advanced_calculators=True,
    ant_expense_analysis=AntExpenseAnalysis.FULL,
)

PRO_LIMITS = PlanLimits(
    budgets=UNLIMITED,
    goals=UNLIMITED,
    assistant_queries=UNLIMITED,
    reminders=UNLIMITED,
    advanced_reports=True,
    data_export=True,
    pdf_export=True,
    text_to_speech=True,
    budget_alerts=True,
    advanced_calculators=True,
    bank_integration=True,
    ant_expense_analysis=AntExpenseAnalysis.FULL,
)


@dataclass(frozen=True)
class PlanCatalog:
    """Immutable, ordered set of plans loaded once per session."""

    plans: Tuple[Plan, ...]

    def __post_init__(self) -> None:
        ids = [plan.id for plan in self.plans]
        if len(ids) != len(set(ids)):
            raise ValueError("plan catalog contains duplicate plan ids")
        if PlanId.FREE not in ids:
            raise ValueError("plan catalog must contain the FREE plan")

    @classmethod
    def from_payload(cls, payload: Iterable[Mapping[str, object]]) -> "PlanCatalog":
        """Build a catalog from the backend ``plans`` listing."""

        return cls(plans=tuple(Plan.model_validate(entry) for entry in payload))

    def get_plan(self, plan_id: PlanId) -> Plan:
        for plan in self.plans:
            if plan.id == plan_id:
                return plan
        raise PlanNotFoundError(plan_id)

    def list_plans(self) -> Tuple[Plan, ...]:
        return self.plans

    def paid_plans(self) -> Tuple[Plan, ...]:
        return tuple(plan for plan in self.plans if plan.id.is_paid)

    def cheapest_plan_with(self, feature: Feature) -> Optional[Plan]:
        """Return the lowest priced plan whose limits table grants ``feature``."""

        candidates = [plan for plan in self.plans if plan.limits.flag_for(feature)]
        if not candidates:
            return None
        return min(candidates, key=lambda plan: plan.price.monthly)


DEFAULT_PLANS: Tuple[Plan, ...] = (
    Plan(
        id=PlanId.FREE,
        name="Gratis",
        price=0,
        limits=FREE_LIMITS,
        features=(
            "2 active budgets",
            "1 savings goal",
            "15 assistant queries per month",
            "Financial calculators",
        ),
    ),
    Plan(
        id=PlanId.PREMIUM,
        name="Plus",
        price=PeriodicPrice(monthly=4.99, yearly=49.99),
        limits=PREMIUM_LIMITS,
        features=(
            "Unlimited budgets",
            "Unlimited goals",
            "Unlimited assistant",
            "Budget alerts",
            "CSV export",
        ),
    ),
    Plan(
        id=PlanId.PRO,
        name="Pro",
        price=PeriodicPrice(monthly=9.99, yearly=99.99),
        limits=PRO_LIMITS,
        features=(
            "Everything in Plus",
            "Email transaction sync",
            "Bi-weekly AI reports",
            "PDF export",
            "Unlimited reminders",
        ),
    ),
)

DEFAULT_PLAN_CATALOG = PlanCatalog(plans=DEFAULT_PLANS)


def get_plan_definition(plan_id: PlanId) -> Plan:
    """Return a plan from the built-in catalog, raising if unsupported."""

    return DEFAULT_PLAN_CATALOG.get_plan(plan_id)
