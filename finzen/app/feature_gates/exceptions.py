"""Errors raised when a plan does not cover a capability or quota."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status

from ..entitlements.models import PlanId


@dataclass
class FeatureGateError(Exception):
    """A feature or quota check failed for the user's current plan.

    ``upgrade_to`` names the cheapest plan that would lift the restriction so
    clients can open the upgrade screen on the right plan.
    """

    code: str
    message: str
    status_code: int = status.HTTP_403_FORBIDDEN
    detail: Optional[Mapping[str, Any]] = None
    upgrade_to: Optional[PlanId] = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        body: Dict[str, Any] = dict(self.detail or {})
        body.update(error=self.code, message=self.message)
        if self.upgrade_to is not None:
            body["upgrade_to"] = self.upgrade_to.value
        return body

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))
