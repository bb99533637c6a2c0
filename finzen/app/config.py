"""Subscription client configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

from .billing.models import Platform
from .billing.providers import DEFAULT_STORE_MANAGE_URL
from .billing.trials import DEFAULT_TRIAL_DAYS


@dataclass(frozen=True)
class SubscriptionConfig:
    """Configuration for the subscription engine."""

    api_base_url: str
    api_timeout: float
    platform: Platform
    trial_days: int
    native_api_key: str
    store_manage_url: str
    native_sandbox: bool


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_platform(value: Optional[str]) -> Platform:
    raw = (value or Platform.WEB.value).strip().lower() or Platform.WEB.value
    try:
        return Platform(raw)
    except ValueError as exc:
        raise ValueError(f"Unsupported platform {value!r}") from exc


def load_subscription_config(env: Optional[Mapping[str, str]] = None) -> SubscriptionConfig:
    """Load :class:`SubscriptionConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    api_base_url = env_mapping.get("FINZEN_API_BASE_URL", "http://localhost:3001/api")
    api_timeout = max(0.0, _to_float(env_mapping.get("FINZEN_API_TIMEOUT"), default=15.0))
    platform = _to_platform(env_mapping.get("FINZEN_PLATFORM"))
    trial_days = max(1, _to_int(env_mapping.get("FINZEN_TRIAL_DAYS"), default=DEFAULT_TRIAL_DAYS))

    return SubscriptionConfig(
        api_base_url=api_base_url.rstrip("/"),
        api_timeout=api_timeout,
        platform=platform,
        trial_days=trial_days,
        native_api_key=env_mapping.get("REVENUECAT_IOS_API_KEY", ""),
        store_manage_url=env_mapping.get("FINZEN_STORE_MANAGE_URL") or DEFAULT_STORE_MANAGE_URL,
        native_sandbox=_to_bool(env_mapping.get("FINZEN_NATIVE_SANDBOX"), default=True),
    )
