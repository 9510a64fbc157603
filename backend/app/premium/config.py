"""Premium engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
import os

from .models import PremiumTier


@dataclass(frozen=True)
class PremiumConfig:
    """Tunables for billing-lifecycle reconciliation."""

    grace_period_days: int = 7
    reminder_throttle_hours: int = 24
    default_period_days: int = 30
    transaction_timeout_ms: int = 5000
    reminder_interval_seconds: float = 3600.0
    reminder_scheduler_enabled: bool = False
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance_seconds: int = 300
    stripe_secret_key: Optional[str] = None
    stripe_price_ids: Dict[str, str] = field(default_factory=dict)


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


def price_id_env_key(tier: PremiumTier) -> str:
    return f"STRIPE_PRICE_ID_{tier.value}"


def _price_ids(env_mapping: Mapping[str, str]) -> Dict[str, str]:
    price_ids = {}
    for tier in PremiumTier:
        value = (env_mapping.get(price_id_env_key(tier)) or "").strip()
        if value:
            price_ids[tier.value] = value
    return price_ids


def load_premium_config(env: Optional[Mapping[str, str]] = None) -> PremiumConfig:
    """Load :class:`PremiumConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    return PremiumConfig(
        grace_period_days=max(0, _to_int(env_mapping.get("PREMIUM_GRACE_PERIOD_DAYS"), default=7)),
        reminder_throttle_hours=max(
            0, _to_int(env_mapping.get("PREMIUM_REMINDER_THROTTLE_HOURS"), default=24)
        ),
        default_period_days=max(1, _to_int(env_mapping.get("PREMIUM_DEFAULT_PERIOD_DAYS"), default=30)),
        transaction_timeout_ms=max(
            0, _to_int(env_mapping.get("PREMIUM_TRANSACTION_TIMEOUT_MS"), default=5000)
        ),
        reminder_interval_seconds=max(
            60.0, _to_float(env_mapping.get("PREMIUM_REMINDER_INTERVAL_SECONDS"), default=3600.0)
        ),
        reminder_scheduler_enabled=_to_bool(
            env_mapping.get("PREMIUM_REMINDER_SCHEDULER_ENABLED"), default=False
        ),
        stripe_webhook_secret=(env_mapping.get("STRIPE_WEBHOOK_SECRET") or "").strip() or None,
        stripe_webhook_tolerance_seconds=max(
            0, _to_int(env_mapping.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS"), default=300)
        ),
        stripe_secret_key=(env_mapping.get("STRIPE_SECRET_KEY") or "").strip() or None,
        stripe_price_ids=_price_ids(env_mapping),
    )


__all__ = ["PremiumConfig", "load_premium_config", "price_id_env_key"]
