"""Application wiring for the premium service."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..premium import (
    LifecycleSnapshot,
    PremiumService,
    PremiumSubscription,
    ReminderNotifier,
    load_premium_config,
)
from ..premium.repository import PostgresPremiumStore


logger = logging.getLogger("premium")


class LoggingReminderNotifier(ReminderNotifier):
    """Notifier that records payment reminders to the application logger."""

    def notify_payment_reminder(
        self, subscription: PremiumSubscription, snapshot: LifecycleSnapshot
    ) -> None:
        logger.warning(
            "Payment reminder for premium subscription %s user=%s grace_ends=%s",
            subscription.id,
            subscription.user_id,
            snapshot.grace_period_ends_at.isoformat() if snapshot.grace_period_ends_at else None,
        )


@lru_cache(maxsize=1)
def get_premium_service() -> PremiumService:
    config = load_premium_config()
    store = PostgresPremiumStore(statement_timeout_ms=config.transaction_timeout_ms)
    service = PremiumService(
        store=store,
        notifier=LoggingReminderNotifier(),
        config=config,
    )
    return service


__all__ = ["get_premium_service", "LoggingReminderNotifier"]
