"""Service coordinating premium subscriptions, webhooks, and dunning reminders."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from .config import PremiumConfig
from .entitlements import ensure_default_entitlements
from .lifecycle import LIFECYCLE_KEY, encode_lifecycle, merge_metadata, resolve_lifecycle_state
from .metrics import (
    DEFAULT_WINDOW_DAYS,
    build_timeseries,
    clamp_window_days,
    conversion_rates,
    count_totals,
    count_unique_converters,
    metric_windows,
    rates_delta,
    totals_delta,
)
from .models import (
    BillingIdentifiers,
    DunningState,
    LifecyclePatch,
    LifecycleSnapshot,
    MetricsComparison,
    MetricsDelta,
    MetricsFilter,
    MetricsWindow,
    PremiumConversionEvent,
    PremiumConversionEventType,
    PremiumConversionMetrics,
    PremiumProfile,
    PremiumSubscription,
    PremiumSubscriptionStatus,
    PremiumTier,
    PremiumWebhookEvent,
    ReminderDispatchSummary,
    UniqueConverters,
    WindowTotals,
)
from .profile import build_profile
from .repository import PremiumStore, SubscriptionLookupField
from .stripe_gateway import PremiumCheckoutSession, create_checkout_session
from .webhooks import WebhookReconciler, new_subscription_id

logger = logging.getLogger(__name__)


class ReminderNotifier(Protocol):
    """Delivers payment reminders to subscribers in dunning."""

    def notify_payment_reminder(
        self, subscription: PremiumSubscription, snapshot: LifecycleSnapshot
    ) -> None:
        ...


def _raw_reminder_marker(metadata: Dict[str, Any]) -> Optional[str]:
    """Stored ``lastReminderSentAt`` exactly as the database compares it."""

    document = metadata.get(LIFECYCLE_KEY) if isinstance(metadata, dict) else None
    if not isinstance(document, dict):
        return None
    value = document.get("lastReminderSentAt")
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value)


@dataclass
class PremiumService:
    """Entry point for every premium read and mutation.

    Each public operation runs inside a single unit of work opened on
    ``store``; failures roll the unit back and propagate to the caller.
    """

    store: PremiumStore
    notifier: ReminderNotifier
    config: PremiumConfig = field(default_factory=PremiumConfig)
    clock: Optional[Callable[[], datetime]] = None

    def __post_init__(self) -> None:
        self._reconciler = WebhookReconciler(grace_period_days=self.config.grace_period_days)

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    def get_profile(self, user_id: str, *, now: Optional[datetime] = None) -> PremiumProfile:
        now = now or self._now()
        with self.store.transaction() as repository:
            subscription = repository.find_latest_subscription(SubscriptionLookupField.USER_ID, user_id)
            grants = repository.list_entitlements(subscription.id) if subscription is not None else []
            return build_profile(subscription, grants, now)

    def upsert_subscription(
        self,
        user_id: str,
        tier: PremiumTier,
        status: PremiumSubscriptionStatus = PremiumSubscriptionStatus.ACTIVE,
        *,
        source: Optional[str] = None,
        billing: Optional[BillingIdentifiers] = None,
        lifecycle_patch: Optional[LifecyclePatch] = None,
        now: Optional[datetime] = None,
    ) -> PremiumProfile:
        """Create or update the user's latest subscription and return the fresh profile."""

        now = now or self._now()
        with self.store.transaction() as repository:
            existing = repository.find_latest_subscription(SubscriptionLookupField.USER_ID, user_id)

            metadata: Dict[str, Any] = dict(existing.metadata) if existing is not None else {}
            if source is not None:
                metadata = merge_metadata(metadata, source=source)
            if lifecycle_patch is not None:
                metadata = encode_lifecycle(metadata, lifecycle_patch)

            period_end = existing.current_period_ends_at if existing is not None else None
            if period_end is None and status != PremiumSubscriptionStatus.CANCELED:
                period_end = now + timedelta(days=self.config.default_period_days)

            cancellation_requested_at = existing.cancellation_requested_at if existing is not None else None
            transitioning_to_canceled = status == PremiumSubscriptionStatus.CANCELED and (
                existing is None or existing.status != PremiumSubscriptionStatus.CANCELED
            )
            if transitioning_to_canceled:
                cancellation_requested_at = now

            changes: Dict[str, Any] = {
                "tier": tier,
                "status": status,
                "current_period_ends_at": period_end,
                "cancellation_requested_at": cancellation_requested_at,
                "metadata": metadata,
                "updated_at": now,
            }
            if billing is not None:
                changes.update(billing.as_update())

            if existing is not None:
                subscription = existing.model_copy(update=changes)
            else:
                subscription = PremiumSubscription(
                    id=new_subscription_id(),
                    user_id=user_id,
                    started_at=now,
                    created_at=now,
                    **changes,
                )

            persisted = repository.save_subscription(subscription)
            if persisted.is_active:
                ensure_default_entitlements(repository, persisted)

            logger.info(
                "Upserted premium subscription %s user=%s tier=%s status=%s",
                persisted.id,
                user_id,
                persisted.tier.value,
                persisted.status.value,
                extra={"source": source},
            )
            return build_profile(persisted, repository.list_entitlements(persisted.id), now)

    def handle_webhook(
        self, event: PremiumWebhookEvent, *, now: Optional[datetime] = None
    ) -> Optional[PremiumSubscription]:
        now = now or self._now()
        with self.store.transaction() as repository:
            return self._reconciler.reconcile(repository, event, now)

    def create_checkout_session(
        self,
        user_id: str,
        tier: PremiumTier,
        *,
        intent: str,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        trial_period_days: Optional[int] = None,
    ) -> PremiumCheckoutSession:
        """Start a hosted checkout, reusing the Stripe customer of the latest subscription."""

        with self.store.transaction() as repository:
            existing = repository.find_latest_subscription(SubscriptionLookupField.USER_ID, user_id)

        return create_checkout_session(
            user_id=user_id,
            tier=tier,
            intent=intent,
            success_url=success_url,
            cancel_url=cancel_url,
            config=self.config,
            existing_customer_id=existing.stripe_customer_id if existing is not None else None,
            email=email,
            name=name,
            trial_period_days=trial_period_days,
        )

    def dispatch_reminders(self, now: Optional[datetime] = None) -> ReminderDispatchSummary:
        """Send at most one payment reminder per subscription per throttle window.

        The slot is claimed with a compare-and-swap on the stored reminder
        marker, so concurrent dispatchers never notify the same subscriber
        twice for the same window.
        """

        now = now or self._now()
        throttle = timedelta(hours=self.config.reminder_throttle_hours)

        with self.store.transaction() as repository:
            candidates = list(repository.list_subscriptions_by_status(PremiumSubscriptionStatus.EXPIRED))

        reminders_sent = 0
        skipped = 0
        for subscription in candidates:
            snapshot = resolve_lifecycle_state(subscription, now)
            if snapshot.dunning_state != DunningState.PAYMENT_FAILED or not snapshot.is_in_grace_period:
                skipped += 1
                continue
            last_sent = snapshot.last_reminder_sent_at
            if last_sent is not None and now - last_sent < throttle:
                skipped += 1
                continue

            with self.store.transaction() as repository:
                claimed = repository.mark_reminder_sent(
                    subscription.id,
                    sent_at=now,
                    expected_previous=_raw_reminder_marker(subscription.metadata),
                )
                if claimed is None:
                    logger.debug("Reminder slot for subscription %s already claimed", subscription.id)
                    skipped += 1
                    continue
                self.notifier.notify_payment_reminder(claimed, resolve_lifecycle_state(claimed, now))
            reminders_sent += 1

        logger.info(
            "Premium reminder dispatch finished sent=%s skipped=%s",
            reminders_sent,
            skipped,
        )
        return ReminderDispatchSummary(reminders_sent=reminders_sent, skipped=skipped)

    def record_conversion_event(
        self,
        user_id: Optional[str],
        event_type: PremiumConversionEventType,
        *,
        tier: Optional[PremiumTier] = None,
        negotiation_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> PremiumConversionEvent:
        payload: Optional[Dict[str, Any]] = dict(metadata) if metadata else None
        if tier is not None:
            payload = {**(payload or {}), "tier": tier.value}

        event = PremiumConversionEvent(
            event_type=event_type,
            user_id=user_id,
            negotiation_id=negotiation_id,
            metadata=payload,
            occurred_at=now or self._now(),
        )
        with self.store.transaction() as repository:
            repository.record_conversion_event(event)
        logger.debug("Recorded premium conversion event %s user=%s", event_type.value, user_id)
        return event

    def get_conversion_metrics(
        self,
        window_days: int = DEFAULT_WINDOW_DAYS,
        tier: Optional[PremiumTier] = None,
        *,
        now: Optional[datetime] = None,
    ) -> PremiumConversionMetrics:
        """Conversion funnel for the last ``window_days`` against the window before it.

        The window is clamped to 7..120 days and defaults to 30. Rates are
        rounded to four decimals and are ``None`` when their denominator is 0.
        """

        now = now or self._now()
        days = clamp_window_days(window_days)
        (current_start, current_end), (previous_start, previous_end) = metric_windows(now, days)

        with self.store.transaction() as repository:
            current_events = repository.list_conversion_events(current_start, current_end, tier=tier)
            previous_events = repository.list_conversion_events(previous_start, previous_end, tier=tier)
            current_active = repository.count_active_subscribers(current_end, tier=tier)
            previous_active = repository.count_active_subscribers(previous_end, tier=tier)

        current_totals = count_totals(current_events)
        previous_totals = count_totals(previous_events)
        current_unique = count_unique_converters(current_events)
        previous_unique = count_unique_converters(previous_events)
        current_rates = conversion_rates(current_totals)
        previous_rates = conversion_rates(previous_totals)

        return PremiumConversionMetrics(
            window=MetricsWindow(start=current_start, end=current_end, days=days),
            filter=MetricsFilter(tier=tier.value if tier is not None else "ALL"),
            totals=WindowTotals(**current_totals.model_dump(), active_subscribers=current_active),
            unique_users=current_unique,
            conversion_rates=current_rates,
            comparison=MetricsComparison(
                previous_window=MetricsWindow(start=previous_start, end=previous_end, days=days),
                previous_totals=WindowTotals(
                    **previous_totals.model_dump(), active_subscribers=previous_active
                ),
                previous_unique_users=previous_unique,
                previous_conversion_rates=previous_rates,
                delta=MetricsDelta(
                    totals=totals_delta(current_totals, previous_totals),
                    unique_users=UniqueConverters(
                        trial_starts=current_unique.trial_starts - previous_unique.trial_starts,
                        upgrades=current_unique.upgrades - previous_unique.upgrades,
                    ),
                    conversion_rates=rates_delta(current_rates, previous_rates),
                    active_subscribers=current_active - previous_active,
                ),
            ),
            timeseries=build_timeseries(current_events, current_start, current_end),
        )


__all__ = ["PremiumService", "ReminderNotifier"]
