from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

import pytest

from backend.app.premium import (
    LifecyclePatch,
    LifecycleSnapshot,
    PremiumConfig,
    PremiumConversionEvent,
    PremiumEntitlement,
    PremiumFeature,
    PremiumService,
    PremiumSubscription,
    PremiumSubscriptionStatus,
    PremiumTier,
    SubscriptionLookupField,
    WebhookLedgerEntry,
)
from backend.app.premium.lifecycle import LIFECYCLE_KEY, encode_lifecycle


class InMemoryPremiumRepository:
    def __init__(self, store: "InMemoryPremiumStore") -> None:
        self._store = store

    def _check(self, operation: str) -> None:
        if operation in self._store.failing_operations:
            raise RuntimeError(f"simulated failure in {operation}")

    def find_latest_subscription(
        self, field: SubscriptionLookupField, value: str
    ) -> Optional[PremiumSubscription]:
        matches = [
            subscription
            for subscription in self._store.subscriptions.values()
            if getattr(subscription, field.value) == value
        ]
        if not matches:
            return None
        return max(matches, key=lambda subscription: subscription.started_at)

    def list_subscriptions_by_status(
        self, status: PremiumSubscriptionStatus
    ) -> Sequence[PremiumSubscription]:
        return [
            subscription
            for subscription in self._store.subscriptions.values()
            if subscription.status == status
        ]

    def save_subscription(self, subscription: PremiumSubscription) -> PremiumSubscription:
        self._check("save_subscription")
        self._store.subscriptions[subscription.id] = subscription
        return subscription

    def mark_reminder_sent(
        self,
        subscription_id: str,
        *,
        sent_at: datetime,
        expected_previous: Optional[str],
    ) -> Optional[PremiumSubscription]:
        subscription = self._store.subscriptions.get(subscription_id)
        if subscription is None:
            return None
        stored = (subscription.metadata.get(LIFECYCLE_KEY) or {}).get("lastReminderSentAt")
        # mirrors the text extraction done by ``#>>`` in PostgreSQL
        if stored is not None and not isinstance(stored, str):
            stored = json.dumps(stored)
        if stored != expected_previous:
            return None
        updated = subscription.model_copy(
            update={
                "metadata": encode_lifecycle(
                    subscription.metadata, LifecyclePatch(last_reminder_sent_at=sent_at)
                )
            }
        )
        self._store.subscriptions[subscription_id] = updated
        return updated

    def list_entitlements(self, subscription_id: str) -> Sequence[PremiumEntitlement]:
        return [
            entitlement
            for (owner, _feature), entitlement in self._store.entitlements.items()
            if owner == subscription_id
        ]

    def insert_entitlements(self, subscription_id: str, features: Iterable[PremiumFeature]) -> int:
        self._check("insert_entitlements")
        inserted = 0
        for feature in features:
            key = (subscription_id, feature)
            if key in self._store.entitlements:
                continue
            self._store.entitlements[key] = PremiumEntitlement(
                subscription_id=subscription_id, feature=feature
            )
            inserted += 1
        return inserted

    def record_webhook_event(self, entry: WebhookLedgerEntry) -> None:
        self._check("record_webhook_event")
        previous = self._store.ledger.get(entry.external_event_id)
        if previous is not None and entry.related_subscription_id is None:
            entry = entry.model_copy(
                update={"related_subscription_id": previous.related_subscription_id}
            )
        self._store.ledger[entry.external_event_id] = entry

    def record_conversion_event(self, event: PremiumConversionEvent) -> None:
        self._check("record_conversion_event")
        self._store.conversion_events.append(event)

    def list_conversion_events(
        self,
        start: datetime,
        end: datetime,
        *,
        tier: Optional[PremiumTier] = None,
    ) -> Sequence[PremiumConversionEvent]:
        def matches_tier(event: PremiumConversionEvent) -> bool:
            if tier is None:
                return True
            tagged = (event.metadata or {}).get("tier")
            if tagged is None:
                return tier == PremiumTier.PREMIUM
            return tagged == tier.value

        return [
            event
            for event in self._store.conversion_events
            if start <= event.occurred_at < end and matches_tier(event)
        ]

    def count_active_subscribers(
        self, reference: datetime, *, tier: Optional[PremiumTier] = None
    ) -> int:
        return sum(
            1
            for subscription in self._store.subscriptions.values()
            if subscription.is_active
            and (tier is None or subscription.tier == tier)
            and subscription.started_at <= reference
            and (
                subscription.cancellation_requested_at is None
                or subscription.cancellation_requested_at > reference
            )
            and (
                subscription.current_period_ends_at is None
                or subscription.current_period_ends_at > reference
            )
        )


class InMemoryPremiumStore:
    """Store whose transactions restore the previous state on error."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, PremiumSubscription] = {}
        self.entitlements: Dict[Tuple[str, PremiumFeature], PremiumEntitlement] = {}
        self.ledger: Dict[str, WebhookLedgerEntry] = {}
        self.conversion_events: List[PremiumConversionEvent] = []
        self.failing_operations: Set[str] = set()
        self.transactions = 0
        self.rollbacks = 0

    def add(self, subscription: PremiumSubscription) -> PremiumSubscription:
        self.subscriptions[subscription.id] = subscription
        return subscription

    def features_for(self, subscription_id: str) -> Set[PremiumFeature]:
        return {feature for owner, feature in self.entitlements if owner == subscription_id}

    @contextmanager
    def transaction(self) -> Iterator[InMemoryPremiumRepository]:
        self.transactions += 1
        snapshot = (
            dict(self.subscriptions),
            dict(self.entitlements),
            dict(self.ledger),
            list(self.conversion_events),
        )
        try:
            yield InMemoryPremiumRepository(self)
        except Exception:
            self.rollbacks += 1
            self.subscriptions, self.entitlements, self.ledger, self.conversion_events = snapshot
            raise


class RecordingNotifier:
    def __init__(self) -> None:
        self.reminders: List[Tuple[PremiumSubscription, LifecycleSnapshot]] = []

    def notify_payment_reminder(
        self, subscription: PremiumSubscription, snapshot: LifecycleSnapshot
    ) -> None:
        self.reminders.append((subscription, snapshot))


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store() -> InMemoryPremiumStore:
    return InMemoryPremiumStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def premium_service(store, notifier, now) -> PremiumService:
    return PremiumService(
        store=store,
        notifier=notifier,
        config=PremiumConfig(stripe_webhook_secret="whsec_test"),
        clock=lambda: now,
    )
