"""Tests for premium subscription upserts, profiles, and conversion events."""
from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.premium import (
    BillingIdentifiers,
    DunningState,
    LifecyclePatch,
    PremiumConversionEventType,
    PremiumFeature,
    PremiumSubscription,
    PremiumSubscriptionStatus,
    PremiumTier,
)
from backend.app.premium.lifecycle import LIFECYCLE_KEY


def test_upsert_creates_subscription_with_defaults_and_backfill(premium_service, store, now):
    profile = premium_service.upsert_subscription("user-1", PremiumTier.PREMIUM, source="workspace-upgrade")

    (subscription,) = store.subscriptions.values()
    assert subscription.user_id == "user-1"
    assert subscription.status == PremiumSubscriptionStatus.ACTIVE
    assert subscription.started_at == now
    assert subscription.current_period_ends_at == now + timedelta(days=30)
    assert subscription.cancellation_requested_at is None
    assert subscription.metadata == {"source": "workspace-upgrade"}
    assert store.features_for(subscription.id) == {
        PremiumFeature.ADVANCED_ANALYTICS,
        PremiumFeature.DISPUTE_FAST_TRACK,
    }
    assert store.transactions == 1

    assert profile.status == PremiumSubscriptionStatus.ACTIVE
    assert profile.entitlements == [PremiumFeature.ADVANCED_ANALYTICS, PremiumFeature.DISPUTE_FAST_TRACK]
    assert profile.upgrade_prompt is None


def test_upsert_updates_latest_subscription_and_keeps_period_end(premium_service, store, now):
    period_end = now + timedelta(days=5)
    store.add(
        PremiumSubscription(
            id="prem_old",
            user_id="user-1",
            tier=PremiumTier.PREMIUM,
            status=PremiumSubscriptionStatus.ACTIVE,
            started_at=now - timedelta(days=60),
            current_period_ends_at=period_end,
            metadata={"source": "legacy", LIFECYCLE_KEY: {"seatCapacity": 4}},
        )
    )

    premium_service.upsert_subscription(
        "user-1",
        PremiumTier.CONCIERGE,
        PremiumSubscriptionStatus.TRIALING,
        source="workspace-trial",
    )

    subscription = store.subscriptions["prem_old"]
    assert len(store.subscriptions) == 1
    assert subscription.tier == PremiumTier.CONCIERGE
    assert subscription.status == PremiumSubscriptionStatus.TRIALING
    assert subscription.current_period_ends_at == period_end
    assert subscription.metadata == {"source": "workspace-trial", LIFECYCLE_KEY: {"seatCapacity": 4}}
    assert PremiumFeature.CONCIERGE_SLA in store.features_for("prem_old")


def test_upsert_cancel_transition_stamps_cancellation_once(premium_service, store, now):
    store.add(
        PremiumSubscription(
            id="prem_1",
            user_id="user-1",
            tier=PremiumTier.PREMIUM,
            status=PremiumSubscriptionStatus.ACTIVE,
            started_at=now - timedelta(days=10),
        )
    )

    profile = premium_service.upsert_subscription(
        "user-1", PremiumTier.PREMIUM, PremiumSubscriptionStatus.CANCELED
    )

    subscription = store.subscriptions["prem_1"]
    assert subscription.cancellation_requested_at == now
    assert subscription.current_period_ends_at is None
    assert profile.entitlements == []

    later = now + timedelta(days=1)
    premium_service.upsert_subscription(
        "user-1", PremiumTier.PREMIUM, PremiumSubscriptionStatus.CANCELED, now=later
    )
    assert store.subscriptions["prem_1"].cancellation_requested_at == now


def test_upsert_applies_billing_ids_with_partial_update(premium_service, store, now):
    store.add(
        PremiumSubscription(
            id="prem_1",
            user_id="user-1",
            tier=PremiumTier.PREMIUM,
            status=PremiumSubscriptionStatus.ACTIVE,
            stripe_customer_id="cus_1",
            stripe_price_id="price_old",
        )
    )

    premium_service.upsert_subscription(
        "user-1",
        PremiumTier.PREMIUM,
        billing=BillingIdentifiers(stripe_subscription_id="sub_1", stripe_price_id=None),
    )

    subscription = store.subscriptions["prem_1"]
    assert subscription.stripe_customer_id == "cus_1"
    assert subscription.stripe_subscription_id == "sub_1"
    assert subscription.stripe_price_id is None


def test_upsert_merges_lifecycle_patch(premium_service, store):
    profile = premium_service.upsert_subscription(
        "user-1",
        PremiumTier.PREMIUM,
        lifecycle_patch=LifecyclePatch(seat_capacity=3, seats_in_use=2),
    )

    (subscription,) = store.subscriptions.values()
    assert subscription.metadata[LIFECYCLE_KEY] == {"seatCapacity": 3, "seatsInUse": 2}
    assert profile.seats_available == 1
    assert profile.dunning_state == DunningState.NONE


def test_upsert_rolls_back_when_backfill_fails(premium_service, store):
    store.failing_operations.add("insert_entitlements")

    with pytest.raises(RuntimeError):
        premium_service.upsert_subscription("user-1", PremiumTier.PREMIUM)

    assert store.subscriptions == {}
    assert store.entitlements == {}
    assert store.rollbacks == 1


def test_get_profile_uses_latest_subscription_for_user(premium_service, store, now):
    store.add(
        PremiumSubscription(
            id="prem_old",
            user_id="user-1",
            tier=PremiumTier.CONCIERGE,
            status=PremiumSubscriptionStatus.CANCELED,
            started_at=now - timedelta(days=90),
        )
    )
    store.add(
        PremiumSubscription(
            id="prem_new",
            user_id="user-1",
            tier=PremiumTier.PREMIUM,
            status=PremiumSubscriptionStatus.ACTIVE,
            started_at=now - timedelta(days=1),
        )
    )

    profile = premium_service.get_profile("user-1")

    assert profile.tier == PremiumTier.PREMIUM
    assert profile.status == PremiumSubscriptionStatus.ACTIVE
    assert premium_service.get_profile("someone-else").status == PremiumSubscriptionStatus.NONE


def test_record_conversion_event_folds_tier_into_metadata(premium_service, store, now):
    event = premium_service.record_conversion_event(
        "user-1",
        PremiumConversionEventType.UPGRADE_CTA_VIEWED,
        tier=PremiumTier.CONCIERGE,
        negotiation_id="neg-9",
        metadata={"placement": "negotiation-sidebar"},
    )

    assert store.conversion_events == [event]
    assert event.metadata == {"placement": "negotiation-sidebar", "tier": "CONCIERGE"}
    assert event.negotiation_id == "neg-9"
    assert event.occurred_at == now

    bare = premium_service.record_conversion_event(
        None, PremiumConversionEventType.PREMIUM_NEGOTIATION_COMPLETED
    )
    assert bare.metadata is None
