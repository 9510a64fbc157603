"""Tests for premium conversion funnel metrics."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from backend.app.premium import (
    PremiumConversionEvent,
    PremiumConversionEventType,
    PremiumSubscription,
    PremiumSubscriptionStatus,
    PremiumTier,
)
from backend.app.premium.metrics import build_timeseries, clamp_window_days, compute_rate, rate_delta


CTA = PremiumConversionEventType.UPGRADE_CTA_VIEWED
TRIAL = PremiumConversionEventType.TRIAL_STARTED
UPGRADE = PremiumConversionEventType.UPGRADE_CONFIRMED
COMPLETED = PremiumConversionEventType.PREMIUM_NEGOTIATION_COMPLETED


def _record(store, event_type, occurred_at, user_id: Optional[str] = None, tier: Optional[str] = None):
    store.conversion_events.append(
        PremiumConversionEvent(
            event_type=event_type,
            user_id=user_id,
            metadata={"tier": tier} if tier is not None else None,
            occurred_at=occurred_at,
        )
    )


def _subscription(store, subscription_id, now, *, tier=PremiumTier.PREMIUM, **values):
    values.setdefault("status", PremiumSubscriptionStatus.ACTIVE)
    values.setdefault("started_at", now - timedelta(days=60))
    store.add(PremiumSubscription(id=subscription_id, user_id=subscription_id, tier=tier, **values))


@pytest.fixture
def funnel(store, now):
    hour_ago = now - timedelta(hours=1)
    for user_id in ("u1", "u2"):
        _record(store, CTA, hour_ago, user_id)
    for user_id in ("u3", "u4"):
        _record(store, CTA, now - timedelta(days=2), user_id)
    _record(store, TRIAL, hour_ago, "u1")
    _record(store, TRIAL, now - timedelta(days=3), "u2")
    _record(store, TRIAL, now - timedelta(days=3), "u2")
    _record(store, UPGRADE, hour_ago, "u1")
    _record(store, UPGRADE, now - timedelta(days=5))
    _record(store, COMPLETED, hour_ago, "u1")

    _record(store, CTA, now - timedelta(days=31), "u5")
    _record(store, CTA, now - timedelta(days=31), "u6")
    _record(store, TRIAL, now - timedelta(days=40), "u3")
    _record(store, TRIAL, now - timedelta(days=70), "u9")

    _subscription(store, "always", now)
    _subscription(
        store,
        "recent",
        now,
        tier=PremiumTier.CONCIERGE,
        status=PremiumSubscriptionStatus.TRIALING,
        started_at=now - timedelta(days=10),
    )
    _subscription(store, "canceled-soon", now, cancellation_requested_at=now - timedelta(days=5))
    _subscription(store, "canceled", now, status=PremiumSubscriptionStatus.CANCELED)
    _subscription(
        store,
        "lapsed",
        now,
        started_at=now - timedelta(days=90),
        current_period_ends_at=now - timedelta(days=40),
    )
    return store


def test_compute_rate_rounds_and_guards_zero_denominator():
    assert compute_rate(2, 3) == 0.6667
    assert compute_rate(0, 4) == 0.0
    assert compute_rate(5, 0) is None
    assert rate_delta(0.4, 0.375) == 0.025
    assert rate_delta(None, 0.5) is None


@pytest.mark.parametrize("requested,expected", [(3, 7), (7, 7), (45, 45), (120, 120), (500, 120)])
def test_window_is_clamped(requested, expected):
    assert clamp_window_days(requested) == expected


def test_metrics_aggregate_current_and_previous_windows(premium_service, funnel, now):
    metrics = premium_service.get_conversion_metrics()

    assert metrics.window.days == 30
    assert metrics.window.end == now
    assert metrics.window.start == now - timedelta(days=30)
    assert metrics.filter.tier == "ALL"
    assert metrics.totals.model_dump() == {
        "cta_views": 4,
        "trial_starts": 3,
        "upgrades": 2,
        "premium_completions": 1,
        "active_subscribers": 2,
    }
    assert metrics.unique_users.trial_starts == 2
    assert metrics.unique_users.upgrades == 1
    assert metrics.conversion_rates.cta_to_trial == 0.75
    assert metrics.conversion_rates.trial_to_upgrade == 0.6667
    assert metrics.conversion_rates.upgrade_to_completion == 0.5

    comparison = metrics.comparison
    assert comparison.previous_window.start == now - timedelta(days=60)
    assert comparison.previous_window.end == now - timedelta(days=30)
    assert comparison.previous_totals.cta_views == 2
    assert comparison.previous_totals.trial_starts == 1
    assert comparison.previous_totals.active_subscribers == 2
    assert comparison.previous_unique_users.trial_starts == 1
    assert comparison.previous_conversion_rates.cta_to_trial == 0.5
    assert comparison.previous_conversion_rates.trial_to_upgrade == 0.0
    assert comparison.previous_conversion_rates.upgrade_to_completion is None

    delta = comparison.delta
    assert delta.totals.model_dump() == {
        "cta_views": 2,
        "trial_starts": 2,
        "upgrades": 2,
        "premium_completions": 1,
    }
    assert delta.unique_users.trial_starts == 1
    assert delta.unique_users.upgrades == 1
    assert delta.conversion_rates.cta_to_trial == 0.25
    assert delta.conversion_rates.trial_to_upgrade == 0.6667
    assert delta.conversion_rates.upgrade_to_completion is None
    assert delta.active_subscribers == 0


def test_metrics_timeseries_has_daily_buckets(premium_service, funnel, now):
    metrics = premium_service.get_conversion_metrics()

    assert len(metrics.timeseries) == 31
    assert metrics.timeseries[0].date == datetime(2024, 5, 2, tzinfo=timezone.utc)
    last = metrics.timeseries[-1]
    assert last.date == datetime(2024, 6, 1, tzinfo=timezone.utc)
    assert last.totals.model_dump() == {
        "cta_views": 2,
        "trial_starts": 1,
        "upgrades": 1,
        "premium_completions": 1,
    }
    assert last.conversion_rates.cta_to_trial == 0.5
    assert last.conversion_rates.trial_to_upgrade == 1.0
    assert sum(point.totals.trial_starts for point in metrics.timeseries) == 3


def test_metrics_tier_filter_treats_untagged_events_as_premium(premium_service, store, now):
    _record(store, CTA, now - timedelta(days=1), "u1")
    _record(store, CTA, now - timedelta(days=1), "u2", tier="PREMIUM")
    _record(store, CTA, now - timedelta(days=1), "u3", tier="CONCIERGE")
    _subscription(store, "premium", now)
    _subscription(store, "concierge", now, tier=PremiumTier.CONCIERGE)

    premium = premium_service.get_conversion_metrics(30, PremiumTier.PREMIUM)
    concierge = premium_service.get_conversion_metrics(30, PremiumTier.CONCIERGE)

    assert premium.filter.tier == "PREMIUM"
    assert premium.totals.cta_views == 2
    assert premium.totals.active_subscribers == 1
    assert concierge.totals.cta_views == 1
    assert concierge.totals.active_subscribers == 1


def test_metrics_without_events_have_no_rates(premium_service):
    metrics = premium_service.get_conversion_metrics(3)

    assert metrics.window.days == 7
    assert metrics.conversion_rates.model_dump() == {
        "cta_to_trial": None,
        "trial_to_upgrade": None,
        "upgrade_to_completion": None,
    }
    assert metrics.timeseries
    assert all(point.totals.cta_views == 0 for point in metrics.timeseries)


def test_timeseries_always_has_one_bucket():
    moment = datetime(2024, 6, 1, 0, 0, tzinfo=timezone.utc)

    points = build_timeseries([], moment, moment)

    assert [point.date for point in points] == [moment]


def test_metrics_payload_uses_camel_case_keys(premium_service, funnel):
    payload = premium_service.get_conversion_metrics().model_dump(by_alias=True, mode="json")

    assert payload["filter"] == {"tier": "ALL"}
    assert payload["totals"]["ctaViews"] == 4
    assert payload["uniqueUsers"] == {"trialStarts": 2, "upgrades": 1}
    assert payload["comparison"]["delta"]["activeSubscribers"] == 0
    assert payload["timeseries"][-1]["conversionRates"]["ctaToTrial"] == 0.5
