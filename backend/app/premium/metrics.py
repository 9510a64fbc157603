"""Aggregation of premium conversion events into funnel metrics."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from .models import (
    ConversionRates,
    ConversionTimeseriesPoint,
    ConversionTotals,
    PremiumConversionEvent,
    PremiumConversionEventType,
    UniqueConverters,
)

MIN_WINDOW_DAYS = 7
MAX_WINDOW_DAYS = 120
DEFAULT_WINDOW_DAYS = 30

_TOTAL_FIELDS = {
    PremiumConversionEventType.UPGRADE_CTA_VIEWED: "cta_views",
    PremiumConversionEventType.TRIAL_STARTED: "trial_starts",
    PremiumConversionEventType.UPGRADE_CONFIRMED: "upgrades",
    PremiumConversionEventType.PREMIUM_NEGOTIATION_COMPLETED: "premium_completions",
}


def clamp_window_days(window_days: Optional[int]) -> int:
    if window_days is None:
        return DEFAULT_WINDOW_DAYS
    return max(MIN_WINDOW_DAYS, min(window_days, MAX_WINDOW_DAYS))


def metric_windows(
    end: datetime, window_days: int
) -> Tuple[Tuple[datetime, datetime], Tuple[datetime, datetime]]:
    """Current and previous ``[start, end)`` windows of equal length."""

    span = timedelta(days=window_days)
    current_start = end - span
    return (current_start, end), (current_start - span, current_start)


def compute_rate(numerator: int, denominator: int) -> Optional[float]:
    if denominator <= 0:
        return None
    return round(numerator / denominator, 4)


def rate_delta(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    if current is None or previous is None:
        return None
    return round(current - previous, 4)


def count_totals(events: Iterable[PremiumConversionEvent]) -> ConversionTotals:
    counts: Dict[str, int] = {name: 0 for name in _TOTAL_FIELDS.values()}
    for event in events:
        counts[_TOTAL_FIELDS[event.event_type]] += 1
    return ConversionTotals(**counts)


def count_unique_converters(events: Iterable[PremiumConversionEvent]) -> UniqueConverters:
    trial_users = set()
    upgrade_users = set()
    for event in events:
        if event.user_id is None:
            continue
        if event.event_type == PremiumConversionEventType.TRIAL_STARTED:
            trial_users.add(event.user_id)
        elif event.event_type == PremiumConversionEventType.UPGRADE_CONFIRMED:
            upgrade_users.add(event.user_id)
    return UniqueConverters(trial_starts=len(trial_users), upgrades=len(upgrade_users))


def conversion_rates(totals: ConversionTotals) -> ConversionRates:
    return ConversionRates(
        cta_to_trial=compute_rate(totals.trial_starts, totals.cta_views),
        trial_to_upgrade=compute_rate(totals.upgrades, totals.trial_starts),
        upgrade_to_completion=compute_rate(totals.premium_completions, totals.upgrades),
    )


def rates_delta(current: ConversionRates, previous: ConversionRates) -> ConversionRates:
    return ConversionRates(
        cta_to_trial=rate_delta(current.cta_to_trial, previous.cta_to_trial),
        trial_to_upgrade=rate_delta(current.trial_to_upgrade, previous.trial_to_upgrade),
        upgrade_to_completion=rate_delta(current.upgrade_to_completion, previous.upgrade_to_completion),
    )


def totals_delta(current: ConversionTotals, previous: ConversionTotals) -> ConversionTotals:
    return ConversionTotals(
        cta_views=current.cta_views - previous.cta_views,
        trial_starts=current.trial_starts - previous.trial_starts,
        upgrades=current.upgrades - previous.upgrades,
        premium_completions=current.premium_completions - previous.premium_completions,
    )


def _start_of_day(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def build_timeseries(
    events: Iterable[PremiumConversionEvent],
    start: datetime,
    end: datetime,
) -> List[ConversionTimeseriesPoint]:
    """Daily UTC buckets covering ``[start, end)``; always at least one bucket."""

    buckets: Dict[datetime, List[PremiumConversionEvent]] = {}
    cursor = _start_of_day(start)
    while True:
        buckets[cursor] = []
        cursor += timedelta(days=1)
        if cursor >= end:
            break

    for event in events:
        bucket = buckets.get(_start_of_day(event.occurred_at))
        if bucket is not None:
            bucket.append(event)

    points = []
    for day in sorted(buckets):
        totals = count_totals(buckets[day])
        points.append(
            ConversionTimeseriesPoint(date=day, totals=totals, conversion_rates=conversion_rates(totals))
        )
    return points


__all__ = [
    "DEFAULT_WINDOW_DAYS",
    "MAX_WINDOW_DAYS",
    "MIN_WINDOW_DAYS",
    "build_timeseries",
    "clamp_window_days",
    "compute_rate",
    "conversion_rates",
    "count_totals",
    "count_unique_converters",
    "metric_windows",
    "rate_delta",
    "rates_delta",
    "totals_delta",
]
