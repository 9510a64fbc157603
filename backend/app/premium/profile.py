"""Builds the viewer-facing premium profile from a subscription and its grants."""
from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, List, Optional

from .entitlements import Grant, normalize_entitlements, sorted_features
from .lifecycle import resolve_lifecycle_state
from .models import (
    DunningState,
    LifecycleSnapshot,
    PremiumFeature,
    PremiumProfile,
    PremiumRecommendation,
    PremiumSubscription,
    PremiumSubscriptionStatus,
    PremiumTier,
    ProfileSegment,
    RecommendationConfidence,
    UpgradePrompt,
)

DEFAULT_UPGRADE_PROMPT = UpgradePrompt(
    headline="Unlock premium analytics",
    description=(
        "Get SLA overrides and dispute fast-track to close critical deals faster."
    ),
    cta="Try premium now",
)

_STATUS_PROMPTS = {
    PremiumSubscriptionStatus.CANCELED: UpgradePrompt(
        headline="Reactivate your premium plan",
        description="Your subscription was canceled. Reactivate it to restore analytics and dispute fast-track.",
        cta="Reactivate premium",
    ),
    PremiumSubscriptionStatus.EXPIRED: UpgradePrompt(
        headline="Your premium access has expired",
        description="Renew your subscription to regain premium analytics and prioritized dispute handling.",
        cta="Renew premium",
    ),
    PremiumSubscriptionStatus.TRIALING: UpgradePrompt(
        headline="Make the most of your trial",
        description="Upgrade before your trial ends to keep every premium feature without interruption.",
        cta="Upgrade now",
    ),
}

_DAY_SECONDS = 24 * 60 * 60


def no_premium_profile() -> PremiumProfile:
    """Profile for users that never had a subscription."""

    return PremiumProfile(upgrade_prompt=DEFAULT_UPGRADE_PROMPT)


def remaining_grace_days(snapshot: LifecycleSnapshot, now: datetime) -> int:
    if snapshot.grace_period_ends_at is None:
        return 0
    remaining = (snapshot.grace_period_ends_at - now).total_seconds()
    return max(math.ceil(remaining / _DAY_SECONDS), 0)


def _plural_days(days: int) -> str:
    return f"{days} day" if days == 1 else f"{days} days"


def _resolve_segment(snapshot: LifecycleSnapshot, entitlements: frozenset) -> ProfileSegment:
    if snapshot.is_seat_capacity_exceeded:
        return ProfileSegment.PREMIUM_CORE
    if PremiumFeature.CONCIERGE_SLA in entitlements:
        return ProfileSegment.CONCIERGE
    if PremiumFeature.ADVANCED_ANALYTICS in entitlements:
        return ProfileSegment.PREMIUM_CORE
    return ProfileSegment.STANDARD


def _resolve_upgrade_prompt(
    subscription: PremiumSubscription,
    snapshot: LifecycleSnapshot,
    entitlements_active: bool,
    now: datetime,
) -> Optional[UpgradePrompt]:
    if snapshot.dunning_state == DunningState.PAYMENT_FAILED:
        days = remaining_grace_days(snapshot, now)
        if days:
            description = (
                f"Your last payment failed. Update your payment details within {_plural_days(days)} "
                "to keep concierge and analytics features active."
            )
        else:
            description = (
                "Your last payment failed. Update your payment details to restore "
                "concierge and analytics features."
            )
        return UpgradePrompt(
            headline="Payment failed: your grace period is running",
            description=description,
            cta="Update payment method",
        )

    if snapshot.is_seat_capacity_exceeded:
        return UpgradePrompt(
            headline="Seat limit exceeded",
            description=(
                f"{snapshot.seats_in_use} seats are in use but your plan covers {snapshot.seat_capacity}. "
                "Free up seats or add capacity to re-enable premium features."
            ),
            cta="Manage seats",
        )

    if snapshot.is_downgrade_scheduled and snapshot.downgrade_at is not None:
        target = snapshot.downgrade_target_tier or PremiumTier.STANDARD
        return UpgradePrompt(
            headline="Your plan downgrade is scheduled",
            description=(
                f"Your plan switches to {target.value.title()} on {snapshot.downgrade_at:%Y-%m-%d}. "
                "Keep your current plan to retain every feature."
            ),
            cta="Keep my plan",
        )

    if entitlements_active:
        return None

    return _STATUS_PROMPTS.get(subscription.status, DEFAULT_UPGRADE_PROMPT)


def _build_recommendations(
    snapshot: LifecycleSnapshot, segment: ProfileSegment
) -> List[PremiumRecommendation]:
    recommendations: List[PremiumRecommendation] = []

    if snapshot.dunning_state == DunningState.PAYMENT_FAILED:
        recommendations.append(
            PremiumRecommendation(
                id="reactivate-billing",
                title="Resolve the failed payment",
                description="Update the payment method before the grace period ends to avoid losing premium access.",
                confidence=RecommendationConfidence.HIGH,
            )
        )

    if snapshot.is_seat_capacity_exceeded:
        recommendations.append(
            PremiumRecommendation(
                id="rebalance-seats",
                title="Rebalance team seats",
                description="Remove inactive members or purchase additional seats to match your team size.",
                confidence=RecommendationConfidence.MEDIUM,
            )
        )

    if segment == ProfileSegment.CONCIERGE:
        recommendations.append(
            PremiumRecommendation(
                id="concierge-sprint",
                title="Plan a concierge sprint",
                description="Bundle open negotiations into a concierge sprint to use your SLA guarantees.",
                confidence=RecommendationConfidence.MEDIUM,
            )
        )
    elif segment == ProfileSegment.PREMIUM_CORE:
        recommendations.append(
            PremiumRecommendation(
                id="premium-core-upsell",
                title="Upgrade to concierge",
                description="Add concierge SLAs on top of analytics for time-critical deals.",
                confidence=RecommendationConfidence.LOW,
            )
        )

    return recommendations


def build_profile(
    subscription: Optional[PremiumSubscription],
    grants: Iterable[Grant],
    now: datetime,
) -> PremiumProfile:
    """Compose the profile for ``subscription`` as seen at ``now``."""

    if subscription is None:
        return no_premium_profile()

    snapshot = resolve_lifecycle_state(subscription, now)
    status_active = subscription.is_active or snapshot.is_in_grace_period
    entitlements_active = status_active and not snapshot.is_seat_capacity_exceeded
    entitlements = (
        normalize_entitlements(subscription.tier, grants) if entitlements_active else frozenset()
    )
    segment = _resolve_segment(snapshot, entitlements)

    return PremiumProfile(
        tier=subscription.tier,
        status=subscription.status,
        entitlements=sorted_features(entitlements),
        current_period_ends_at=subscription.current_period_ends_at,
        is_trialing=subscription.status == PremiumSubscriptionStatus.TRIALING,
        has_advanced_analytics=PremiumFeature.ADVANCED_ANALYTICS in entitlements,
        has_concierge_sla=PremiumFeature.CONCIERGE_SLA in entitlements,
        has_dispute_fast_track=PremiumFeature.DISPUTE_FAST_TRACK in entitlements,
        seat_capacity=snapshot.seat_capacity,
        seats_in_use=snapshot.seats_in_use,
        seats_available=snapshot.seats_available,
        is_seat_capacity_exceeded=snapshot.is_seat_capacity_exceeded,
        grace_period_ends_at=snapshot.grace_period_ends_at,
        is_in_grace_period=snapshot.is_in_grace_period,
        is_downgrade_scheduled=snapshot.is_downgrade_scheduled,
        downgrade_at=snapshot.downgrade_at,
        downgrade_target_tier=snapshot.downgrade_target_tier,
        dunning_state=snapshot.dunning_state,
        last_payment_failure_at=snapshot.last_payment_failure_at,
        last_reminder_sent_at=snapshot.last_reminder_sent_at,
        upgrade_prompt=_resolve_upgrade_prompt(subscription, snapshot, entitlements_active, now),
        segment=segment,
        recommendations=_build_recommendations(snapshot, segment),
    )


__all__ = ["DEFAULT_UPGRADE_PROMPT", "build_profile", "no_premium_profile", "remaining_grace_days"]
