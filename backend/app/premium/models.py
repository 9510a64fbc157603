"""Domain models for premium subscriptions and entitlements."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PremiumTier(str, Enum):
    """Subscription plan rank, ordered STANDARD < PREMIUM < CONCIERGE."""

    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"
    CONCIERGE = "CONCIERGE"

    @property
    def rank(self) -> int:
        return _TIER_RANKS[self]


_TIER_RANKS = {
    PremiumTier.STANDARD: 0,
    PremiumTier.PREMIUM: 1,
    PremiumTier.CONCIERGE: 2,
}


class PremiumSubscriptionStatus(str, Enum):
    """Lifecycle state of a premium subscription."""

    NONE = "NONE"
    TRIALING = "TRIALING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELED = "CANCELED"


ACTIVE_STATUSES = frozenset({PremiumSubscriptionStatus.ACTIVE, PremiumSubscriptionStatus.TRIALING})


class PremiumFeature(str, Enum):
    """Feature flags that can be granted to a subscription."""

    ADVANCED_ANALYTICS = "ADVANCED_ANALYTICS"
    DISPUTE_FAST_TRACK = "DISPUTE_FAST_TRACK"
    CONCIERGE_SLA = "CONCIERGE_SLA"


class DunningState(str, Enum):
    """Payment recovery state tracked in the lifecycle metadata."""

    NONE = "NONE"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAST_DUE = "PAST_DUE"


class ProfileSegment(str, Enum):
    """Viewer-facing classification used to pick recommendations."""

    STANDARD = "STANDARD"
    PREMIUM_CORE = "PREMIUM_CORE"
    CONCIERGE = "CONCIERGE"


class RecommendationConfidence(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class PremiumConversionEventType(str, Enum):
    """Funnel events recorded for premium monetisation insights."""

    UPGRADE_CTA_VIEWED = "UPGRADE_CTA_VIEWED"
    TRIAL_STARTED = "TRIAL_STARTED"
    UPGRADE_CONFIRMED = "UPGRADE_CONFIRMED"
    PREMIUM_NEGOTIATION_COMPLETED = "PREMIUM_NEGOTIATION_COMPLETED"


class PremiumSubscription(BaseModel):
    """Most recent billing relationship of a user.

    External billing identifiers are correlation keys only; ``id`` is the
    internal primary key. ``metadata`` is a JSON object whose
    ``premiumLifecycle`` key is owned by :mod:`backend.app.premium.lifecycle`.
    """

    id: str
    user_id: str
    tier: PremiumTier
    status: PremiumSubscriptionStatus
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    latest_invoice_id: Optional[str] = None
    started_at: datetime = Field(default_factory=_utcnow)
    current_period_ends_at: Optional[datetime] = None
    cancellation_requested_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class PremiumEntitlement(BaseModel):
    """Explicit feature grant for a subscription, unique per pair."""

    subscription_id: str
    feature: PremiumFeature
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class BillingIdentifiers(BaseModel):
    """External billing ids to attach to a subscription.

    Only fields that were explicitly provided are applied, so passing
    ``BillingIdentifiers(stripe_customer_id="cus_1")`` leaves the other ids
    untouched while ``stripe_price_id=None`` clears the stored price.
    """

    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    latest_invoice_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def as_update(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class WebhookLedgerEntry(BaseModel):
    """Idempotency and audit row for a received provider event."""

    external_event_id: str
    event_type: str
    related_subscription_id: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class PremiumConversionEvent(BaseModel):
    event_type: PremiumConversionEventType
    user_id: Optional[str] = None
    negotiation_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)


class PremiumWebhookEvent(BaseModel):
    """Provider event as received by the webhook ingress."""

    event_id: str
    event_type: str
    created: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class LifecycleFields(BaseModel):
    """Decoded ``premiumLifecycle`` sub-document; ``None`` means not yet observed."""

    seat_capacity: Optional[int] = None
    seats_in_use: Optional[int] = None
    grace_period_ends_at: Optional[datetime] = None
    downgrade_at: Optional[datetime] = None
    downgrade_target_tier: Optional[PremiumTier] = None
    dunning_state: Optional[DunningState] = None
    last_payment_failure_at: Optional[datetime] = None
    last_reminder_sent_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class LifecyclePatch(LifecycleFields):
    """Partial update for the lifecycle sub-document.

    Keys present in ``model_fields_set`` are written (``None`` clears them);
    keys that were never passed keep their stored value.
    """


class LifecycleSnapshot(BaseModel):
    """Point-in-time view derived from the lifecycle metadata."""

    seat_capacity: Optional[int] = None
    seats_in_use: Optional[int] = None
    seats_available: Optional[int] = None
    is_seat_capacity_exceeded: bool = False
    grace_period_ends_at: Optional[datetime] = None
    is_in_grace_period: bool = False
    downgrade_at: Optional[datetime] = None
    downgrade_target_tier: Optional[PremiumTier] = None
    is_downgrade_scheduled: bool = False
    dunning_state: DunningState = DunningState.NONE
    last_payment_failure_at: Optional[datetime] = None
    last_reminder_sent_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class UpgradePrompt(_CamelModel):
    headline: str
    description: str
    cta: str


class PremiumRecommendation(_CamelModel):
    id: str
    title: str
    description: str
    confidence: RecommendationConfidence


class PremiumProfile(_CamelModel):
    """Viewer-facing premium state, serialized with camelCase keys."""

    tier: PremiumTier = PremiumTier.STANDARD
    status: PremiumSubscriptionStatus = PremiumSubscriptionStatus.NONE
    entitlements: List[PremiumFeature] = Field(default_factory=list)
    current_period_ends_at: Optional[datetime] = None
    is_trialing: bool = False
    has_advanced_analytics: bool = False
    has_concierge_sla: bool = False
    has_dispute_fast_track: bool = False
    seat_capacity: Optional[int] = None
    seats_in_use: Optional[int] = None
    seats_available: Optional[int] = None
    is_seat_capacity_exceeded: bool = False
    grace_period_ends_at: Optional[datetime] = None
    is_in_grace_period: bool = False
    is_downgrade_scheduled: bool = False
    downgrade_at: Optional[datetime] = None
    downgrade_target_tier: Optional[PremiumTier] = None
    dunning_state: DunningState = DunningState.NONE
    last_payment_failure_at: Optional[datetime] = None
    last_reminder_sent_at: Optional[datetime] = None
    upgrade_prompt: Optional[UpgradePrompt] = None
    segment: ProfileSegment = ProfileSegment.STANDARD
    recommendations: List[PremiumRecommendation] = Field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-serializable representation with ISO timestamps."""

        return self.model_dump(by_alias=True, mode="json")


class ConversionTotals(_CamelModel):
    cta_views: int = 0
    trial_starts: int = 0
    upgrades: int = 0
    premium_completions: int = 0


class WindowTotals(ConversionTotals):
    active_subscribers: int = 0


class UniqueConverters(_CamelModel):
    trial_starts: int = 0
    upgrades: int = 0


class ConversionRates(_CamelModel):
    """Funnel step ratios; ``None`` when the step had no entrants."""

    cta_to_trial: Optional[float] = None
    trial_to_upgrade: Optional[float] = None
    upgrade_to_completion: Optional[float] = None


class MetricsWindow(_CamelModel):
    start: datetime
    end: datetime
    days: int


class MetricsFilter(_CamelModel):
    tier: str = "ALL"


class MetricsDelta(_CamelModel):
    totals: ConversionTotals
    unique_users: UniqueConverters
    conversion_rates: ConversionRates
    active_subscribers: int


class MetricsComparison(_CamelModel):
    previous_window: MetricsWindow
    previous_totals: WindowTotals
    previous_unique_users: UniqueConverters
    previous_conversion_rates: ConversionRates
    delta: MetricsDelta


class ConversionTimeseriesPoint(_CamelModel):
    date: datetime
    totals: ConversionTotals
    conversion_rates: ConversionRates


class PremiumConversionMetrics(_CamelModel):
    """Conversion funnel for one window compared with the window before it."""

    window: MetricsWindow
    filter: MetricsFilter
    totals: WindowTotals
    unique_users: UniqueConverters
    conversion_rates: ConversionRates
    comparison: MetricsComparison
    timeseries: List[ConversionTimeseriesPoint] = Field(default_factory=list)


class ReminderDispatchSummary(BaseModel):
    reminders_sent: int = 0
    skipped: int = 0

    model_config = ConfigDict(frozen=True)
