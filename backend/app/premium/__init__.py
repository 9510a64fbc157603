"""Premium entitlement and billing-lifecycle reconciliation."""

from .config import PremiumConfig, load_premium_config
from .entitlements import (
    DEFAULT_ENTITLEMENTS,
    derive_negotiation_tier,
    ensure_default_entitlements,
    normalize_entitlements,
)
from .lifecycle import decode_lifecycle, encode_lifecycle, resolve_lifecycle_state
from .locator import SubscriptionHints, locate_subscription
from .models import (
    BillingIdentifiers,
    DunningState,
    LifecyclePatch,
    LifecycleSnapshot,
    PremiumConversionEvent,
    PremiumConversionEventType,
    PremiumConversionMetrics,
    PremiumEntitlement,
    PremiumFeature,
    PremiumProfile,
    PremiumSubscription,
    PremiumSubscriptionStatus,
    PremiumTier,
    PremiumWebhookEvent,
    ReminderDispatchSummary,
    WebhookLedgerEntry,
)
from .profile import build_profile
from .repository import PremiumRepository, PremiumStore, SubscriptionLookupField
from .service import PremiumService, ReminderNotifier
from .webhooks import WebhookEventFamily, classify_event_type, map_provider_status

__all__ = [
    "BillingIdentifiers",
    "DEFAULT_ENTITLEMENTS",
    "DunningState",
    "LifecyclePatch",
    "LifecycleSnapshot",
    "PremiumConfig",
    "PremiumConversionEvent",
    "PremiumConversionEventType",
    "PremiumConversionMetrics",
    "PremiumEntitlement",
    "PremiumFeature",
    "PremiumProfile",
    "PremiumRepository",
    "PremiumService",
    "PremiumStore",
    "PremiumSubscription",
    "PremiumSubscriptionStatus",
    "PremiumTier",
    "PremiumWebhookEvent",
    "ReminderDispatchSummary",
    "ReminderNotifier",
    "SubscriptionHints",
    "SubscriptionLookupField",
    "WebhookEventFamily",
    "WebhookLedgerEntry",
    "build_profile",
    "classify_event_type",
    "decode_lifecycle",
    "derive_negotiation_tier",
    "encode_lifecycle",
    "ensure_default_entitlements",
    "load_premium_config",
    "locate_subscription",
    "map_provider_status",
    "normalize_entitlements",
    "resolve_lifecycle_state",
]
