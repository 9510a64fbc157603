"""Default feature catalog, entitlement normalization, and backfill."""
from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from .models import PremiumEntitlement, PremiumFeature, PremiumSubscription, PremiumTier
from .repository import PremiumRepository

logger = logging.getLogger(__name__)

_PREMIUM_FEATURES = frozenset(
    {PremiumFeature.ADVANCED_ANALYTICS, PremiumFeature.DISPUTE_FAST_TRACK}
)

DEFAULT_ENTITLEMENTS: Dict[PremiumTier, FrozenSet[PremiumFeature]] = {
    PremiumTier.STANDARD: frozenset(),
    PremiumTier.PREMIUM: _PREMIUM_FEATURES,
    PremiumTier.CONCIERGE: _PREMIUM_FEATURES | {PremiumFeature.CONCIERGE_SLA},
}

_FEATURE_ORDER = {feature: index for index, feature in enumerate(PremiumFeature)}

Grant = Union[PremiumEntitlement, PremiumFeature]


def default_features(tier: PremiumTier) -> FrozenSet[PremiumFeature]:
    """Return the features every subscription of ``tier`` receives."""

    return DEFAULT_ENTITLEMENTS[tier]


def normalize_entitlements(tier: PremiumTier, grants: Iterable[Grant]) -> FrozenSet[PremiumFeature]:
    """Union of the tier defaults and the explicitly granted features."""

    features = set(default_features(tier))
    for grant in grants:
        features.add(grant.feature if isinstance(grant, PremiumEntitlement) else grant)
    return frozenset(features)


def sorted_features(features: Iterable[PremiumFeature]) -> List[PremiumFeature]:
    """Deterministic ordering (catalog declaration order) for serialization."""

    return sorted(set(features), key=_FEATURE_ORDER.__getitem__)


def ensure_default_entitlements(
    repository: PremiumRepository,
    subscription: PremiumSubscription,
) -> int:
    """Grant any tier default the subscription is still missing.

    Safe to call repeatedly or concurrently: only the set difference is
    inserted and the insert ignores pairs that already exist.
    """

    expected = default_features(subscription.tier)
    if not expected:
        return 0

    existing = {entitlement.feature for entitlement in repository.list_entitlements(subscription.id)}
    missing = sorted_features(expected - existing)
    if not missing:
        return 0

    repository.insert_entitlements(subscription.id, missing)
    logger.debug(
        "Backfilled premium entitlements subscription=%s features=%s",
        subscription.id,
        [feature.value for feature in missing],
    )
    return len(missing)


def derive_negotiation_tier(
    *,
    listing_is_premium: bool,
    buyer_tier: PremiumTier,
    seller_tier: Optional[PremiumTier] = None,
) -> Optional[PremiumTier]:
    """Tier that applies to a negotiation between a buyer and a seller."""

    if listing_is_premium:
        return PremiumTier.PREMIUM
    if buyer_tier != PremiumTier.STANDARD:
        return buyer_tier
    if seller_tier is not None and seller_tier != PremiumTier.STANDARD:
        return seller_tier
    return None


__all__ = [
    "DEFAULT_ENTITLEMENTS",
    "default_features",
    "derive_negotiation_tier",
    "ensure_default_entitlements",
    "normalize_entitlements",
    "sorted_features",
]
