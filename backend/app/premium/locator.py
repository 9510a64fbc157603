"""Resolve the canonical subscription record from partial identifying hints."""
from __future__ import annotations

from typing import Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from .models import PremiumSubscription
from .repository import PremiumRepository, SubscriptionLookupField


class SubscriptionHints(BaseModel):
    """Identifiers known about a subscription at the time of a lookup."""

    stripe_subscription_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    user_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def value_for(self, field: SubscriptionLookupField) -> Optional[str]:
        return {
            SubscriptionLookupField.STRIPE_SUBSCRIPTION_ID: self.stripe_subscription_id,
            SubscriptionLookupField.CHECKOUT_SESSION_ID: self.checkout_session_id,
            SubscriptionLookupField.STRIPE_CUSTOMER_ID: self.stripe_customer_id,
            SubscriptionLookupField.USER_ID: self.user_id,
        }[field]


# Provider-assigned ids are more specific than the user id, which may also
# match historical subscriptions, so the user id is always tried last.
DEFAULT_LOOKUP_ORDER: Tuple[SubscriptionLookupField, ...] = (
    SubscriptionLookupField.STRIPE_SUBSCRIPTION_ID,
    SubscriptionLookupField.CHECKOUT_SESSION_ID,
    SubscriptionLookupField.STRIPE_CUSTOMER_ID,
    SubscriptionLookupField.USER_ID,
)

SUBSCRIPTION_EVENT_LOOKUP_ORDER: Tuple[SubscriptionLookupField, ...] = (
    SubscriptionLookupField.STRIPE_SUBSCRIPTION_ID,
    SubscriptionLookupField.STRIPE_CUSTOMER_ID,
    SubscriptionLookupField.USER_ID,
)

CHECKOUT_EVENT_LOOKUP_ORDER: Tuple[SubscriptionLookupField, ...] = (
    SubscriptionLookupField.CHECKOUT_SESSION_ID,
    SubscriptionLookupField.STRIPE_SUBSCRIPTION_ID,
    SubscriptionLookupField.STRIPE_CUSTOMER_ID,
    SubscriptionLookupField.USER_ID,
)


def locate_subscription(
    repository: PremiumRepository,
    hints: SubscriptionHints,
    order: Sequence[SubscriptionLookupField] = DEFAULT_LOOKUP_ORDER,
) -> Optional[PremiumSubscription]:
    """Return the first subscription matched by a single-field lookup."""

    for field in order:
        value = hints.value_for(field)
        if not value:
            continue
        subscription = repository.find_latest_subscription(field, value)
        if subscription is not None:
            return subscription
    return None


__all__ = [
    "CHECKOUT_EVENT_LOOKUP_ORDER",
    "DEFAULT_LOOKUP_ORDER",
    "SUBSCRIPTION_EVENT_LOOKUP_ORDER",
    "SubscriptionHints",
    "locate_subscription",
]
