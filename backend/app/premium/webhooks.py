"""Reconciliation of payment-provider webhook events into premium state.

Every event is routed to exactly one family handler. Handlers locate the
subscription, compute the new row (including a lifecycle metadata patch) and
return it; :meth:`WebhookReconciler.reconcile` then persists it together with
the ledger row and the default entitlements inside the caller's transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional
from uuid import uuid4

from .entitlements import ensure_default_entitlements
from .lifecycle import decode_lifecycle, encode_lifecycle, parse_timestamp
from .locator import (
    CHECKOUT_EVENT_LOOKUP_ORDER,
    SUBSCRIPTION_EVENT_LOOKUP_ORDER,
    SubscriptionHints,
    locate_subscription,
)
from .models import (
    BillingIdentifiers,
    DunningState,
    LifecyclePatch,
    PremiumSubscription,
    PremiumSubscriptionStatus,
    PremiumTier,
    PremiumWebhookEvent,
    WebhookLedgerEntry,
)
from .repository import PremiumRepository

logger = logging.getLogger(__name__)


class WebhookEventFamily(str, Enum):
    """Closed set of event families the engine reacts to."""

    SUBSCRIPTION = "subscription"
    INVOICE = "invoice"
    CHECKOUT = "checkout"
    UNHANDLED = "unhandled"


class WebhookEventType(str, Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    SUBSCRIPTION_TRIAL_WILL_END = "customer.subscription.trial_will_end"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPDATED = "invoice.updated"
    INVOICE_FINALIZED = "invoice.finalized"
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"


_EVENT_FAMILIES: Dict[str, WebhookEventFamily] = {
    WebhookEventType.SUBSCRIPTION_CREATED.value: WebhookEventFamily.SUBSCRIPTION,
    WebhookEventType.SUBSCRIPTION_UPDATED.value: WebhookEventFamily.SUBSCRIPTION,
    WebhookEventType.SUBSCRIPTION_DELETED.value: WebhookEventFamily.SUBSCRIPTION,
    WebhookEventType.SUBSCRIPTION_TRIAL_WILL_END.value: WebhookEventFamily.SUBSCRIPTION,
    WebhookEventType.INVOICE_PAID.value: WebhookEventFamily.INVOICE,
    WebhookEventType.INVOICE_PAYMENT_SUCCEEDED.value: WebhookEventFamily.INVOICE,
    WebhookEventType.INVOICE_PAYMENT_FAILED.value: WebhookEventFamily.INVOICE,
    WebhookEventType.INVOICE_UPDATED.value: WebhookEventFamily.INVOICE,
    WebhookEventType.INVOICE_FINALIZED.value: WebhookEventFamily.INVOICE,
    WebhookEventType.CHECKOUT_SESSION_COMPLETED.value: WebhookEventFamily.CHECKOUT,
}

_PAID_EVENT_TYPES = frozenset(
    {WebhookEventType.INVOICE_PAID.value, WebhookEventType.INVOICE_PAYMENT_SUCCEEDED.value}
)

# Anything not listed maps to EXPIRED so unknown states never grant access.
PROVIDER_STATUS_MAP: Dict[str, PremiumSubscriptionStatus] = {
    "trialing": PremiumSubscriptionStatus.TRIALING,
    "active": PremiumSubscriptionStatus.ACTIVE,
    "past_due": PremiumSubscriptionStatus.EXPIRED,
    "unpaid": PremiumSubscriptionStatus.EXPIRED,
    "incomplete": PremiumSubscriptionStatus.EXPIRED,
    "incomplete_expired": PremiumSubscriptionStatus.EXPIRED,
    "paused": PremiumSubscriptionStatus.EXPIRED,
    "canceled": PremiumSubscriptionStatus.CANCELED,
}

START_TRIAL_INTENT = "START_TRIAL"


def classify_event_type(event_type: str) -> WebhookEventFamily:
    return _EVENT_FAMILIES.get(event_type, WebhookEventFamily.UNHANDLED)


def map_provider_status(provider_status: object) -> PremiumSubscriptionStatus:
    """Translate a provider subscription status into the internal status."""

    if not isinstance(provider_status, str):
        return PremiumSubscriptionStatus.EXPIRED
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower(), PremiumSubscriptionStatus.EXPIRED)


def parse_provider_timestamp(value: object) -> Optional[datetime]:
    """Accept epoch seconds (the provider's format) or ISO strings."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return parse_timestamp(value)


def object_id(value: object) -> Optional[str]:
    """Id of a provider reference that may be a bare id or an expanded object."""

    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        return object_id(value.get("id"))
    return None


def event_metadata(obj: Mapping[str, Any]) -> Dict[str, str]:
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        return {}
    return {str(key): str(value) for key, value in metadata.items() if value is not None}


def parse_tier(value: object) -> Optional[PremiumTier]:
    if not isinstance(value, str):
        return None
    try:
        return PremiumTier(value.strip().upper())
    except ValueError:
        return None


def _nested(obj: Mapping[str, Any], *path: str) -> object:
    current: object = obj
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _first_item(obj: Mapping[str, Any]) -> Mapping[str, Any]:
    items = _nested(obj, "items", "data")
    if isinstance(items, list) and items and isinstance(items[0], Mapping):
        return items[0]
    return {}


def subscription_price_id(obj: Mapping[str, Any]) -> Optional[str]:
    return object_id(_first_item(obj).get("price")) or object_id(obj.get("plan"))


def subscription_period_end(obj: Mapping[str, Any]) -> Optional[datetime]:
    return parse_provider_timestamp(obj.get("current_period_end")) or parse_provider_timestamp(
        _first_item(obj).get("current_period_end")
    )


def invoice_subscription_id(obj: Mapping[str, Any]) -> Optional[str]:
    return object_id(obj.get("subscription")) or object_id(
        _nested(obj, "parent", "subscription_details", "subscription")
    )


def invoice_metadata(obj: Mapping[str, Any]) -> Dict[str, str]:
    metadata = event_metadata(obj)
    if metadata:
        return metadata
    for details in (
        _nested(obj, "subscription_details"),
        _nested(obj, "parent", "subscription_details"),
    ):
        if isinstance(details, Mapping):
            nested = event_metadata(details)
            if nested:
                return nested
    return {}


def _identifiers(**values: Optional[str]) -> BillingIdentifiers:
    """Billing ids limited to the values the event actually carries."""

    return BillingIdentifiers(**{key: value for key, value in values.items() if value})


def new_subscription_id() -> str:
    return f"prem_{uuid4().hex}"


Handler = Callable[[PremiumRepository, PremiumWebhookEvent, datetime], Optional[PremiumSubscription]]


class WebhookReconciler:
    """Applies provider events to premium subscriptions."""

    def __init__(self, *, grace_period_days: int = 7) -> None:
        self._grace_period = timedelta(days=grace_period_days)
        self._handlers: Dict[WebhookEventFamily, Handler] = {
            WebhookEventFamily.SUBSCRIPTION: self._reconcile_subscription,
            WebhookEventFamily.INVOICE: self._reconcile_invoice,
            WebhookEventFamily.CHECKOUT: self._reconcile_checkout,
            WebhookEventFamily.UNHANDLED: self._ledger_only,
        }

    def reconcile(
        self,
        repository: PremiumRepository,
        event: PremiumWebhookEvent,
        now: datetime,
    ) -> Optional[PremiumSubscription]:
        """Apply ``event`` and record it in the ledger.

        Replays are safe: the ledger row is upserted by event id and the
        subscription changes are a deterministic function of the payload.
        """

        family = classify_event_type(event.event_type)
        subscription = self._handlers[family](repository, event, now)
        if subscription is not None:
            subscription = repository.save_subscription(subscription)

        repository.record_webhook_event(
            WebhookLedgerEntry(
                external_event_id=event.event_id,
                event_type=event.event_type,
                related_subscription_id=subscription.id if subscription is not None else None,
                raw_payload=event.model_dump(mode="json"),
                received_at=now,
            )
        )

        if subscription is not None and subscription.is_active:
            ensure_default_entitlements(repository, subscription)

        logger.info(
            "Reconciled premium webhook %s type=%s family=%s subscription=%s",
            event.event_id,
            event.event_type,
            family.value,
            subscription.id if subscription is not None else None,
        )
        return subscription

    def _ledger_only(
        self,
        repository: PremiumRepository,
        event: PremiumWebhookEvent,
        now: datetime,
    ) -> Optional[PremiumSubscription]:
        logger.debug("No premium handler for webhook type %s", event.event_type)
        return None

    def _reconcile_subscription(
        self,
        repository: PremiumRepository,
        event: PremiumWebhookEvent,
        now: datetime,
    ) -> Optional[PremiumSubscription]:
        obj = event.data
        metadata = event_metadata(obj)
        user_id = metadata.get("userId")
        tier = parse_tier(metadata.get("tier"))
        stripe_subscription_id = object_id(obj.get("id"))
        stripe_customer_id = object_id(obj.get("customer"))

        existing = locate_subscription(
            repository,
            SubscriptionHints(
                stripe_subscription_id=stripe_subscription_id,
                stripe_customer_id=stripe_customer_id,
                user_id=user_id,
            ),
            SUBSCRIPTION_EVENT_LOOKUP_ORDER,
        )
        if existing is None and (not user_id or tier is None):
            logger.info(
                "Skipping premium subscription creation for event %s: userId or tier missing",
                event.event_id,
            )
            return None

        status = map_provider_status(obj.get("status"))
        explicit_cancellation = parse_provider_timestamp(obj.get("canceled_at")) or parse_provider_timestamp(
            obj.get("cancel_at")
        )
        prior_cancellation = existing.cancellation_requested_at if existing is not None else None
        if explicit_cancellation is not None:
            cancellation_requested_at = explicit_cancellation
        elif status == PremiumSubscriptionStatus.CANCELED:
            cancellation_requested_at = prior_cancellation or event.created or now
        else:
            cancellation_requested_at = prior_cancellation

        prior_period_end = existing.current_period_ends_at if existing is not None else None
        identifiers = _identifiers(
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            stripe_price_id=subscription_price_id(obj),
            latest_invoice_id=object_id(obj.get("latest_invoice")),
        )
        changes: Dict[str, Any] = {
            "status": status,
            "current_period_ends_at": subscription_period_end(obj) or prior_period_end,
            "cancellation_requested_at": cancellation_requested_at,
            **identifiers.as_update(),
        }

        if existing is not None:
            return existing.model_copy(
                update={**changes, "tier": tier or existing.tier, "updated_at": now}
            )

        return PremiumSubscription(
            id=new_subscription_id(),
            user_id=user_id,
            tier=tier,
            started_at=parse_provider_timestamp(obj.get("start_date")) or now,
            created_at=now,
            updated_at=now,
            **changes,
        )

    def _reconcile_invoice(
        self,
        repository: PremiumRepository,
        event: PremiumWebhookEvent,
        now: datetime,
    ) -> Optional[PremiumSubscription]:
        obj = event.data
        existing = locate_subscription(
            repository,
            SubscriptionHints(
                stripe_subscription_id=invoice_subscription_id(obj),
                stripe_customer_id=object_id(obj.get("customer")),
                user_id=invoice_metadata(obj).get("userId"),
            ),
            SUBSCRIPTION_EVENT_LOOKUP_ORDER,
        )
        if existing is None:
            logger.info("No premium subscription matches invoice event %s", event.event_id)
            return None

        invoice_status = str(obj.get("status") or "").strip().lower()
        lifecycle = decode_lifecycle(existing.metadata)
        changes: Dict[str, Any] = {"updated_at": now}
        invoice_id = object_id(obj.get("id"))
        if invoice_id:
            changes["latest_invoice_id"] = invoice_id

        patch: Optional[LifecyclePatch] = None
        if event.event_type == WebhookEventType.INVOICE_PAYMENT_FAILED.value:
            failed_at = event.created or now
            grace_period_ends_at = failed_at + self._grace_period
            # a repeated failure never shortens a longer running grace window
            if lifecycle.grace_period_ends_at is not None and lifecycle.grace_period_ends_at > grace_period_ends_at:
                grace_period_ends_at = lifecycle.grace_period_ends_at
            patch = LifecyclePatch(
                grace_period_ends_at=grace_period_ends_at,
                dunning_state=DunningState.PAYMENT_FAILED,
                last_payment_failure_at=failed_at,
                last_reminder_sent_at=None,
            )
            changes["status"] = PremiumSubscriptionStatus.EXPIRED
        elif event.event_type in _PAID_EVENT_TYPES or invoice_status == "paid":
            patch = LifecyclePatch(
                dunning_state=DunningState.NONE,
                grace_period_ends_at=None,
                last_payment_failure_at=None,
            )
            changes["status"] = PremiumSubscriptionStatus.ACTIVE
        elif invoice_status == "open" and lifecycle.dunning_state == DunningState.PAYMENT_FAILED:
            patch = LifecyclePatch(dunning_state=DunningState.PAST_DUE)

        if patch is not None:
            changes["metadata"] = encode_lifecycle(existing.metadata, patch)
        return existing.model_copy(update=changes)

    def _reconcile_checkout(
        self,
        repository: PremiumRepository,
        event: PremiumWebhookEvent,
        now: datetime,
    ) -> Optional[PremiumSubscription]:
        obj = event.data
        metadata = event_metadata(obj)
        user_id = metadata.get("userId") or object_id(obj.get("client_reference_id"))
        tier = parse_tier(metadata.get("tier"))
        identifiers = _identifiers(
            stripe_checkout_session_id=object_id(obj.get("id")),
            stripe_subscription_id=object_id(obj.get("subscription")),
            stripe_customer_id=object_id(obj.get("customer")),
        )

        existing = locate_subscription(
            repository,
            SubscriptionHints(
                checkout_session_id=identifiers.stripe_checkout_session_id,
                stripe_subscription_id=identifiers.stripe_subscription_id,
                stripe_customer_id=identifiers.stripe_customer_id,
                user_id=user_id,
            ),
            CHECKOUT_EVENT_LOOKUP_ORDER,
        )
        if existing is not None:
            changes: Dict[str, Any] = {**identifiers.as_update(), "updated_at": now}
            if tier is not None:
                changes["tier"] = tier
            return existing.model_copy(update=changes)

        if not user_id or tier is None:
            logger.info(
                "Skipping premium checkout creation for event %s: userId or tier missing",
                event.event_id,
            )
            return None

        status = (
            PremiumSubscriptionStatus.TRIALING
            if metadata.get("intent") == START_TRIAL_INTENT
            else PremiumSubscriptionStatus.ACTIVE
        )
        return PremiumSubscription(
            id=new_subscription_id(),
            user_id=user_id,
            tier=tier,
            status=status,
            started_at=now,
            created_at=now,
            updated_at=now,
            **identifiers.as_update(),
        )


__all__ = [
    "PROVIDER_STATUS_MAP",
    "WebhookEventFamily",
    "WebhookEventType",
    "WebhookReconciler",
    "classify_event_type",
    "map_provider_status",
    "parse_provider_timestamp",
]
