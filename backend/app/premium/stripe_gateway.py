"""Stripe checkout sessions plus verification and parsing of webhook deliveries."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import stripe

from .config import PremiumConfig, price_id_env_key
from .models import PremiumTier, PremiumWebhookEvent
from .webhooks import parse_provider_timestamp

logger = logging.getLogger(__name__)


class StripeConfigurationError(RuntimeError):
    """Raised when a Stripe secret, signing secret or price id is not configured."""


class StripeWebhookSignatureError(ValueError):
    """Raised when the signature header is missing or does not verify."""


class StripePayloadError(ValueError):
    """Raised when a verified body is not a usable Stripe event."""


def _decode_body(payload: Union[bytes, str]) -> str:
    if isinstance(payload, bytes):
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise StripePayloadError("Webhook body is not valid UTF-8") from exc
    return payload


def parse_webhook_event(document: Mapping[str, Any]) -> PremiumWebhookEvent:
    """Build a :class:`PremiumWebhookEvent` from a decoded Stripe event."""

    event_id = document.get("id")
    event_type = document.get("type")
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not event_type:
        raise StripePayloadError("Webhook event is missing id or type")

    data = document.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    return PremiumWebhookEvent(
        event_id=event_id,
        event_type=event_type,
        created=parse_provider_timestamp(document.get("created")),
        data=dict(obj) if isinstance(obj, Mapping) else {},
    )


def construct_webhook_event(
    payload: Union[bytes, str],
    signature: Optional[str],
    config: PremiumConfig,
) -> PremiumWebhookEvent:
    """Verify the ``Stripe-Signature`` header and parse the delivery."""

    secret = config.stripe_webhook_secret
    if not secret:
        raise StripeConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
    if not signature:
        raise StripeWebhookSignatureError("Missing Stripe-Signature header")

    body = _decode_body(payload)
    try:
        stripe.WebhookSignature.verify_header(
            body,
            signature,
            secret,
            config.stripe_webhook_tolerance_seconds or None,
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Rejected Stripe webhook with invalid signature: %s", exc)
        raise StripeWebhookSignatureError(str(exc)) from exc

    try:
        document = json.loads(body)
    except json.JSONDecodeError as exc:
        raise StripePayloadError("Webhook body is not valid JSON") from exc
    if not isinstance(document, Mapping):
        raise StripePayloadError("Webhook body must be a JSON object")

    return parse_webhook_event(document)


@dataclass(frozen=True)
class PremiumCheckoutSession:
    session_id: str
    url: str
    customer_id: str
    price_id: str


def _require_secret_key(config: PremiumConfig) -> str:
    if not config.stripe_secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured")
    return config.stripe_secret_key


def resolve_tier_price_id(tier: PremiumTier, config: PremiumConfig) -> str:
    price_id = config.stripe_price_ids.get(tier.value)
    if not price_id:
        raise StripeConfigurationError(
            f"Stripe price id missing for tier {tier.value}. Expected env {price_id_env_key(tier)}."
        )
    return price_id


def ensure_stripe_customer(
    user_id: str,
    config: PremiumConfig,
    *,
    customer_id: Optional[str] = None,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> Tuple[str, bool]:
    """Return ``(customer_id, created)``, creating a Stripe customer when none is known."""

    if customer_id:
        return customer_id, False

    params: Dict[str, Any] = {"metadata": {"userId": user_id}}
    if email:
        params["email"] = email
    if name:
        params["name"] = name
    customer = stripe.Customer.create(api_key=_require_secret_key(config), **params)
    logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
    return customer.id, True


def _stringify_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    if not metadata:
        return {}
    return {str(key): str(value) for key, value in metadata.items()}


def create_checkout_session(
    *,
    user_id: str,
    tier: PremiumTier,
    intent: str,
    success_url: str,
    cancel_url: str,
    config: PremiumConfig,
    existing_customer_id: Optional[str] = None,
    email: Optional[str] = None,
    name: Optional[str] = None,
    trial_period_days: Optional[int] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> PremiumCheckoutSession:
    """Open a hosted subscription checkout for ``tier``.

    ``userId``, ``tier`` and ``intent`` are written to both the session and
    the subscription metadata so the resulting webhooks can be reconciled.
    """

    api_key = _require_secret_key(config)
    price_id = resolve_tier_price_id(tier, config)
    customer_id, _created = ensure_stripe_customer(
        user_id,
        config,
        customer_id=existing_customer_id,
        email=email,
        name=name,
    )

    session_metadata = {
        "userId": user_id,
        "tier": tier.value,
        "intent": intent,
        **_stringify_metadata(metadata),
    }
    subscription_data: Dict[str, Any] = {"metadata": dict(session_metadata)}
    if trial_period_days:
        subscription_data["trial_period_days"] = trial_period_days

    session = stripe.checkout.Session.create(
        api_key=api_key,
        mode="subscription",
        success_url=success_url,
        cancel_url=cancel_url,
        customer=customer_id,
        allow_promotion_codes=True,
        line_items=[{"price": price_id, "quantity": 1}],
        subscription_data=subscription_data,
        metadata=session_metadata,
    )
    if not session.url:
        raise RuntimeError("Stripe checkout session has no hosted url")

    logger.info(
        "Created Stripe checkout session %s user=%s tier=%s intent=%s",
        session.id,
        user_id,
        tier.value,
        intent,
    )
    return PremiumCheckoutSession(
        session_id=session.id,
        url=session.url,
        customer_id=customer_id,
        price_id=price_id,
    )


__all__ = [
    "PremiumCheckoutSession",
    "StripeConfigurationError",
    "StripePayloadError",
    "StripeWebhookSignatureError",
    "construct_webhook_event",
    "create_checkout_session",
    "ensure_stripe_customer",
    "parse_webhook_event",
    "resolve_tier_price_id",
]
