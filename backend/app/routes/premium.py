"""API routes exposing premium subscriptions and the Stripe webhook ingress."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Callable, Optional

import stripe
from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, status
from starlette.requests import ClientDisconnect

from ..premium import PremiumConversionEventType, PremiumSubscriptionStatus, PremiumTier
from ..premium.metrics import DEFAULT_WINDOW_DAYS
from ..premium.stripe_gateway import (
    StripeConfigurationError,
    StripePayloadError,
    StripeWebhookSignatureError,
    construct_webhook_event,
)
from ..schemas.premium import (
    PremiumCheckoutRequest,
    PremiumCheckoutResponse,
    PremiumMetricsResponse,
    PremiumProfileResponse,
    PremiumSubscriptionAction,
    PremiumSubscriptionRequest,
    ReminderDispatchResponse,
    WebhookAcknowledgement,
)
from ..services.premium import get_premium_service

logger = logging.getLogger("premium")


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from backend.main import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from ...main import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": code, "message": message})


def _require_admin(current_user) -> None:
    if getattr(current_user, "role", None) != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")


router = APIRouter(prefix="/api/marketplace/premium", tags=["premium"])

_ACTION_STATUS = {
    PremiumSubscriptionAction.START_TRIAL: (
        PremiumSubscriptionStatus.TRIALING,
        "workspace-trial",
        PremiumConversionEventType.TRIAL_STARTED,
    ),
    PremiumSubscriptionAction.UPGRADE_CONFIRMED: (
        PremiumSubscriptionStatus.ACTIVE,
        "workspace-upgrade",
        PremiumConversionEventType.UPGRADE_CONFIRMED,
    ),
}


@router.get("/subscription", response_model=PremiumProfileResponse)
def get_subscription(*, current_user=Depends(_get_current_user)) -> PremiumProfileResponse:
    service = get_premium_service()
    profile = service.get_profile(str(current_user.id))
    return PremiumProfileResponse(profile=profile)


@router.post("/subscription", response_model=PremiumProfileResponse)
def update_subscription(
    payload: PremiumSubscriptionRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PremiumProfileResponse:
    service = get_premium_service()
    user_id = str(current_user.id)
    tier = payload.tier or PremiumTier.PREMIUM

    if payload.action == PremiumSubscriptionAction.UPGRADE_CTA_VIEWED:
        service.record_conversion_event(
            user_id,
            PremiumConversionEventType.UPGRADE_CTA_VIEWED,
            tier=tier,
            negotiation_id=payload.negotiation_id,
        )
        return PremiumProfileResponse(profile=service.get_profile(user_id))

    subscription_status, source, event_type = _ACTION_STATUS[payload.action]
    profile = service.upsert_subscription(user_id, tier, subscription_status, source=source)
    service.record_conversion_event(
        user_id,
        event_type,
        tier=tier,
        negotiation_id=payload.negotiation_id,
    )
    return PremiumProfileResponse(profile=profile)


@router.post("/checkout", response_model=PremiumCheckoutResponse)
def create_checkout(
    payload: PremiumCheckoutRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PremiumCheckoutResponse:
    if payload.action not in _ACTION_STATUS:
        raise _error(
            status.HTTP_400_BAD_REQUEST, "INVALID_ACTION", "Checkout requires START_TRIAL or UPGRADE_CONFIRMED"
        )

    service = get_premium_service()
    try:
        session = service.create_checkout_session(
            str(current_user.id),
            payload.tier,
            intent=payload.action.value,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
            email=getattr(current_user, "email", None),
            name=getattr(current_user, "username", None),
            trial_period_days=payload.trial_period_days,
        )
    except StripeConfigurationError as exc:
        logger.error("Premium checkout is not configured: %s", exc)
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "CHECKOUT_NOT_CONFIGURED", str(exc)) from exc
    except stripe.StripeError as exc:
        logger.warning("Stripe rejected premium checkout for user %s: %s", current_user.id, exc)
        raise _error(status.HTTP_502_BAD_GATEWAY, "CHECKOUT_FAILED", "Unable to start checkout") from exc

    return PremiumCheckoutResponse.from_session(session)


@router.post("/stripe/webhook", response_model=WebhookAcknowledgement)
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookAcknowledgement:
    service = get_premium_service()
    try:
        body = await request.body()
    except (ClientDisconnect, RuntimeError) as exc:
        logger.error("Failed to read Stripe webhook body: %s", exc)
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "BODY_READ_FAILED", "Unable to read request body") from exc

    try:
        event = construct_webhook_event(body, stripe_signature, service.config)
    except StripeConfigurationError as exc:
        logger.error("Stripe webhook received without a configured secret")
        raise _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "WEBHOOK_NOT_CONFIGURED", str(exc)) from exc
    except StripeWebhookSignatureError as exc:
        raise _error(status.HTTP_401_UNAUTHORIZED, "INVALID_SIGNATURE", str(exc)) from exc
    except StripePayloadError as exc:
        raise _error(status.HTTP_400_BAD_REQUEST, "INVALID_PAYLOAD", str(exc)) from exc

    try:
        subscription = service.handle_webhook(event)
    except Exception as exc:
        logger.exception(
            "Failed to process Stripe webhook %s",
            event.event_id,
            extra={"event_type": event.event_type},
        )
        raise _error(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "PROCESSING_FAILED", "Webhook processing failed"
        ) from exc

    return WebhookAcknowledgement(
        event_id=event.event_id,
        subscription_id=subscription.id if subscription is not None else None,
    )


@router.post("/reminders/dispatch", response_model=ReminderDispatchResponse)
def dispatch_reminders(*, current_user=Depends(_get_current_user)) -> ReminderDispatchResponse:
    _require_admin(current_user)

    service = get_premium_service()
    summary = service.dispatch_reminders()
    return ReminderDispatchResponse.from_summary(summary)


@router.get("/metrics", response_model=PremiumMetricsResponse)
def get_conversion_metrics(
    window_days: int = Query(DEFAULT_WINDOW_DAYS, alias="windowDays"),
    tier: Optional[PremiumTier] = Query(None),
    *,
    current_user=Depends(_get_current_user),
) -> PremiumMetricsResponse:
    _require_admin(current_user)

    service = get_premium_service()
    metrics = service.get_conversion_metrics(window_days, tier)
    return PremiumMetricsResponse(metrics=metrics)
