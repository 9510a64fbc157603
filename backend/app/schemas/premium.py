"""API schemas for premium subscription endpoints."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..premium import PremiumConversionMetrics, PremiumProfile, PremiumTier, ReminderDispatchSummary
from ..premium.stripe_gateway import PremiumCheckoutSession


class PremiumSubscriptionAction(str, Enum):
    UPGRADE_CTA_VIEWED = "UPGRADE_CTA_VIEWED"
    START_TRIAL = "START_TRIAL"
    UPGRADE_CONFIRMED = "UPGRADE_CONFIRMED"


class PremiumSubscriptionRequest(BaseModel):
    action: PremiumSubscriptionAction
    tier: Optional[PremiumTier] = None
    negotiation_id: Optional[str] = Field(alias="negotiationId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PremiumCheckoutRequest(BaseModel):
    action: PremiumSubscriptionAction = PremiumSubscriptionAction.UPGRADE_CONFIRMED
    tier: PremiumTier = PremiumTier.PREMIUM
    success_url: str = Field(alias="successUrl", min_length=1)
    cancel_url: str = Field(alias="cancelUrl", min_length=1)
    trial_period_days: Optional[int] = Field(alias="trialPeriodDays", default=None, ge=1, le=730)

    model_config = ConfigDict(populate_by_name=True)


class PremiumCheckoutResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    url: str
    customer_id: str = Field(alias="customerId")
    price_id: str = Field(alias="priceId")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_session(cls, session: PremiumCheckoutSession) -> "PremiumCheckoutResponse":
        return cls(
            session_id=session.session_id,
            url=session.url,
            customer_id=session.customer_id,
            price_id=session.price_id,
        )


class PremiumProfileResponse(BaseModel):
    profile: PremiumProfile

    model_config = ConfigDict(populate_by_name=True)


class WebhookAcknowledgement(BaseModel):
    received: bool = True
    event_id: str = Field(alias="eventId")
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ReminderDispatchResponse(BaseModel):
    reminders_sent: int = Field(alias="remindersSent")
    skipped: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: ReminderDispatchSummary) -> "ReminderDispatchResponse":
        return cls(reminders_sent=summary.reminders_sent, skipped=summary.skipped)


class PremiumMetricsResponse(BaseModel):
    metrics: PremiumConversionMetrics

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "PremiumCheckoutRequest",
    "PremiumCheckoutResponse",
    "PremiumMetricsResponse",
    "PremiumProfileResponse",
    "PremiumSubscriptionAction",
    "PremiumSubscriptionRequest",
    "ReminderDispatchResponse",
    "WebhookAcknowledgement",
]
