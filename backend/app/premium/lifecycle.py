"""Codec and state resolver for the ``premiumLifecycle`` metadata sub-document.

The lifecycle document lives inside the subscription's free-form metadata so
it can evolve without schema migrations. Reads are lenient: anything that
cannot be interpreted is treated as "not yet observed". Writes only ever touch
the namespaced sub-document and leave sibling metadata keys alone.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from .models import (
    DunningState,
    LifecycleFields,
    LifecyclePatch,
    LifecycleSnapshot,
    PremiumSubscription,
    PremiumTier,
)

LIFECYCLE_KEY = "premiumLifecycle"

_WIRE_KEYS: Dict[str, str] = {
    "seat_capacity": "seatCapacity",
    "seats_in_use": "seatsInUse",
    "grace_period_ends_at": "gracePeriodEndsAt",
    "downgrade_at": "downgradeAt",
    "downgrade_target_tier": "downgradeTargetTier",
    "dunning_state": "dunningState",
    "last_payment_failure_at": "lastPaymentFailureAt",
    "last_reminder_sent_at": "lastReminderSentAt",
}

_E = TypeVar("_E", bound=Enum)


def format_timestamp(value: datetime) -> str:
    """Canonical UTC representation used for every stored timestamp."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse a stored timestamp, returning ``None`` for anything unparsable."""

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_count(value: object) -> Optional[int]:
    # bool is an int subclass but never a valid seat count
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _parse_enum(enum_type: Type[_E], value: object) -> Optional[_E]:
    if not isinstance(value, str):
        return None
    try:
        return enum_type(value)
    except ValueError:
        return None


def _lifecycle_document(metadata: object) -> Optional[Mapping[str, Any]]:
    if not isinstance(metadata, Mapping):
        return None
    document = metadata.get(LIFECYCLE_KEY)
    if not isinstance(document, Mapping):
        return None
    return document


def decode_lifecycle(metadata: object) -> LifecycleFields:
    """Read the lifecycle sub-document from subscription metadata."""

    document = _lifecycle_document(metadata)
    if document is None:
        return LifecycleFields()

    return LifecycleFields(
        seat_capacity=_parse_count(document.get("seatCapacity")),
        seats_in_use=_parse_count(document.get("seatsInUse")),
        grace_period_ends_at=parse_timestamp(document.get("gracePeriodEndsAt")),
        downgrade_at=parse_timestamp(document.get("downgradeAt")),
        downgrade_target_tier=_parse_enum(PremiumTier, document.get("downgradeTargetTier")),
        dunning_state=_parse_enum(DunningState, document.get("dunningState")),
        last_payment_failure_at=parse_timestamp(document.get("lastPaymentFailureAt")),
        last_reminder_sent_at=parse_timestamp(document.get("lastReminderSentAt")),
    )


def _to_wire(value: object) -> object:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Enum):
        return value.value
    return value


def encode_lifecycle(metadata: object, patch: LifecyclePatch) -> Dict[str, Any]:
    """Return a copy of ``metadata`` with ``patch`` merged into the lifecycle document."""

    merged: Dict[str, Any] = dict(metadata) if isinstance(metadata, Mapping) else {}
    document = _lifecycle_document(merged)
    updated: Dict[str, Any] = dict(document) if document is not None else {}

    for field_name in sorted(patch.model_fields_set):
        updated[_WIRE_KEYS[field_name]] = _to_wire(getattr(patch, field_name))

    merged[LIFECYCLE_KEY] = updated
    return merged


def merge_metadata(metadata: object, **values: Any) -> Dict[str, Any]:
    """Set top-level metadata keys without touching the lifecycle document."""

    merged: Dict[str, Any] = dict(metadata) if isinstance(metadata, Mapping) else {}
    for key, value in values.items():
        if key == LIFECYCLE_KEY:
            raise ValueError("Use encode_lifecycle to update the lifecycle document")
        merged[key] = value
    return merged


def resolve_lifecycle_state(subscription: PremiumSubscription, now: datetime) -> LifecycleSnapshot:
    """Derive the lifecycle snapshot of ``subscription`` at ``now``."""

    fields = decode_lifecycle(subscription.metadata)
    capacity = fields.seat_capacity
    in_use = fields.seats_in_use

    if capacity is not None and in_use is not None:
        seats_available: Optional[int] = max(capacity - in_use, 0)
    else:
        seats_available = capacity

    dunning_state = fields.dunning_state or DunningState.NONE
    grace_ends = fields.grace_period_ends_at
    downgrade_at = fields.downgrade_at

    return LifecycleSnapshot(
        seat_capacity=capacity,
        seats_in_use=in_use,
        seats_available=seats_available,
        is_seat_capacity_exceeded=capacity is not None and in_use is not None and in_use > capacity,
        grace_period_ends_at=grace_ends,
        # PAST_DUE no longer protects entitlements, only a fresh failure does.
        is_in_grace_period=(
            grace_ends is not None
            and grace_ends > now
            and dunning_state == DunningState.PAYMENT_FAILED
        ),
        downgrade_at=downgrade_at,
        downgrade_target_tier=fields.downgrade_target_tier,
        is_downgrade_scheduled=downgrade_at is not None and downgrade_at > now,
        dunning_state=dunning_state,
        last_payment_failure_at=fields.last_payment_failure_at,
        last_reminder_sent_at=fields.last_reminder_sent_at,
    )


__all__ = [
    "LIFECYCLE_KEY",
    "decode_lifecycle",
    "encode_lifecycle",
    "format_timestamp",
    "merge_metadata",
    "parse_timestamp",
    "resolve_lifecycle_state",
]
