"""Persistence ports and the PostgreSQL implementation for premium state."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import ContextManager, Iterable, Iterator, List, Optional, Protocol, Sequence

import psycopg2
import psycopg2.extras
from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from backend.app_context import get_conn

from .lifecycle import LIFECYCLE_KEY, format_timestamp
from .models import (
    PremiumConversionEvent,
    PremiumConversionEventType,
    PremiumEntitlement,
    PremiumFeature,
    PremiumSubscription,
    PremiumSubscriptionStatus,
    PremiumTier,
    WebhookLedgerEntry,
)


class SubscriptionLookupField(str, Enum):
    """Single-column lookups supported by :meth:`PremiumRepository.find_latest_subscription`."""

    STRIPE_SUBSCRIPTION_ID = "stripe_subscription_id"
    CHECKOUT_SESSION_ID = "stripe_checkout_session_id"
    STRIPE_CUSTOMER_ID = "stripe_customer_id"
    USER_ID = "user_id"


class PremiumRepository(Protocol):
    """Operations available inside a premium unit of work."""

    def find_latest_subscription(
        self, field: SubscriptionLookupField, value: str
    ) -> Optional[PremiumSubscription]:
        """Return the match with the most recent ``started_at``."""

    def list_subscriptions_by_status(
        self, status: PremiumSubscriptionStatus
    ) -> Sequence[PremiumSubscription]:
        ...

    def save_subscription(self, subscription: PremiumSubscription) -> PremiumSubscription:
        """Insert or update a subscription keyed by its internal id."""

    def mark_reminder_sent(
        self,
        subscription_id: str,
        *,
        sent_at: datetime,
        expected_previous: Optional[str],
    ) -> Optional[PremiumSubscription]:
        """Compare-and-swap ``lastReminderSentAt``.

        Returns ``None`` when the stored raw value no longer equals
        ``expected_previous``.
        """

    def list_entitlements(self, subscription_id: str) -> Sequence[PremiumEntitlement]:
        ...

    def insert_entitlements(self, subscription_id: str, features: Iterable[PremiumFeature]) -> int:
        """Insert grants, ignoring pairs that already exist."""

    def record_webhook_event(self, entry: WebhookLedgerEntry) -> None:
        """Upsert the ledger row keyed by the external event id."""

    def record_conversion_event(self, event: PremiumConversionEvent) -> None:
        ...

    def list_conversion_events(
        self,
        start: datetime,
        end: datetime,
        *,
        tier: Optional[PremiumTier] = None,
    ) -> Sequence[PremiumConversionEvent]:
        """Events with ``start <= occurred_at < end``.

        With a tier filter, events tagged with that tier match; PREMIUM also
        matches events that carry no tier at all.
        """

    def count_active_subscribers(
        self, reference: datetime, *, tier: Optional[PremiumTier] = None
    ) -> int:
        """Subscriptions that were active or trialing at ``reference``."""


class PremiumStore(Protocol):
    """Unit-of-work factory; every mutating operation runs in one transaction."""

    def transaction(self) -> ContextManager[PremiumRepository]:
        ...


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_subscription(row: dict) -> PremiumSubscription:
    return PremiumSubscription(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        tier=PremiumTier(row["tier"]),
        status=PremiumSubscriptionStatus(row["status"]),
        stripe_customer_id=row.get("stripe_customer_id"),
        stripe_subscription_id=row.get("stripe_subscription_id"),
        stripe_price_id=row.get("stripe_price_id"),
        stripe_checkout_session_id=row.get("stripe_checkout_session_id"),
        latest_invoice_id=row.get("latest_invoice_id"),
        started_at=row["started_at"],
        current_period_ends_at=row.get("current_period_ends_at"),
        cancellation_requested_at=row.get("cancellation_requested_at"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_entitlement(row: dict) -> PremiumEntitlement:
    return PremiumEntitlement(
        subscription_id=str(row["subscription_id"]),
        feature=PremiumFeature(row["feature"]),
        created_at=row["created_at"],
    )


class PostgresPremiumRepository:
    """Repository bound to a cursor of an open transaction."""

    def __init__(self, cursor: PgCursor) -> None:
        self._cursor = cursor

    def find_latest_subscription(
        self, field: SubscriptionLookupField, value: str
    ) -> Optional[PremiumSubscription]:
        query = sql.SQL(
            """
            SELECT *
            FROM premium_subscriptions
            WHERE {column} = %s
            ORDER BY started_at DESC
            LIMIT 1
            """
        ).format(column=sql.Identifier(field.value))
        self._cursor.execute(query, (value,))
        row = self._cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def list_subscriptions_by_status(
        self, status: PremiumSubscriptionStatus
    ) -> List[PremiumSubscription]:
        self._cursor.execute(
            """
            SELECT *
            FROM premium_subscriptions
            WHERE status = %s
            ORDER BY started_at DESC
            """,
            (status.value,),
        )
        rows = self._cursor.fetchall() or []
        return [_row_to_subscription(row) for row in rows]

    def save_subscription(self, subscription: PremiumSubscription) -> PremiumSubscription:
        self._cursor.execute(
            """
            INSERT INTO premium_subscriptions (
                id,
                user_id,
                tier,
                status,
                stripe_customer_id,
                stripe_subscription_id,
                stripe_price_id,
                stripe_checkout_session_id,
                latest_invoice_id,
                started_at,
                current_period_ends_at,
                cancellation_requested_at,
                metadata
            )
            VALUES (%(id)s, %(user_id)s, %(tier)s, %(status)s, %(stripe_customer_id)s,
                    %(stripe_subscription_id)s, %(stripe_price_id)s,
                    %(stripe_checkout_session_id)s, %(latest_invoice_id)s, %(started_at)s,
                    %(current_period_ends_at)s, %(cancellation_requested_at)s, %(metadata)s)
            ON CONFLICT (id) DO UPDATE SET
                tier = EXCLUDED.tier,
                status = EXCLUDED.status,
                stripe_customer_id = EXCLUDED.stripe_customer_id,
                stripe_subscription_id = EXCLUDED.stripe_subscription_id,
                stripe_price_id = EXCLUDED.stripe_price_id,
                stripe_checkout_session_id = EXCLUDED.stripe_checkout_session_id,
                latest_invoice_id = EXCLUDED.latest_invoice_id,
                current_period_ends_at = EXCLUDED.current_period_ends_at,
                cancellation_requested_at = EXCLUDED.cancellation_requested_at,
                metadata = EXCLUDED.metadata,
                updated_at = NOW()
            RETURNING *
            """,
            {
                "id": subscription.id,
                "user_id": subscription.user_id,
                "tier": subscription.tier.value,
                "status": subscription.status.value,
                "stripe_customer_id": subscription.stripe_customer_id,
                "stripe_subscription_id": subscription.stripe_subscription_id,
                "stripe_price_id": subscription.stripe_price_id,
                "stripe_checkout_session_id": subscription.stripe_checkout_session_id,
                "latest_invoice_id": subscription.latest_invoice_id,
                "started_at": subscription.started_at,
                "current_period_ends_at": subscription.current_period_ends_at,
                "cancellation_requested_at": subscription.cancellation_requested_at,
                "metadata": psycopg2.extras.Json(subscription.metadata),
            },
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist premium subscription")
        return _row_to_subscription(row)

    def mark_reminder_sent(
        self,
        subscription_id: str,
        *,
        sent_at: datetime,
        expected_previous: Optional[str],
    ) -> Optional[PremiumSubscription]:
        self._cursor.execute(
            """
            UPDATE premium_subscriptions
            SET metadata = jsonb_set(
                    COALESCE(metadata, '{}'::jsonb),
                    %(path)s,
                    COALESCE(metadata -> %(key)s, '{}'::jsonb)
                        || jsonb_build_object('lastReminderSentAt', %(sent_at)s::text)
                ),
                updated_at = NOW()
            WHERE id = %(id)s
              AND (metadata #>> %(marker_path)s) IS NOT DISTINCT FROM %(expected)s
            RETURNING *
            """,
            {
                "id": subscription_id,
                "key": LIFECYCLE_KEY,
                "path": [LIFECYCLE_KEY],
                "marker_path": [LIFECYCLE_KEY, "lastReminderSentAt"],
                "sent_at": format_timestamp(sent_at),
                "expected": expected_previous,
            },
        )
        row = self._cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def list_entitlements(self, subscription_id: str) -> List[PremiumEntitlement]:
        self._cursor.execute(
            """
            SELECT *
            FROM premium_entitlements
            WHERE subscription_id = %s
            ORDER BY created_at ASC
            """,
            (subscription_id,),
        )
        rows = self._cursor.fetchall() or []
        return [_row_to_entitlement(row) for row in rows]

    def insert_entitlements(self, subscription_id: str, features: Iterable[PremiumFeature]) -> int:
        values = [(subscription_id, feature.value) for feature in features]
        if not values:
            return 0
        psycopg2.extras.execute_values(
            self._cursor,
            """
            INSERT INTO premium_entitlements (subscription_id, feature)
            VALUES %s
            ON CONFLICT (subscription_id, feature) DO NOTHING
            """,
            values,
        )
        return max(self._cursor.rowcount, 0)

    def record_webhook_event(self, entry: WebhookLedgerEntry) -> None:
        self._cursor.execute(
            """
            INSERT INTO premium_subscription_webhook_events (
                stripe_event_id,
                event_type,
                subscription_id,
                payload,
                received_at
            )
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (stripe_event_id) DO UPDATE SET
                event_type = EXCLUDED.event_type,
                subscription_id = COALESCE(
                    EXCLUDED.subscription_id,
                    premium_subscription_webhook_events.subscription_id
                ),
                payload = EXCLUDED.payload
            """,
            (
                entry.external_event_id,
                entry.event_type,
                entry.related_subscription_id,
                psycopg2.extras.Json(entry.raw_payload),
                entry.received_at,
            ),
        )

    def record_conversion_event(self, event: PremiumConversionEvent) -> None:
        self._cursor.execute(
            """
            INSERT INTO premium_conversion_events (
                user_id,
                negotiation_id,
                event_type,
                metadata,
                occurred_at
            )
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                event.user_id,
                event.negotiation_id,
                event.event_type.value,
                psycopg2.extras.Json(event.metadata) if event.metadata is not None else None,
                event.occurred_at,
            ),
        )

    def list_conversion_events(
        self,
        start: datetime,
        end: datetime,
        *,
        tier: Optional[PremiumTier] = None,
    ) -> List[PremiumConversionEvent]:
        tier_clause = sql.SQL("")
        params: dict = {"start": start, "end": end}
        if tier is not None:
            params["tier"] = tier.value
            if tier == PremiumTier.PREMIUM:
                tier_clause = sql.SQL(
                    "AND (metadata IS NULL OR metadata ->> 'tier' IS NULL OR metadata ->> 'tier' = %(tier)s)"
                )
            else:
                tier_clause = sql.SQL("AND metadata ->> 'tier' = %(tier)s")
        query = sql.SQL(
            """
            SELECT user_id, negotiation_id, event_type, metadata, occurred_at
            FROM premium_conversion_events
            WHERE occurred_at >= %(start)s
              AND occurred_at < %(end)s
              {tier_clause}
            ORDER BY occurred_at ASC
            """
        ).format(tier_clause=tier_clause)
        self._cursor.execute(query, params)
        rows = self._cursor.fetchall() or []
        return [
            PremiumConversionEvent(
                event_type=PremiumConversionEventType(row["event_type"]),
                user_id=str(row["user_id"]) if row.get("user_id") is not None else None,
                negotiation_id=row.get("negotiation_id"),
                metadata=row.get("metadata"),
                occurred_at=row["occurred_at"],
            )
            for row in rows
        ]

    def count_active_subscribers(
        self, reference: datetime, *, tier: Optional[PremiumTier] = None
    ) -> int:
        self._cursor.execute(
            """
            SELECT COUNT(*) AS total
            FROM premium_subscriptions
            WHERE status IN ('ACTIVE', 'TRIALING')
              AND (%(tier)s IS NULL OR tier = %(tier)s)
              AND started_at <= %(reference)s
              AND (cancellation_requested_at IS NULL OR cancellation_requested_at > %(reference)s)
              AND (current_period_ends_at IS NULL OR current_period_ends_at > %(reference)s)
            """,
            {"reference": reference, "tier": tier.value if tier is not None else None},
        )
        row = self._cursor.fetchone()
        return int(row["total"]) if row else 0


class PostgresPremiumStore:
    """Opens one PostgreSQL transaction per unit of work.

    When constructed with an existing connection the caller owns the
    transaction boundary and nothing is committed here.
    """

    def __init__(
        self,
        *,
        conn: Optional[PgConnection] = None,
        statement_timeout_ms: int = 0,
    ) -> None:
        self._conn = conn
        self._statement_timeout_ms = max(statement_timeout_ms, 0)

    @contextmanager
    def transaction(self) -> Iterator[PostgresPremiumRepository]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                if self._statement_timeout_ms:
                    cursor.execute(
                        "SET LOCAL statement_timeout = %s",
                        (self._statement_timeout_ms,),
                    )
                yield PostgresPremiumRepository(cursor)
            finally:
                cursor.close()


__all__ = [
    "PostgresPremiumRepository",
    "PostgresPremiumStore",
    "PremiumRepository",
    "PremiumStore",
    "SubscriptionLookupField",
    "managed_connection",
]
