"""Persistence layer for subscription records."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Iterator, Optional, Protocol

import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..db import managed_connection
from ..entitlements.models import BillingCycle, FeatureKey, FeatureSet, PlanKey
from .models import (
    PAYMENT_SUBSCRIPTION_REF,
    Cancellation,
    PaymentProviderName,
    Renewal,
    Subscription,
    SubscriptionStatus,
)


class SubscriptionRepository(Protocol):
    """Persistence operations required by the lifecycle and the usage ledger."""

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_by_user(self, user_id: str) -> Optional[Subscription]:
        ...

    def get_by_payment_ref(self, payment_ref: str) -> Optional[Subscription]:
        ...

    def save_subscription(self, subscription: Subscription) -> Subscription:
        """Upsert keyed on the user; at most one record per user.

        Rewriting the same subscription keeps its stored usage counters and
        period anchors; only ``increment_feature_usage`` and
        ``reset_feature_usage`` move them.
        """

    def append_renewal(self, subscription_id: str, renewal: Renewal) -> Optional[Subscription]:
        ...

    def increment_feature_usage(self, subscription_id: str, feature: FeatureKey, *, limit: int) -> bool:
        """Add one to ``features[feature].used`` only while below ``limit``."""

    def reset_feature_usage(
        self,
        subscription_id: str,
        feature: FeatureKey,
        *,
        observed_anchor: Optional[datetime],
        reset_at: datetime,
    ) -> bool:
        """Zero the counter if its period anchor still equals ``observed_anchor``."""

    def record_webhook_event(self, event_id: str, event_type: str) -> bool:
        """Return ``False`` when the event was already processed."""

    def forget_webhook_event(self, event_id: str) -> None:
        """Release an event id whose processing failed so redelivery runs again."""


def _row_to_subscription(row: dict) -> Subscription:
    cancellation = row.get("cancellation")
    return Subscription(
        subscription_id=row["subscription_id"],
        user_id=str(row["user_id"]),
        plan=PlanKey(row["plan"]),
        status=SubscriptionStatus(row["status"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        price=Decimal(str(row["price"])),
        currency=row["currency"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        trial_ends_at=row.get("trial_ends_at"),
        payment_provider=PaymentProviderName(row["payment_provider"]),
        payment_details=row.get("payment_details") or {},
        features=FeatureSet.from_document(row["features"]),
        cancellation=Cancellation.model_validate(cancellation) if cancellation else None,
        renewals=tuple(Renewal.model_validate(item) for item in row.get("renewals") or []),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _renewal_document(renewal: Renewal) -> dict:
    return renewal.model_dump(by_alias=True, mode="json")


class PostgresSubscriptionRepository:
    """Concrete repository persisting subscriptions in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE subscription_id = %s
                LIMIT 1
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_by_user(self, user_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_by_payment_ref(self, payment_ref: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE payment_details ->> %s = %s
                LIMIT 1
                """,
                (PAYMENT_SUBSCRIPTION_REF, payment_ref),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def save_subscription(self, subscription: Subscription) -> Subscription:
        cancellation = subscription.cancellation
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscriptions (
                    subscription_id,
                    user_id,
                    plan,
                    status,
                    billing_cycle,
                    price,
                    currency,
                    start_date,
                    end_date,
                    trial_ends_at,
                    payment_provider,
                    payment_details,
                    features,
                    cancellation,
                    renewals
                )
                VALUES (%(subscription_id)s, %(user_id)s, %(plan)s, %(status)s,
                        %(billing_cycle)s, %(price)s, %(currency)s, %(start_date)s,
                        %(end_date)s, %(trial_ends_at)s, %(payment_provider)s,
                        %(payment_details)s, %(features)s, %(cancellation)s, %(renewals)s)
                ON CONFLICT (user_id) DO UPDATE SET
                    subscription_id = EXCLUDED.subscription_id,
                    plan = EXCLUDED.plan,
                    status = EXCLUDED.status,
                    billing_cycle = EXCLUDED.billing_cycle,
                    price = EXCLUDED.price,
                    currency = EXCLUDED.currency,
                    start_date = EXCLUDED.start_date,
                    end_date = EXCLUDED.end_date,
                    trial_ends_at = EXCLUDED.trial_ends_at,
                    payment_provider = EXCLUDED.payment_provider,
                    payment_details = EXCLUDED.payment_details,
                    features = CASE
                        WHEN subscriptions.subscription_id = EXCLUDED.subscription_id THEN (
                            SELECT jsonb_object_agg(
                                incoming.key,
                                CASE
                                    WHEN incoming.value ? 'used'
                                        AND (subscriptions.features -> incoming.key) ? 'used'
                                        THEN incoming.value || jsonb_build_object(
                                            'used',
                                            subscriptions.features -> incoming.key -> 'used',
                                            'periodStartedAt',
                                            subscriptions.features -> incoming.key -> 'periodStartedAt'
                                        )
                                    ELSE incoming.value
                                END
                            )
                            FROM jsonb_each(EXCLUDED.features) AS incoming(key, value)
                        )
                        ELSE EXCLUDED.features
                    END,
                    cancellation = EXCLUDED.cancellation,
                    renewals = CASE
                        WHEN subscriptions.subscription_id = EXCLUDED.subscription_id
                            THEN subscriptions.renewals
                        ELSE EXCLUDED.renewals
                    END,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "subscription_id": subscription.subscription_id,
                    "user_id": subscription.user_id,
                    "plan": subscription.plan.value,
                    "status": subscription.status.value,
                    "billing_cycle": subscription.billing_cycle.value,
                    "price": subscription.price,
                    "currency": subscription.currency,
                    "start_date": subscription.start_date,
                    "end_date": subscription.end_date,
                    "trial_ends_at": subscription.trial_ends_at,
                    "payment_provider": subscription.payment_provider.value,
                    "payment_details": psycopg2.extras.Json(subscription.payment_details),
                    "features": psycopg2.extras.Json(subscription.features.to_document()),
                    "cancellation": psycopg2.extras.Json(
                        cancellation.model_dump(by_alias=True, mode="json")
                    )
                    if cancellation
                    else None,
                    "renewals": psycopg2.extras.Json(
                        [_renewal_document(renewal) for renewal in subscription.renewals]
                    ),
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def append_renewal(self, subscription_id: str, renewal: Renewal) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET renewals = COALESCE(renewals, '[]'::jsonb) || %(renewal)s::jsonb,
                    updated_at = NOW()
                WHERE subscription_id = %(subscription_id)s
                RETURNING *
                """,
                {
                    "subscription_id": subscription_id,
                    "renewal": psycopg2.extras.Json([_renewal_document(renewal)]),
                },
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def increment_feature_usage(self, subscription_id: str, feature: FeatureKey, *, limit: int) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET features = jsonb_set(
                        features,
                        ARRAY[%(feature)s, 'used'],
                        to_jsonb(COALESCE((features -> %(feature)s ->> 'used')::int, 0) + 1)
                    ),
                    updated_at = NOW()
                WHERE subscription_id = %(subscription_id)s
                  AND features ? %(feature)s
                  AND (
                      %(limit)s = -1
                      OR COALESCE((features -> %(feature)s ->> 'used')::int, 0) < %(limit)s
                  )
                RETURNING subscription_id
                """,
                {"subscription_id": subscription_id, "feature": feature.value, "limit": limit},
            )
            return cursor.rowcount > 0

    def reset_feature_usage(
        self,
        subscription_id: str,
        feature: FeatureKey,
        *,
        observed_anchor: Optional[datetime],
        reset_at: datetime,
    ) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET features = jsonb_set(
                        jsonb_set(features, ARRAY[%(feature)s, 'used'], '0'::jsonb),
                        ARRAY[%(feature)s, 'periodStartedAt'],
                        to_jsonb(%(reset_at)s::text)
                    ),
                    updated_at = NOW()
                WHERE subscription_id = %(subscription_id)s
                  AND (features -> %(feature)s ->> 'periodStartedAt')
                      IS NOT DISTINCT FROM %(observed)s
                """,
                {
                    "subscription_id": subscription_id,
                    "feature": feature.value,
                    "reset_at": reset_at.isoformat(),
                    "observed": observed_anchor.isoformat() if observed_anchor else None,
                },
            )
            return cursor.rowcount > 0

    def record_webhook_event(self, event_id: str, event_type: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_webhook_events (
                    event_id,
                    event_type,
                    processed_at
                )
                VALUES (%s, %s, NOW())
                ON CONFLICT (event_id) DO NOTHING
                """,
                (event_id, event_type),
            )
            return cursor.rowcount > 0

    def forget_webhook_event(self, event_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                DELETE FROM subscription_webhook_events
                WHERE event_id = %s
                """,
                (event_id,),
            )
