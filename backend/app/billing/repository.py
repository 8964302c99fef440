"""Persistence layer for billing domain objects."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from ..entitlements.models import (
    BillingInterval,
    EntitledPlan,
    FeatureLimits,
    LimitedFeature,
    SubscriptionStatus,
    UsageRecord,
)
from .models import (
    BillingUser,
    BillingWebhookEvent,
    PaymentRecord,
    PaymentStatus,
    PaymentSummary,
    Plan,
    Subscription,
)

_USER_COLUMNS = "id, username, email, provider_customer_id, trial_start, trial_end"


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


def _row_to_user(row: dict) -> BillingUser:
    return BillingUser(
        id=str(row["id"]),
        email=row.get("email") or "",
        display_name=row.get("username"),
        provider_customer_id=row.get("provider_customer_id"),
        trial_start=row.get("trial_start"),
        trial_end=row.get("trial_end"),
    )


def _row_to_plan(row: dict) -> Plan:
    limits = row.get("feature_limits")
    return Plan(
        id=row["id"],
        name=row["name"],
        display_name=row["display_name"],
        description=row.get("description"),
        price=row["price"],
        currency=row["currency"],
        billing_interval=BillingInterval(row["billing_interval"]),
        provider_price_id=row.get("provider_price_id"),
        provider_product_id=row.get("provider_product_id"),
        is_active=bool(row["is_active"]),
        sort_order=int(row.get("sort_order") or 0),
        feature_limits=FeatureLimits.model_validate(limits) if limits else None,
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        id=row["id"],
        user_id=str(row["user_id"]),
        plan_id=row["plan_id"],
        provider_subscription_id=row["provider_subscription_id"],
        provider_customer_id=row["provider_customer_id"],
        status=SubscriptionStatus(row["status"]),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        cancel_at_period_end=bool(row.get("cancel_at_period_end")),
        canceled_at=row.get("canceled_at"),
        trial_start=row.get("trial_start"),
        trial_end=row.get("trial_end"),
        provider_created_at=row.get("provider_created_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_payment(row: dict) -> PaymentRecord:
    return PaymentRecord(
        id=row["id"],
        user_id=str(row["user_id"]),
        subscription_id=row.get("subscription_id"),
        provider_invoice_id=row["provider_invoice_id"],
        provider_payment_intent_id=row.get("provider_payment_intent_id"),
        amount_minor=int(row["amount_minor"]),
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        description=row.get("description"),
        hosted_invoice_url=row.get("hosted_invoice_url"),
        pdf_url=row.get("pdf_url"),
        paid_at=row.get("paid_at"),
        failed_at=row.get("failed_at"),
        failure_reason=row.get("failure_reason"),
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_usage(row: dict) -> UsageRecord:
    return UsageRecord(
        user_id=str(row["user_id"]),
        feature=LimitedFeature(row["feature"]),
        period_start=row["period_start"],
        count=int(row["count"]),
        recorded_at=row["recorded_at"],
    )


class PostgresBillingRepository:
    """Concrete repository persisting billing models in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()

    # users

    def get_user(self, user_id: str) -> Optional[BillingUser]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,))
            row = cursor.fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_customer_id(self, customer_id: str) -> Optional[BillingUser]:
        with self._cursor() as cursor:
            cursor.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE provider_customer_id = %s LIMIT 1",
                (customer_id,),
            )
            row = cursor.fetchone()
        return _row_to_user(row) if row else None

    def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> str:
        """Compare-and-swap write; the unique index rejects ids owned by another user."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET provider_customer_id = %s
                WHERE id = %s AND provider_customer_id IS NULL
                RETURNING provider_customer_id
                """,
                (customer_id, user_id),
            )
            row = cursor.fetchone()
            if row:
                return row["provider_customer_id"]

            cursor.execute("SELECT provider_customer_id FROM users WHERE id = %s", (user_id,))
            row = cursor.fetchone()
        if not row or not row["provider_customer_id"]:
            raise LookupError(f"User {user_id} not found while storing customer id")
        return row["provider_customer_id"]

    def clear_customer_id(self, user_id: str, stale_customer_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET provider_customer_id = NULL
                WHERE id = %s AND provider_customer_id = %s
                """,
                (user_id, stale_customer_id),
            )
            return cursor.rowcount > 0

    # plans

    def list_active_plans(self) -> List[Plan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_plans
                WHERE is_active
                ORDER BY sort_order, price
                """
            )
            rows = cursor.fetchall() or []
        return [_row_to_plan(row) for row in rows]

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_plans WHERE id = %s", (plan_id,))
            row = cursor.fetchone()
        return _row_to_plan(row) if row else None

    def get_plan_by_price_id(self, price_id: str) -> Optional[Plan]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_plans WHERE provider_price_id = %s LIMIT 1", (price_id,))
            row = cursor.fetchone()
        return _row_to_plan(row) if row else None

    # subscriptions

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_subscriptions WHERE id = %s", (subscription_id,))
            row = cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_subscriptions WHERE provider_subscription_id = %s",
                (provider_subscription_id,),
            )
            row = cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def list_user_subscriptions(
        self,
        user_id: str,
        *,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> List[Subscription]:
        with self._cursor() as cursor:
            if statuses is None:
                cursor.execute(
                    "SELECT * FROM billing_subscriptions WHERE user_id = %s ORDER BY updated_at DESC",
                    (user_id,),
                )
            else:
                cursor.execute(
                    """
                    SELECT *
                    FROM billing_subscriptions
                    WHERE user_id = %s AND status = ANY(%s)
                    ORDER BY updated_at DESC
                    """,
                    (user_id, [status.value for status in statuses]),
                )
            rows = cursor.fetchall() or []
        return [_row_to_subscription(row) for row in rows]

    def upsert_subscription(self, subscription: Subscription) -> Subscription:
        """Insert or update a subscription keyed by its provider id."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_subscriptions (
                    id,
                    user_id,
                    plan_id,
                    provider_subscription_id,
                    provider_customer_id,
                    status,
                    current_period_start,
                    current_period_end,
                    cancel_at_period_end,
                    canceled_at,
                    trial_start,
                    trial_end,
                    provider_created_at,
                    created_at,
                    updated_at
                )
                VALUES (%(id)s, %(user_id)s, %(plan_id)s, %(provider_subscription_id)s,
                        %(provider_customer_id)s, %(status)s, %(current_period_start)s,
                        %(current_period_end)s, %(cancel_at_period_end)s, %(canceled_at)s,
                        %(trial_start)s, %(trial_end)s, %(provider_created_at)s,
                        %(created_at)s, %(updated_at)s)
                ON CONFLICT (provider_subscription_id) DO UPDATE SET
                    user_id = EXCLUDED.user_id,
                    plan_id = EXCLUDED.plan_id,
                    provider_customer_id = EXCLUDED.provider_customer_id,
                    status = EXCLUDED.status,
                    current_period_start = EXCLUDED.current_period_start,
                    current_period_end = EXCLUDED.current_period_end,
                    cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                    canceled_at = EXCLUDED.canceled_at,
                    trial_start = EXCLUDED.trial_start,
                    trial_end = EXCLUDED.trial_end,
                    provider_created_at = EXCLUDED.provider_created_at,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "id": subscription.id,
                    "user_id": subscription.user_id,
                    "plan_id": subscription.plan_id,
                    "provider_subscription_id": subscription.provider_subscription_id,
                    "provider_customer_id": subscription.provider_customer_id,
                    "status": subscription.status.value,
                    "current_period_start": subscription.current_period_start,
                    "current_period_end": subscription.current_period_end,
                    "cancel_at_period_end": subscription.cancel_at_period_end,
                    "canceled_at": subscription.canceled_at,
                    "trial_start": subscription.trial_start,
                    "trial_end": subscription.trial_end,
                    "provider_created_at": subscription.provider_created_at,
                    "created_at": subscription.created_at,
                    "updated_at": subscription.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def update_subscription_status(
        self,
        subscription_id: str,
        *,
        status: SubscriptionStatus,
        canceled_at: Optional[datetime],
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE billing_subscriptions
                SET status = %s,
                    canceled_at = %s,
                    updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (status.value, canceled_at, subscription_id),
            )
            row = cursor.fetchone()
        return _row_to_subscription(row) if row else None

    def get_entitled_plan(self, user_id: str) -> Optional[EntitledPlan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT s.id AS subscription_id,
                       s.user_id,
                       s.status,
                       p.id AS plan_id,
                       p.name AS plan_name,
                       p.feature_limits
                FROM billing_subscriptions s
                JOIN billing_plans p ON p.id = s.plan_id
                WHERE s.user_id = %s
                  AND s.status IN ('active', 'trialing', 'past_due')
                ORDER BY CASE WHEN s.status IN ('active', 'trialing') THEN 0 ELSE 1 END,
                         s.updated_at DESC
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        limits = row.get("feature_limits")
        return EntitledPlan(
            user_id=str(row["user_id"]),
            subscription_id=row["subscription_id"],
            subscription_status=SubscriptionStatus(row["status"]),
            plan_id=row["plan_id"],
            plan_name=row["plan_name"],
            feature_limits=FeatureLimits.model_validate(limits) if limits else None,
        )

    # payments

    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_payments WHERE id = %s", (payment_id,))
            row = cursor.fetchone()
        return _row_to_payment(row) if row else None

    def get_payment_by_invoice_id(self, provider_invoice_id: str) -> Optional[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_payments WHERE provider_invoice_id = %s",
                (provider_invoice_id,),
            )
            row = cursor.fetchone()
        return _row_to_payment(row) if row else None

    def upsert_payment(self, record: PaymentRecord) -> PaymentRecord:
        """Insert or update a payment record keyed by its provider invoice id."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_payments (
                    id,
                    user_id,
                    subscription_id,
                    provider_invoice_id,
                    provider_payment_intent_id,
                    amount_minor,
                    currency,
                    status,
                    description,
                    hosted_invoice_url,
                    pdf_url,
                    paid_at,
                    failed_at,
                    failure_reason,
                    metadata,
                    created_at,
                    updated_at
                )
                VALUES (%(id)s, %(user_id)s, %(subscription_id)s, %(provider_invoice_id)s,
                        %(provider_payment_intent_id)s, %(amount_minor)s, %(currency)s,
                        %(status)s, %(description)s, %(hosted_invoice_url)s, %(pdf_url)s,
                        %(paid_at)s, %(failed_at)s, %(failure_reason)s, %(metadata)s,
                        %(created_at)s, %(updated_at)s)
                ON CONFLICT (provider_invoice_id) DO UPDATE SET
                    subscription_id = EXCLUDED.subscription_id,
                    provider_payment_intent_id = EXCLUDED.provider_payment_intent_id,
                    amount_minor = EXCLUDED.amount_minor,
                    currency = EXCLUDED.currency,
                    status = EXCLUDED.status,
                    description = EXCLUDED.description,
                    hosted_invoice_url = EXCLUDED.hosted_invoice_url,
                    pdf_url = EXCLUDED.pdf_url,
                    paid_at = EXCLUDED.paid_at,
                    failed_at = EXCLUDED.failed_at,
                    failure_reason = EXCLUDED.failure_reason,
                    metadata = EXCLUDED.metadata,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "id": record.id,
                    "user_id": record.user_id,
                    "subscription_id": record.subscription_id,
                    "provider_invoice_id": record.provider_invoice_id,
                    "provider_payment_intent_id": record.provider_payment_intent_id,
                    "amount_minor": record.amount_minor,
                    "currency": record.currency,
                    "status": record.status.value,
                    "description": record.description,
                    "hosted_invoice_url": record.hosted_invoice_url,
                    "pdf_url": record.pdf_url,
                    "paid_at": record.paid_at,
                    "failed_at": record.failed_at,
                    "failure_reason": record.failure_reason,
                    "metadata": psycopg2.extras.Json(record.metadata),
                    "created_at": record.created_at,
                    "updated_at": record.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist payment record")
            return _row_to_payment(row)

    def list_payments(
        self,
        user_id: str,
        *,
        status: Optional[PaymentStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[PaymentRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_payments
                WHERE user_id = %(user_id)s
                  AND (%(status)s::text IS NULL OR status = %(status)s)
                ORDER BY created_at DESC, id
                LIMIT %(limit)s OFFSET %(offset)s
                """,
                {
                    "user_id": user_id,
                    "status": status.value if status else None,
                    "limit": limit,
                    "offset": offset,
                },
            )
            rows = cursor.fetchall() or []
        return [_row_to_payment(row) for row in rows]

    def summarize_payments(self, user_id: str) -> PaymentSummary:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT COUNT(*) FILTER (WHERE status = 'succeeded') AS successful,
                       COUNT(*) FILTER (WHERE status = 'failed') AS failed
                FROM billing_payments
                WHERE user_id = %s
                """,
                (user_id,),
            )
            counts = cursor.fetchone() or {}
            cursor.execute(
                """
                SELECT currency, SUM(amount_minor) AS total
                FROM billing_payments
                WHERE user_id = %s AND status = 'succeeded'
                GROUP BY currency
                """,
                (user_id,),
            )
            totals = cursor.fetchall() or []
        return PaymentSummary(
            successful_payments=int(counts.get("successful") or 0),
            failed_payments=int(counts.get("failed") or 0),
            totals_by_currency={row["currency"]: int(row["total"]) for row in totals},
        )

    # webhooks and usage

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (event_id, event_type, payload, received_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.event_type,
                    psycopg2.extras.Json(event.payload),
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0

    def release_webhook_event(self, event_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM billing_webhook_events WHERE event_id = %s", (event_id,))

    def increment_usage(
        self,
        user_id: str,
        feature: LimitedFeature,
        period_start: datetime,
        count: int,
    ) -> UsageRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_usage (user_id, feature, period_start, count)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, feature, period_start) DO UPDATE SET
                    count = billing_usage.count + EXCLUDED.count,
                    recorded_at = NOW()
                RETURNING *
                """,
                (user_id, feature.value, period_start, count),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to record usage")
            return _row_to_usage(row)

    def get_usage(self, user_id: str, feature: LimitedFeature, period_start: datetime) -> Optional[UsageRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_usage
                WHERE user_id = %s AND feature = %s AND period_start = %s
                """,
                (user_id, feature.value, period_start),
            )
            row = cursor.fetchone()
        return _row_to_usage(row) if row else None


__all__ = ["PostgresBillingRepository", "managed_connection"]
