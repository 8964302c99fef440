"""Collaborator protocols shared by the billing engines."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol, Sequence

from ..entitlements.models import (
    EntitledPlan,
    LimitCheckResult,
    LimitedFeature,
    SubscriptionStatus,
    UsageRecord,
)
from .models import (
    BillingAuditEvent,
    BillingUser,
    BillingWebhookEvent,
    PaymentRecord,
    PaymentStatus,
    PaymentSummary,
    Plan,
    Subscription,
)


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class EntitlementInvalidator(Protocol):
    """Invalidates entitlement caches affected by billing changes."""

    def invalidate_user(self, user_id: str) -> None:
        ...


class LimitEvaluator(Protocol):
    """Plan limit checks; implemented by the entitlements evaluator."""

    def check_limit(self, user_id: str, feature: str, current_usage: int) -> LimitCheckResult:
        ...

    def invalidate_user(self, user_id: str) -> None:
        ...


class BillingRepository(Protocol):
    """Persistence operations required by the billing engines."""

    # users
    def get_user(self, user_id: str) -> Optional[BillingUser]:
        ...

    def get_user_by_customer_id(self, customer_id: str) -> Optional[BillingUser]:
        ...

    def set_customer_id_if_absent(self, user_id: str, customer_id: str) -> str:
        """Store ``customer_id`` only while none is stored; return the stored id."""

    def clear_customer_id(self, user_id: str, stale_customer_id: str) -> bool:
        """Clear the stored id only while it still equals ``stale_customer_id``."""

    # plans
    def list_active_plans(self) -> Sequence[Plan]:
        ...

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    def get_plan_by_price_id(self, price_id: str) -> Optional[Plan]:
        ...

    # subscriptions
    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        ...

    def list_user_subscriptions(
        self,
        user_id: str,
        *,
        statuses: Optional[Iterable[SubscriptionStatus]] = None,
    ) -> Sequence[Subscription]:
        ...

    def upsert_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def update_subscription_status(
        self,
        subscription_id: str,
        *,
        status: SubscriptionStatus,
        canceled_at: Optional[datetime],
    ) -> Optional[Subscription]:
        ...

    def get_entitled_plan(self, user_id: str) -> Optional[EntitledPlan]:
        ...

    # payments
    def get_payment(self, payment_id: str) -> Optional[PaymentRecord]:
        ...

    def get_payment_by_invoice_id(self, provider_invoice_id: str) -> Optional[PaymentRecord]:
        ...

    def upsert_payment(self, record: PaymentRecord) -> PaymentRecord:
        ...

    def list_payments(
        self,
        user_id: str,
        *,
        status: Optional[PaymentStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Sequence[PaymentRecord]:
        ...

    def summarize_payments(self, user_id: str) -> PaymentSummary:
        ...

    # webhooks and usage
    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        """Return ``False`` when the event id was already recorded."""

    def release_webhook_event(self, event_id: str) -> None:
        """Forget an event whose processing failed so a redelivery is handled."""

    def increment_usage(
        self,
        user_id: str,
        feature: LimitedFeature,
        period_start: datetime,
        count: int,
    ) -> UsageRecord:
        ...

    def get_usage(self, user_id: str, feature: LimitedFeature, period_start: datetime) -> Optional[UsageRecord]:
        ...


__all__ = ["BillingEventLogger", "BillingRepository", "EntitlementInvalidator", "LimitEvaluator"]
