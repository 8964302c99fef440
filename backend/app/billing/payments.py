"""Payment history mirroring, pagination and aggregate stats."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Set
from uuid import uuid4

from ..entitlements.models import SubscriptionStatus
from .currency import DEFAULT_CURRENCY, from_minor_units
from .exceptions import NotFoundError
from .identity import CustomerIdentityResolver
from .interfaces import BillingEventLogger, BillingRepository
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingStats,
    CurrentPlanSummary,
    PaymentHistoryFilters,
    PaymentHistoryPage,
    PaymentRecord,
    PaymentStatus,
    PaymentSyncResult,
)
from .provider import (
    PaymentProvider,
    ProviderInvoice,
    ProviderPaymentIntent,
    parse_invoice,
    parse_payment_intent,
)
from .subscriptions import SubscriptionSyncEngine

logger = logging.getLogger(__name__)

_PAID_STATUSES = {PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaymentHistorySyncEngine:
    """Mirrors provider invoices and payment intents into payment records.

    Records are keyed by the provider invoice id; payment intents that were
    never invoiced are keyed by their own id. Amounts and currencies are
    copied from the provider as-is.
    """

    repository: BillingRepository
    provider: PaymentProvider
    identity: CustomerIdentityResolver
    subscriptions: SubscriptionSyncEngine
    event_logger: BillingEventLogger
    base_currency: str = DEFAULT_CURRENCY
    clock: Callable[[], datetime] = field(default=_utcnow)

    def sync_user_payments(self, user_id: str) -> PaymentSyncResult:
        customer_id = self.identity.resolve_customer_id(user_id)
        invoices = list(self.provider.list_invoices(customer_id, limit=100))
        intents = list(self.provider.list_payment_intents(customer_id, limit=100))

        invoiced_intents = _invoiced_intent_ids(invoices)
        created = updated = errors = 0

        for payload in invoices:
            try:
                was_created = self._store_invoice(user_id, parse_invoice(payload))
            except Exception:
                errors += 1
                logger.exception("Failed to sync invoice %s for user %s", payload.get("id"), user_id)
                continue
            if was_created:
                created += 1
            else:
                updated += 1

        for payload in intents:
            if payload.get("id") in invoiced_intents or payload.get("invoice"):
                continue
            try:
                was_created = self._store_intent(user_id, parse_payment_intent(payload))
            except Exception:
                errors += 1
                logger.exception("Failed to sync payment intent %s for user %s", payload.get("id"), user_id)
                continue
            if was_created:
                created += 1
            else:
                updated += 1

        result = PaymentSyncResult(synced=created + updated, created=created, updated=updated, errors=errors)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENTS_SYNCED,
                user_id=user_id,
                metadata={key: str(value) for key, value in result.model_dump().items()},
            )
        )
        return result

    def get_history(self, user_id: str, filters: Optional[PaymentHistoryFilters] = None) -> PaymentHistoryPage:
        filters = filters or PaymentHistoryFilters()
        rows = list(
            self.repository.list_payments(
                user_id,
                status=filters.status,
                limit=filters.limit + 1,
                offset=filters.offset,
            )
        )
        return PaymentHistoryPage(payments=rows[: filters.limit], has_more=len(rows) > filters.limit)

    def get_payment(self, user_id: str, payment_id: str) -> PaymentRecord:
        record = self.repository.get_payment(payment_id)
        if record is None or record.user_id != user_id:
            raise NotFoundError("payment", payment_id)
        return record

    def get_billing_stats(self, user_id: str) -> BillingStats:
        summary = self.repository.summarize_payments(user_id)
        by_currency: Dict[str, Decimal] = {
            currency: from_minor_units(amount, currency)
            for currency, amount in sorted(summary.totals_by_currency.items())
        }
        if len(by_currency) == 1:
            stats_currency, total_spent = next(iter(by_currency.items()))
        else:
            stats_currency = self.base_currency
            total_spent = by_currency.get(self.base_currency, Decimal("0"))

        next_billing = None
        current_plan = None
        current = self.subscriptions.get_current_subscription(user_id)
        if current is not None:
            subscription = current.subscription
            if subscription.status == SubscriptionStatus.ACTIVE and not subscription.cancel_at_period_end:
                next_billing = subscription.current_period_end
            if current.plan is not None:
                current_plan = CurrentPlanSummary(
                    name=current.plan.display_name,
                    price=current.plan.price,
                    currency=current.plan.currency,
                    interval=current.plan.billing_interval,
                )

        return BillingStats(
            total_spent=total_spent,
            currency=stats_currency,
            total_spent_by_currency=by_currency,
            successful_payments=summary.successful_payments,
            failed_payments=summary.failed_payments,
            next_billing=next_billing,
            current_plan=current_plan,
        )

    def _store_invoice(self, user_id: str, invoice: ProviderInvoice) -> bool:
        existing = self.repository.get_payment_by_invoice_id(invoice.id)
        subscription_id = existing.subscription_id if existing else None
        if invoice.subscription_id:
            local = self.repository.get_subscription_by_provider_id(invoice.subscription_id)
            if local is not None:
                subscription_id = local.id

        record = PaymentRecord(
            id=existing.id if existing else str(uuid4()),
            user_id=user_id,
            subscription_id=subscription_id,
            provider_invoice_id=invoice.id,
            provider_payment_intent_id=invoice.payment_intent_id,
            amount_minor=invoice.amount_minor,
            currency=invoice.currency,
            status=invoice.status,
            description=invoice.description or (existing.description if existing else None),
            hosted_invoice_url=invoice.hosted_invoice_url,
            pdf_url=invoice.pdf_url,
            paid_at=_keep_timestamp(invoice.paid_at, existing, "paid_at", invoice.status in _PAID_STATUSES),
            failed_at=_keep_timestamp(invoice.failed_at, existing, "failed_at", invoice.status == PaymentStatus.FAILED),
            failure_reason=invoice.failure_reason,
            metadata={"source": "invoice"},
            created_at=existing.created_at if existing else invoice.created,
            updated_at=self.clock(),
        )
        self.repository.upsert_payment(record)
        return existing is None

    def _store_intent(self, user_id: str, intent: ProviderPaymentIntent) -> bool:
        existing = self.repository.get_payment_by_invoice_id(intent.id)
        record = PaymentRecord(
            id=existing.id if existing else str(uuid4()),
            user_id=user_id,
            subscription_id=existing.subscription_id if existing else None,
            provider_invoice_id=intent.id,
            provider_payment_intent_id=intent.id,
            amount_minor=intent.amount_minor,
            currency=intent.currency,
            status=intent.status,
            description=intent.description or "One-time payment",
            paid_at=_keep_timestamp(
                intent.created if intent.status == PaymentStatus.SUCCEEDED else None,
                existing,
                "paid_at",
                intent.status == PaymentStatus.SUCCEEDED,
            ),
            failed_at=_keep_timestamp(
                intent.created if intent.status == PaymentStatus.FAILED else None,
                existing,
                "failed_at",
                intent.status == PaymentStatus.FAILED,
            ),
            failure_reason=intent.failure_reason,
            metadata={"source": "payment_intent"},
            created_at=existing.created_at if existing else intent.created,
            updated_at=self.clock(),
        )
        self.repository.upsert_payment(record)
        return existing is None


def _invoiced_intent_ids(invoices: Sequence[Mapping[str, Any]]) -> Set[str]:
    ids: Set[str] = set()
    for payload in invoices:
        intent = payload.get("payment_intent")
        if isinstance(intent, Mapping):
            intent = intent.get("id")
        if isinstance(intent, str) and intent:
            ids.add(intent)
    return ids


def _keep_timestamp(
    incoming: Optional[datetime],
    existing: Optional[PaymentRecord],
    attribute: str,
    applies: bool,
) -> Optional[datetime]:
    if not applies:
        return None
    if incoming is not None:
        return incoming
    return getattr(existing, attribute) if existing else None


__all__ = ["PaymentHistorySyncEngine"]
