"""Core service coordinating billing flows with external providers."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import List, Optional

from .catalog import PlanCatalog
from .identity import CustomerIdentityResolver
from .interfaces import BillingEventLogger, BillingRepository, EntitlementInvalidator, LimitEvaluator
from .models import (
    BillingStats,
    BillingWebhookEvent,
    PaymentHistoryFilters,
    PaymentHistoryPage,
    PaymentRecord,
    PaymentSyncResult,
    Plan,
    Subscription,
    SubscriptionStatusView,
    SubscriptionSyncResult,
    SubscriptionWithPlan,
)
from .payments import PaymentHistorySyncEngine
from .portal import BillingPortalIssuer
from .provider import PaymentProvider
from .subscriptions import SubscriptionSyncEngine
from ..entitlements.models import LimitCheckResult

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENT_PREFIX = "customer.subscription."
PAYMENT_EVENT_PREFIXES = ("invoice.", "payment_intent.")

# ``slots`` support for ``dataclass`` was added in Python 3.10. The backend
# can run under Python 3.9 in some environments (e.g., local development), so
# we enable slots conditionally to maintain compatibility while preserving the
# optimization where available.
_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class BillingService:
    """Entry point used by the API layer; delegates to the billing engines."""

    repository: BillingRepository
    catalog: PlanCatalog
    identity: CustomerIdentityResolver
    subscriptions: SubscriptionSyncEngine
    payments: PaymentHistorySyncEngine
    portal: BillingPortalIssuer
    limits: LimitEvaluator

    def list_plans(self, country_code: Optional[str] = None) -> List[Plan]:
        return self.catalog.list_plans(country_code)

    def resolve_customer_id(self, user_id: str) -> str:
        return self.identity.resolve_customer_id(user_id)

    def sync_subscription(self, user_id: str) -> SubscriptionSyncResult:
        return self.subscriptions.sync_from_provider(user_id)

    def cancel_subscription(self, user_id: str, subscription_id: str) -> Subscription:
        return self.subscriptions.cancel_subscription(user_id, subscription_id)

    def get_current_subscription(self, user_id: str) -> Optional[SubscriptionWithPlan]:
        return self.subscriptions.get_current_subscription(user_id)

    def get_subscription_status(self, user_id: str) -> SubscriptionStatusView:
        return self.subscriptions.get_subscription_status(user_id)

    def sync_payments(self, user_id: str) -> PaymentSyncResult:
        return self.payments.sync_user_payments(user_id)

    def get_payment_history(
        self,
        user_id: str,
        filters: Optional[PaymentHistoryFilters] = None,
    ) -> PaymentHistoryPage:
        return self.payments.get_history(user_id, filters)

    def get_payment(self, user_id: str, payment_id: str) -> PaymentRecord:
        return self.payments.get_payment(user_id, payment_id)

    def get_billing_stats(self, user_id: str) -> BillingStats:
        return self.payments.get_billing_stats(user_id)

    def create_portal_url(self, user_id: str) -> str:
        return self.portal.create_portal_url(user_id)

    def check_limit(self, user_id: str, feature: str, current_usage: int) -> LimitCheckResult:
        return self.limits.check_limit(user_id, feature, current_usage)

    def handle_webhook(self, event: BillingWebhookEvent) -> None:
        """React to a provider event by pulling fresh state for the affected user.

        Duplicate event ids are ignored. If handling fails the event id is
        released again so the provider's redelivery is processed.
        """

        stored = self.repository.record_webhook_event(event)
        if not stored:
            logger.info("Ignoring duplicate webhook event %s", event.event_id)
            return

        try:
            self._dispatch(event)
        except Exception:
            self.repository.release_webhook_event(event.event_id)
            raise

    def _dispatch(self, event: BillingWebhookEvent) -> None:
        handles_subscription = event.event_type.startswith(SUBSCRIPTION_EVENT_PREFIX)
        handles_payments = event.event_type.startswith(PAYMENT_EVENT_PREFIXES)
        if not handles_subscription and not handles_payments:
            logger.debug("Webhook event %s of type %s not handled", event.event_id, event.event_type)
            return

        customer_id = event.customer_id
        if not customer_id:
            logger.warning("Webhook event %s has no customer reference", event.event_id)
            return

        user = self.repository.get_user_by_customer_id(customer_id)
        if user is None:
            logger.warning("Webhook event %s references unknown customer %s", event.event_id, customer_id)
            return

        # Invoice events can move a subscription into or out of past_due.
        if handles_subscription or event.event_type.startswith("invoice."):
            self.subscriptions.sync_from_provider(user.id)
        if handles_payments:
            self.payments.sync_user_payments(user.id)


__all__ = [
    "BillingEventLogger",
    "BillingRepository",
    "BillingService",
    "EntitlementInvalidator",
    "LimitEvaluator",
    "PaymentProvider",
]
