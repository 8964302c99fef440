"""Billing domain package: provider reconciliation, plans, and payment history."""

from .exceptions import (
    BillingError,
    BillingValidationError,
    LimitExceededError,
    NotFoundError,
    ProviderCustomerNotFound,
    ProviderRequestError,
    ProviderUnavailableError,
    UnauthorizedError,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingStats,
    BillingUser,
    BillingWebhookEvent,
    CurrentPlanSummary,
    PaymentHistoryFilters,
    PaymentHistoryPage,
    PaymentRecord,
    PaymentStatus,
    PaymentSummary,
    PaymentSyncResult,
    Plan,
    Subscription,
    SubscriptionStatusView,
    SubscriptionSyncResult,
    SubscriptionWithPlan,
    SyncOutcome,
)
from .catalog import PlanCatalog
from .identity import CustomerIdentityResolver, CustomerLookup, CustomerLookupState, KeyedLock
from .interfaces import BillingEventLogger, BillingRepository, EntitlementInvalidator, LimitEvaluator
from .payments import PaymentHistorySyncEngine
from .portal import BillingPortalIssuer
from .provider import PaymentProvider
from .service import BillingService
from .subscriptions import SubscriptionSyncEngine

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingEventLogger",
    "BillingPortalIssuer",
    "BillingRepository",
    "BillingService",
    "BillingStats",
    "BillingUser",
    "BillingValidationError",
    "BillingWebhookEvent",
    "CurrentPlanSummary",
    "CustomerIdentityResolver",
    "CustomerLookup",
    "CustomerLookupState",
    "EntitlementInvalidator",
    "KeyedLock",
    "LimitEvaluator",
    "LimitExceededError",
    "NotFoundError",
    "PaymentHistoryFilters",
    "PaymentHistoryPage",
    "PaymentHistorySyncEngine",
    "PaymentProvider",
    "PaymentRecord",
    "PaymentStatus",
    "PaymentSummary",
    "PaymentSyncResult",
    "Plan",
    "PlanCatalog",
    "ProviderCustomerNotFound",
    "ProviderRequestError",
    "ProviderUnavailableError",
    "Subscription",
    "SubscriptionStatusView",
    "SubscriptionSyncEngine",
    "SubscriptionSyncResult",
    "SubscriptionWithPlan",
    "SyncOutcome",
    "UnauthorizedError",
]
