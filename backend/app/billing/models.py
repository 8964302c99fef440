"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import BillingInterval, FeatureLimits, SubscriptionStatus
from .currency import from_minor_units


class PaymentStatus(str, Enum):
    """Status of a persisted payment record."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"
    REFUNDED = "refunded"


class SyncOutcome(str, Enum):
    """Possible results of a subscription sync."""

    SYNCED = "synced"
    NO_SUBSCRIPTION = "no_subscription"
    PLAN_UNAVAILABLE = "plan_unavailable"


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_HEALED = "customer_healed"
    SUBSCRIPTION_SYNCED = "subscription_synced"
    SUBSCRIPTION_SUPERSEDED = "subscription_superseded"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_CANCEL_REQUESTED = "subscription_cancel_requested"
    PLAN_UNAVAILABLE = "plan_unavailable"
    PAYMENTS_SYNCED = "payments_synced"


class BillingUser(BaseModel):
    """The subset of a user record the billing engine reads and writes."""

    id: str
    email: str
    display_name: Optional[str] = None
    external_auth_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Plan(BaseModel):
    """A purchasable plan, optionally localized into another currency."""

    id: str
    name: str
    display_name: str = Field(alias="displayName")
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    billing_interval: BillingInterval = Field(alias="billingInterval")
    provider_price_id: Optional[str] = Field(default=None, alias="providerPriceId")
    provider_product_id: Optional[str] = Field(default=None, alias="providerProductId")
    is_active: bool = Field(default=True, alias="isActive")
    sort_order: int = Field(default=0, alias="sortOrder")
    feature_limits: Optional[FeatureLimits] = Field(default=None, alias="featureLimits")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def is_free(self) -> bool:
        return self.price == 0 and not self.provider_price_id


class Subscription(BaseModel):
    """Local mirror of a provider subscription."""

    id: str
    user_id: str = Field(alias="userId")
    plan_id: str = Field(alias="planId")
    provider_subscription_id: str = Field(alias="providerSubscriptionId")
    provider_customer_id: str = Field(alias="providerCustomerId")
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = Field(default=None, alias="currentPeriodStart")
    current_period_end: Optional[datetime] = Field(default=None, alias="currentPeriodEnd")
    cancel_at_period_end: bool = Field(default=False, alias="cancelAtPeriodEnd")
    canceled_at: Optional[datetime] = Field(default=None, alias="canceledAt")
    trial_start: Optional[datetime] = Field(default=None, alias="trialStart")
    trial_end: Optional[datetime] = Field(default=None, alias="trialEnd")
    provider_created_at: Optional[datetime] = Field(default=None, alias="providerCreatedAt")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="createdAt")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status in {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}

    def mirrors(self, other: "Subscription") -> bool:
        """Return ``True`` when every provider-sourced field matches ``other``."""

        return all(getattr(self, name) == getattr(other, name) for name in PROVIDER_SUBSCRIPTION_FIELDS)


PROVIDER_SUBSCRIPTION_FIELDS = (
    "user_id",
    "plan_id",
    "provider_subscription_id",
    "provider_customer_id",
    "status",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
    "canceled_at",
    "trial_start",
    "trial_end",
    "provider_created_at",
)


class SubscriptionWithPlan(BaseModel):
    subscription: Subscription
    plan: Optional[Plan] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentRecord(BaseModel):
    """Local mirror of one provider invoice (or standalone payment intent)."""

    id: str
    user_id: str = Field(alias="userId")
    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")
    provider_invoice_id: str = Field(alias="providerInvoiceId")
    provider_payment_intent_id: Optional[str] = Field(default=None, alias="providerPaymentIntentId")
    amount_minor: int = Field(ge=0, alias="amountMinor")
    currency: str = Field(min_length=3, max_length=3)
    status: PaymentStatus
    description: Optional[str] = None
    hosted_invoice_url: Optional[str] = Field(default=None, alias="hostedInvoiceUrl")
    pdf_url: Optional[str] = Field(default=None, alias="pdfUrl")
    paid_at: Optional[datetime] = Field(default=None, alias="paidAt")
    failed_at: Optional[datetime] = Field(default=None, alias="failedAt")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="createdAt")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_minor, self.currency)


class BillingWebhookEvent(BaseModel):
    """Normalized webhook payload stored for idempotency tracking."""

    event_id: str
    event_type: str
    payload: Dict[str, object]
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def customer_id(self) -> Optional[str]:
        customer = self.payload.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")
        return str(customer) if customer else None


class BillingAuditEvent(BaseModel):
    """Structured audit event emitted by the sync engines."""

    event_type: BillingAuditEventType
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionSyncResult(BaseModel):
    """Outcome of reconciling a user's subscription with the provider."""

    outcome: SyncOutcome
    subscription: Optional[Subscription] = None
    plan: Optional[Plan] = None
    message: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionStatusView(BaseModel):
    """Combined subscription and trial state for a user."""

    has_active_subscription: bool = Field(alias="hasActiveSubscription")
    subscription: Optional[Subscription] = None
    trial_start: Optional[datetime] = Field(default=None, alias="trialStart")
    trial_end: Optional[datetime] = Field(default=None, alias="trialEnd")
    trial_expired: bool = Field(default=False, alias="trialExpired")
    has_valid_trial: bool = Field(default=False, alias="hasValidTrial")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_valid(self) -> bool:
        return self.has_active_subscription or self.has_valid_trial


class PaymentSyncResult(BaseModel):
    synced: int = 0
    created: int = 0
    updated: int = 0
    errors: int = 0

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentSummary(BaseModel):
    """Aggregates computed by storage over a user's payment records."""

    successful_payments: int = 0
    failed_payments: int = 0
    totals_by_currency: Dict[str, int] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class PaymentHistoryFilters(BaseModel):
    status: Optional[PaymentStatus] = None
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)


class PaymentHistoryPage(BaseModel):
    payments: List[PaymentRecord]
    has_more: bool = Field(alias="hasMore")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CurrentPlanSummary(BaseModel):
    name: str
    price: Decimal
    currency: str
    interval: BillingInterval

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingStats(BaseModel):
    total_spent: Decimal = Field(alias="totalSpent")
    currency: str
    total_spent_by_currency: Dict[str, Decimal] = Field(default_factory=dict, alias="totalSpentByCurrency")
    successful_payments: int = Field(alias="successfulPayments")
    failed_payments: int = Field(alias="failedPayments")
    next_billing: Optional[datetime] = Field(default=None, alias="nextBilling")
    current_plan: Optional[CurrentPlanSummary] = Field(default=None, alias="currentPlan")

    model_config = ConfigDict(populate_by_name=True, frozen=True)
