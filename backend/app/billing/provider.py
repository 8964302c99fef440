"""Payment provider boundary: the client protocol and typed payload parsing.

Provider clients return plain mappings shaped like the provider's REST
objects. Everything past this module works with the typed ``Provider*``
models below, so malformed or partial payloads are rejected in one place.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.models import BillingInterval, SubscriptionStatus
from .models import PaymentStatus


class MalformedProviderPayload(ValueError):
    """A provider object is missing fields or carries values of the wrong type."""


class PaymentProvider(Protocol):
    """External payment processor integration.

    Implementations raise :class:`~backend.app.billing.exceptions.ProviderCustomerNotFound`
    when a customer id does not resolve, and
    :class:`~backend.app.billing.exceptions.ProviderUnavailableError` for
    network failures and provider-side errors.
    """

    def retrieve_customer(self, customer_id: str) -> Mapping[str, Any]:
        ...

    def create_customer(self, *, email: str, name: Optional[str], metadata: Dict[str, str]) -> Mapping[str, Any]:
        ...

    def list_subscriptions(self, customer_id: str, *, status: str = "all", limit: int = 10) -> Sequence[Mapping[str, Any]]:
        ...

    def cancel_subscription_at_period_end(self, provider_subscription_id: str) -> Mapping[str, Any]:
        ...

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Mapping[str, Any]:
        ...

    def list_invoices(self, customer_id: str, *, limit: int = 100) -> Sequence[Mapping[str, Any]]:
        ...

    def list_payment_intents(self, customer_id: str, *, limit: int = 100) -> Sequence[Mapping[str, Any]]:
        ...

    def retrieve_price(self, price_id: str) -> Optional[Mapping[str, Any]]:
        ...

    def find_price(
        self,
        *,
        product_id: str,
        currency: str,
        interval: BillingInterval,
    ) -> Optional[Mapping[str, Any]]:
        ...


class ProviderCustomer(BaseModel):
    id: str
    email: Optional[str] = None
    deleted: bool = False

    model_config = ConfigDict(frozen=True)


class ProviderSubscription(BaseModel):
    id: str
    customer_id: str
    status: str
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    interval: BillingInterval = BillingInterval.MONTHLY
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    created: datetime

    model_config = ConfigDict(frozen=True)

    @property
    def local_status(self) -> Optional[SubscriptionStatus]:
        """Mapped local status, or ``None`` for states the mirror ignores."""

        return SUBSCRIPTION_STATUS_MAP.get(self.status)


class ProviderPrice(BaseModel):
    id: str
    product_id: Optional[str] = None
    currency: str
    unit_amount: int = Field(ge=0)
    interval: Optional[BillingInterval] = None
    active: bool = True

    model_config = ConfigDict(frozen=True)


class ProviderInvoice(BaseModel):
    id: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount_minor: int = Field(ge=0)
    currency: str
    status: PaymentStatus
    description: Optional[str] = None
    hosted_invoice_url: Optional[str] = None
    pdf_url: Optional[str] = None
    created: datetime
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class ProviderPaymentIntent(BaseModel):
    id: str
    customer_id: Optional[str] = None
    invoice_id: Optional[str] = None
    amount_minor: int = Field(ge=0)
    currency: str
    status: PaymentStatus
    description: Optional[str] = None
    created: datetime
    failure_reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


SUBSCRIPTION_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "canceled": SubscriptionStatus.CANCELED,
}


def parse_customer(payload: Mapping[str, Any]) -> ProviderCustomer:
    return ProviderCustomer(
        id=_require_str(payload, "id"),
        email=_optional_str(payload.get("email")),
        deleted=bool(payload.get("deleted", False)),
    )


def parse_subscription(payload: Mapping[str, Any]) -> ProviderSubscription:
    item = _first_item(payload)
    price = _as_mapping(item.get("price")) if item else {}
    recurring = _as_mapping(price.get("recurring"))

    # Newer API versions report the billing period on the subscription item.
    period_start = payload.get("current_period_start") or (item or {}).get("current_period_start")
    period_end = payload.get("current_period_end") or (item or {}).get("current_period_end")

    created = _parse_optional_datetime(payload.get("created"))
    if created is None:
        raise MalformedProviderPayload("subscription payload missing created timestamp")

    return ProviderSubscription(
        id=_require_str(payload, "id"),
        customer_id=_object_id(payload.get("customer")) or "",
        status=_require_str(payload, "status"),
        price_id=_optional_str(price.get("id")),
        product_id=_object_id(price.get("product")),
        interval=BillingInterval.from_provider(_optional_str(recurring.get("interval"))),
        current_period_start=_parse_optional_datetime(period_start),
        current_period_end=_parse_optional_datetime(period_end),
        cancel_at_period_end=bool(payload.get("cancel_at_period_end", False)),
        canceled_at=_parse_optional_datetime(payload.get("canceled_at")),
        trial_start=_parse_optional_datetime(payload.get("trial_start")),
        trial_end=_parse_optional_datetime(payload.get("trial_end")),
        created=created,
    )


def parse_price(payload: Mapping[str, Any]) -> ProviderPrice:
    recurring = _as_mapping(payload.get("recurring"))
    interval = _optional_str(recurring.get("interval"))
    return ProviderPrice(
        id=_require_str(payload, "id"),
        product_id=_object_id(payload.get("product")),
        currency=_require_str(payload, "currency").upper(),
        unit_amount=_require_amount(payload, "unit_amount"),
        interval=BillingInterval.from_provider(interval) if interval else None,
        active=bool(payload.get("active", True)),
    )


def parse_invoice(payload: Mapping[str, Any]) -> ProviderInvoice:
    created = _parse_optional_datetime(payload.get("created"))
    if created is None:
        raise MalformedProviderPayload("invoice payload missing created timestamp")

    amount_paid = _optional_amount(payload, "amount_paid")
    amount = amount_paid if amount_paid else _require_amount(payload, "amount_due")

    status = _invoice_status(payload)
    transitions = _as_mapping(payload.get("status_transitions"))
    paid_at = None
    failed_at = None
    if status in {PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED}:
        paid_at = _parse_optional_datetime(transitions.get("paid_at")) or created
    elif status == PaymentStatus.FAILED:
        failed_at = (
            _parse_optional_datetime(transitions.get("voided_at"))
            or _parse_optional_datetime(transitions.get("marked_uncollectible_at"))
            or created
        )

    return ProviderInvoice(
        id=_require_str(payload, "id"),
        customer_id=_object_id(payload.get("customer")),
        subscription_id=_invoice_subscription_id(payload),
        payment_intent_id=_object_id(payload.get("payment_intent")),
        amount_minor=amount,
        currency=_require_str(payload, "currency").upper(),
        status=status,
        description=_optional_str(payload.get("description")),
        hosted_invoice_url=_optional_str(payload.get("hosted_invoice_url")),
        pdf_url=_optional_str(payload.get("invoice_pdf")),
        created=created,
        paid_at=paid_at,
        failed_at=failed_at,
        failure_reason=_failure_message(payload.get("last_finalization_error")),
    )


def parse_payment_intent(payload: Mapping[str, Any]) -> ProviderPaymentIntent:
    created = _parse_optional_datetime(payload.get("created"))
    if created is None:
        raise MalformedProviderPayload("payment intent payload missing created timestamp")

    raw_status = _require_str(payload, "status")
    failure_reason = _failure_message(payload.get("last_payment_error"))
    if raw_status == "succeeded":
        status = PaymentStatus.SUCCEEDED
    elif raw_status == "canceled" or failure_reason:
        status = PaymentStatus.FAILED
    else:
        status = PaymentStatus.PENDING

    return ProviderPaymentIntent(
        id=_require_str(payload, "id"),
        customer_id=_object_id(payload.get("customer")),
        invoice_id=_object_id(payload.get("invoice")),
        amount_minor=_require_amount(payload, "amount"),
        currency=_require_str(payload, "currency").upper(),
        status=status,
        description=_optional_str(payload.get("description")),
        created=created,
        failure_reason=failure_reason,
    )


def _invoice_status(payload: Mapping[str, Any]) -> PaymentStatus:
    raw_status = _optional_str(payload.get("status"))
    if raw_status == "paid":
        charge = _as_mapping(payload.get("charge"))
        if charge.get("refunded"):
            return PaymentStatus.REFUNDED
        return PaymentStatus.SUCCEEDED
    if raw_status in {"void", "uncollectible"}:
        return PaymentStatus.FAILED
    if raw_status == "open" and payload.get("attempted") and not payload.get("paid"):
        return PaymentStatus.FAILED
    if raw_status in {"draft", "open"}:
        return PaymentStatus.PENDING
    raise MalformedProviderPayload(f"unknown invoice status {raw_status!r}")


def _invoice_subscription_id(payload: Mapping[str, Any]) -> Optional[str]:
    subscription = _object_id(payload.get("subscription"))
    if subscription:
        return subscription
    parent = _as_mapping(payload.get("parent"))
    details = _as_mapping(parent.get("subscription_details"))
    return _object_id(details.get("subscription"))


def _first_item(payload: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    items = _as_mapping(payload.get("items"))
    data = items.get("data") or []
    if isinstance(data, Sequence) and data:
        return _as_mapping(data[0])
    # Some payloads carry the price directly on the subscription.
    if payload.get("price") or payload.get("plan"):
        return {"price": payload.get("price") or payload.get("plan")}
    return None


def _failure_message(value: Any) -> Optional[str]:
    error = _as_mapping(value)
    if not error:
        return None
    return _optional_str(error.get("message")) or _optional_str(error.get("code")) or "payment_error"


def _as_mapping(value: Any) -> Mapping[str, Any]:
    if isinstance(value, Mapping):
        return value
    return {}


def _object_id(value: Any) -> Optional[str]:
    """Provider references arrive either as bare ids or as expanded objects."""

    if isinstance(value, Mapping):
        value = value.get("id")
    return _optional_str(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _require_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise MalformedProviderPayload(f"{key} missing from provider payload")
    return value


def _optional_amount(payload: Mapping[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedProviderPayload(f"{key} must be a non-negative integer, got {value!r}")
    return value


def _require_amount(payload: Mapping[str, Any], key: str) -> int:
    value = _optional_amount(payload, key)
    if value is None:
        raise MalformedProviderPayload(f"{key} missing from provider payload")
    return value


def _parse_optional_datetime(value: object) -> Optional[datetime]:
    if value is None or value == "" or value == 0:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise MalformedProviderPayload("Unsupported datetime value")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedProviderPayload(f"Invalid datetime value {value!r}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise MalformedProviderPayload("Unsupported datetime value")


__all__ = [
    "MalformedProviderPayload",
    "PaymentProvider",
    "ProviderCustomer",
    "ProviderInvoice",
    "ProviderPaymentIntent",
    "ProviderPrice",
    "ProviderSubscription",
    "SUBSCRIPTION_STATUS_MAP",
    "parse_customer",
    "parse_invoice",
    "parse_payment_intent",
    "parse_price",
    "parse_subscription",
]
