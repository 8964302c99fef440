"""Stripe implementation of :class:`~backend.app.billing.provider.PaymentProvider`."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

import stripe

from ..entitlements.models import BillingInterval
from .exceptions import ProviderCustomerNotFound, ProviderRequestError, ProviderUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Invoice and payment intent parsing reads invoice.charge, invoice.payment_intent
# and payment_intent.invoice, which later API versions no longer return.
STRIPE_API_VERSION = "2024-06-20"

_RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.APIError, stripe.RateLimitError)


class StripePaymentProvider:
    """Talks to Stripe with a per-instance API key; no module-level key is set."""

    def __init__(self, api_key: str, *, max_network_retries: int = 2) -> None:
        if not api_key:
            raise ValueError("api_key must be provided")
        self._api_key = api_key
        self._max_network_retries = max_network_retries

    def _request_options(self) -> Dict[str, Any]:
        return {"api_key": self._api_key, "stripe_version": STRIPE_API_VERSION}

    def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempts = self._max_network_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return func(*args, **kwargs, **self._request_options())
            except _RETRYABLE_ERRORS as exc:
                if attempt < attempts:
                    logger.warning("Stripe %s failed (attempt %s/%s): %s", operation, attempt, attempts, exc)
                    continue
                logger.error("Stripe %s unavailable: %s", operation, exc)
                raise ProviderUnavailableError(str(exc.user_message or exc), operation=operation) from exc
            except stripe.StripeError as exc:
                logger.error("Stripe %s rejected: %s", operation, exc)
                raise ProviderRequestError(str(exc.user_message or exc), operation=operation) from exc
        raise AssertionError("unreachable")  # pragma: no cover

    def retrieve_customer(self, customer_id: str) -> Mapping[str, Any]:
        try:
            customer = stripe.Customer.retrieve(customer_id, **self._request_options())
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing" or "No such customer" in str(exc):
                raise ProviderCustomerNotFound(customer_id) from exc
            raise ProviderRequestError(str(exc.user_message or exc), operation="retrieve_customer") from exc
        except _RETRYABLE_ERRORS as exc:
            raise ProviderUnavailableError(str(exc.user_message or exc), operation="retrieve_customer") from exc
        except stripe.StripeError as exc:
            raise ProviderRequestError(str(exc.user_message or exc), operation="retrieve_customer") from exc
        return _plain(customer)

    def create_customer(self, *, email: str, name: Optional[str], metadata: Dict[str, str]) -> Mapping[str, Any]:
        params: Dict[str, Any] = {"email": email, "metadata": metadata}
        if name:
            params["name"] = name
        customer = self._call("create_customer", stripe.Customer.create, **params)
        logger.info("Created Stripe customer %s for %s", customer.id, metadata.get("userId"))
        return _plain(customer)

    def list_subscriptions(self, customer_id: str, *, status: str = "all", limit: int = 10) -> Sequence[Mapping[str, Any]]:
        result = self._call(
            "list_subscriptions",
            stripe.Subscription.list,
            customer=customer_id,
            status=status,
            limit=limit,
        )
        return _list_data(result)

    def cancel_subscription_at_period_end(self, provider_subscription_id: str) -> Mapping[str, Any]:
        subscription = self._call(
            "cancel_subscription",
            stripe.Subscription.modify,
            provider_subscription_id,
            cancel_at_period_end=True,
        )
        return _plain(subscription)

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Mapping[str, Any]:
        session = self._call(
            "create_billing_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return _plain(session)

    def list_invoices(self, customer_id: str, *, limit: int = 100) -> Sequence[Mapping[str, Any]]:
        result = self._call(
            "list_invoices",
            stripe.Invoice.list,
            customer=customer_id,
            limit=limit,
            expand=["data.charge"],
        )
        return _list_data(result)

    def list_payment_intents(self, customer_id: str, *, limit: int = 100) -> Sequence[Mapping[str, Any]]:
        result = self._call("list_payment_intents", stripe.PaymentIntent.list, customer=customer_id, limit=limit)
        return _list_data(result)

    def retrieve_price(self, price_id: str) -> Optional[Mapping[str, Any]]:
        try:
            price = stripe.Price.retrieve(price_id, **self._request_options())
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                return None
            raise ProviderRequestError(str(exc.user_message or exc), operation="retrieve_price") from exc
        except _RETRYABLE_ERRORS as exc:
            raise ProviderUnavailableError(str(exc.user_message or exc), operation="retrieve_price") from exc
        except stripe.StripeError as exc:
            raise ProviderRequestError(str(exc.user_message or exc), operation="retrieve_price") from exc
        return _plain(price)

    def find_price(
        self,
        *,
        product_id: str,
        currency: str,
        interval: BillingInterval,
    ) -> Optional[Mapping[str, Any]]:
        result = self._call(
            "find_price",
            stripe.Price.list,
            product=product_id,
            currency=currency.lower(),
            active=True,
            recurring={"interval": interval.provider_interval},
            limit=1,
        )
        prices = _list_data(result)
        return prices[0] if prices else None


def _list_data(result: Any) -> List[Mapping[str, Any]]:
    data = getattr(result, "data", None)
    if data is None and isinstance(result, Mapping):
        data = result.get("data")
    return [_plain(item) for item in data or []]


def _plain(value: Any) -> Any:
    """Recursively convert Stripe objects into plain dicts and lists."""

    if isinstance(value, Mapping):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _plain(to_dict())
    return value


__all__ = ["STRIPE_API_VERSION", "StripePaymentProvider"]
