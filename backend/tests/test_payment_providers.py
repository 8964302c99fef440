"""Tests for the Stripe adapter and the local sandbox provider."""
from __future__ import annotations

import pytest
import stripe

from backend.app.billing import ProviderCustomerNotFound, ProviderRequestError, ProviderUnavailableError
from backend.app.billing.stripe_provider import STRIPE_API_VERSION, StripePaymentProvider
from backend.app.entitlements import BillingInterval
from backend.app.services.billing import LocalSandboxPaymentProvider


def test_stripe_provider_requires_key():
    with pytest.raises(ValueError):
        StripePaymentProvider("")


def test_missing_customer_maps_to_not_found(monkeypatch):
    def _retrieve(customer_id, **kwargs):
        raise stripe.InvalidRequestError("No such customer: 'cus_gone'", "id", code="resource_missing")

    monkeypatch.setattr(stripe.Customer, "retrieve", _retrieve)

    with pytest.raises(ProviderCustomerNotFound) as excinfo:
        StripePaymentProvider("sk_test").retrieve_customer("cus_gone")

    assert excinfo.value.customer_id == "cus_gone"


def test_requests_use_instance_api_key_and_return_plain_data(monkeypatch):
    captured = {}

    def _list(**kwargs):
        captured.update(kwargs)
        return {"object": "list", "data": [{"id": "in_1", "lines": {"data": [{"id": "il_1"}]}}]}

    monkeypatch.setattr(stripe.Invoice, "list", _list)

    invoices = StripePaymentProvider("sk_test").list_invoices("cus_1", limit=5)

    assert invoices == [{"id": "in_1", "lines": {"data": [{"id": "il_1"}]}}]
    assert captured == {
        "customer": "cus_1",
        "limit": 5,
        "expand": ["data.charge"],
        "api_key": "sk_test",
        "stripe_version": STRIPE_API_VERSION,
    }


def test_every_request_pins_the_api_version(monkeypatch):
    calls = []

    def _record(name):
        def _method(*args, **kwargs):
            calls.append((name, kwargs.get("stripe_version")))
            return {"object": "list", "data": []} if name.endswith("list") else {"id": "obj_1"}

        return _method

    monkeypatch.setattr(stripe.PaymentIntent, "list", _record("payment_intents.list"))
    monkeypatch.setattr(stripe.Subscription, "list", _record("subscriptions.list"))
    monkeypatch.setattr(stripe.Customer, "retrieve", _record("customers.retrieve"))
    monkeypatch.setattr(stripe.Price, "retrieve", _record("prices.retrieve"))

    provider = StripePaymentProvider("sk_test")
    provider.list_payment_intents("cus_1")
    provider.list_subscriptions("cus_1")
    provider.retrieve_customer("cus_1")
    provider.retrieve_price("price_1")

    assert len(calls) == 4
    assert {version for _, version in calls} == {STRIPE_API_VERSION}


def test_transient_errors_are_retried(monkeypatch):
    attempts = []

    def _list(**kwargs):
        attempts.append(kwargs)
        if len(attempts) < 2:
            raise stripe.APIConnectionError("connection reset")
        return {"data": []}

    monkeypatch.setattr(stripe.Subscription, "list", _list)

    assert StripePaymentProvider("sk_test", max_network_retries=1).list_subscriptions("cus_1") == []
    assert len(attempts) == 2


def test_exhausted_retries_are_unavailable(monkeypatch):
    def _list(**kwargs):
        raise stripe.RateLimitError("slow down")

    monkeypatch.setattr(stripe.PaymentIntent, "list", _list)

    with pytest.raises(ProviderUnavailableError) as excinfo:
        StripePaymentProvider("sk_test", max_network_retries=0).list_payment_intents("cus_1")

    assert excinfo.value.status_code == 503


def test_rejected_requests_are_not_retried(monkeypatch):
    attempts = []

    def _modify(subscription_id, **kwargs):
        attempts.append(subscription_id)
        raise stripe.InvalidRequestError("No such subscription", "id")

    monkeypatch.setattr(stripe.Subscription, "modify", _modify)

    with pytest.raises(ProviderRequestError):
        StripePaymentProvider("sk_test", max_network_retries=3).cancel_subscription_at_period_end("sub_1")

    assert attempts == ["sub_1"]


def test_find_price_filters_by_currency_and_interval(monkeypatch):
    captured = {}

    def _list(**kwargs):
        captured.update(kwargs)
        return {"data": [{"id": "price_inr", "currency": "inr"}]}

    monkeypatch.setattr(stripe.Price, "list", _list)

    price = StripePaymentProvider("sk_test").find_price(
        product_id="prod_pro",
        currency="INR",
        interval=BillingInterval.YEARLY,
    )

    assert price["id"] == "price_inr"
    assert captured["currency"] == "inr"
    assert captured["recurring"] == {"interval": "year"}


def test_sandbox_provider_round_trips_customers():
    sandbox = LocalSandboxPaymentProvider()

    created = sandbox.create_customer(email="a@example.com", name=None, metadata={"userId": "1"})

    assert sandbox.retrieve_customer(created["id"])["email"] == "a@example.com"
    with pytest.raises(ProviderCustomerNotFound):
        sandbox.retrieve_customer("cus_unknown")
    assert sandbox.list_subscriptions(created["id"]) == []
    session = sandbox.create_billing_portal_session(customer_id=created["id"], return_url="http://app.test")
    assert session["url"].startswith(f"https://billing.local/portal/{created['id']}")
