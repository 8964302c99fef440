from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
from fastapi import HTTPException, Request, Response

from backend.app.routes import billing as billing_routes
from backend.app.routes import plans as plans_routes
from backend.app.routes import subscriptions as subscriptions_routes
from backend.app.schemas.billing import (
    BillingWebhookPayload,
    CheckLimitsRequest,
    PlanListResponse,
    SyncPaymentsResponse,
)

from billing_fakes import (
    FakePaymentProvider,
    InMemoryBillingRepository,
    build_billing_service,
    invoice_payload,
    make_plan,
    subscription_payload,
)


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    repo = InMemoryBillingRepository()
    repo.add_user("101", customer_id="cus_1")
    repo.add_plan(make_plan("free", price="0"))
    repo.add_plan(make_plan("pro", price="29.00", price_id="price_pro_monthly", product_id="prod_pro"))
    return repo


@pytest.fixture
def provider() -> FakePaymentProvider:
    fake = FakePaymentProvider()
    fake.customers["cus_1"] = {"id": "cus_1"}
    return fake


@pytest.fixture
def service(monkeypatch, repository, provider):
    billing_service = build_billing_service(repository, provider)
    for module in (billing_routes, plans_routes, subscriptions_routes):
        monkeypatch.setattr(module, "get_billing_service", lambda: billing_service)
    return billing_service


@pytest.fixture
def user():
    return SimpleNamespace(id=101)


def test_list_plans_sets_cache_header(service):
    response = Response()

    result = plans_routes.list_plans(response, country="us")

    assert isinstance(result, PlanListResponse)
    assert result.country == "US"
    assert [plan.id for plan in result.plans] == ["free", "pro"]
    assert response.headers["Cache-Control"] == "public, max-age=3600"


def test_list_plans_defaults_country(service):
    result = plans_routes.list_plans(Response(), country=None)

    assert result.country == "US"


def test_invalid_country_maps_to_bad_request(service):
    with pytest.raises(HTTPException) as excinfo:
        plans_routes.list_plans(Response(), country="USA")

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["error"] == "validation_error"


def test_check_limits_uses_authenticated_user(service, user):
    result = subscriptions_routes.check_limits(
        CheckLimitsRequest(feature="workspaces", currentUsage=0),
        current_user=user,
    )

    assert result.allowed is True
    assert result.limit == 1


def test_check_limits_unknown_feature_is_bad_request(service, user):
    with pytest.raises(HTTPException) as excinfo:
        subscriptions_routes.check_limits(
            CheckLimitsRequest(feature="teleporters", currentUsage=0),
            current_user=user,
        )

    assert excinfo.value.status_code == 400


def test_cancel_missing_subscription_is_not_found(service, user):
    with pytest.raises(HTTPException) as excinfo:
        subscriptions_routes.cancel_subscription("missing", current_user=user)

    assert excinfo.value.status_code == 404


def test_sync_subscription_then_read_current(service, provider, user):
    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1"))

    synced = billing_routes.sync_subscription(current_user=user)
    current = billing_routes.get_subscription(current_user=user)

    assert synced.success is True
    assert synced.subscription.provider_subscription_id == "sub_1"
    assert current.is_valid is True
    assert current.subscription.plan.id == "pro"


def test_sync_payments_reports_counts(service, provider, user):
    provider.invoices["cus_1"].append(invoice_payload("in_1", "cus_1"))

    result = billing_routes.sync_payments(current_user=user)

    assert isinstance(result, SyncPaymentsResponse)
    assert (result.synced, result.created) == (1, 1)
    assert result.message == "Synced 1 payment(s), 1 new."


def test_payment_history_rejects_unknown_status(service, user):
    with pytest.raises(HTTPException) as excinfo:
        billing_routes.payment_history(status_filter="bogus", limit=20, offset=0, current_user=user)

    assert excinfo.value.status_code == 400


def test_payment_history_accepts_all(service, provider, user):
    provider.invoices["cus_1"].append(invoice_payload("in_1", "cus_1"))
    service.sync_payments("101")

    page = billing_routes.payment_history(status_filter="ALL", limit=20, offset=0, current_user=user)

    assert [record.provider_invoice_id for record in page.payments] == ["in_1"]


def test_provider_outage_maps_to_service_unavailable(service, provider, user):
    from backend.app.billing import ProviderUnavailableError

    provider.fail_with = ProviderUnavailableError("timeout", operation="retrieve_customer")

    with pytest.raises(HTTPException) as excinfo:
        billing_routes.create_portal_session(current_user=user)

    assert excinfo.value.status_code == 503
    assert excinfo.value.detail["retryable"] is True


def test_portal_returns_url(service, user):
    assert billing_routes.create_portal_session(current_user=user).url == "https://portal.test/cus_1"


def test_webhook_returns_no_content(service, provider, repository):
    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1"))
    payload = BillingWebhookPayload(
        id="evt_1",
        type="customer.subscription.created",
        data={"object": {"id": "sub_1", "customer": "cus_1"}},
    )

    response = billing_routes.receive_webhook(payload)

    assert response.status_code == 204
    assert repository.get_subscription_by_provider_id("sub_1") is not None


WEBHOOK_SECRET = "whsec_test"


def _event_body(event_id: str = "evt_signed") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "customer.subscription.updated",
            "data": {"object": {"id": "sub_1", "customer": "cus_1"}},
        }
    ).encode()


def _sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def _request(body: bytes) -> Request:
    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request({"type": "http", "method": "POST", "path": "/api/billing/webhook", "headers": []}, receive)


def test_signed_webhook_is_accepted():
    body = _event_body()

    payload = billing_routes.verify_webhook_payload(body, _sign(body), WEBHOOK_SECRET)

    assert payload.id == "evt_signed"
    assert payload.resource() == {"id": "sub_1", "customer": "cus_1"}


@pytest.mark.parametrize("signature", [None, "t=1,v1=deadbeef", "garbage"])
def test_unsigned_or_forged_webhook_is_rejected(signature):
    with pytest.raises(HTTPException) as excinfo:
        billing_routes.verify_webhook_payload(_event_body(), signature, WEBHOOK_SECRET)

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["field"] == "Stripe-Signature"


def test_webhook_signed_with_another_secret_is_rejected():
    body = _event_body()

    with pytest.raises(HTTPException) as excinfo:
        billing_routes.verify_webhook_payload(body, _sign(body, "whsec_other"), WEBHOOK_SECRET)

    assert excinfo.value.status_code == 400


def test_webhook_without_configured_secret_skips_signature_check():
    payload = billing_routes.verify_webhook_payload(_event_body(), None, None)

    assert payload.type == "customer.subscription.updated"


def test_malformed_webhook_body_is_a_validation_error():
    with pytest.raises(HTTPException) as excinfo:
        billing_routes.verify_webhook_payload(b'{"type": "customer.subscription.updated"}', None, None)

    assert excinfo.value.detail["field"] == "body"


def test_forged_webhook_does_not_claim_event_id(monkeypatch, service, provider, repository):
    monkeypatch.setattr(
        billing_routes,
        "get_billing_config",
        lambda: SimpleNamespace(stripe_webhook_secret=WEBHOOK_SECRET),
    )
    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1"))
    body = _event_body("evt_1")

    with pytest.raises(HTTPException):
        asyncio.run(billing_routes.read_webhook_payload(_request(body), stripe_signature="t=1,v1=forged"))
    assert repository.get_subscription_by_provider_id("sub_1") is None

    payload = asyncio.run(billing_routes.read_webhook_payload(_request(body), stripe_signature=_sign(body)))
    billing_routes.receive_webhook(payload)

    assert repository.get_subscription_by_provider_id("sub_1") is not None
