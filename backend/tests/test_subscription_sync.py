"""Tests for mirroring provider subscriptions into local storage."""
from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.billing import (
    BillingAuditEventType,
    BillingValidationError,
    NotFoundError,
    ProviderUnavailableError,
    Subscription,
    SyncOutcome,
)
from backend.app.billing.provider import parse_subscription
from backend.app.billing.subscriptions import PLAN_UNAVAILABLE_MESSAGE, select_subscription
from backend.app.entitlements import SubscriptionStatus

from billing_fakes import (
    NOW,
    FakePaymentProvider,
    InMemoryBillingRepository,
    RecordingEventLogger,
    build_billing_service,
    make_plan,
    subscription_payload,
)


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    repo = InMemoryBillingRepository()
    repo.add_user("u1", customer_id="cus_1")
    repo.add_user("u2", customer_id="cus_2")
    repo.add_plan(make_plan("free", price="0"))
    repo.add_plan(make_plan("pro", price="29.00", price_id="price_pro_monthly", product_id="prod_pro"))
    return repo


@pytest.fixture
def provider() -> FakePaymentProvider:
    fake = FakePaymentProvider()
    fake.customers["cus_1"] = {"id": "cus_1", "email": "u1@example.com"}
    fake.customers["cus_2"] = {"id": "cus_2", "email": "u2@example.com"}
    return fake


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def service(repository, provider, event_logger):
    return build_billing_service(repository, provider, event_logger=event_logger)


def _local_row(provider_id: str, *, user_id: str = "u1", status=SubscriptionStatus.ACTIVE) -> Subscription:
    return Subscription(
        id=f"local_{provider_id}",
        user_id=user_id,
        plan_id="pro",
        provider_subscription_id=provider_id,
        provider_customer_id="cus_1",
        status=status,
        created_at=NOW - timedelta(days=40),
        updated_at=NOW - timedelta(days=40),
    )


def test_sync_mirrors_provider_subscription(service, provider, repository, event_logger):
    period_end = NOW.replace(month=6)
    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1", period_end=period_end))

    result = service.sync_subscription("u1")

    assert result.outcome == SyncOutcome.SYNCED
    assert result.plan.id == "pro"
    stored = repository.get_subscription_by_provider_id("sub_1")
    assert stored == result.subscription
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.plan_id == "pro"
    assert stored.current_period_start == NOW
    assert stored.current_period_end == period_end
    assert stored.cancel_at_period_end is False
    assert BillingAuditEventType.SUBSCRIPTION_SYNCED in event_logger.types()


def test_second_sync_is_a_no_op(service, provider, repository):
    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1"))
    first = service.sync_subscription("u1")
    writes = list(repository.writes)

    second = service.sync_subscription("u1")

    assert repository.writes == writes
    assert second.subscription == first.subscription
    assert second.subscription.updated_at == first.subscription.updated_at


def test_provider_status_changes_flow_through(service, provider, repository):
    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1"))
    service.sync_subscription("u1")

    provider.subscriptions["cus_1"][0]["status"] = "past_due"
    result = service.sync_subscription("u1")

    assert result.subscription.status == SubscriptionStatus.PAST_DUE
    assert repository.get_subscription_by_provider_id("sub_1").status == SubscriptionStatus.PAST_DUE


def test_deprecated_price_reports_plan_unavailable_without_writes(service, provider, repository, event_logger):
    provider.subscriptions["cus_1"].append(
        subscription_payload("sub_1", "cus_1", price_id="price_retired", product_id="prod_retired")
    )

    result = service.sync_subscription("u1")

    assert result.outcome == SyncOutcome.PLAN_UNAVAILABLE
    assert result.subscription is None
    assert result.message == PLAN_UNAVAILABLE_MESSAGE
    assert repository.writes == []
    assert event_logger.types() == [BillingAuditEventType.PLAN_UNAVAILABLE]


def test_switch_to_unknown_price_cancels_previous_local_row(service, provider, repository, event_logger):
    provider.subscriptions["cus_1"].append(subscription_payload("sub_old", "cus_1", created=NOW - timedelta(days=30)))
    service.sync_subscription("u1")
    assert service.check_limit("u1", "projectsPerWorkspace", 3).allowed is True

    provider.subscriptions["cus_1"] = [
        subscription_payload("sub_old", "cus_1", status="canceled", created=NOW - timedelta(days=30)),
        subscription_payload("sub_new", "cus_1", price_id="price_enterprise", product_id="prod_enterprise"),
    ]
    result = service.sync_subscription("u1")

    assert result.outcome == SyncOutcome.PLAN_UNAVAILABLE
    assert repository.get_subscription_by_provider_id("sub_old").status == SubscriptionStatus.CANCELED
    assert repository.get_subscription_by_provider_id("sub_new") is None
    assert repository.list_user_subscriptions("u1", statuses=[SubscriptionStatus.ACTIVE]) == []
    assert BillingAuditEventType.SUBSCRIPTION_CANCELED in event_logger.types()
    after = service.check_limit("u1", "projectsPerWorkspace", 3)
    assert after.allowed is False
    assert after.message == "Free tier limit reached (1)"


def test_unmapped_price_on_known_product_is_not_mirrored(service, provider, repository, event_logger):
    provider.subscriptions["cus_1"].append(
        subscription_payload("sub_1", "cus_1", price_id="price_pro_grandfathered", product_id="prod_pro")
    )

    result = service.sync_subscription("u1")

    assert result.outcome == SyncOutcome.PLAN_UNAVAILABLE
    assert repository.get_subscription_by_provider_id("sub_1") is None
    assert event_logger.types() == [BillingAuditEventType.PLAN_UNAVAILABLE]


def test_no_open_provider_subscription_cancels_local_rows(service, provider, repository):
    repository.upsert_subscription(_local_row("sub_old"))
    provider.subscriptions["cus_1"].append(subscription_payload("sub_old", "cus_1", status="canceled"))

    result = service.sync_subscription("u1")

    assert result.outcome == SyncOutcome.NO_SUBSCRIPTION
    assert result.subscription is None
    row = repository.get_subscription("local_sub_old")
    assert row.status == SubscriptionStatus.CANCELED
    assert row.canceled_at is not None


def test_newest_open_subscription_wins_and_others_are_superseded(service, provider, repository, event_logger):
    repository.upsert_subscription(_local_row("sub_old"))
    provider.subscriptions["cus_1"].extend(
        [
            subscription_payload("sub_old", "cus_1", created=NOW - timedelta(days=30)),
            subscription_payload("sub_new", "cus_1", created=NOW),
        ]
    )

    result = service.sync_subscription("u1")

    assert result.subscription.provider_subscription_id == "sub_new"
    assert repository.get_subscription("local_sub_old").status == SubscriptionStatus.CANCELED
    assert BillingAuditEventType.SUBSCRIPTION_SUPERSEDED in event_logger.types()
    open_rows = repository.list_user_subscriptions("u1", statuses=[SubscriptionStatus.ACTIVE])
    assert [row.provider_subscription_id for row in open_rows] == ["sub_new"]


def test_active_subscription_outranks_newer_past_due():
    candidates = [
        parse_subscription(subscription_payload("sub_active", "cus_1", created=NOW - timedelta(days=60))),
        parse_subscription(subscription_payload("sub_past_due", "cus_1", status="past_due", created=NOW)),
        parse_subscription(subscription_payload("sub_incomplete", "cus_1", status="incomplete", created=NOW)),
    ]

    assert select_subscription(candidates).id == "sub_active"
    assert select_subscription(candidates[2:]) is None


def test_provider_outage_during_listing_writes_nothing(service, provider, repository):
    repository.upsert_subscription(_local_row("sub_old"))
    writes = list(repository.writes)

    def _unavailable(*args, **kwargs):
        raise ProviderUnavailableError("connection reset", operation="list_subscriptions")

    provider.list_subscriptions = _unavailable

    with pytest.raises(ProviderUnavailableError):
        service.sync_subscription("u1")

    assert repository.writes == writes
    assert repository.get_subscription("local_sub_old").status == SubscriptionStatus.ACTIVE


def test_sync_invalidates_cached_entitlements(service, provider):
    before = service.check_limit("u1", "projectsPerWorkspace", 3)
    assert before.allowed is False
    assert before.message == "Free tier limit reached (1)"

    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1"))
    service.sync_subscription("u1")

    after = service.check_limit("u1", "projectsPerWorkspace", 3)
    assert after.allowed is True
    assert after.limit == -1


def test_cancel_requests_period_end_cancellation_and_resyncs(service, provider, repository, event_logger):
    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1"))
    local = service.sync_subscription("u1").subscription

    canceled = service.cancel_subscription("u1", local.id)

    assert provider.count("cancel_subscription") == 1
    assert canceled.id == local.id
    assert canceled.cancel_at_period_end is True
    assert canceled.status == SubscriptionStatus.ACTIVE
    assert BillingAuditEventType.SUBSCRIPTION_CANCEL_REQUESTED in event_logger.types()


def test_cancel_of_another_users_subscription_is_not_found(service, provider, repository):
    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1"))
    local = service.sync_subscription("u1").subscription

    with pytest.raises(NotFoundError):
        service.cancel_subscription("u2", local.id)
    with pytest.raises(NotFoundError):
        service.cancel_subscription("u1", "missing")
    assert provider.count("cancel_subscription") == 0


def test_cancel_of_canceled_subscription_is_rejected(service, repository):
    repository.upsert_subscription(_local_row("sub_old", status=SubscriptionStatus.CANCELED))

    with pytest.raises(BillingValidationError):
        service.cancel_subscription("u1", "local_sub_old")


def test_subscription_status_reports_trial_window(repository, provider):
    repository.add_user("trial_user", customer_id=None, trial_start=NOW - timedelta(days=3), trial_end=NOW + timedelta(days=4))
    repository.add_user("expired_user", customer_id=None, trial_end=NOW - timedelta(days=1))
    service = build_billing_service(repository, provider)

    trial = service.get_subscription_status("trial_user")
    expired = service.get_subscription_status("expired_user")

    assert trial.has_valid_trial is True
    assert trial.is_valid is True
    assert expired.trial_expired is True
    assert expired.is_valid is False


def test_current_subscription_includes_plan(service, provider):
    provider.subscriptions["cus_1"].append(subscription_payload("sub_1", "cus_1"))
    service.sync_subscription("u1")

    current = service.get_current_subscription("u1")

    assert current.subscription.provider_subscription_id == "sub_1"
    assert current.plan.id == "pro"
    assert service.get_current_subscription("u2") is None
