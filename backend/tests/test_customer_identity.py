"""Tests for provider customer resolution and self-healing."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from backend.app.billing import (
    BillingAuditEventType,
    CustomerIdentityResolver,
    CustomerLookupState,
    KeyedLock,
    NotFoundError,
    ProviderUnavailableError,
)

from billing_fakes import FakePaymentProvider, InMemoryBillingRepository, RecordingEventLogger


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def resolver(repository, provider, event_logger) -> CustomerIdentityResolver:
    return CustomerIdentityResolver(repository=repository, provider=provider, event_logger=event_logger)


def test_existing_customer_is_returned_without_writes(repository, provider, resolver):
    provider.customers["cus_live"] = {"id": "cus_live", "email": "u1@example.com"}
    repository.add_user("u1", customer_id="cus_live")

    assert resolver.resolve_customer_id("u1") == "cus_live"
    assert provider.count("create_customer") == 0
    assert repository.writes == []


def test_missing_customer_is_created_and_stored(repository, provider, resolver, event_logger):
    repository.add_user("u1", display_name="Ada")

    customer_id = resolver.resolve_customer_id("u1")

    assert repository.users["u1"].provider_customer_id == customer_id
    assert provider.customers[customer_id]["metadata"] == {"userId": "u1"}
    assert provider.customers[customer_id]["name"] == "Ada"
    assert event_logger.types() == [BillingAuditEventType.CUSTOMER_CREATED]


def test_stale_customer_reference_is_healed(repository, provider, resolver, event_logger):
    repository.add_user("u1", customer_id="cus_deleted_in_dashboard")

    customer_id = resolver.resolve_customer_id("u1")

    assert customer_id != "cus_deleted_in_dashboard"
    assert customer_id in provider.customers
    assert repository.users["u1"].provider_customer_id == customer_id
    assert repository.writes == ["clear_customer_id", "set_customer_id"]
    assert event_logger.types() == [
        BillingAuditEventType.CUSTOMER_HEALED,
        BillingAuditEventType.CUSTOMER_CREATED,
    ]


def test_customer_flagged_deleted_counts_as_stale(repository, provider, resolver):
    provider.customers["cus_gone"] = {"id": "cus_gone", "deleted": True}
    repository.add_user("u1", customer_id="cus_gone")

    assert resolver.lookup(repository.users["u1"]).state == CustomerLookupState.STALE
    assert resolver.resolve_customer_id("u1") != "cus_gone"


def test_unknown_user_raises_not_found(resolver):
    with pytest.raises(NotFoundError) as excinfo:
        resolver.resolve_customer_id("ghost")

    assert excinfo.value.status_code == 404


def test_provider_outage_leaves_local_state_untouched(repository, provider, resolver):
    repository.add_user("u1", customer_id="cus_live")
    provider.fail_with = ProviderUnavailableError("connection reset", operation="retrieve_customer")

    with pytest.raises(ProviderUnavailableError):
        resolver.resolve_customer_id("u1")

    assert repository.users["u1"].provider_customer_id == "cus_live"
    assert repository.writes == []


def test_concurrent_resolution_creates_one_customer(repository, provider, resolver):
    repository.add_user("u1")
    provider.create_delay = 0.05

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: resolver.resolve_customer_id("u1"), range(8)))

    assert len(set(results)) == 1
    assert provider.count("create_customer") == 1
    assert repository.users["u1"].provider_customer_id == results[0]


def test_losing_a_concurrent_store_reuses_the_winner(repository, provider, resolver, event_logger, monkeypatch):
    repository.add_user("u1")

    def _other_process_won(user_id: str, customer_id: str) -> str:
        return "cus_winner"

    monkeypatch.setattr(repository, "set_customer_id_if_absent", _other_process_won)

    assert resolver.resolve_customer_id("u1") == "cus_winner"
    assert BillingAuditEventType.CUSTOMER_CREATED not in event_logger.types()


def test_keyed_lock_drops_idle_keys():
    locks = KeyedLock()

    with locks.hold("u1"):
        assert len(locks) == 1

    assert len(locks) == 0
