"""Tests for plan listing and per-country price localization."""
from __future__ import annotations

from decimal import Decimal

import pytest

from backend.app.billing import BillingValidationError, PlanCatalog, ProviderUnavailableError
from backend.app.entitlements import BillingInterval, InMemoryTTLCache

from billing_fakes import FakePaymentProvider, InMemoryBillingRepository, make_plan, price_payload


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    repo = InMemoryBillingRepository()
    repo.add_plan(make_plan("free", price="0", sort_order=0))
    repo.add_plan(make_plan("pro", price="29.00", price_id="price_pro_monthly", product_id="prod_pro", sort_order=1))
    repo.add_plan(
        make_plan(
            "pro_annual",
            price="290.00",
            interval=BillingInterval.YEARLY,
            price_id="price_pro_yearly",
            product_id="prod_pro",
            sort_order=2,
        )
    )
    repo.add_plan(make_plan("legacy", price="9.00", price_id="price_legacy", is_active=False, sort_order=3))
    return repo


@pytest.fixture
def provider() -> FakePaymentProvider:
    fake = FakePaymentProvider()
    fake.prices["price_pro_monthly"] = price_payload("price_pro_monthly", product="prod_pro", currency="usd", unit_amount=2900)
    fake.prices["price_pro_inr"] = price_payload("price_pro_inr", product="prod_pro", currency="inr", unit_amount=199900)
    return fake


def _catalog(repository, provider, **overrides) -> PlanCatalog:
    options = dict(
        repository=repository,
        provider=provider,
        cache=InMemoryTTLCache(3600),
        base_currency="USD",
        default_country_code="US",
        conversion_ratios={},
    )
    options.update(overrides)
    return PlanCatalog(**options)


def test_lists_active_plans_in_base_currency(repository, provider):
    plans = _catalog(repository, provider).list_plans("US")

    assert [plan.id for plan in plans] == ["free", "pro", "pro_annual"]
    assert [plan.currency for plan in plans] == ["USD", "USD", "USD"]
    assert plans[1].price == Decimal("29.00")


def test_native_provider_price_wins_and_siblings_use_computed_ratio(repository, provider):
    plans = {plan.id: plan for plan in _catalog(repository, provider).list_plans("IN")}

    assert plans["free"].price == 0
    assert plans["free"].currency == "INR"
    assert plans["pro"].price == Decimal("1999.00")
    assert plans["pro"].currency == "INR"
    assert plans["pro"].provider_price_id == "price_pro_inr"
    assert plans["pro_annual"].currency == "INR"
    assert plans["pro_annual"].price == Decimal("19990.00")


def test_configured_ratio_used_when_no_native_price_exists(repository, provider):
    catalog = _catalog(repository, provider, conversion_ratios={"GBP": Decimal("0.79")})

    plans = {plan.id: plan for plan in catalog.list_plans("GB")}

    assert plans["pro"].currency == "GBP"
    assert plans["pro"].price == Decimal("22.91")
    assert plans["pro_annual"].price == Decimal("229.10")


def test_without_any_ratio_plans_stay_in_base_currency(repository, provider):
    plans = {plan.id: plan for plan in _catalog(repository, provider).list_plans("GB")}

    assert plans["pro"].currency == "USD"
    assert plans["pro"].price == Decimal("29.00")


def test_second_listing_is_served_from_cache(repository, provider):
    catalog = _catalog(repository, provider)
    first = catalog.list_plans("IN")
    calls = len(provider.calls)

    second = catalog.list_plans("in")

    assert second == first
    assert len(provider.calls) == calls

    catalog.invalidate("IN")
    catalog.list_plans("IN")
    assert len(provider.calls) > calls


def test_provider_failure_is_not_cached(repository, provider):
    catalog = _catalog(repository, provider)
    provider.fail_with = ProviderUnavailableError("timeout", operation="find_price")

    with pytest.raises(ProviderUnavailableError):
        catalog.list_plans("IN")

    provider.fail_with = None
    plans = catalog.list_plans("IN")
    assert plans[1].currency == "INR"


def test_malformed_provider_price_falls_back(repository, provider):
    provider.prices["price_pro_monthly"] = {"id": "price_pro_monthly", "currency": "usd", "unit_amount": "29"}

    plans = {plan.id: plan for plan in _catalog(repository, provider).list_plans("US")}

    assert plans["pro"].price == Decimal("29.00")


def test_inactive_plans_remain_resolvable(repository, provider):
    catalog = _catalog(repository, provider)

    assert catalog.get_plan("legacy").is_active is False
    assert catalog.find_plan_for_price("price_legacy").id == "legacy"
    assert catalog.find_plan_for_price("price_unknown") is None
    assert catalog.find_plan_for_price(None) is None


def test_unknown_price_on_known_product_does_not_match(repository, provider):
    catalog = _catalog(repository, provider)

    assert catalog.find_plan_for_price("price_pro_grandfathered") is None
    assert catalog.find_plan_for_price("price_pro_monthly").id == "pro"


@pytest.mark.parametrize("country", ["USA", "1N", "u"])
def test_invalid_country_code_is_rejected(repository, provider, country):
    with pytest.raises(BillingValidationError):
        _catalog(repository, provider).list_plans(country)
