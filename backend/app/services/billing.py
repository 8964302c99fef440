"""Application wiring for the billing service."""
from __future__ import annotations

import logging
import threading
import time
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingPortalIssuer,
    BillingService,
    CustomerIdentityResolver,
    PaymentHistorySyncEngine,
    PaymentProvider,
    PlanCatalog,
    ProviderCustomerNotFound,
    ProviderRequestError,
    SubscriptionSyncEngine,
)
from ..billing.config import BillingConfig, load_billing_config
from ..billing.repository import PostgresBillingRepository
from ..billing.stripe_provider import StripePaymentProvider
from ..entitlements import BillingInterval, FeatureLimitEvaluator, InMemoryTTLCache, TierLimits


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s user=%s subscription=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.subscription_id,
            event.metadata,
        )


class LocalSandboxPaymentProvider(PaymentProvider):
    """Minimal provider implementation for local development without Stripe.

    Customers live in process memory, so after a restart every stored
    customer id resolves as deleted and is healed on first use.
    """

    def __init__(self) -> None:
        self._customers: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def retrieve_customer(self, customer_id: str) -> Mapping[str, Any]:
        with self._lock:
            customer = self._customers.get(customer_id)
        if customer is None:
            raise ProviderCustomerNotFound(customer_id)
        return dict(customer)

    def create_customer(self, *, email: str, name: Optional[str], metadata: Dict[str, str]) -> Mapping[str, Any]:
        customer = {
            "id": f"cus_{uuid4().hex[:14]}",
            "object": "customer",
            "email": email,
            "name": name,
            "metadata": dict(metadata),
            "created": int(time.time()),
        }
        with self._lock:
            self._customers[customer["id"]] = customer
        return dict(customer)

    def list_subscriptions(self, customer_id: str, *, status: str = "all", limit: int = 10) -> List[Mapping[str, Any]]:
        return []

    def cancel_subscription_at_period_end(self, provider_subscription_id: str) -> Mapping[str, Any]:
        raise ProviderRequestError(
            f"No such subscription: {provider_subscription_id}",
            operation="cancel_subscription",
        )

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Mapping[str, Any]:
        session_id = f"bps_{uuid4().hex}"
        return {
            "id": session_id,
            "url": f"https://billing.local/portal/{customer_id}?session={session_id}",
            "return_url": return_url,
        }

    def list_invoices(self, customer_id: str, *, limit: int = 100) -> List[Mapping[str, Any]]:
        return []

    def list_payment_intents(self, customer_id: str, *, limit: int = 100) -> List[Mapping[str, Any]]:
        return []

    def retrieve_price(self, price_id: str) -> Optional[Mapping[str, Any]]:
        return None

    def find_price(
        self,
        *,
        product_id: str,
        currency: str,
        interval: BillingInterval,
    ) -> Optional[Mapping[str, Any]]:
        return None


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


def _build_provider(config: BillingConfig) -> PaymentProvider:
    if config.uses_stripe:
        return StripePaymentProvider(
            config.stripe_secret_key,
            max_network_retries=config.provider_max_retries,
        )
    logger.warning("STRIPE_SECRET_KEY is not set; using the local sandbox payment provider")
    return LocalSandboxPaymentProvider()


@lru_cache(maxsize=1)
def get_limit_evaluator() -> FeatureLimitEvaluator:
    config = get_billing_config()
    return FeatureLimitEvaluator(
        PostgresBillingRepository(),
        InMemoryTTLCache(config.entitlement_cache_ttl_seconds),
        TierLimits.from_env(),
    )


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = get_billing_config()
    repository = PostgresBillingRepository()
    provider = _build_provider(config)
    event_logger = LoggingBillingEventLogger()
    limits = get_limit_evaluator()

    identity = CustomerIdentityResolver(
        repository=repository,
        provider=provider,
        event_logger=event_logger,
    )
    catalog = PlanCatalog(
        repository=repository,
        provider=provider,
        cache=InMemoryTTLCache(config.plan_cache_ttl_seconds),
        base_currency=config.base_currency,
        default_country_code=config.default_country_code,
        conversion_ratios=config.conversion_ratios,
    )
    subscriptions = SubscriptionSyncEngine(
        repository=repository,
        provider=provider,
        identity=identity,
        catalog=catalog,
        event_logger=event_logger,
        entitlement_invalidator=limits,
    )
    payments = PaymentHistorySyncEngine(
        repository=repository,
        provider=provider,
        identity=identity,
        subscriptions=subscriptions,
        event_logger=event_logger,
        base_currency=config.base_currency,
    )
    portal = BillingPortalIssuer(
        identity=identity,
        provider=provider,
        return_url=config.portal_return_url,
    )
    return BillingService(
        repository=repository,
        catalog=catalog,
        identity=identity,
        subscriptions=subscriptions,
        payments=payments,
        portal=portal,
        limits=limits,
    )


__all__ = [
    "LocalSandboxPaymentProvider",
    "LoggingBillingEventLogger",
    "get_billing_config",
    "get_billing_service",
    "get_limit_evaluator",
]
