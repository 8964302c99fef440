"""Billing configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping, Optional
import os

from .currency import DEFAULT_CURRENCY, parse_conversion_ratios


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for the billing engine and its payment provider."""

    stripe_secret_key: Optional[str]
    app_base_url: str
    portal_return_path: str
    plan_cache_ttl_seconds: int
    entitlement_cache_ttl_seconds: int
    default_country_code: str
    base_currency: str
    conversion_ratios: Dict[str, Decimal] = field(default_factory=dict)
    provider_max_retries: int = 2
    stripe_webhook_secret: Optional[str] = None

    @property
    def portal_return_url(self) -> str:
        return f"{self.app_base_url}{self.portal_return_path}"

    @property
    def uses_stripe(self) -> bool:
        return bool(self.stripe_secret_key)


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    stripe_secret_key = (env_mapping.get("STRIPE_SECRET_KEY") or "").strip() or None
    stripe_webhook_secret = (env_mapping.get("STRIPE_WEBHOOK_SECRET") or "").strip() or None
    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:3000")
    portal_return_path = env_mapping.get("BILLING_PORTAL_RETURN_PATH", "/dashboard")
    if not portal_return_path.startswith("/"):
        portal_return_path = f"/{portal_return_path}"

    plan_cache_ttl = max(0, _to_int(env_mapping.get("PLAN_CACHE_TTL_SECONDS"), default=3600))
    entitlement_cache_ttl = max(0, _to_int(env_mapping.get("ENTITLEMENT_CACHE_TTL_SECONDS"), default=120))

    default_country = (env_mapping.get("DEFAULT_COUNTRY_CODE") or "US").strip().upper() or "US"
    base_currency = (env_mapping.get("BASE_CURRENCY") or DEFAULT_CURRENCY).strip().upper() or DEFAULT_CURRENCY

    return BillingConfig(
        stripe_secret_key=stripe_secret_key,
        app_base_url=app_base_url.rstrip("/"),
        portal_return_path=portal_return_path,
        plan_cache_ttl_seconds=plan_cache_ttl,
        entitlement_cache_ttl_seconds=entitlement_cache_ttl,
        default_country_code=default_country,
        base_currency=base_currency,
        conversion_ratios=parse_conversion_ratios(env_mapping.get("CURRENCY_CONVERSION_RATIOS")),
        provider_max_retries=max(0, _to_int(env_mapping.get("STRIPE_MAX_NETWORK_RETRIES"), default=2)),
        stripe_webhook_secret=stripe_webhook_secret,
    )


__all__ = ["BillingConfig", "load_billing_config"]
