"""Plan listing with per-country currency localization."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Sequence

from ..entitlements.cache import TaggedCache
from .currency import (
    DEFAULT_CURRENCY,
    calculate_conversion_ratio,
    convert_currency,
    currency_for_country,
    from_minor_units,
)
from .exceptions import BillingValidationError
from .interfaces import BillingRepository
from .models import Plan
from .provider import MalformedProviderPayload, PaymentProvider, parse_price

logger = logging.getLogger(__name__)

_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")


@dataclass
class PlanCatalog:
    """Resolves active plans and overlays currency-specific pricing.

    Resolved listings are cached per country. Provider failures propagate
    to the caller and nothing is cached for that country, so a later call
    retries the full resolution instead of serving a partial list.
    """

    repository: BillingRepository
    provider: PaymentProvider
    cache: TaggedCache[List[Plan]]
    base_currency: str = DEFAULT_CURRENCY
    default_country_code: str = "US"
    conversion_ratios: Mapping[str, Decimal] = field(default_factory=dict)

    def list_plans(self, country_code: Optional[str] = None) -> List[Plan]:
        country = self.normalize_country(country_code)
        cache_key = f"plans:{country}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return list(cached)

        plans = self._resolve(country)
        self.cache.set(cache_key, plans, tags={"plans", f"country:{country}"})
        return list(plans)

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        """Return any stored plan, including deprecated ones."""

        return self.repository.get_plan(plan_id)

    def find_plan_for_price(self, price_id: Optional[str]) -> Optional[Plan]:
        """Map a provider price to the plan row that carries exactly that price id."""

        if not price_id:
            return None
        return self.repository.get_plan_by_price_id(price_id)

    def invalidate(self, country_code: Optional[str] = None) -> None:
        if country_code is None:
            self.cache.invalidate({"plans"})
        else:
            self.cache.invalidate({f"country:{self.normalize_country(country_code)}"})

    def normalize_country(self, country_code: Optional[str]) -> str:
        if country_code is None or not country_code.strip():
            return self.default_country_code
        normalized = country_code.strip().upper()
        if not _COUNTRY_RE.match(normalized):
            raise BillingValidationError("country", f"Invalid country code {country_code!r}")
        return normalized

    def _resolve(self, country: str) -> List[Plan]:
        target_currency = currency_for_country(country, default=self.base_currency)
        rows = sorted(
            (plan for plan in self.repository.list_active_plans() if plan.is_active),
            key=lambda plan: (plan.sort_order, plan.price),
        )

        resolved: Dict[str, Plan] = {}
        pending: List[Plan] = []
        for plan in rows:
            localized = self._native_price(plan, target_currency)
            if localized is None:
                pending.append(plan)
            else:
                resolved[plan.id] = localized

        if pending:
            ratio = self._computed_ratio(rows, resolved, target_currency)
            if ratio is None:
                ratio = self.conversion_ratios.get(target_currency)
            for plan in pending:
                resolved[plan.id] = self._converted(plan, target_currency, ratio)

        return [resolved[plan.id] for plan in rows]

    def _native_price(self, plan: Plan, target_currency: str) -> Optional[Plan]:
        if plan.is_free:
            return plan.model_copy(update={"currency": target_currency})

        if plan.currency == target_currency:
            if not plan.provider_price_id:
                return plan
            payload = self.provider.retrieve_price(plan.provider_price_id)
            price = self._parse_price(plan, payload)
            if price is None or price.currency != target_currency:
                return plan
            return plan.model_copy(update={"price": from_minor_units(price.unit_amount, price.currency)})

        if not plan.provider_product_id:
            return None
        payload = self.provider.find_price(
            product_id=plan.provider_product_id,
            currency=target_currency,
            interval=plan.billing_interval,
        )
        price = self._parse_price(plan, payload)
        if price is None or price.currency != target_currency:
            return None
        return plan.model_copy(
            update={
                "price": from_minor_units(price.unit_amount, price.currency),
                "currency": price.currency,
                "provider_price_id": price.id,
            }
        )

    def _parse_price(self, plan: Plan, payload: Optional[Mapping[str, object]]):
        if payload is None:
            return None
        try:
            return parse_price(payload)
        except (MalformedProviderPayload, ValueError) as exc:
            logger.warning("Ignoring malformed provider price for plan %s: %s", plan.id, exc)
            return None

    def _computed_ratio(
        self,
        rows: Sequence[Plan],
        resolved: Mapping[str, Plan],
        target_currency: str,
    ) -> Optional[Decimal]:
        for plan in rows:
            localized = resolved.get(plan.id)
            if localized is None or plan.is_free or plan.currency == target_currency:
                continue
            if localized.currency != target_currency or plan.price == 0:
                continue
            return calculate_conversion_ratio(plan.price, localized.price)
        return None

    def _converted(self, plan: Plan, target_currency: str, ratio: Optional[Decimal]) -> Plan:
        if ratio is None:
            logger.info(
                "No %s price or conversion ratio for plan %s; listing in %s",
                target_currency,
                plan.id,
                plan.currency,
            )
            return plan
        return plan.model_copy(
            update={"price": convert_currency(plan.price, ratio), "currency": target_currency}
        )


__all__ = ["PlanCatalog"]
