"""Issuing provider-hosted billing portal sessions."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .exceptions import ProviderRequestError
from .identity import CustomerIdentityResolver
from .provider import PaymentProvider

logger = logging.getLogger(__name__)


@dataclass
class BillingPortalIssuer:
    identity: CustomerIdentityResolver
    provider: PaymentProvider
    return_url: str

    def create_portal_url(self, user_id: str) -> str:
        customer_id = self.identity.resolve_customer_id(user_id)
        session = self.provider.create_billing_portal_session(customer_id=customer_id, return_url=self.return_url)
        url = session.get("url")
        if not isinstance(url, str) or not url:
            raise ProviderRequestError("Billing portal session did not include a URL", operation="create_billing_portal_session")
        logger.info("Billing portal session created for user %s", user_id)
        return url


__all__ = ["BillingPortalIssuer"]
