"""Resolution of a user's payment provider customer id."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterator, Optional

from .exceptions import NotFoundError, ProviderCustomerNotFound
from .interfaces import BillingEventLogger, BillingRepository
from .models import BillingAuditEvent, BillingAuditEventType, BillingUser
from .provider import PaymentProvider, parse_customer

logger = logging.getLogger(__name__)


class CustomerLookupState(str, Enum):
    FOUND = "found"
    STALE = "stale"
    ABSENT = "absent"


@dataclass(frozen=True)
class CustomerLookup:
    state: CustomerLookupState
    customer_id: Optional[str] = None


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class KeyedLock:
    """One mutex per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.setdefault(key, _LockEntry())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


@dataclass
class CustomerIdentityResolver:
    """Maps local users to provider customers, healing stale references.

    Calls for the same user are serialized in-process by :class:`KeyedLock`.
    Across processes the repository's compare-and-swap write decides the
    winner and losers reuse the stored id.
    """

    repository: BillingRepository
    provider: PaymentProvider
    event_logger: BillingEventLogger
    locks: KeyedLock = field(default_factory=KeyedLock)

    def resolve_customer_id(self, user_id: str) -> str:
        with self.locks.hold(user_id):
            user = self.repository.get_user(user_id)
            if user is None:
                raise NotFoundError("user", user_id)

            lookup = self.lookup(user)
            if lookup.state == CustomerLookupState.FOUND and lookup.customer_id:
                return lookup.customer_id

            if lookup.state == CustomerLookupState.STALE and lookup.customer_id:
                self._clear_stale(user, lookup.customer_id)

            return self._create_customer(user)

    def lookup(self, user: BillingUser) -> CustomerLookup:
        stored_id = user.provider_customer_id
        if not stored_id:
            return CustomerLookup(CustomerLookupState.ABSENT)

        try:
            customer = parse_customer(self.provider.retrieve_customer(stored_id))
        except ProviderCustomerNotFound:
            return CustomerLookup(CustomerLookupState.STALE, stored_id)

        if customer.deleted:
            return CustomerLookup(CustomerLookupState.STALE, stored_id)
        return CustomerLookup(CustomerLookupState.FOUND, customer.id)

    def _clear_stale(self, user: BillingUser, stale_id: str) -> None:
        cleared = self.repository.clear_customer_id(user.id, stale_id)
        logger.warning(
            "Provider customer %s for user %s no longer exists; cleared=%s, creating a new customer",
            stale_id,
            user.id,
            cleared,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CUSTOMER_HEALED,
                user_id=user.id,
                metadata={"stale_customer_id": stale_id},
            )
        )

    def _create_customer(self, user: BillingUser) -> str:
        customer = parse_customer(
            self.provider.create_customer(
                email=user.email,
                name=user.display_name,
                metadata={"userId": user.id},
            )
        )
        stored_id = self.repository.set_customer_id_if_absent(user.id, customer.id)
        if stored_id != customer.id:
            logger.warning(
                "Customer id for user %s was stored concurrently; reusing %s and orphaning %s",
                user.id,
                stored_id,
                customer.id,
            )
            return stored_id

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CUSTOMER_CREATED,
                user_id=user.id,
                metadata={"customer_id": customer.id},
            )
        )
        return stored_id


__all__ = ["CustomerIdentityResolver", "CustomerLookup", "CustomerLookupState", "KeyedLock"]
