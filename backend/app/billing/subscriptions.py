"""Reconciliation of local subscriptions against the payment provider."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence
from uuid import uuid4

from ..entitlements.models import SubscriptionStatus
from .catalog import PlanCatalog
from .exceptions import BillingValidationError, NotFoundError
from .identity import CustomerIdentityResolver
from .interfaces import BillingEventLogger, BillingRepository, EntitlementInvalidator
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    Plan,
    Subscription,
    SubscriptionStatusView,
    SubscriptionSyncResult,
    SubscriptionWithPlan,
    SyncOutcome,
)
from .provider import MalformedProviderPayload, PaymentProvider, ProviderSubscription, parse_subscription

logger = logging.getLogger(__name__)

SYNCED_MESSAGE = "Subscription synced successfully"
NO_SUBSCRIPTION_MESSAGE = "No active subscription found. Local subscription records have been updated."
PLAN_UNAVAILABLE_MESSAGE = "Subscription synced. Note: Your plan is no longer available (may have been deprecated)."

OPEN_STATUSES = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
)

# Lower ranks win; ties go to the most recently created subscription.
_STATUS_RANK = {
    SubscriptionStatus.ACTIVE: 0,
    SubscriptionStatus.TRIALING: 0,
    SubscriptionStatus.PAST_DUE: 1,
    SubscriptionStatus.UNPAID: 1,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def select_subscription(candidates: Sequence[ProviderSubscription]) -> Optional[ProviderSubscription]:
    """Pick the provider subscription the local mirror should follow."""

    relevant = [candidate for candidate in candidates if candidate.local_status in _STATUS_RANK]
    if not relevant:
        return None
    return min(
        relevant,
        key=lambda candidate: (_STATUS_RANK[candidate.local_status], -candidate.created.timestamp()),
    )


@dataclass
class SubscriptionSyncEngine:
    """Mirrors provider subscription state into local storage.

    The provider is authoritative for status, period bounds, cancellation
    flags and trial bounds. Every provider read finishes before the first
    local write, and the upsert of the followed subscription is the last
    write of a sync.
    """

    repository: BillingRepository
    provider: PaymentProvider
    identity: CustomerIdentityResolver
    catalog: PlanCatalog
    event_logger: BillingEventLogger
    entitlement_invalidator: EntitlementInvalidator
    clock: Callable[[], datetime] = field(default=_utcnow)

    def sync_from_provider(self, user_id: str) -> SubscriptionSyncResult:
        customer_id = self.identity.resolve_customer_id(user_id)
        candidates = self._fetch_candidates(customer_id)
        chosen = select_subscription(candidates)

        if chosen is None:
            if self._cancel_open_rows(user_id, keep_provider_id=None):
                self.entitlement_invalidator.invalidate_user(user_id)
            return SubscriptionSyncResult(outcome=SyncOutcome.NO_SUBSCRIPTION, message=NO_SUBSCRIPTION_MESSAGE)

        plan = self.catalog.find_plan_for_price(chosen.price_id)
        if plan is None:
            logger.warning(
                "Provider subscription %s for user %s references unknown price %s",
                chosen.id,
                user_id,
                chosen.price_id,
            )
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.PLAN_UNAVAILABLE,
                    user_id=user_id,
                    metadata={"provider_subscription_id": chosen.id, "price_id": chosen.price_id or ""},
                )
            )
            # no local row may keep granting a plan the provider no longer bills
            if self._cancel_open_rows(user_id, keep_provider_id=None):
                self.entitlement_invalidator.invalidate_user(user_id)
            return SubscriptionSyncResult(outcome=SyncOutcome.PLAN_UNAVAILABLE, message=PLAN_UNAVAILABLE_MESSAGE)

        superseded = [
            candidate.id
            for candidate in candidates
            if candidate.id != chosen.id and candidate.local_status in _STATUS_RANK
        ]
        if superseded:
            logger.warning(
                "User %s has %s open provider subscriptions; following %s",
                user_id,
                len(superseded) + 1,
                chosen.id,
            )

        existing = self.repository.get_subscription_by_provider_id(chosen.id)
        desired = self._to_local(user_id, customer_id, plan, chosen, existing)

        changed = self._cancel_open_rows(user_id, keep_provider_id=chosen.id)
        if existing is not None and existing.mirrors(desired):
            stored = existing
        else:
            stored = self.repository.upsert_subscription(desired)
            changed = True
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.SUBSCRIPTION_SYNCED,
                    user_id=user_id,
                    subscription_id=stored.id,
                    metadata={"status": stored.status.value, "plan_id": plan.id},
                )
            )

        if changed:
            self.entitlement_invalidator.invalidate_user(user_id)
        return SubscriptionSyncResult(
            outcome=SyncOutcome.SYNCED,
            subscription=stored,
            plan=plan,
            message=SYNCED_MESSAGE,
        )

    def cancel_subscription(self, user_id: str, subscription_id: str) -> Subscription:
        """Request cancellation at period end, then mirror what the provider reports."""

        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None or subscription.user_id != user_id:
            raise NotFoundError("subscription", subscription_id)
        if subscription.status == SubscriptionStatus.CANCELED:
            raise BillingValidationError("subscription", "Subscription is already canceled")

        self.provider.cancel_subscription_at_period_end(subscription.provider_subscription_id)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CANCEL_REQUESTED,
                user_id=user_id,
                subscription_id=subscription.id,
            )
        )

        self.sync_from_provider(user_id)
        refreshed = self.repository.get_subscription(subscription_id)
        return refreshed or subscription

    def get_current_subscription(self, user_id: str) -> Optional[SubscriptionWithPlan]:
        rows = self.repository.list_user_subscriptions(user_id, statuses=OPEN_STATUSES)
        if not rows:
            return None
        current = min(
            rows,
            key=lambda row: (_STATUS_RANK[row.status], -row.updated_at.timestamp()),
        )
        return SubscriptionWithPlan(subscription=current, plan=self.catalog.get_plan(current.plan_id))

    def get_subscription_status(self, user_id: str) -> SubscriptionStatusView:
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFoundError("user", user_id)

        current = self.get_current_subscription(user_id)
        subscription = current.subscription if current else None
        now = self.clock()
        trial_end = user.trial_end
        return SubscriptionStatusView(
            has_active_subscription=bool(subscription and subscription.is_active),
            subscription=subscription,
            trial_start=user.trial_start,
            trial_end=trial_end,
            trial_expired=trial_end is not None and trial_end < now,
            has_valid_trial=trial_end is not None and trial_end >= now,
        )

    def _fetch_candidates(self, customer_id: str) -> List[ProviderSubscription]:
        candidates: List[ProviderSubscription] = []
        for payload in self.provider.list_subscriptions(customer_id, status="all", limit=10):
            try:
                candidates.append(parse_subscription(payload))
            except (MalformedProviderPayload, ValueError) as exc:
                logger.warning("Skipping malformed provider subscription for %s: %s", customer_id, exc)
        return candidates

    def _cancel_open_rows(self, user_id: str, *, keep_provider_id: Optional[str]) -> bool:
        """Mark open local rows the provider no longer reports as followed as CANCELED."""

        changed = False
        for row in self.repository.list_user_subscriptions(user_id, statuses=OPEN_STATUSES):
            if row.provider_subscription_id == keep_provider_id:
                continue
            self.repository.update_subscription_status(
                row.id,
                status=SubscriptionStatus.CANCELED,
                canceled_at=row.canceled_at or self.clock(),
            )
            changed = True
            event_type = (
                BillingAuditEventType.SUBSCRIPTION_SUPERSEDED
                if keep_provider_id
                else BillingAuditEventType.SUBSCRIPTION_CANCELED
            )
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=event_type,
                    user_id=user_id,
                    subscription_id=row.id,
                    metadata={"provider_subscription_id": row.provider_subscription_id},
                )
            )
        return changed

    def _to_local(
        self,
        user_id: str,
        customer_id: str,
        plan: Plan,
        remote: ProviderSubscription,
        existing: Optional[Subscription],
    ) -> Subscription:
        now = self.clock()
        status = remote.local_status or SubscriptionStatus.CANCELED
        return Subscription(
            id=existing.id if existing else str(uuid4()),
            user_id=user_id,
            plan_id=plan.id,
            provider_subscription_id=remote.id,
            provider_customer_id=remote.customer_id or customer_id,
            status=status,
            current_period_start=remote.current_period_start,
            current_period_end=remote.current_period_end,
            cancel_at_period_end=remote.cancel_at_period_end,
            canceled_at=remote.canceled_at,
            trial_start=remote.trial_start,
            trial_end=remote.trial_end,
            provider_created_at=remote.created,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )


__all__ = [
    "NO_SUBSCRIPTION_MESSAGE",
    "OPEN_STATUSES",
    "PLAN_UNAVAILABLE_MESSAGE",
    "SYNCED_MESSAGE",
    "SubscriptionSyncEngine",
    "select_subscription",
]
