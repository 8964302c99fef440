"""API schemas for billing endpoints."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    PaymentSyncResult,
    Plan,
    Subscription,
    SubscriptionStatusView,
    SubscriptionSyncResult,
    SubscriptionWithPlan,
    SyncOutcome,
)


class PlanListResponse(BaseModel):
    plans: List[Plan]
    country: str

    model_config = ConfigDict(populate_by_name=True)


class CheckLimitsRequest(BaseModel):
    feature: str
    current_usage: int = Field(alias="currentUsage")

    model_config = ConfigDict(populate_by_name=True)


class CancelSubscriptionResponse(BaseModel):
    subscription: Subscription

    model_config = ConfigDict(populate_by_name=True)


class CurrentSubscriptionResponse(BaseModel):
    subscription: Optional[SubscriptionWithPlan] = None
    status: SubscriptionStatusView
    is_valid: bool = Field(alias="isValid")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_view(
        cls,
        subscription: Optional[SubscriptionWithPlan],
        view: SubscriptionStatusView,
    ) -> "CurrentSubscriptionResponse":
        return cls(subscription=subscription, status=view, is_valid=view.is_valid)


class SyncSubscriptionResponse(BaseModel):
    success: bool
    outcome: SyncOutcome
    message: str
    subscription: Optional[Subscription] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: SubscriptionSyncResult) -> "SyncSubscriptionResponse":
        return cls(
            success=True,
            outcome=result.outcome,
            message=result.message,
            subscription=result.subscription,
        )


class SyncPaymentsResponse(BaseModel):
    success: bool
    synced: int
    created: int
    updated: int
    errors: int
    message: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PaymentSyncResult) -> "SyncPaymentsResponse":
        message = f"Synced {result.synced} payment(s), {result.created} new."
        if result.errors:
            message = f"{message} {result.errors} error(s) occurred."
        return cls(
            success=True,
            synced=result.synced,
            created=result.created,
            updated=result.updated,
            errors=result.errors,
            message=message,
        )


class PortalSessionResponse(BaseModel):
    url: str

    model_config = ConfigDict(populate_by_name=True)


class BillingWebhookPayload(BaseModel):
    """Provider event envelope; ``data.object`` carries the affected resource."""

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    def resource(self) -> Dict[str, Any]:
        resource = self.data.get("object")
        if isinstance(resource, dict):
            return resource
        return dict(self.data)


__all__ = [
    "BillingWebhookPayload",
    "CancelSubscriptionResponse",
    "CheckLimitsRequest",
    "CurrentSubscriptionResponse",
    "PlanListResponse",
    "PortalSessionResponse",
    "SyncPaymentsResponse",
    "SyncSubscriptionResponse",
]
