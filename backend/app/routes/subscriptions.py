"""Subscription management and limit-check routes."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..billing import BillingError
from ..entitlements import LimitCheckResult
from ..schemas.billing import CancelSubscriptionResponse, CheckLimitsRequest
from ..services.billing import get_billing_service
from .billing import _get_current_user

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.post("/check-limits", response_model=LimitCheckResult)
def check_limits(
    payload: CheckLimitsRequest,
    *,
    current_user=Depends(_get_current_user),
) -> LimitCheckResult:
    """Answer whether the caller may create one more of ``payload.feature``."""

    service = get_billing_service()
    try:
        return service.check_limit(str(current_user.id), payload.feature, payload.current_usage)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/{subscription_id}/cancel", response_model=CancelSubscriptionResponse)
def cancel_subscription(
    subscription_id: str,
    *,
    current_user=Depends(_get_current_user),
) -> CancelSubscriptionResponse:
    service = get_billing_service()
    try:
        subscription = service.cancel_subscription(str(current_user.id), subscription_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CancelSubscriptionResponse(subscription=subscription)
