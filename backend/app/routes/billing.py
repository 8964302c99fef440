"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Callable, Optional

import stripe
from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response, status
from pydantic import ValidationError

from ..billing import (
    BillingError,
    BillingStats,
    BillingValidationError,
    BillingWebhookEvent,
    PaymentHistoryFilters,
    PaymentHistoryPage,
    PaymentRecord,
    PaymentStatus,
)
from ..schemas.billing import (
    BillingWebhookPayload,
    CurrentSubscriptionResponse,
    PortalSessionResponse,
    SyncPaymentsResponse,
    SyncSubscriptionResponse,
)
from ..services.billing import get_billing_config, get_billing_service

logger = logging.getLogger(__name__)


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from backend.main import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from ...main import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/subscription", response_model=CurrentSubscriptionResponse)
def get_subscription(*, current_user=Depends(_get_current_user)) -> CurrentSubscriptionResponse:
    service = get_billing_service()
    user_id = str(current_user.id)
    try:
        subscription = service.get_current_subscription(user_id)
        view = service.get_subscription_status(user_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CurrentSubscriptionResponse.from_view(subscription, view)


@router.post("/sync-subscription", response_model=SyncSubscriptionResponse)
def sync_subscription(*, current_user=Depends(_get_current_user)) -> SyncSubscriptionResponse:
    service = get_billing_service()
    try:
        result = service.sync_subscription(str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SyncSubscriptionResponse.from_result(result)


@router.post("/sync-payments", response_model=SyncPaymentsResponse)
def sync_payments(*, current_user=Depends(_get_current_user)) -> SyncPaymentsResponse:
    service = get_billing_service()
    try:
        result = service.sync_payments(str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SyncPaymentsResponse.from_result(result)


@router.get("/payment-history", response_model=PaymentHistoryPage)
def payment_history(
    *,
    status_filter: str = Query(default="all", alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    current_user=Depends(_get_current_user),
) -> PaymentHistoryPage:
    if status_filter.lower() == "all":
        payment_status = None
    else:
        try:
            payment_status = PaymentStatus(status_filter.lower())
        except ValueError as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown payment status: {status_filter}",
            ) from exc

    service = get_billing_service()
    filters = PaymentHistoryFilters(status=payment_status, limit=limit, offset=offset)
    try:
        return service.get_payment_history(str(current_user.id), filters)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.get("/payments/{payment_id}", response_model=PaymentRecord)
def get_payment(payment_id: str, *, current_user=Depends(_get_current_user)) -> PaymentRecord:
    service = get_billing_service()
    try:
        return service.get_payment(str(current_user.id), payment_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.get("/stats", response_model=BillingStats)
def billing_stats(*, current_user=Depends(_get_current_user)) -> BillingStats:
    service = get_billing_service()
    try:
        return service.get_billing_stats(str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc


@router.post("/portal", response_model=PortalSessionResponse)
def create_portal_session(*, current_user=Depends(_get_current_user)) -> PortalSessionResponse:
    service = get_billing_service()
    try:
        url = service.create_portal_url(str(current_user.id))
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PortalSessionResponse(url=url)


def verify_webhook_payload(
    raw_body: bytes,
    signature: Optional[str],
    secret: Optional[str],
) -> BillingWebhookPayload:
    """Parse a provider event envelope.

    When a webhook secret is configured the body must carry a valid
    ``Stripe-Signature`` header; forged or replayed events are rejected
    before their event id is recorded.
    """

    if secret:
        if not signature:
            logger.warning("Rejected webhook without a signature header")
            raise BillingValidationError("Stripe-Signature", "Missing webhook signature").to_http_exception()
        try:
            stripe.Webhook.construct_event(raw_body, signature, secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected webhook with an invalid signature")
            raise BillingValidationError("Stripe-Signature", "Invalid webhook signature").to_http_exception() from exc
        except ValueError as exc:
            raise BillingValidationError("body", "Invalid webhook payload").to_http_exception() from exc
    try:
        return BillingWebhookPayload.model_validate_json(raw_body)
    except ValidationError as exc:
        raise BillingValidationError("body", "Invalid webhook payload").to_http_exception() from exc


async def read_webhook_payload(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> BillingWebhookPayload:
    raw_body = await request.body()
    return verify_webhook_payload(raw_body, stripe_signature, get_billing_config().stripe_webhook_secret)


@router.post("/webhook", status_code=status.HTTP_204_NO_CONTENT)
def receive_webhook(payload: BillingWebhookPayload = Depends(read_webhook_payload)) -> Response:
    service = get_billing_service()
    event = BillingWebhookEvent(
        event_id=payload.id,
        event_type=payload.type,
        payload=payload.resource(),
    )
    try:
        service.handle_webhook(event)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
