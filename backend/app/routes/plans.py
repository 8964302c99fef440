"""Public plan catalog routes."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, Response

from ..billing import BillingError
from ..schemas.billing import PlanListResponse
from ..services.billing import get_billing_service

_PLAN_CACHE_CONTROL = "public, max-age=3600"

router = APIRouter(prefix="/api/plans", tags=["plans"])


@router.get("", response_model=PlanListResponse)
def list_plans(
    response: Response,
    *,
    country: Optional[str] = Query(default=None),
) -> PlanListResponse:
    """Active plans priced for the caller's country."""

    service = get_billing_service()
    try:
        country_code = service.catalog.normalize_country(country)
        plans = service.list_plans(country_code)
    except BillingError as exc:
        raise exc.to_http_exception() from exc

    response.headers["Cache-Control"] = _PLAN_CACHE_CONTROL
    return PlanListResponse(plans=plans, country=country_code)
