"""Errors raised by the billing engine and surfaced to API callers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Represents an actionable billing failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class UnauthorizedError(BillingError):
    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(code="unauthorized", message=message, status_code=status.HTTP_401_UNAUTHORIZED)


class NotFoundError(BillingError):
    """Missing entity, or one owned by another user (ownership is not disclosed)."""

    def __init__(self, entity: str, entity_id: Optional[str] = None) -> None:
        detail = {"entity": entity}
        if entity_id is not None:
            detail["id"] = entity_id
        super().__init__(
            code="not_found",
            message=f"{entity.capitalize()} not found",
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
        )


class BillingValidationError(BillingError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(
            code="validation_error",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"field": field},
        )


class ProviderUnavailableError(BillingError):
    """The payment provider could not be reached or failed; safe to retry."""

    def __init__(self, message: str = "Payment provider is unavailable", *, operation: Optional[str] = None) -> None:
        super().__init__(
            code="provider_unavailable",
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"operation": operation, "retryable": True} if operation else {"retryable": True},
        )


class ProviderRequestError(BillingError):
    """The provider rejected a request; retrying the same call will not help."""

    def __init__(self, message: str, *, operation: Optional[str] = None) -> None:
        super().__init__(
            code="provider_error",
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"operation": operation, "retryable": False} if operation else {"retryable": False},
        )


class LimitExceededError(BillingError):
    def __init__(self, feature: str, limit: int, usage: int, message: str) -> None:
        super().__init__(
            code="limit_exceeded",
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"feature": feature, "limit": limit, "usage": usage},
        )


class ProviderCustomerNotFound(Exception):
    """A stored provider customer id no longer resolves at the provider."""

    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Provider customer {customer_id} not found")
        self.customer_id = customer_id
