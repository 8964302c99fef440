"""Helpers for enforcing plan limits on write paths."""
from __future__ import annotations

from ..billing.exceptions import LimitExceededError
from .models import FeatureToggle, LimitCheckResult, LimitedFeature
from .service import FeatureLimitEvaluator


def require_within_limit(result: LimitCheckResult, feature: LimitedFeature) -> None:
    """Raise :class:`LimitExceededError` when a limit check disallowed the action.

    Parameters
    ----------
    result:
        The outcome of :meth:`FeatureLimitEvaluator.check_limit`.
    feature:
        The feature that was checked; echoed back in the error detail so
        clients can render an upgrade prompt for the right resource.
    """

    if result.allowed:
        return
    raise LimitExceededError(
        feature=feature.value,
        limit=result.limit,
        usage=result.usage,
        message=result.message or f"Limit reached for {feature.value}",
    )


def require_feature(evaluator: FeatureLimitEvaluator, user_id: str, toggle: FeatureToggle) -> None:
    if evaluator.has_feature(user_id, toggle):
        return
    raise LimitExceededError(
        feature=toggle.value,
        limit=0,
        usage=0,
        message=f"Your plan does not include {toggle.value}",
    )
