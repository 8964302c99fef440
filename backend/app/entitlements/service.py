"""Plan-derived feature limit checks backed by the local subscription mirror."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol, Union

from ..billing.exceptions import BillingValidationError
from .cache import TaggedCache
from .catalog import TierLimits
from .models import (
    EntitledPlan,
    FeatureLimits,
    FeatureToggle,
    LimitCheckResult,
    LimitedFeature,
    UsageRecord,
)

logger = logging.getLogger(__name__)


class EntitlementRepository(Protocol):
    """Data access needed by the evaluator; satisfied by the billing repository."""

    def get_entitled_plan(self, user_id: str) -> Optional[EntitledPlan]:
        ...

    def increment_usage(
        self,
        user_id: str,
        feature: LimitedFeature,
        period_start: datetime,
        count: int,
    ) -> UsageRecord:
        ...

    def get_usage(self, user_id: str, feature: LimitedFeature, period_start: datetime) -> Optional[UsageRecord]:
        ...


@dataclass(frozen=True)
class ResolvedLimits:
    limits: FeatureLimits
    free_tier: bool
    plan_id: Optional[str] = None


def month_start(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class FeatureLimitEvaluator:
    """Answers "may this user create one more X?" from locally mirrored state.

    Plan resolution is cached per user and never calls the payment
    provider; the sync engines invalidate a user's entry after writing.
    """

    def __init__(
        self,
        repository: EntitlementRepository,
        cache: TaggedCache[ResolvedLimits],
        tier_limits: TierLimits,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self._tier_limits = tier_limits
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def check_limit(
        self,
        user_id: str,
        feature: Union[LimitedFeature, str],
        current_usage: int,
    ) -> LimitCheckResult:
        limited = _coerce_feature(feature)
        if isinstance(current_usage, bool) or not isinstance(current_usage, int) or current_usage < 0:
            raise BillingValidationError("currentUsage", "currentUsage must be a non-negative integer")

        resolved = self.resolve_limits(user_id)
        entry = resolved.limits.entry_for(limited)
        if entry.unlimited:
            return LimitCheckResult(allowed=True, limit=-1, usage=current_usage)

        allowed = current_usage < entry.max
        message = None
        if not allowed:
            prefix = "Free tier limit reached" if resolved.free_tier else "Plan limit reached"
            message = f"{prefix} ({entry.max})"
        return LimitCheckResult(allowed=allowed, limit=entry.max, usage=current_usage, message=message)

    def has_feature(self, user_id: str, toggle: FeatureToggle) -> bool:
        return self.resolve_limits(user_id).limits.features.is_enabled(toggle)

    def resolve_limits(self, user_id: str) -> ResolvedLimits:
        cache_key = f"limits:{user_id}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        entitled = self._repository.get_entitled_plan(user_id)
        if entitled is None:
            resolved = ResolvedLimits(limits=self._tier_limits.free_limits(), free_tier=True)
        else:
            resolved = ResolvedLimits(
                limits=self._tier_limits.limits_for_plan(entitled.plan_name, entitled.feature_limits),
                free_tier=False,
                plan_id=entitled.plan_id,
            )
        self._cache.set(cache_key, resolved, tags={f"user:{user_id}"})
        return resolved

    def invalidate_user(self, user_id: str) -> None:
        self._cache.invalidate({f"user:{user_id}"})

    def record_usage(
        self,
        user_id: str,
        feature: Union[LimitedFeature, str],
        count: int = 1,
        *,
        period: Optional[datetime] = None,
    ) -> UsageRecord:
        limited = _coerce_feature(feature)
        if count < 1:
            raise BillingValidationError("count", "count must be >= 1")
        period_start = month_start(period or self._clock())
        record = self._repository.increment_usage(user_id, limited, period_start, count)
        logger.debug("Usage for user %s feature=%s now %s", user_id, limited.value, record.count)
        return record

    def get_usage(
        self,
        user_id: str,
        feature: Union[LimitedFeature, str],
        *,
        period: Optional[datetime] = None,
    ) -> int:
        limited = _coerce_feature(feature)
        record = self._repository.get_usage(user_id, limited, month_start(period or self._clock()))
        return record.count if record else 0


def _coerce_feature(feature: Union[LimitedFeature, str]) -> LimitedFeature:
    if isinstance(feature, LimitedFeature):
        return feature
    try:
        return LimitedFeature(feature)
    except ValueError as exc:
        raise BillingValidationError("feature", f"Unknown feature {feature!r}") from exc
