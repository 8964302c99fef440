"""Entitlements domain models and services."""

from .models import (
    ENTITLED_STATUSES,
    BillingInterval,
    EntitledPlan,
    FeatureLimits,
    FeatureToggle,
    FeatureToggles,
    LimitCheckResult,
    LimitEntry,
    LimitedFeature,
    SubscriptionStatus,
    UsageRecord,
)
from .cache import InMemoryTTLCache, TaggedCache
from .catalog import PlanTier, TierLimits, load_tier_limits, tier_for_plan_name
from .service import EntitlementRepository, FeatureLimitEvaluator, ResolvedLimits
from .enforcement import require_feature, require_within_limit

__all__ = [
    "ENTITLED_STATUSES",
    "BillingInterval",
    "EntitledPlan",
    "FeatureLimits",
    "FeatureToggle",
    "FeatureToggles",
    "LimitCheckResult",
    "LimitEntry",
    "LimitedFeature",
    "SubscriptionStatus",
    "UsageRecord",
    "InMemoryTTLCache",
    "TaggedCache",
    "PlanTier",
    "TierLimits",
    "load_tier_limits",
    "tier_for_plan_name",
    "EntitlementRepository",
    "FeatureLimitEvaluator",
    "ResolvedLimits",
    "require_feature",
    "require_within_limit",
]
