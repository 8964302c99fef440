"""Environment-sourced limit definitions for the free and paid tiers.

Numeric limits are read from environment variables rather than plan rows
so editing stored plan data cannot raise a user's limits.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple
import os

from .models import FeatureLimits, LimitEntry, LimitedFeature


class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


# feature -> (env infix for MAX_*, env infix for *_UNLIMITED)
_ENV_KEYS: Dict[LimitedFeature, Tuple[str, str]] = {
    LimitedFeature.WORKSPACES: ("MAX_WORKSPACES", "WORKSPACES_UNLIMITED"),
    LimitedFeature.PROJECTS_PER_WORKSPACE: ("MAX_PROJECTS_PER_WORKSPACE", "PROJECTS_UNLIMITED"),
    LimitedFeature.FILES_PER_PROJECT: ("MAX_FILES_PER_PROJECT", "FILES_UNLIMITED"),
    LimitedFeature.STORAGE: ("MAX_STORAGE_GB", "STORAGE_UNLIMITED"),
    LimitedFeature.FILE_SIZE_LIMIT_MB: ("MAX_FILE_SIZE_MB", "FILE_SIZE_UNLIMITED"),
}

_TIER_DEFAULTS: Dict[PlanTier, Dict[LimitedFeature, LimitEntry]] = {
    PlanTier.FREE: {
        LimitedFeature.WORKSPACES: LimitEntry(max=1),
        LimitedFeature.PROJECTS_PER_WORKSPACE: LimitEntry(max=1),
        LimitedFeature.FILES_PER_PROJECT: LimitEntry(max=10),
        LimitedFeature.STORAGE: LimitEntry(max=1),
        LimitedFeature.FILE_SIZE_LIMIT_MB: LimitEntry(max=20),
    },
    PlanTier.PRO: {
        LimitedFeature.WORKSPACES: LimitEntry(max=5),
        LimitedFeature.PROJECTS_PER_WORKSPACE: LimitEntry(max=0, unlimited=True),
        LimitedFeature.FILES_PER_PROJECT: LimitEntry(max=1000),
        LimitedFeature.STORAGE: LimitEntry(max=50),
        LimitedFeature.FILE_SIZE_LIMIT_MB: LimitEntry(max=100),
    },
}


def tier_for_plan_name(plan_name: str) -> PlanTier:
    """``free`` maps to the free tier; every paid plan (including annual variants) to pro."""

    normalized = plan_name.strip().lower()
    if normalized.endswith("_annual"):
        normalized = normalized[: -len("_annual")]
    return PlanTier.FREE if normalized == PlanTier.FREE.value else PlanTier.PRO


def load_tier_limits(tier: PlanTier, env: Optional[Mapping[str, str]] = None) -> Dict[LimitedFeature, LimitEntry]:
    """Read one tier's limits, raising ``ValueError`` on negative values."""

    env_mapping = os.environ if env is None else env
    prefix = f"{tier.value.upper()}_PLAN_"
    limits: Dict[LimitedFeature, LimitEntry] = {}
    for feature, (max_key, unlimited_key) in _ENV_KEYS.items():
        default = _TIER_DEFAULTS[tier][feature]
        maximum = _to_int(env_mapping.get(prefix + max_key), default=default.max)
        if maximum < 0:
            raise ValueError(
                f"Invalid limit configuration for plan {tier.value!r}: {prefix + max_key} cannot be negative"
            )
        unlimited = _to_bool(env_mapping.get(prefix + unlimited_key), default=default.unlimited)
        limits[feature] = LimitEntry(max=maximum, unlimited=unlimited)
    return limits


@dataclass(frozen=True)
class TierLimits:
    """Limits for both tiers, loaded once at startup."""

    free: Dict[LimitedFeature, LimitEntry]
    pro: Dict[LimitedFeature, LimitEntry]

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "TierLimits":
        return cls(free=load_tier_limits(PlanTier.FREE, env), pro=load_tier_limits(PlanTier.PRO, env))

    def for_tier(self, tier: PlanTier) -> Dict[LimitedFeature, LimitEntry]:
        return self.free if tier == PlanTier.FREE else self.pro

    def limits_for_plan(self, plan_name: str, plan_limits: Optional[FeatureLimits] = None) -> FeatureLimits:
        """Overlay the tier's configured limits onto the plan's stored limits."""

        base = plan_limits or FeatureLimits()
        overrides = self.for_tier(tier_for_plan_name(plan_name))
        return base.model_copy(
            update={
                "workspaces": overrides[LimitedFeature.WORKSPACES],
                "projects_per_workspace": overrides[LimitedFeature.PROJECTS_PER_WORKSPACE],
                "files_per_project": overrides[LimitedFeature.FILES_PER_PROJECT],
                "storage": overrides[LimitedFeature.STORAGE],
                "file_size_limit_mb": overrides[LimitedFeature.FILE_SIZE_LIMIT_MB],
            }
        )

    def free_limits(self) -> FeatureLimits:
        return self.limits_for_plan(PlanTier.FREE.value)
