"""Domain models for plan limits and entitlement checks."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BillingInterval(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    YEARLY = "yearly"

    @classmethod
    def from_provider(cls, interval: Optional[str]) -> "BillingInterval":
        """Map a provider recurring interval (``month``/``year``) to a billing interval."""

        if interval in {"year", "yearly", "annual"}:
            return cls.YEARLY
        return cls.MONTHLY

    @property
    def provider_interval(self) -> str:
        return "year" if self == BillingInterval.YEARLY else "month"


class SubscriptionStatus(str, Enum):
    """Lifecycle state for subscriptions."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


ENTITLED_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)


class LimitedFeature(str, Enum):
    """Countable resources governed by plan limits."""

    WORKSPACES = "workspaces"
    PROJECTS_PER_WORKSPACE = "projectsPerWorkspace"
    FILES_PER_PROJECT = "filesPerProject"
    ANNOTATIONS_PER_MONTH = "annotationsPerMonth"
    TEAM_MEMBERS = "teamMembers"
    STORAGE = "storage"
    FILE_SIZE_LIMIT_MB = "fileSizeLimitMB"


class FeatureToggle(str, Enum):
    """Boolean capabilities granted by a plan."""

    ADVANCED_ANALYTICS = "advancedAnalytics"
    WHITE_LABEL = "whiteLabel"
    SSO = "sso"
    CUSTOM_INTEGRATIONS = "customIntegrations"
    PRIORITY_SUPPORT = "prioritySupport"
    API_ACCESS = "apiAccess"


class LimitEntry(BaseModel):
    """A single numeric limit. ``unlimited`` overrides ``max``."""

    max: int = Field(default=0, ge=0)
    unlimited: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def effective_limit(self) -> int:
        return -1 if self.unlimited else self.max


class FeatureToggles(BaseModel):
    advanced_analytics: bool = Field(default=False, alias="advancedAnalytics")
    white_label: bool = Field(default=False, alias="whiteLabel")
    sso: bool = False
    custom_integrations: bool = Field(default=False, alias="customIntegrations")
    priority_support: bool = Field(default=False, alias="prioritySupport")
    api_access: bool = Field(default=False, alias="apiAccess")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_enabled(self, toggle: FeatureToggle) -> bool:
        return bool(self.model_dump(by_alias=True).get(toggle.value, False))


class FeatureLimits(BaseModel):
    """Limits attached to a plan, keyed the same way clients name features."""

    workspaces: LimitEntry = Field(default_factory=LimitEntry)
    projects_per_workspace: LimitEntry = Field(default_factory=LimitEntry, alias="projectsPerWorkspace")
    files_per_project: LimitEntry = Field(default_factory=LimitEntry, alias="filesPerProject")
    annotations_per_month: LimitEntry = Field(
        default_factory=lambda: LimitEntry(unlimited=True), alias="annotationsPerMonth"
    )
    team_members: LimitEntry = Field(default_factory=lambda: LimitEntry(max=1), alias="teamMembers")
    storage: LimitEntry = Field(default_factory=LimitEntry)
    file_size_limit_mb: LimitEntry = Field(default_factory=LimitEntry, alias="fileSizeLimitMB")
    features: FeatureToggles = Field(default_factory=FeatureToggles)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def entry_for(self, feature: LimitedFeature) -> LimitEntry:
        return {
            LimitedFeature.WORKSPACES: self.workspaces,
            LimitedFeature.PROJECTS_PER_WORKSPACE: self.projects_per_workspace,
            LimitedFeature.FILES_PER_PROJECT: self.files_per_project,
            LimitedFeature.ANNOTATIONS_PER_MONTH: self.annotations_per_month,
            LimitedFeature.TEAM_MEMBERS: self.team_members,
            LimitedFeature.STORAGE: self.storage,
            LimitedFeature.FILE_SIZE_LIMIT_MB: self.file_size_limit_mb,
        }[feature]


class EntitledPlan(BaseModel):
    """The plan a user is currently entitled to, as read from local storage."""

    user_id: str
    subscription_id: str
    subscription_status: SubscriptionStatus
    plan_id: str
    plan_name: str
    feature_limits: Optional[FeatureLimits] = None

    model_config = ConfigDict(frozen=True)


class LimitCheckResult(BaseModel):
    """Outcome of a single limit check."""

    allowed: bool
    limit: int
    usage: int
    message: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class UsageRecord(BaseModel):
    """Monthly usage counter for a single feature."""

    user_id: str
    feature: LimitedFeature
    period_start: datetime
    count: int = Field(default=0, ge=0)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("period_start")
    @classmethod
    def _normalize_period(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def usage_snapshot(limits: FeatureLimits) -> Dict[str, int]:
    """Flatten limits into ``{feature: limit}`` with ``-1`` for unlimited."""

    return {feature.value: limits.entry_for(feature).effective_limit for feature in LimitedFeature}
