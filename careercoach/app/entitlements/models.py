"""Domain models for plans, feature entitlements, and access decisions."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator

from ..exceptions import UnknownFeatureError


class PlanKey(str, Enum):
    """Canonical identifiers for subscription plans."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def is_paid(self) -> bool:
        return self is not PlanKey.FREE


class BillingCycle(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class UsagePeriod(str, Enum):
    """Accounting window after which a usage counter rolls over."""

    MONTHLY = "monthly"
    WEEKLY = "weekly"


class FeatureKind(str, Enum):
    """Shape of a feature entry inside a :class:`FeatureSet`."""

    COUNTED = "counted"
    CAPACITY = "capacity"
    RATE_LIMITED = "rate_limited"
    BOOLEAN = "boolean"


class FeatureKey(str, Enum):
    """Known feature identifiers, matching the persisted document keys."""

    RESUME_ANALYSIS = "resumeAnalysis"
    INTERVIEWS = "interviews"
    JOB_MATCHES = "jobMatches"
    ROADMAPS = "roadmaps"
    LINKEDIN_REVIEW = "linkedInReview"
    API_ACCESS = "apiAccess"
    PRIORITY_SUPPORT = "prioritySupport"
    CUSTOM_BRANDING = "customBranding"

    @property
    def kind(self) -> FeatureKind:
        return _FEATURE_KINDS[self]

    @classmethod
    def parse(cls, name: Union[str, "FeatureKey"]) -> "FeatureKey":
        """Resolve a feature name, raising :class:`UnknownFeatureError` if unsupported."""

        if isinstance(name, FeatureKey):
            return name
        try:
            return cls(name)
        except ValueError as exc:
            raise UnknownFeatureError(str(name)) from exc


_FEATURE_KINDS: Dict[FeatureKey, FeatureKind] = {
    FeatureKey.RESUME_ANALYSIS: FeatureKind.COUNTED,
    FeatureKey.INTERVIEWS: FeatureKind.COUNTED,
    FeatureKey.JOB_MATCHES: FeatureKind.COUNTED,
    FeatureKey.ROADMAPS: FeatureKind.CAPACITY,
    FeatureKey.LINKEDIN_REVIEW: FeatureKind.COUNTED,
    FeatureKey.API_ACCESS: FeatureKind.RATE_LIMITED,
    FeatureKey.PRIORITY_SUPPORT: FeatureKind.BOOLEAN,
    FeatureKey.CUSTOM_BRANDING: FeatureKind.BOOLEAN,
}

COUNTED_FEATURES = tuple(key for key, kind in _FEATURE_KINDS.items() if kind == FeatureKind.COUNTED)

UNLIMITED = -1


class CountedFeature(BaseModel):
    """Feature with a numeric limit and a running counter reset per period."""

    enabled: bool = True
    monthly_limit: Optional[int] = Field(default=None, alias="monthlyLimit", ge=UNLIMITED)
    weekly_limit: Optional[int] = Field(default=None, alias="weeklyLimit", ge=UNLIMITED)
    used: int = Field(default=0, ge=0)
    period_started_at: Optional[datetime] = Field(default=None, alias="periodStartedAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _exactly_one_limit(self) -> "CountedFeature":
        if (self.monthly_limit is None) == (self.weekly_limit is None):
            raise ValueError("exactly one of monthlyLimit or weeklyLimit must be set")
        return self

    @field_serializer("period_started_at")
    def _serialize_anchor(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @property
    def period(self) -> UsagePeriod:
        return UsagePeriod.MONTHLY if self.monthly_limit is not None else UsagePeriod.WEEKLY

    @property
    def limit(self) -> int:
        return self.monthly_limit if self.monthly_limit is not None else int(self.weekly_limit)

    @property
    def is_unlimited(self) -> bool:
        return self.limit == UNLIMITED


class CapacityFeature(BaseModel):
    """Feature gated by a live count of concurrently active resources."""

    enabled: bool = True
    max_active: int = Field(alias="maxActive", ge=UNLIMITED)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class RateLimitedFeature(BaseModel):
    """Toggle carrying a request rate granted by the plan."""

    enabled: bool = False
    rate_limit: int = Field(alias="rateLimit", ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


FeatureValue = Union[CountedFeature, CapacityFeature, RateLimitedFeature, bool]


class FeatureSet(BaseModel):
    """Entitlement shape granted by a plan plus the mutable usage counters."""

    resume_analysis: CountedFeature = Field(alias="resumeAnalysis")
    interviews: CountedFeature
    job_matches: CountedFeature = Field(alias="jobMatches")
    roadmaps: CapacityFeature
    linked_in_review: CountedFeature = Field(alias="linkedInReview")
    api_access: RateLimitedFeature = Field(alias="apiAccess")
    priority_support: bool = Field(default=False, alias="prioritySupport")
    custom_branding: bool = Field(default=False, alias="customBranding")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def get(self, key: FeatureKey) -> FeatureValue:
        return getattr(self, _FIELD_BY_KEY[key])

    def counted(self, key: FeatureKey) -> Optional[CountedFeature]:
        value = self.get(key)
        return value if isinstance(value, CountedFeature) else None

    def replace(self, key: FeatureKey, value: FeatureValue) -> "FeatureSet":
        return self.model_copy(update={_FIELD_BY_KEY[key]: value})

    def with_counters_from(self, other: Optional["FeatureSet"]) -> "FeatureSet":
        """Copy ``used`` and period anchors from ``other``; limits stay as they are."""

        if other is None:
            return self
        merged = self
        for key in COUNTED_FEATURES:
            target = merged.counted(key)
            source = other.counted(key)
            if target is None or source is None:
                continue
            merged = merged.replace(
                key,
                target.model_copy(
                    update={"used": source.used, "period_started_at": source.period_started_at}
                ),
            )
        return merged

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the persisted document layout."""

        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "FeatureSet":
        return cls.model_validate(dict(document))


_FIELD_BY_KEY: Dict[FeatureKey, str] = {
    FeatureKey.RESUME_ANALYSIS: "resume_analysis",
    FeatureKey.INTERVIEWS: "interviews",
    FeatureKey.JOB_MATCHES: "job_matches",
    FeatureKey.ROADMAPS: "roadmaps",
    FeatureKey.LINKEDIN_REVIEW: "linked_in_review",
    FeatureKey.API_ACCESS: "api_access",
    FeatureKey.PRIORITY_SUPPORT: "priority_support",
    FeatureKey.CUSTOM_BRANDING: "custom_branding",
}


FREE_TIER_LIMIT_MESSAGE = "Free tier limit reached. Upgrade to Pro."
FEATURE_DISABLED_MESSAGE = "Feature not enabled for your plan"
ELEVATED_ACCESS_MESSAGE = "Pro subscription required"
PERIOD_LIMIT_MESSAGES = {
    UsagePeriod.MONTHLY: "Monthly limit reached. Upgrade your plan.",
    UsagePeriod.WEEKLY: "Weekly limit reached. Upgrade your plan.",
}


class DenialReason(str, Enum):
    """Why a :class:`FeatureAccess` came back without access."""

    NOT_ENABLED = "not_enabled"
    LIMIT_REACHED = "limit_reached"
    CAPACITY_REACHED = "capacity_reached"


class FeatureAccess(BaseModel):
    """Answer to "may this user use this feature", reported back to callers."""

    feature: FeatureKey
    has_access: bool = Field(alias="hasAccess")
    limit: Optional[int] = None
    used: Optional[int] = None
    message: Optional[str] = None
    reason: Optional[DenialReason] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None or self.used is None:
            return None
        if self.limit == UNLIMITED:
            return UNLIMITED
        return max(self.limit - self.used, 0)
