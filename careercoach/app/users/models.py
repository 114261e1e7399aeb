"""User record fields consumed by the entitlement core."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.models import FeatureKey, PlanKey


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Denormalized tier cached on the user record for fast gating."""

    FREE = "free"
    PRO = "pro"
    ADMIN = "admin"

    @classmethod
    def for_plan(cls, plan: PlanKey) -> "UserRole":
        return cls.FREE if plan == PlanKey.FREE else cls.PRO


class UsageCounter(str, Enum):
    """Counters embedded on the user record; values double as column names."""

    RESUME_ANALYSIS = "resume_analysis_count"
    INTERVIEW_SESSIONS = "interview_sessions_count"


# jobMatches and linkedInReview have no embedded counter.
FREE_TIER_COUNTERS: Dict[FeatureKey, UsageCounter] = {
    FeatureKey.RESUME_ANALYSIS: UsageCounter.RESUME_ANALYSIS,
    FeatureKey.INTERVIEWS: UsageCounter.INTERVIEW_SESSIONS,
}


class UserUsage(BaseModel):
    """Free-tier usage ledger embedded on the user record."""

    resume_analysis_count: int = Field(default=0, alias="resumeAnalysisCount", ge=0)
    interview_sessions_count: int = Field(default=0, alias="interviewSessionsCount", ge=0)
    last_reset_date: datetime = Field(default_factory=_utcnow, alias="lastResetDate")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def count_for(self, counter: UsageCounter) -> int:
        return int(getattr(self, counter.value))


class UserSubscriptionStatus(str, Enum):
    """Subscription status mirrored onto the user record."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    NONE = "none"


class UserSubscriptionSnapshot(BaseModel):
    """Copy of the subscription window kept on the user for fast checks."""

    status: UserSubscriptionStatus = UserSubscriptionStatus.NONE
    plan: PlanKey = PlanKey.FREE
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    payment_customer_id: Optional[str] = Field(default=None, alias="paymentCustomerId")
    payment_subscription_id: Optional[str] = Field(default=None, alias="paymentSubscriptionId")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class User(BaseModel):
    """Persisted user record as seen by the entitlement core."""

    user_id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: UserRole = UserRole.FREE
    usage: UserUsage = Field(default_factory=UserUsage)
    subscription: UserSubscriptionSnapshot = Field(default_factory=UserSubscriptionSnapshot)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
