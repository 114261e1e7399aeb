"""Single choke point answering whether a user may use a feature."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Union

from ..feature_gates.capacity import evaluate_capacity
from ..feature_gates.exceptions import FeatureGateError
from ..subscriptions.models import Subscription
from ..subscriptions.repository import SubscriptionRepository
from ..usage.ledger import UsageLedger
from ..usage.models import UsageDecision, UsageSubject
from ..users.models import User, UserRole
from ..users.repository import UserDirectory
from .catalog import DEFAULT_PLAN_CATALOG, PlanCatalog
from .models import (
    COUNTED_FEATURES,
    ELEVATED_ACCESS_MESSAGE,
    FEATURE_DISABLED_MESSAGE,
    FREE_TIER_LIMIT_MESSAGE,
    PERIOD_LIMIT_MESSAGES,
    UNLIMITED,
    CapacityFeature,
    DenialReason,
    FeatureAccess,
    FeatureKey,
    FeatureKind,
    FeatureSet,
    PlanKey,
    RateLimitedFeature,
)

logger = logging.getLogger("entitlements")

FeatureName = Union[FeatureKey, str]


@dataclass(frozen=True)
class UsageSummary:
    """Subscription record (if any) plus usage for every counted feature."""

    user: User
    subscription: Optional[Subscription]
    usage: Dict[FeatureKey, FeatureAccess] = field(default_factory=dict)

    @property
    def plan(self) -> PlanKey:
        if self.subscription is None:
            return PlanKey.FREE
        return self.subscription.plan


class EntitlementResolver:
    """Resolves feature access from the user record and subscription.

    Admins always pass. Counted features go through the :class:`UsageLedger`
    (subscription counters when a record exists, the user's embedded free
    tier counters otherwise). Capacity, rate limited, and boolean features
    gate on tier only: users with elevated access but no paid record get the
    pro template for those.
    """

    def __init__(
        self,
        users: UserDirectory,
        subscriptions: SubscriptionRepository,
        catalog: PlanCatalog = DEFAULT_PLAN_CATALOG,
        *,
        ledger: Optional[UsageLedger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._users = users
        self._subscriptions = subscriptions
        self._catalog = catalog
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._ledger = ledger or UsageLedger(subscriptions, users, catalog, clock=self._clock)

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    def check(self, user_id: str, feature: FeatureName) -> FeatureAccess:
        """Return ``{hasAccess, limit, used, message}`` for ``feature``.

        Raises :class:`UnknownFeatureError` for names outside the catalog and
        :class:`NotFoundError` when the user does not exist.
        """

        key = FeatureKey.parse(feature)
        user = self._users.get_user(user_id)
        subscription = self._subscriptions.get_by_user(user_id)
        return self._evaluate(user, subscription, key, self._clock())

    def consume(self, user_id: str, feature: FeatureName) -> FeatureAccess:
        """Check ``feature`` and charge one use when access is granted."""

        key = FeatureKey.parse(feature)
        user = self._users.get_user(user_id)
        if user.is_admin:
            return self._admin_access(key)

        subscription = self._subscriptions.get_by_user(user_id)
        if subscription is not None:
            counted = self._ledger.effective_features(subscription).counted(key)
            if counted is not None and not counted.enabled:
                return self._disabled(key, counted.limit, counted.used)

        decision = self._ledger.consume(UsageSubject(user, subscription), key, self._clock())
        access = self._access_from_decision(decision, free_tier=subscription is None)
        if access.has_access:
            logger.debug("Charged one %s use for user %s", key.value, user_id)
        return access

    def record_usage(self, user_id: str, feature: FeatureName) -> bool:
        """Increment usage after the gated work succeeded.

        Returns ``False`` when the conditional increment matched nothing
        because the limit had already been reached.
        """

        key = FeatureKey.parse(feature)
        user = self._users.get_user(user_id)
        if user.is_admin:
            return True
        subscription = self._subscriptions.get_by_user(user_id)
        return self._ledger.increment(UsageSubject(user, subscription), key)

    def check_all(self, user_id: str) -> Dict[FeatureKey, FeatureAccess]:
        user = self._users.get_user(user_id)
        subscription = self._subscriptions.get_by_user(user_id)
        now = self._clock()
        return {key: self._evaluate(user, subscription, key, now) for key in FeatureKey}

    def check_capacity(self, user_id: str, feature: FeatureName, active_count: int) -> FeatureAccess:
        """Gate creation of another active resource against ``active_count``."""

        key = FeatureKey.parse(feature)
        if key.kind != FeatureKind.CAPACITY:
            raise ValueError(f"{key.value} is not a capacity feature")

        user = self._users.get_user(user_id)
        if user.is_admin:
            return self._admin_access(key, used=active_count)

        subscription = self._subscriptions.get_by_user(user_id)
        value = self._tier_features(user, subscription).get(key)
        if not isinstance(value, CapacityFeature):
            raise ValueError(f"{key.value} is not configured as a capacity feature")
        evaluation = evaluate_capacity(
            feature=key,
            max_active=value.max_active,
            active_count=active_count,
            enabled=value.enabled,
        )
        if evaluation.allowed:
            return FeatureAccess(
                feature=key, has_access=True, limit=value.max_active, used=active_count
            )
        logger.info("Capacity denied for user %s: %s", user_id, evaluation.to_dict())
        return FeatureAccess(
            feature=key,
            has_access=False,
            limit=value.max_active,
            used=active_count,
            message=evaluation.message,
            reason=DenialReason.CAPACITY_REACHED if value.enabled else DenialReason.NOT_ENABLED,
        )

    def has_elevated_access(self, user: User, subscription: Optional[Subscription]) -> bool:
        """Tier gate for pro-only capabilities; bypasses usage checks entirely."""

        if user.role in {UserRole.ADMIN, UserRole.PRO}:
            return True
        return subscription is not None and subscription.confers_elevated_role

    def require_elevated_access(self, user_id: str) -> User:
        user = self._users.get_user(user_id)
        subscription = self._subscriptions.get_by_user(user_id)
        if not self.has_elevated_access(user, subscription):
            raise FeatureGateError(
                code="pro_required",
                message=ELEVATED_ACCESS_MESSAGE,
                detail={"role": user.role.value},
            )
        return user

    def usage_summary(self, user_id: str) -> UsageSummary:
        user = self._users.get_user(user_id)
        subscription = self._subscriptions.get_by_user(user_id)
        now = self._clock()
        usage = {key: self._evaluate(user, subscription, key, now) for key in COUNTED_FEATURES}
        # Rollovers above may have rewritten the records.
        if subscription is not None:
            subscription = self._subscriptions.get_subscription(subscription.subscription_id)
        else:
            user = self._users.get_user(user_id)
        return UsageSummary(user=user, subscription=subscription, usage=usage)

    def _evaluate(
        self,
        user: User,
        subscription: Optional[Subscription],
        key: FeatureKey,
        now: datetime,
    ) -> FeatureAccess:
        if user.is_admin:
            return self._admin_access(key)
        if key.kind == FeatureKind.COUNTED:
            return self._check_counted(user, subscription, key, now)
        return self._check_tier_feature(user, subscription, key)

    def _check_counted(
        self,
        user: User,
        subscription: Optional[Subscription],
        key: FeatureKey,
        now: datetime,
    ) -> FeatureAccess:
        if subscription is not None:
            counted = self._ledger.effective_features(subscription).counted(key)
            if counted is not None and not counted.enabled:
                return self._disabled(key, counted.limit, counted.used)

        decision = self._ledger.check_and_maybe_reset(UsageSubject(user, subscription), key, now)
        return self._access_from_decision(decision, free_tier=subscription is None)

    def _check_tier_feature(
        self,
        user: User,
        subscription: Optional[Subscription],
        key: FeatureKey,
    ) -> FeatureAccess:
        value = self._tier_features(user, subscription).get(key)
        if isinstance(value, CapacityFeature):
            enabled, limit, used = value.enabled, value.max_active, 0
        elif isinstance(value, RateLimitedFeature):
            enabled, limit, used = value.enabled, value.rate_limit, None
        else:
            enabled, limit, used = bool(value), None, None

        if not enabled:
            return self._disabled(key, limit, used)
        return FeatureAccess(feature=key, has_access=True, limit=limit, used=used)

    def _tier_features(self, user: User, subscription: Optional[Subscription]) -> FeatureSet:
        if subscription is None:
            plan = PlanKey.FREE
            features = self._catalog.features_for(PlanKey.FREE)
        else:
            plan = subscription.entitled_plan
            features = self._ledger.effective_features(subscription)
        if plan == PlanKey.FREE and self.has_elevated_access(user, subscription):
            return self._catalog.features_for(PlanKey.PRO)
        return features

    def _access_from_decision(self, decision: UsageDecision, *, free_tier: bool) -> FeatureAccess:
        if decision.allowed:
            return FeatureAccess(
                feature=decision.feature,
                has_access=True,
                limit=decision.limit,
                used=decision.used,
            )
        return FeatureAccess(
            feature=decision.feature,
            has_access=False,
            limit=decision.limit,
            used=decision.used,
            message=FREE_TIER_LIMIT_MESSAGE if free_tier else PERIOD_LIMIT_MESSAGES[decision.period],
            reason=DenialReason.LIMIT_REACHED,
        )

    @staticmethod
    def _disabled(key: FeatureKey, limit: Optional[int], used: Optional[int]) -> FeatureAccess:
        return FeatureAccess(
            feature=key,
            has_access=False,
            limit=limit,
            used=used,
            message=FEATURE_DISABLED_MESSAGE,
            reason=DenialReason.NOT_ENABLED,
        )

    @staticmethod
    def _admin_access(key: FeatureKey, *, used: int = 0) -> FeatureAccess:
        return FeatureAccess(feature=key, has_access=True, limit=UNLIMITED, used=used)
