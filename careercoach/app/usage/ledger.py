"""Per-feature usage counters with lazy period rollover."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from ..entitlements.catalog import DEFAULT_PLAN_CATALOG, PlanCatalog
from ..entitlements.models import CountedFeature, FeatureKey, FeatureSet, UsagePeriod
from ..exceptions import NotFoundError
from ..subscriptions.models import Subscription
from ..subscriptions.repository import SubscriptionRepository
from ..users.models import FREE_TIER_COUNTERS, User
from ..users.repository import UserDirectory
from .models import UsageDecision, UsageSubject
from .periods import is_within_limit, reset_if_period_elapsed

logger = logging.getLogger(__name__)

FeatureName = Union[FeatureKey, str]


class UsageLedger:
    """Decides whether a counted feature may be used and records each use.

    Subjects with a subscription record use the per-feature counters stored
    on it; subjects without one fall back to the counters embedded on the user
    record (monthly only). Limits are enforced by conditional updates in the
    repositories, never by read-then-write here.
    """

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        users: UserDirectory,
        catalog: PlanCatalog = DEFAULT_PLAN_CATALOG,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._users = users
        self._catalog = catalog
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def effective_features(self, subscription: Subscription) -> FeatureSet:
        """Features that apply right now, keeping the record's counters."""

        if subscription.entitled_plan == subscription.plan:
            return subscription.features
        return self._catalog.merge_features(subscription.entitled_plan, subscription.features)

    def check_and_maybe_reset(
        self,
        subject: UsageSubject,
        feature: FeatureName,
        now: Optional[datetime] = None,
    ) -> UsageDecision:
        """Roll the counter over if its period elapsed, then evaluate the limit."""

        key = FeatureKey.parse(feature)
        current_time = now or self._clock()
        if subject.subscription is None:
            return self._check_free_tier(subject.user, key, current_time)
        return self._check_subscription(subject.subscription, key, current_time)

    def increment(self, subject: UsageSubject, feature: FeatureName) -> bool:
        """Record one use; returns ``False`` if the limit was already reached."""

        key = FeatureKey.parse(feature)
        if subject.subscription is None:
            limit = self._free_tier_limit(key)
            counter = FREE_TIER_COUNTERS.get(key)
            if counter is None:
                logger.debug(
                    "No embedded counter for %s; usage not recorded for user %s",
                    key.value,
                    subject.user.user_id,
                )
                return True
            return self._users.increment_usage(subject.user.user_id, counter, limit=limit)

        subscription = subject.subscription
        counted = self._counted_feature(subscription, key)
        return self._subscriptions.increment_feature_usage(
            subscription.subscription_id, key, limit=counted.limit
        )

    def consume(
        self,
        subject: UsageSubject,
        feature: FeatureName,
        now: Optional[datetime] = None,
    ) -> UsageDecision:
        """Check and charge one use in a single step."""

        key = FeatureKey.parse(feature)
        decision = self.check_and_maybe_reset(subject, key, now)
        if not decision.allowed:
            return decision

        if not self.increment(subject, key):
            logger.info(
                "Usage limit for %s reached concurrently for %s",
                key.value,
                subject.key,
            )
            return decision.model_copy(
                update={"allowed": False, "used": max(decision.used, decision.limit)}
            )

        tracked = subject.subscription is not None or key in FREE_TIER_COUNTERS
        return decision.model_copy(update={"used": decision.used + 1 if tracked else decision.used})

    def _check_subscription(
        self,
        subscription: Subscription,
        key: FeatureKey,
        now: datetime,
    ) -> UsageDecision:
        counted = self._counted_feature(subscription, key)
        anchor = counted.period_started_at or subscription.start_date
        should_reset, new_anchor = reset_if_period_elapsed(anchor, now, counted.period)

        if should_reset:
            applied = self._subscriptions.reset_feature_usage(
                subscription.subscription_id,
                key,
                observed_anchor=counted.period_started_at,
                reset_at=new_anchor,
            )
            if applied:
                logger.info(
                    "Reset %s usage for subscription %s (%s period elapsed)",
                    key.value,
                    subscription.subscription_id,
                    counted.period.value,
                )
            refreshed = self._subscriptions.get_subscription(subscription.subscription_id)
            if refreshed is None:
                raise NotFoundError(f"Subscription not found: {subscription.subscription_id}")
            counted = self._counted_feature(refreshed, key)

        return UsageDecision(
            feature=key,
            allowed=counted.enabled and is_within_limit(counted.limit, counted.used),
            limit=counted.limit,
            used=counted.used,
            period=counted.period,
            reset_applied=should_reset,
        )

    def _check_free_tier(self, user: User, key: FeatureKey, now: datetime) -> UsageDecision:
        limit = self._free_tier_limit(key)
        usage = user.usage
        should_reset, new_anchor = reset_if_period_elapsed(
            usage.last_reset_date, now, UsagePeriod.MONTHLY
        )

        if should_reset:
            applied = self._users.reset_usage(
                user.user_id,
                observed_reset_date=usage.last_reset_date,
                reset_at=new_anchor,
            )
            if applied:
                logger.info("Reset free-tier usage for user %s", user.user_id)
            usage = self._users.get_user(user.user_id).usage

        counter = FREE_TIER_COUNTERS.get(key)
        used = usage.count_for(counter) if counter else 0
        return UsageDecision(
            feature=key,
            allowed=is_within_limit(limit, used),
            limit=limit,
            used=used,
            period=UsagePeriod.MONTHLY,
            reset_applied=should_reset,
        )

    def _counted_feature(self, subscription: Subscription, key: FeatureKey) -> CountedFeature:
        counted = self.effective_features(subscription).counted(key)
        if counted is None:
            raise NotFoundError(
                f"{key.value} is not a counted feature for subscription {subscription.subscription_id}"
            )
        return counted

    def _free_tier_limit(self, key: FeatureKey) -> int:
        limits = self._catalog.free_tier_limits()
        if key not in limits:
            raise NotFoundError(f"{key.value} is not a counted feature on the free tier")
        return limits[key]
