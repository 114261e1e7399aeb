from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Mapping, Optional

import pytest

from careercoach.app.entitlements import DEFAULT_PLAN_CATALOG, BillingCycle, FeatureKey, FeatureSet, PlanKey
from careercoach.app.entitlements.service import EntitlementResolver
from careercoach.app.subscriptions import (
    InMemorySubscriptionRepository,
    Subscription,
    SubscriptionAuditEvent,
    SubscriptionLifecycle,
    SubscriptionStatus,
)
from careercoach.app.usage import add_months
from careercoach.app.users import InMemoryUserDirectory, User, UserRole, UserUsage

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class RecordingEventLogger:
    def __init__(self) -> None:
        self.events: List[SubscriptionAuditEvent] = []

    def log(self, event: SubscriptionAuditEvent) -> None:
        self.events.append(event)


class FakePaymentGateway:
    def __init__(self) -> None:
        self.customers: List[str] = []
        self.sessions: List[str] = []
        self.cancelled: List[str] = []

    def create_customer(self, *, user: User) -> str:
        customer_id = f"cus_{user.user_id}"
        self.customers.append(customer_id)
        return customer_id

    def create_checkout_session(
        self,
        *,
        subscription: Subscription,
        customer_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Mapping[str, object]:
        self.sessions.append(subscription.subscription_id)
        return {
            "id": f"cs_{len(self.sessions)}",
            "url": f"https://checkout.test/{subscription.subscription_id}",
            "price_id": f"price_{subscription.plan.value}_{subscription.billing_cycle.value}",
        }

    def cancel_subscription(self, provider_subscription_ref: str) -> None:
        self.cancelled.append(provider_subscription_ref)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def users() -> InMemoryUserDirectory:
    return InMemoryUserDirectory(
        [
            User(user_id="user-1", email="one@careercoach.dev", usage=UserUsage(last_reset_date=NOW)),
            User(user_id="user-2", email="two@careercoach.dev", usage=UserUsage(last_reset_date=NOW)),
            User(user_id="admin-1", role=UserRole.ADMIN, usage=UserUsage(last_reset_date=NOW)),
        ]
    )


@pytest.fixture
def subscriptions() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def lifecycle(users, subscriptions, gateway, event_logger, clock) -> SubscriptionLifecycle:
    return SubscriptionLifecycle(
        subscriptions=subscriptions,
        users=users,
        gateway=gateway,
        event_logger=event_logger,
        clock=clock,
    )


@pytest.fixture
def resolver(users, subscriptions, clock) -> EntitlementResolver:
    return EntitlementResolver(users, subscriptions, clock=clock)


@pytest.fixture
def make_subscription(subscriptions) -> Callable[..., Subscription]:
    """Store a subscription record directly, bypassing the lifecycle."""

    def _make(
        user_id: str = "user-1",
        *,
        plan: PlanKey = PlanKey.PRO,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        start_date: datetime = NOW - timedelta(days=3),
        features: Optional[FeatureSet] = None,
    ) -> Subscription:
        return subscriptions.save_subscription(
            Subscription(
                subscription_id=f"sub-{user_id}",
                user_id=user_id,
                plan=plan,
                status=status,
                start_date=start_date,
                end_date=add_months(start_date, 1),
                price=DEFAULT_PLAN_CATALOG.price_for(plan, BillingCycle.MONTHLY),
                features=features or DEFAULT_PLAN_CATALOG.features_for(plan),
            )
        )

    return _make


def with_usage(
    features: FeatureSet,
    key: FeatureKey,
    used: int,
    period_started_at: Optional[datetime] = None,
) -> FeatureSet:
    counted = features.counted(key)
    return features.replace(
        key, counted.model_copy(update={"used": used, "period_started_at": period_started_at})
    )


@pytest.fixture
def usage_on() -> Callable[..., FeatureSet]:
    return with_usage
