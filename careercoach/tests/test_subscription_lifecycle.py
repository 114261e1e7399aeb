"""Unit tests for subscription state transitions and user synchronization."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from careercoach.app.entitlements import BillingCycle, FeatureKey, PlanKey
from careercoach.app.exceptions import ConflictError, InvalidStateError, NotFoundError, UserSyncError
from careercoach.app.subscriptions import (
    InMemorySubscriptionRepository,
    RenewalStatus,
    SubscriptionAuditEventType,
    SubscriptionLifecycle,
    SubscriptionStatus,
)
from careercoach.app.users import InMemoryUserDirectory, User, UserRole, UserSubscriptionStatus, UserUsage


class FlakyUserDirectory(InMemoryUserDirectory):
    def __init__(self, users) -> None:
        super().__init__(users)
        self.fail_saves = False

    def save_user(self, user: User) -> User:
        if self.fail_saves:
            raise RuntimeError("users table unavailable")
        return super().save_user(user)


def _event_types(event_logger):
    return [event.event_type for event in event_logger.events]


def test_create_pending_computes_calendar_end_dates(lifecycle, clock) -> None:
    clock.now = datetime(2024, 1, 31, 9, tzinfo=timezone.utc)

    monthly = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    yearly = lifecycle.create_pending("user-2", "enterprise", "yearly")

    assert monthly.status == SubscriptionStatus.PENDING
    assert monthly.end_date == datetime(2024, 2, 29, 9, tzinfo=timezone.utc)
    assert monthly.price == Decimal("29")
    assert yearly.end_date == datetime(2025, 1, 31, 9, tzinfo=timezone.utc)
    assert yearly.price == Decimal("990")


def test_pending_record_grants_free_entitlements_only(lifecycle, users) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)

    assert pending.features.resume_analysis.limit == 3
    assert pending.entitled_plan == PlanKey.FREE
    assert users.get_user("user-1").role == UserRole.FREE


def test_create_pending_rejects_free_plan(lifecycle) -> None:
    with pytest.raises(ValueError):
        lifecycle.create_pending("user-1", PlanKey.FREE, BillingCycle.MONTHLY)


def test_create_pending_conflicts_with_active_paid_subscription(lifecycle) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    lifecycle.activate(pending.subscription_id, "sub_ref_1")

    with pytest.raises(ConflictError):
        lifecycle.create_pending("user-1", PlanKey.ENTERPRISE, BillingCycle.MONTHLY)


def test_create_pending_refreshes_existing_pending_record(lifecycle) -> None:
    first = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    second = lifecycle.create_pending("user-1", PlanKey.ENTERPRISE, BillingCycle.YEARLY)

    assert second.subscription_id == first.subscription_id
    assert second.plan == PlanKey.ENTERPRISE
    assert second.created_at == first.created_at


def test_upgrade_from_free_record_keeps_usage(lifecycle, subscriptions) -> None:
    free = lifecycle.create_free("user-1")
    subscriptions.increment_feature_usage(free.subscription_id, FeatureKey.RESUME_ANALYSIS, limit=3)

    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)

    assert pending.subscription_id != free.subscription_id
    assert pending.features.resume_analysis.used == 1
    assert subscriptions.get_subscription(free.subscription_id) is None


def test_create_free_is_idempotent(lifecycle, event_logger) -> None:
    first = lifecycle.create_free("user-1")
    second = lifecycle.create_free("user-1")

    assert first.subscription_id == second.subscription_id
    assert first.end_date.year == first.start_date.year + 100
    assert _event_types(event_logger) == [SubscriptionAuditEventType.SUBSCRIPTION_CREATED]


def test_activate_syncs_user(lifecycle, users, event_logger) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)

    active = lifecycle.activate(pending.subscription_id, "sub_ref_1")

    assert active.status == SubscriptionStatus.ACTIVE
    assert active.payment_ref == "sub_ref_1"
    assert active.features.resume_analysis.limit == -1
    user = users.get_user("user-1")
    assert user.role == UserRole.PRO
    assert user.subscription.status == UserSubscriptionStatus.ACTIVE
    assert user.subscription.plan == PlanKey.PRO
    assert user.subscription.end_date == active.end_date
    assert user.subscription.payment_subscription_id == "sub_ref_1"
    assert _event_types(event_logger) == [
        SubscriptionAuditEventType.SUBSCRIPTION_CREATED,
        SubscriptionAuditEventType.SUBSCRIPTION_ACTIVATED,
    ]


def test_activate_twice_is_a_no_op(lifecycle, subscriptions, users, event_logger) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    lifecycle.activate(pending.subscription_id, "sub_ref_1")
    subscriptions.increment_feature_usage(pending.subscription_id, FeatureKey.JOB_MATCHES, limit=10)

    again = lifecycle.activate(pending.subscription_id, "sub_ref_1")

    assert again.status == SubscriptionStatus.ACTIVE
    assert again.features.job_matches.used == 1
    assert users.get_user("user-1").role == UserRole.PRO
    assert _event_types(event_logger).count(SubscriptionAuditEventType.SUBSCRIPTION_ACTIVATED) == 1


def test_activate_terminal_subscription_fails(lifecycle) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    lifecycle.expire(pending.subscription_id)

    with pytest.raises(InvalidStateError) as exc:
        lifecycle.activate(pending.subscription_id, "sub_ref_1")

    assert exc.value.current_status == "expired"


def test_cancel_pending_subscription_fails(lifecycle) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)

    with pytest.raises(InvalidStateError):
        lifecycle.cancel(pending.subscription_id)


def test_cancel_active_subscription_downgrades_user(lifecycle, subscriptions, users, gateway) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    lifecycle.activate(pending.subscription_id, "sub_ref_1")
    subscriptions.increment_feature_usage(pending.subscription_id, FeatureKey.INTERVIEWS, limit=-1)

    cancelled = lifecycle.cancel(pending.subscription_id, reason="Too expensive", feedback="Great product")

    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.cancellation.reason == "Too expensive"
    assert cancelled.cancellation.feedback == "Great product"
    assert cancelled.features.interviews.used == 1
    assert gateway.cancelled == ["sub_ref_1"]
    user = users.get_user("user-1")
    assert user.role == UserRole.FREE
    assert user.subscription.status == UserSubscriptionStatus.CANCELLED

    with pytest.raises(InvalidStateError):
        lifecycle.cancel(pending.subscription_id)


def test_cancel_keeps_admin_role(lifecycle, users) -> None:
    pending = lifecycle.create_pending("admin-1", PlanKey.PRO, BillingCycle.MONTHLY)
    lifecycle.activate(pending.subscription_id, "sub_ref_admin")

    lifecycle.cancel(pending.subscription_id)

    assert users.get_user("admin-1").role == UserRole.ADMIN


def test_change_plan_keeps_usage_counters(lifecycle, subscriptions, event_logger) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    lifecycle.activate(pending.subscription_id, "sub_ref_1")
    for _ in range(2):
        subscriptions.increment_feature_usage(pending.subscription_id, FeatureKey.JOB_MATCHES, limit=10)

    upgraded = lifecycle.change_plan(pending.subscription_id, PlanKey.ENTERPRISE)

    assert upgraded.plan == PlanKey.ENTERPRISE
    assert upgraded.price == Decimal("99")
    assert upgraded.features.job_matches.used == 2
    assert upgraded.features.job_matches.limit == -1
    assert upgraded.features.api_access.rate_limit == 10000
    assert upgraded.features.custom_branding is True
    assert _event_types(event_logger)[-1] == SubscriptionAuditEventType.PLAN_CHANGED


def test_change_plan_requires_active(lifecycle) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)

    with pytest.raises(InvalidStateError):
        lifecycle.change_plan(pending.subscription_id, PlanKey.ENTERPRISE)


def test_expire_only_applies_to_pending(lifecycle) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)

    expired = lifecycle.expire(pending.subscription_id)
    assert expired.status == SubscriptionStatus.EXPIRED
    assert lifecycle.expire(pending.subscription_id).status == SubscriptionStatus.EXPIRED

    other = lifecycle.create_pending("user-2", PlanKey.PRO, BillingCycle.MONTHLY)
    lifecycle.activate(other.subscription_id, "sub_ref_2")
    with pytest.raises(InvalidStateError):
        lifecycle.expire(other.subscription_id)


def test_record_renewal_appends_without_changing_status(lifecycle, event_logger) -> None:
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    lifecycle.activate(pending.subscription_id, "sub_ref_1")

    lifecycle.record_renewal(pending.subscription_id, "29.00", True, transaction_id="pi_1")
    renewed = lifecycle.record_renewal(pending.subscription_id, Decimal("29"), False)

    assert renewed.status == SubscriptionStatus.ACTIVE
    assert [renewal.status for renewal in renewed.renewals] == [RenewalStatus.SUCCESS, RenewalStatus.FAILED]
    assert renewed.renewals[0].transaction_id == "pi_1"
    assert renewed.renewals[0].amount == Decimal("29.00")
    assert _event_types(event_logger)[-2:] == [
        SubscriptionAuditEventType.RENEWAL_SUCCEEDED,
        SubscriptionAuditEventType.RENEWAL_FAILED,
    ]


def test_missing_subscription_raises_not_found(lifecycle) -> None:
    with pytest.raises(NotFoundError):
        lifecycle.activate("sub_missing", "sub_ref")
    with pytest.raises(NotFoundError):
        lifecycle.record_renewal("sub_missing", 10, True)


def test_user_sync_failure_leaves_subscription_active(subscriptions, gateway, event_logger, clock) -> None:
    users = FlakyUserDirectory([User(user_id="user-1", usage=UserUsage(last_reset_date=clock.now))])
    lifecycle = SubscriptionLifecycle(
        subscriptions=subscriptions,
        users=users,
        gateway=gateway,
        event_logger=event_logger,
        clock=clock,
    )
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    users.fail_saves = True

    with pytest.raises(UserSyncError) as exc:
        lifecycle.activate(pending.subscription_id, "sub_ref_1")

    assert exc.value.subscription_id == pending.subscription_id
    assert subscriptions.get_subscription(pending.subscription_id).status == SubscriptionStatus.ACTIVE
    assert users.get_user("user-1").role == UserRole.FREE

    users.fail_saves = False
    assert lifecycle.sync_user(pending.subscription_id).role == UserRole.PRO


def test_start_checkout_creates_provider_customer_once(lifecycle, gateway, users) -> None:
    session = lifecycle.start_checkout(
        "user-1",
        PlanKey.PRO,
        BillingCycle.MONTHLY,
        success_url="https://app.test/success",
        cancel_url="https://app.test/cancel",
    )

    assert session.checkout_url == f"https://checkout.test/{session.subscription.subscription_id}"
    assert session.provider_session_id == "cs_1"
    assert session.subscription.payment_details == {
        "customerId": "cus_user-1",
        "checkoutSessionId": "cs_1",
        "priceId": "price_pro_monthly",
    }
    assert users.get_user("user-1").subscription.payment_customer_id == "cus_user-1"

    retry = lifecycle.start_checkout(
        "user-1",
        PlanKey.PRO,
        BillingCycle.YEARLY,
        success_url="https://app.test/success",
        cancel_url="https://app.test/cancel",
    )

    assert retry.subscription.subscription_id == session.subscription.subscription_id
    assert retry.subscription.payment_details["priceId"] == "price_pro_yearly"
    assert gateway.customers == ["cus_user-1"]


class InterleavingSubscriptionRepository(InMemorySubscriptionRepository):
    """Runs ``before_save`` once, between a caller's read and its write."""

    def __init__(self) -> None:
        super().__init__()
        self.before_save = None

    def save_subscription(self, subscription):
        hook, self.before_save = self.before_save, None
        if hook is not None:
            hook()
        return super().save_subscription(subscription)


_TRANSITIONS = {
    "activate": lambda lifecycle, subscription_id: lifecycle.activate(subscription_id, "sub_ref_1"),
    "cancel": lambda lifecycle, subscription_id: lifecycle.cancel(subscription_id),
    "change_plan": lambda lifecycle, subscription_id: lifecycle.change_plan(subscription_id, PlanKey.ENTERPRISE),
    "expire": lambda lifecycle, subscription_id: lifecycle.expire(subscription_id),
}


@pytest.mark.parametrize("transition", sorted(_TRANSITIONS))
def test_transitions_keep_increments_committed_mid_write(users, gateway, event_logger, clock, transition) -> None:
    repository = InterleavingSubscriptionRepository()
    lifecycle = SubscriptionLifecycle(
        subscriptions=repository,
        users=users,
        gateway=gateway,
        event_logger=event_logger,
        clock=clock,
    )
    pending = lifecycle.create_pending("user-1", PlanKey.PRO, BillingCycle.MONTHLY)
    if transition in {"cancel", "change_plan"}:
        lifecycle.activate(pending.subscription_id, "sub_ref_1")

    def charge() -> bool:
        return repository.increment_feature_usage(pending.subscription_id, FeatureKey.INTERVIEWS, limit=-1)

    for _ in range(3):
        charge()
    repository.before_save = charge

    _TRANSITIONS[transition](lifecycle, pending.subscription_id)

    assert repository.before_save is None
    assert repository.get_subscription(pending.subscription_id).features.interviews.used == 4


def test_trial_grants_plan_features_without_pro_role(lifecycle, resolver, make_subscription, users) -> None:
    trial = make_subscription(status=SubscriptionStatus.TRIAL)

    synced = lifecycle.sync_user(trial.subscription_id)

    assert synced.role == UserRole.FREE
    assert synced.subscription.status == UserSubscriptionStatus.ACTIVE
    assert resolver.has_elevated_access(synced, trial) is False
    assert resolver.check("user-1", "jobMatches").limit == 10

    lifecycle.activate(trial.subscription_id, "sub_ref_trial")

    assert users.get_user("user-1").role == UserRole.PRO
