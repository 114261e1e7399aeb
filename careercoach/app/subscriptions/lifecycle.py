"""State machine for subscription records and the user fields mirrored from them."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Mapping, Optional, Protocol, Union
from uuid import uuid4

from ..entitlements.catalog import DEFAULT_PLAN_CATALOG, PlanCatalog
from ..entitlements.models import BillingCycle, PlanKey
from ..exceptions import ConflictError, InvalidStateError, NotFoundError, UserSyncError
from ..usage.periods import add_months, billing_period_end
from ..users.models import User, UserRole, UserSubscriptionStatus
from ..users.repository import UserDirectory
from .models import (
    PAYMENT_CHECKOUT_SESSION_ID,
    PAYMENT_CUSTOMER_ID,
    PAYMENT_PRICE_ID,
    PAYMENT_SUBSCRIPTION_REF,
    Cancellation,
    CheckoutSession,
    PaymentProviderName,
    Renewal,
    RenewalStatus,
    Subscription,
    SubscriptionAuditEvent,
    SubscriptionAuditEventType,
    SubscriptionStatus,
)
from .repository import SubscriptionRepository

logger = logging.getLogger("subscriptions")

# Registration-time free records never lapse in practice.
FREE_SUBSCRIPTION_MONTHS = 1200

_SNAPSHOT_STATUS = {
    SubscriptionStatus.PENDING: UserSubscriptionStatus.NONE,
    SubscriptionStatus.ACTIVE: UserSubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIAL: UserSubscriptionStatus.ACTIVE,
    SubscriptionStatus.CANCELLED: UserSubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED: UserSubscriptionStatus.EXPIRED,
}


class PaymentGateway(Protocol):
    """External payment processor integration."""

    def create_customer(self, *, user: User) -> str:
        """Register ``user`` with the provider and return its customer id."""

    def create_checkout_session(
        self,
        *,
        subscription: Subscription,
        customer_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Mapping[str, object]:
        """Create a provider checkout session for a pending subscription."""

    def cancel_subscription(self, provider_subscription_ref: str) -> None:
        """Stop billing for a provider subscription."""


class SubscriptionEventLogger(Protocol):
    """Captures structured subscription audit events."""

    def log(self, event: SubscriptionAuditEvent) -> None:
        ...


# ``slots`` support for ``dataclass`` was added in Python 3.10; enable it only
# where the interpreter provides it.
_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class SubscriptionLifecycle:
    """Coordinates subscription transitions, payment calls, and user sync.

    Transitions::

        pending --activate--> active --cancel--> cancelled
        pending --expire----> expired
        active  --change_plan--> active

    ``cancelled`` and ``expired`` are terminal. Every transition that affects
    entitlements also rewrites ``User.role`` and the user's subscription
    snapshot; the subscription record is always persisted first.
    """

    subscriptions: SubscriptionRepository
    users: UserDirectory
    gateway: PaymentGateway
    event_logger: SubscriptionEventLogger
    catalog: PlanCatalog = DEFAULT_PLAN_CATALOG
    payment_provider: PaymentProviderName = PaymentProviderName.STRIPE
    clock: Optional[Callable[[], datetime]] = None

    def _now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    def create_free(self, user_id: str) -> Subscription:
        """Create the registration-time free record, or return the existing one."""

        self.users.get_user(user_id)
        existing = self.subscriptions.get_by_user(user_id)
        if existing is not None:
            return existing

        now = self._now()
        subscription = Subscription(
            subscription_id=f"sub_{uuid4().hex}",
            user_id=user_id,
            plan=PlanKey.FREE,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=BillingCycle.MONTHLY,
            price=Decimal("0"),
            currency=self.catalog.currency,
            start_date=now,
            end_date=add_months(now, FREE_SUBSCRIPTION_MONTHS),
            payment_provider=PaymentProviderName.MANUAL,
            features=self.catalog.features_for(PlanKey.FREE),
            created_at=now,
            updated_at=now,
        )
        stored = self.subscriptions.save_subscription(subscription)
        self._log_event(SubscriptionAuditEventType.SUBSCRIPTION_CREATED, stored, plan=PlanKey.FREE.value)
        return stored

    def create_pending(
        self,
        user_id: str,
        plan: Union[PlanKey, str],
        billing_cycle: Union[BillingCycle, str],
    ) -> Subscription:
        """Record an upgrade that waits for payment confirmation.

        Raises :class:`ConflictError` when the user already holds an active
        paid subscription. A pending record for the same user is refreshed in
        place; any other existing record is replaced while its usage counters
        carry over.
        """

        definition = self.catalog.get_plan_definition(plan)
        if not definition.key.is_paid:
            raise ValueError("Only paid plans can be purchased")
        cycle = BillingCycle(billing_cycle)
        user = self.users.get_user(user_id)

        existing = self.subscriptions.get_by_user(user_id)
        if existing is not None and existing.status.grants_plan and existing.plan.is_paid:
            raise ConflictError(f"User {user_id} already has an active {existing.plan.value} subscription")

        now = self._now()
        refresh = existing is not None and existing.status == SubscriptionStatus.PENDING
        details: Dict[str, str] = dict(existing.payment_details) if refresh else {}
        if user.subscription.payment_customer_id:
            details.setdefault(PAYMENT_CUSTOMER_ID, user.subscription.payment_customer_id)

        subscription = Subscription(
            subscription_id=existing.subscription_id if refresh else f"sub_{uuid4().hex}",
            user_id=user_id,
            plan=definition.key,
            status=SubscriptionStatus.PENDING,
            billing_cycle=cycle,
            price=definition.price_for(cycle),
            currency=self.catalog.currency,
            start_date=now,
            end_date=billing_period_end(now, cycle),
            payment_provider=self.payment_provider,
            payment_details=details,
            features=self.catalog.merge_features(
                PlanKey.FREE, existing.features if existing is not None else None
            ),
            created_at=existing.created_at if refresh else now,
            updated_at=now,
        )
        stored = self.subscriptions.save_subscription(subscription)
        self._log_event(
            SubscriptionAuditEventType.SUBSCRIPTION_CREATED,
            stored,
            plan=stored.plan.value,
            billing_cycle=stored.billing_cycle.value,
        )
        return stored

    def start_checkout(
        self,
        user_id: str,
        plan: Union[PlanKey, str],
        billing_cycle: Union[BillingCycle, str],
        *,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        pending = self.create_pending(user_id, plan, billing_cycle)
        user = self.users.get_user(user_id)

        customer_id = pending.payment_details.get(PAYMENT_CUSTOMER_ID)
        if not customer_id:
            customer_id = self.gateway.create_customer(user=user)
            snapshot = user.subscription.model_copy(update={"payment_customer_id": customer_id})
            self.users.save_user(user.model_copy(update={"subscription": snapshot}))

        session = self.gateway.create_checkout_session(
            subscription=pending,
            customer_id=customer_id,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        details = {**pending.payment_details, PAYMENT_CUSTOMER_ID: customer_id}
        session_id = session.get("id")
        if session_id:
            details[PAYMENT_CHECKOUT_SESSION_ID] = str(session_id)
        price_id = session.get("price_id")
        if price_id:
            details[PAYMENT_PRICE_ID] = str(price_id)

        stored = self.subscriptions.save_subscription(
            pending.model_copy(update={"payment_details": details})
        )
        return CheckoutSession(
            subscription=stored,
            checkout_url=str(session.get("url") or ""),
            provider_session_id=str(session_id) if session_id else None,
            expires_at=session.get("expires_at"),
        )

    def activate(self, subscription_id: str, payment_ref: str) -> Subscription:
        """Confirm payment for a pending (or trial) subscription.

        Activating an already active subscription changes nothing on the
        record but re-runs the user synchronization, so callers may retry
        freely.
        """

        subscription = self._get(subscription_id)
        if subscription.status == SubscriptionStatus.ACTIVE:
            if subscription.payment_ref and payment_ref and subscription.payment_ref != payment_ref:
                logger.warning(
                    "Subscription %s already active with payment ref %s; ignoring %s",
                    subscription_id,
                    subscription.payment_ref,
                    payment_ref,
                )
            self._sync_user(subscription)
            return subscription

        if subscription.status not in {SubscriptionStatus.PENDING, SubscriptionStatus.TRIAL}:
            raise InvalidStateError(
                f"Cannot activate a {subscription.status.value} subscription",
                current_status=subscription.status.value,
            )

        details = dict(subscription.payment_details)
        details[PAYMENT_SUBSCRIPTION_REF] = payment_ref
        updated = subscription.model_copy(
            update={
                "status": SubscriptionStatus.ACTIVE,
                "features": self.catalog.merge_features(subscription.plan, subscription.features),
                "payment_details": details,
                "updated_at": self._now(),
            }
        )
        stored = self.subscriptions.save_subscription(updated)
        self._log_event(SubscriptionAuditEventType.SUBSCRIPTION_ACTIVATED, stored, payment_ref=payment_ref)
        self._sync_user(stored)
        return stored

    def sync_user(self, subscription_id: str) -> User:
        """Rewrite the linked user's role and snapshot from the subscription."""

        return self._sync_user(self._get(subscription_id))

    def cancel(
        self,
        subscription_id: str,
        *,
        reason: Optional[str] = None,
        feedback: Optional[str] = None,
        notify_provider: bool = True,
    ) -> Subscription:
        subscription = self._get(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise InvalidStateError(
                f"Only active subscriptions can be cancelled (status: {subscription.status.value})",
                current_status=subscription.status.value,
            )

        if notify_provider and subscription.payment_ref:
            self.gateway.cancel_subscription(subscription.payment_ref)

        now = self._now()
        updated = subscription.model_copy(
            update={
                "status": SubscriptionStatus.CANCELLED,
                "cancellation": Cancellation(cancelled_at=now, reason=reason, feedback=feedback),
                "updated_at": now,
            }
        )
        stored = self.subscriptions.save_subscription(updated)
        self._log_event(
            SubscriptionAuditEventType.SUBSCRIPTION_CANCELLED,
            stored,
            reason=reason or "",
        )
        self._sync_user(stored)
        return stored

    def change_plan(
        self,
        subscription_id: str,
        plan: Union[PlanKey, str],
        *,
        billing_cycle: Union[BillingCycle, str, None] = None,
    ) -> Subscription:
        """Swap the plan of an active subscription, keeping usage counters."""

        subscription = self._get(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise InvalidStateError(
                f"Cannot change plan of a {subscription.status.value} subscription",
                current_status=subscription.status.value,
            )

        definition = self.catalog.get_plan_definition(plan)
        cycle = BillingCycle(billing_cycle) if billing_cycle else subscription.billing_cycle
        if definition.key == subscription.plan and cycle == subscription.billing_cycle:
            return subscription

        updated = subscription.model_copy(
            update={
                "plan": definition.key,
                "billing_cycle": cycle,
                "price": definition.price_for(cycle),
                "features": self.catalog.merge_features(definition.key, subscription.features),
                "updated_at": self._now(),
            }
        )
        stored = self.subscriptions.save_subscription(updated)
        self._log_event(
            SubscriptionAuditEventType.PLAN_CHANGED,
            stored,
            previous_plan=subscription.plan.value,
            plan=stored.plan.value,
        )
        self._sync_user(stored)
        return stored

    def expire(self, subscription_id: str) -> Subscription:
        """Mark an abandoned checkout as expired."""

        subscription = self._get(subscription_id)
        if subscription.status == SubscriptionStatus.EXPIRED:
            return subscription
        if subscription.status != SubscriptionStatus.PENDING:
            raise InvalidStateError(
                f"Only pending subscriptions can expire (status: {subscription.status.value})",
                current_status=subscription.status.value,
            )

        stored = self.subscriptions.save_subscription(
            subscription.model_copy(
                update={"status": SubscriptionStatus.EXPIRED, "updated_at": self._now()}
            )
        )
        self._log_event(SubscriptionAuditEventType.SUBSCRIPTION_EXPIRED, stored)
        return stored

    def record_renewal(
        self,
        subscription_id: str,
        amount: Union[Decimal, int, float, str],
        succeeded: bool,
        *,
        transaction_id: Optional[str] = None,
    ) -> Subscription:
        """Append a billing attempt; status is left for the caller to decide."""

        self._get(subscription_id)
        renewal = Renewal(
            date=self._now(),
            amount=Decimal(str(amount)),
            status=RenewalStatus.SUCCESS if succeeded else RenewalStatus.FAILED,
            transaction_id=transaction_id,
        )
        stored = self.subscriptions.append_renewal(subscription_id, renewal)
        if stored is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")

        if succeeded:
            event_type = SubscriptionAuditEventType.RENEWAL_SUCCEEDED
        else:
            event_type = SubscriptionAuditEventType.RENEWAL_FAILED
            logger.warning(
                "Renewal failed for subscription %s amount=%s %s transaction=%s",
                subscription_id,
                renewal.amount,
                stored.currency,
                transaction_id,
            )
        self._log_event(
            event_type,
            stored,
            amount=str(renewal.amount),
            transaction_id=transaction_id or "",
        )
        return stored

    def _get(self, subscription_id: str) -> Subscription:
        subscription = self.subscriptions.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    def _sync_user(self, subscription: Subscription) -> User:
        try:
            user = self.users.get_user(subscription.user_id)
            if user.is_admin:
                role = user.role
            elif subscription.confers_elevated_role:
                role = UserRole.for_plan(subscription.plan)
            else:
                role = UserRole.FREE
            snapshot = user.subscription.model_copy(
                update={
                    "status": _SNAPSHOT_STATUS[subscription.status],
                    "plan": subscription.plan,
                    "start_date": subscription.start_date,
                    "end_date": subscription.end_date,
                    "payment_customer_id": subscription.payment_details.get(PAYMENT_CUSTOMER_ID)
                    or user.subscription.payment_customer_id,
                    "payment_subscription_id": subscription.payment_ref,
                }
            )
            return self.users.save_user(user.model_copy(update={"role": role, "subscription": snapshot}))
        except Exception as exc:
            logger.exception(
                "Failed to synchronize user %s with subscription %s",
                subscription.user_id,
                subscription.subscription_id,
            )
            raise UserSyncError(subscription.subscription_id, subscription.user_id) from exc

    def _log_event(
        self,
        event_type: SubscriptionAuditEventType,
        subscription: Subscription,
        **metadata: str,
    ) -> None:
        self.event_logger.log(
            SubscriptionAuditEvent(
                event_type=event_type,
                subscription_id=subscription.subscription_id,
                actor_id=subscription.user_id,
                metadata=metadata,
            )
        )
