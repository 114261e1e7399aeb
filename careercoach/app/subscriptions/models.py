"""Domain models for subscription records and their lifecycle events."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import BillingCycle, FeatureSet, PlanKey

PAYMENT_CUSTOMER_ID = "customerId"
PAYMENT_SUBSCRIPTION_REF = "subscriptionRef"
PAYMENT_PRICE_ID = "priceId"
PAYMENT_CHECKOUT_SESSION_ID = "checkoutSessionId"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    """Lifecycle state for subscriptions."""

    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    TRIAL = "trial"

    @property
    def is_terminal(self) -> bool:
        return self in {SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED}

    @property
    def grants_plan(self) -> bool:
        return self in {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL}


class PaymentProviderName(str, Enum):
    """Payment providers a subscription can be billed through."""

    STRIPE = "stripe"
    RAZORPAY = "razorpay"
    MANUAL = "manual"


class RenewalStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class Renewal(BaseModel):
    """One billing attempt appended to a subscription's history."""

    date: datetime = Field(default_factory=_utcnow)
    amount: Decimal = Field(ge=0)
    status: RenewalStatus
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Cancellation(BaseModel):
    """Stamp recorded once when an active subscription is cancelled."""

    cancelled_at: datetime = Field(default_factory=_utcnow, alias="cancelledAt")
    reason: Optional[str] = None
    feedback: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Subscription(BaseModel):
    """A user's single subscription record."""

    subscription_id: str
    user_id: str
    plan: PlanKey = PlanKey.FREE
    status: SubscriptionStatus
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    price: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    start_date: datetime = Field(default_factory=_utcnow)
    end_date: datetime
    trial_ends_at: Optional[datetime] = None
    payment_provider: PaymentProviderName = PaymentProviderName.MANUAL
    payment_details: Dict[str, str] = Field(default_factory=dict)
    features: FeatureSet
    cancellation: Optional[Cancellation] = None
    renewals: Tuple[Renewal, ...] = ()
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def entitled_plan(self) -> PlanKey:
        """Plan whose entitlements currently apply given the status."""

        return self.plan if self.status.grants_plan else PlanKey.FREE

    @property
    def confers_elevated_role(self) -> bool:
        """Only a paid record whose payment is confirmed lifts ``User.role`` to pro.

        Trials still receive the plan's features through ``entitled_plan``.
        """

        return self.status == SubscriptionStatus.ACTIVE and self.plan.is_paid

    @property
    def payment_ref(self) -> Optional[str]:
        return self.payment_details.get(PAYMENT_SUBSCRIPTION_REF)


class SubscriptionAuditEventType(str, Enum):
    """Audit event categories emitted by the subscription lifecycle."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    PLAN_CHANGED = "plan_changed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"


class SubscriptionAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: SubscriptionAuditEventType
    subscription_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentWebhookEventType(str, Enum):
    """Provider webhook events the lifecycle reacts to."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class PaymentWebhookEvent(BaseModel):
    """Provider webhook reduced to the correlation keys the lifecycle needs."""

    event_id: str
    event_type: str
    subscription_id: Optional[str] = None
    provider_subscription_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSession(BaseModel):
    """Return value of a checkout start: the pending record plus the provider URL."""

    subscription: Subscription
    checkout_url: str
    provider_session_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)
