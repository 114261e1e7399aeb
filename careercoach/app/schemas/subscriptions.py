"""API schemas for subscription and entitlement endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements.models import BillingCycle, FeatureAccess, PlanKey
from ..entitlements.service import UsageSummary
from ..subscriptions.models import Cancellation, CheckoutSession, RenewalStatus, Subscription, SubscriptionStatus
from ..users.models import UserRole


class CreateSubscriptionRequest(BaseModel):
    plan: PlanKey
    billing_cycle: BillingCycle = Field(alias="billingCycle", default=BillingCycle.MONTHLY)

    model_config = ConfigDict(populate_by_name=True)


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    feedback: Optional[str] = Field(default=None, max_length=2000)

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionOut(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    plan: PlanKey
    status: SubscriptionStatus
    billing_cycle: BillingCycle = Field(alias="billingCycle")
    price: Decimal
    currency: str
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    trial_ends_at: Optional[datetime] = Field(alias="trialEndsAt", default=None)
    features: Dict[str, Any]
    cancellation: Optional[Cancellation] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionOut":
        return cls(
            subscription_id=subscription.subscription_id,
            plan=subscription.plan,
            status=subscription.status,
            billing_cycle=subscription.billing_cycle,
            price=subscription.price,
            currency=subscription.currency,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            trial_ends_at=subscription.trial_ends_at,
            features=subscription.features.to_document(),
            cancellation=subscription.cancellation,
        )


class CheckoutSessionResponse(BaseModel):
    subscription: SubscriptionOut
    checkout_url: str = Field(alias="checkoutUrl")
    expires_at: Optional[datetime] = Field(alias="expiresAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_checkout(cls, session: CheckoutSession) -> "CheckoutSessionResponse":
        return cls(
            subscription=SubscriptionOut.from_subscription(session.subscription),
            checkout_url=session.checkout_url,
            expires_at=session.expires_at,
        )


class UsageEntry(BaseModel):
    used: Optional[int] = None
    limit: Optional[int] = None


class UsageSummaryResponse(BaseModel):
    role: UserRole
    plan: PlanKey
    subscription: Optional[SubscriptionOut] = None
    usage: Dict[str, UsageEntry]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: UsageSummary) -> "UsageSummaryResponse":
        return cls(
            role=summary.user.role,
            plan=summary.plan,
            subscription=SubscriptionOut.from_subscription(summary.subscription)
            if summary.subscription
            else None,
            usage={
                key.value: UsageEntry(used=access.used, limit=access.limit)
                for key, access in summary.usage.items()
            },
        )


class FeatureMapResponse(BaseModel):
    features: Dict[str, FeatureAccess]


class WebhookAck(BaseModel):
    received: bool = True
    processed: bool


class BillingHistoryEntry(BaseModel):
    date: datetime
    amount: Decimal
    currency: str
    status: RenewalStatus
    description: str
    transaction_id: Optional[str] = Field(alias="transactionId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class BillingHistoryResponse(BaseModel):
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    entries: List[BillingHistoryEntry] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Optional[Subscription]) -> "BillingHistoryResponse":
        """Renewal attempts, newest first; empty when the user never subscribed."""

        if subscription is None:
            return cls()
        description = (
            f"{subscription.plan.value.title()} Plan - {subscription.billing_cycle.value.title()}"
        )
        return cls(
            subscription_id=subscription.subscription_id,
            entries=[
                BillingHistoryEntry(
                    date=renewal.date,
                    amount=renewal.amount,
                    currency=subscription.currency,
                    status=renewal.status,
                    description=description,
                    transaction_id=renewal.transaction_id,
                )
                for renewal in reversed(subscription.renewals)
            ],
        )
