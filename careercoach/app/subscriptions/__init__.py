"""Subscription records, their lifecycle, and payment webhook handling."""

from .lifecycle import PaymentGateway, SubscriptionEventLogger, SubscriptionLifecycle
from .memory import InMemorySubscriptionRepository
from .models import (
    CheckoutSession,
    PaymentProviderName,
    PaymentWebhookEvent,
    PaymentWebhookEventType,
    Renewal,
    RenewalStatus,
    Subscription,
    SubscriptionAuditEvent,
    SubscriptionAuditEventType,
    SubscriptionStatus,
)
from .repository import PostgresSubscriptionRepository, SubscriptionRepository
from .webhooks import SubscriptionWebhookHandler

__all__ = [
    "CheckoutSession",
    "InMemorySubscriptionRepository",
    "PaymentGateway",
    "PaymentProviderName",
    "PaymentWebhookEvent",
    "PaymentWebhookEventType",
    "PostgresSubscriptionRepository",
    "Renewal",
    "RenewalStatus",
    "Subscription",
    "SubscriptionAuditEvent",
    "SubscriptionAuditEventType",
    "SubscriptionEventLogger",
    "SubscriptionLifecycle",
    "SubscriptionRepository",
    "SubscriptionStatus",
    "SubscriptionWebhookHandler",
]
