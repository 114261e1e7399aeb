"""Application wiring for the entitlement and subscription services."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Union

from ..config import SubscriptionConfig, load_subscription_config
from ..entitlements.catalog import PlanCatalog, load_plan_catalog
from ..entitlements.service import EntitlementResolver
from ..subscriptions import (
    PaymentProviderName,
    PostgresSubscriptionRepository,
    SubscriptionAuditEvent,
    SubscriptionEventLogger,
    SubscriptionLifecycle,
    SubscriptionWebhookHandler,
)
from ..users import PostgresUserDirectory
from .payments import LocalSandboxPaymentGateway, StripePaymentGateway

logger = logging.getLogger("subscriptions")


class LoggingSubscriptionEventLogger(SubscriptionEventLogger):
    """Simple event logger forwarding subscription audit events to logging."""

    def log(self, event: SubscriptionAuditEvent) -> None:
        logger.info(
            "Subscription event %s subscription=%s actor=%s metadata=%s",
            event.event_type.value,
            event.subscription_id,
            event.actor_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_subscription_config() -> SubscriptionConfig:
    return load_subscription_config()


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    return load_plan_catalog(get_subscription_config().plan_catalog_path)


@lru_cache(maxsize=1)
def get_payment_gateway() -> Union[StripePaymentGateway, LocalSandboxPaymentGateway]:
    config = get_subscription_config()
    if config.payment_provider == "stripe":
        return StripePaymentGateway(config)
    logger.warning("PAYMENT_PROVIDER is sandbox; checkouts will not charge real payments")
    return LocalSandboxPaymentGateway()


@lru_cache(maxsize=1)
def get_subscription_repository() -> PostgresSubscriptionRepository:
    return PostgresSubscriptionRepository()


@lru_cache(maxsize=1)
def get_user_directory() -> PostgresUserDirectory:
    return PostgresUserDirectory()


@lru_cache(maxsize=1)
def get_entitlement_resolver() -> EntitlementResolver:
    return EntitlementResolver(
        users=get_user_directory(),
        subscriptions=get_subscription_repository(),
        catalog=get_plan_catalog(),
    )


@lru_cache(maxsize=1)
def get_subscription_lifecycle() -> SubscriptionLifecycle:
    config = get_subscription_config()
    provider = (
        PaymentProviderName.STRIPE if config.payment_provider == "stripe" else PaymentProviderName.MANUAL
    )
    return SubscriptionLifecycle(
        subscriptions=get_subscription_repository(),
        users=get_user_directory(),
        gateway=get_payment_gateway(),
        event_logger=LoggingSubscriptionEventLogger(),
        catalog=get_plan_catalog(),
        payment_provider=provider,
    )


@lru_cache(maxsize=1)
def get_webhook_handler() -> SubscriptionWebhookHandler:
    return SubscriptionWebhookHandler(
        lifecycle=get_subscription_lifecycle(),
        repository=get_subscription_repository(),
    )


__all__ = [
    "LoggingSubscriptionEventLogger",
    "get_entitlement_resolver",
    "get_payment_gateway",
    "get_plan_catalog",
    "get_subscription_config",
    "get_subscription_lifecycle",
    "get_subscription_repository",
    "get_user_directory",
    "get_webhook_handler",
]
