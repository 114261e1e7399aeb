"""Maps normalized payment webhooks onto lifecycle transitions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..exceptions import NotFoundError, UserSyncError
from .lifecycle import SubscriptionLifecycle, _dataclass_kwargs
from .models import PaymentWebhookEvent, PaymentWebhookEventType, Subscription, SubscriptionStatus
from .repository import SubscriptionRepository

logger = logging.getLogger("subscriptions")


@dataclass(**_dataclass_kwargs)
class SubscriptionWebhookHandler:
    """Dispatches provider events; each event id takes effect at most once.

    ============================== ==========================================
    event type                     lifecycle call
    ============================== ==========================================
    checkout.session.completed     ``activate(subscription, provider ref)``
    invoice.payment_succeeded      ``record_renewal(subscription, amount, True)``
    invoice.payment_failed         ``record_renewal(subscription, amount, False)``
    customer.subscription.deleted  ``cancel(subscription)``
    ============================== ==========================================
    """

    lifecycle: SubscriptionLifecycle
    repository: SubscriptionRepository

    def handle(self, event: PaymentWebhookEvent) -> Optional[Subscription]:
        if not self.repository.record_webhook_event(event.event_id, event.event_type):
            logger.info("Skipping already processed webhook event %s", event.event_id)
            return None

        try:
            event_type = PaymentWebhookEventType(event.event_type)
        except ValueError:
            logger.info("Unhandled webhook event type %s (%s)", event.event_type, event.event_id)
            return None

        try:
            return self._dispatch(event_type, event)
        except UserSyncError:
            # The subscription write landed; the user is repaired through sync_user.
            raise
        except Exception:
            self.repository.forget_webhook_event(event.event_id)
            logger.warning("Webhook event %s failed; it will be processed on redelivery", event.event_id)
            raise

    def _dispatch(
        self, event_type: PaymentWebhookEventType, event: PaymentWebhookEvent
    ) -> Subscription:
        subscription = self._resolve_subscription(event)

        if event_type == PaymentWebhookEventType.CHECKOUT_COMPLETED:
            if not event.provider_subscription_ref:
                raise ValueError("checkout completion is missing the provider subscription reference")
            return self.lifecycle.activate(subscription.subscription_id, event.provider_subscription_ref)

        if event_type in {
            PaymentWebhookEventType.INVOICE_PAYMENT_SUCCEEDED,
            PaymentWebhookEventType.INVOICE_PAYMENT_FAILED,
        }:
            amount = event.amount if event.amount is not None else subscription.price
            return self.lifecycle.record_renewal(
                subscription.subscription_id,
                amount,
                event_type == PaymentWebhookEventType.INVOICE_PAYMENT_SUCCEEDED,
                transaction_id=event.transaction_id,
            )

        if subscription.status != SubscriptionStatus.ACTIVE:
            logger.info(
                "Ignoring provider cancellation for %s subscription %s",
                subscription.status.value,
                subscription.subscription_id,
            )
            return subscription
        return self.lifecycle.cancel(
            subscription.subscription_id,
            reason="Cancelled by payment provider",
            notify_provider=False,
        )

    def _resolve_subscription(self, event: PaymentWebhookEvent) -> Subscription:
        subscription = None
        if event.subscription_id:
            subscription = self.repository.get_subscription(event.subscription_id)
        if subscription is None and event.provider_subscription_ref:
            subscription = self.repository.get_by_payment_ref(event.provider_subscription_ref)
        if subscription is None:
            raise NotFoundError(
                f"No subscription matches webhook event {event.event_id} "
                f"(subscription={event.subscription_id}, ref={event.provider_subscription_ref})"
            )
        return subscription
