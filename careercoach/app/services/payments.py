"""Payment gateway adapters used by the subscription lifecycle."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from uuid import uuid4

import stripe

from ..config import SubscriptionConfig, price_env_var
from ..exceptions import ConfigError
from ..subscriptions.models import PaymentWebhookEvent, PaymentWebhookEventType, Subscription
from ..users.models import User

logger = logging.getLogger("payments")

_CENTS = Decimal("100")


def _metadata(document: Mapping[str, Any]) -> Mapping[str, Any]:
    metadata = document.get("metadata")
    return metadata if isinstance(metadata, Mapping) else {}


def _amount_from_cents(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value)) / _CENTS


def map_stripe_event(document: Mapping[str, Any]) -> PaymentWebhookEvent:
    """Reduce a Stripe event document to the correlation keys the lifecycle needs."""

    event_id = document.get("id")
    event_type = document.get("type")
    if not event_id or not event_type:
        raise ValueError("Stripe event is missing id or type")

    data = document.get("data")
    obj = data.get("object") if isinstance(data, Mapping) else None
    if not isinstance(obj, Mapping):
        obj = {}

    subscription_id: Optional[str] = None
    provider_ref: Optional[str] = None
    amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None

    if event_type == PaymentWebhookEventType.CHECKOUT_COMPLETED.value:
        subscription_id = _metadata(obj).get("subscriptionId")
        provider_ref = obj.get("subscription")
        amount = _amount_from_cents(obj.get("amount_total"))
    elif event_type in {
        PaymentWebhookEventType.INVOICE_PAYMENT_SUCCEEDED.value,
        PaymentWebhookEventType.INVOICE_PAYMENT_FAILED.value,
    }:
        provider_ref = obj.get("subscription")
        details = obj.get("subscription_details")
        if isinstance(details, Mapping):
            subscription_id = _metadata(details).get("subscriptionId")
        if event_type == PaymentWebhookEventType.INVOICE_PAYMENT_SUCCEEDED.value:
            amount = _amount_from_cents(obj.get("amount_paid"))
        else:
            amount = _amount_from_cents(obj.get("amount_due"))
        transaction_id = obj.get("payment_intent") or obj.get("id")
    elif event_type == PaymentWebhookEventType.SUBSCRIPTION_DELETED.value:
        provider_ref = obj.get("id")
        subscription_id = _metadata(obj).get("subscriptionId")

    received = document.get("created")
    return PaymentWebhookEvent(
        event_id=str(event_id),
        event_type=str(event_type),
        subscription_id=subscription_id,
        provider_subscription_ref=provider_ref,
        amount=amount,
        transaction_id=transaction_id,
        received_at=datetime.fromtimestamp(received, tz=timezone.utc)
        if isinstance(received, (int, float))
        else datetime.now(timezone.utc),
    )


class StripePaymentGateway:
    """Stripe-backed gateway; the API key is passed per call, never set globally."""

    def __init__(self, config: SubscriptionConfig) -> None:
        if not config.stripe_secret_key:
            raise ConfigError("STRIPE_SECRET_KEY is not configured")
        self._config = config
        self._api_key = config.stripe_secret_key

    def create_customer(self, *, user: User) -> str:
        try:
            customer = stripe.Customer.create(
                api_key=self._api_key,
                email=user.email,
                name=user.full_name,
                metadata={"userId": user.user_id},
            )
        except stripe.StripeError:
            logger.exception("Stripe customer creation failed for user %s", user.user_id)
            raise
        logger.info("Created Stripe customer %s for user %s", customer.id, user.user_id)
        return customer.id

    def create_checkout_session(
        self,
        *,
        subscription: Subscription,
        customer_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Mapping[str, object]:
        price_id = self._config.price_id_for(subscription.plan, subscription.billing_cycle)
        if not price_id:
            raise ConfigError(
                f"Stripe price ID not configured ({price_env_var(subscription.plan, subscription.billing_cycle)})"
            )

        try:
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={
                    "subscriptionId": subscription.subscription_id,
                    "userId": subscription.user_id,
                    "plan": subscription.plan.value,
                },
                subscription_data={"metadata": {"subscriptionId": subscription.subscription_id}},
            )
        except stripe.StripeError:
            logger.exception(
                "Stripe checkout session creation failed for subscription %s",
                subscription.subscription_id,
            )
            raise

        logger.info(
            "Created checkout session %s for subscription %s",
            session.id,
            subscription.subscription_id,
        )
        expires_at = getattr(session, "expires_at", None)
        return {
            "id": session.id,
            "url": session.url,
            "price_id": price_id,
            "expires_at": datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
        }

    def cancel_subscription(self, provider_subscription_ref: str) -> None:
        try:
            stripe.Subscription.cancel(provider_subscription_ref, api_key=self._api_key)
        except stripe.StripeError:
            logger.exception("Stripe subscription cancellation failed for %s", provider_subscription_ref)
            raise

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> PaymentWebhookEvent:
        """Verify the ``Stripe-Signature`` header and map the event."""

        if not self._config.stripe_webhook_secret:
            raise ConfigError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        text = payload.decode("utf-8")
        try:
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                self._config.stripe_webhook_secret,
                tolerance=self._config.stripe_webhook_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Webhook signature verification failed: %s", exc)
            raise ValueError(f"Invalid signature: {exc}") from exc

        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid webhook payload: {exc}") from exc
        return map_stripe_event(document)


class LocalSandboxPaymentGateway:
    """Minimal gateway implementation for local development and tests."""

    def create_customer(self, *, user: User) -> str:
        return f"cus_{uuid4().hex[:14]}"

    def create_checkout_session(
        self,
        *,
        subscription: Subscription,
        customer_id: str,
        success_url: str,
        cancel_url: str,
    ) -> Mapping[str, object]:
        session_id = f"cs_{uuid4().hex}"
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=30)
        return {
            "id": session_id,
            "url": f"https://billing.local/checkout/{session_id}",
            "expires_at": expires_at,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }

    def cancel_subscription(self, provider_subscription_ref: str) -> None:
        logger.info("Sandbox cancellation for provider subscription %s", provider_subscription_ref)

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> PaymentWebhookEvent:
        """Accept an already normalized event document (no signature)."""

        try:
            document: Dict[str, Any] = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError(f"Invalid webhook payload: {exc}") from exc
        if "data" in document:
            return map_stripe_event(document)
        return PaymentWebhookEvent.model_validate(document)


__all__ = ["LocalSandboxPaymentGateway", "StripePaymentGateway", "map_stripe_event"]
