"""Subscription and payment configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple
import os

from .entitlements.models import BillingCycle, PlanKey

PAYMENT_PROVIDERS = ("sandbox", "stripe")

PriceKey = Tuple[PlanKey, BillingCycle]


@dataclass(frozen=True)
class SubscriptionConfig:
    """Configuration for plan pricing, payments, and request authentication."""

    payment_provider: str
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    stripe_webhook_tolerance: int
    stripe_price_ids: Mapping[PriceKey, str] = field(default_factory=dict)
    client_url: str = "http://localhost:3000"
    plan_catalog_path: Optional[str] = None
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    @property
    def checkout_success_url(self) -> str:
        return f"{self.client_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.client_url}/subscription/cancel"

    def price_id_for(self, plan: PlanKey, billing_cycle: BillingCycle) -> Optional[str]:
        return self.stripe_price_ids.get((plan, billing_cycle))


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def price_env_var(plan: PlanKey, billing_cycle: BillingCycle) -> str:
    """Name of the variable holding the provider price id, e.g. ``STRIPE_PRICE_ID_PRO_MONTHLY``."""

    return f"STRIPE_PRICE_ID_{plan.value.upper()}_{billing_cycle.value.upper()}"


def load_subscription_config(env: Optional[Mapping[str, str]] = None) -> SubscriptionConfig:
    """Load :class:`SubscriptionConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    payment_provider = (env_mapping.get("PAYMENT_PROVIDER") or "sandbox").strip().lower() or "sandbox"
    if payment_provider not in PAYMENT_PROVIDERS:
        raise ValueError(
            f"Unsupported PAYMENT_PROVIDER {payment_provider!r}; expected one of {', '.join(PAYMENT_PROVIDERS)}"
        )

    stripe_secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    stripe_webhook_secret = env_mapping.get("STRIPE_WEBHOOK_SECRET") or None
    if payment_provider == "stripe" and not (stripe_secret_key and stripe_webhook_secret):
        raise ValueError("STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET are required when PAYMENT_PROVIDER=stripe")

    price_ids: Dict[PriceKey, str] = {}
    for plan in PlanKey:
        if not plan.is_paid:
            continue
        for cycle in BillingCycle:
            price_id = env_mapping.get(price_env_var(plan, cycle))
            if price_id:
                price_ids[(plan, cycle)] = price_id.strip()

    client_url = env_mapping.get("CLIENT_URL") or "http://localhost:3000"

    return SubscriptionConfig(
        payment_provider=payment_provider,
        stripe_secret_key=stripe_secret_key,
        stripe_webhook_secret=stripe_webhook_secret,
        stripe_webhook_tolerance=max(0, _to_int(env_mapping.get("STRIPE_WEBHOOK_TOLERANCE"), default=300)),
        stripe_price_ids=price_ids,
        client_url=client_url.rstrip("/"),
        plan_catalog_path=env_mapping.get("PLAN_CATALOG_PATH") or None,
        jwt_secret=env_mapping.get("JWT_SECRET") or "change-me",
        jwt_algorithm=env_mapping.get("JWT_ALGORITHM") or "HS256",
    )


__all__ = ["PAYMENT_PROVIDERS", "SubscriptionConfig", "load_subscription_config", "price_env_var"]
