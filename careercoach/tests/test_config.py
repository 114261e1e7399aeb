from __future__ import annotations

import pytest

from careercoach.app.config import load_subscription_config, price_env_var
from careercoach.app.entitlements import BillingCycle, PlanKey


def test_defaults_use_sandbox_provider() -> None:
    config = load_subscription_config({})

    assert config.payment_provider == "sandbox"
    assert config.stripe_secret_key is None
    assert config.stripe_webhook_tolerance == 300
    assert config.client_url == "http://localhost:3000"
    assert config.plan_catalog_path is None
    assert config.jwt_algorithm == "HS256"


def test_stripe_provider_requires_secrets() -> None:
    with pytest.raises(ValueError):
        load_subscription_config({"PAYMENT_PROVIDER": "stripe", "STRIPE_SECRET_KEY": "sk_test"})


def test_unknown_provider_is_rejected() -> None:
    with pytest.raises(ValueError):
        load_subscription_config({"PAYMENT_PROVIDER": "paypal"})


def test_price_ids_and_urls() -> None:
    config = load_subscription_config(
        {
            "PAYMENT_PROVIDER": "Stripe",
            "STRIPE_SECRET_KEY": "sk_test",
            "STRIPE_WEBHOOK_SECRET": "whsec_test",
            "STRIPE_PRICE_ID_PRO_MONTHLY": " price_pro_m ",
            "STRIPE_PRICE_ID_ENTERPRISE_YEARLY": "price_ent_y",
            "STRIPE_WEBHOOK_TOLERANCE": "60",
            "CLIENT_URL": "https://careercoach.dev/",
            "PLAN_CATALOG_PATH": "/etc/careercoach/plans.json",
        }
    )

    assert config.payment_provider == "stripe"
    assert config.price_id_for(PlanKey.PRO, BillingCycle.MONTHLY) == "price_pro_m"
    assert config.price_id_for(PlanKey.ENTERPRISE, BillingCycle.YEARLY) == "price_ent_y"
    assert config.price_id_for(PlanKey.PRO, BillingCycle.YEARLY) is None
    assert config.stripe_webhook_tolerance == 60
    assert config.checkout_success_url == "https://careercoach.dev/subscription/success?session_id={CHECKOUT_SESSION_ID}"
    assert config.checkout_cancel_url == "https://careercoach.dev/subscription/cancel"
    assert config.plan_catalog_path == "/etc/careercoach/plans.json"


def test_invalid_tolerance() -> None:
    with pytest.raises(ValueError):
        load_subscription_config({"STRIPE_WEBHOOK_TOLERANCE": "soon"})


def test_price_env_var_name() -> None:
    assert price_env_var(PlanKey.ENTERPRISE, BillingCycle.MONTHLY) == "STRIPE_PRICE_ID_ENTERPRISE_MONTHLY"
