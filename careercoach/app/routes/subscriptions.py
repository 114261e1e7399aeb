"""API routes exposing subscriptions, pricing, and feature entitlements."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from ..auth import get_current_user_id
from ..config import SubscriptionConfig
from ..entitlements.catalog import PlanCatalog
from ..entitlements.models import FeatureAccess
from ..entitlements.service import EntitlementResolver
from ..exceptions import (
    ConfigError,
    ConflictError,
    EntitlementError,
    InvalidStateError,
    NotFoundError,
    UnknownFeatureError,
    UserSyncError,
)
from ..feature_gates import FeatureGateError, require_access
from ..schemas.subscriptions import (
    BillingHistoryResponse,
    CancelSubscriptionRequest,
    CheckoutSessionResponse,
    CreateSubscriptionRequest,
    FeatureMapResponse,
    SubscriptionOut,
    UsageSummaryResponse,
    WebhookAck,
)
from ..services.subscriptions import (
    get_entitlement_resolver,
    get_payment_gateway,
    get_plan_catalog,
    get_subscription_config,
    get_subscription_lifecycle,
    get_subscription_repository,
    get_webhook_handler,
)
from ..subscriptions import SubscriptionLifecycle, SubscriptionRepository, SubscriptionWebhookHandler

logger = logging.getLogger("subscriptions")

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, FeatureGateError):
        return exc.to_http_exception()
    if isinstance(exc, (NotFoundError, UnknownFeatureError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (ConflictError, InvalidStateError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, UserSyncError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Subscription updated but account sync is pending",
        )
    if isinstance(exc, ConfigError):
        logger.error("Subscription configuration error: %s", exc)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Subscription pricing is not configured",
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("/pricing")
def get_pricing(catalog: PlanCatalog = Depends(get_plan_catalog)) -> Dict[str, Any]:
    return catalog.describe()


@router.get("", response_model=UsageSummaryResponse)
def get_subscription(
    *,
    user_id: str = Depends(get_current_user_id),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
) -> UsageSummaryResponse:
    try:
        summary = resolver.usage_summary(user_id)
    except (EntitlementError, ValueError) as exc:
        raise _to_http_exception(exc) from exc
    return UsageSummaryResponse.from_summary(summary)


@router.post("", response_model=CheckoutSessionResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: CreateSubscriptionRequest,
    *,
    user_id: str = Depends(get_current_user_id),
    lifecycle: SubscriptionLifecycle = Depends(get_subscription_lifecycle),
    config: SubscriptionConfig = Depends(get_subscription_config),
) -> CheckoutSessionResponse:
    try:
        session = lifecycle.start_checkout(
            user_id,
            payload.plan,
            payload.billing_cycle,
            success_url=config.checkout_success_url,
            cancel_url=config.checkout_cancel_url,
        )
    except (EntitlementError, ValueError) as exc:
        raise _to_http_exception(exc) from exc
    return CheckoutSessionResponse.from_checkout(session)


@router.post("/cancel", response_model=SubscriptionOut)
def cancel_subscription(
    payload: Optional[CancelSubscriptionRequest] = None,
    *,
    user_id: str = Depends(get_current_user_id),
    lifecycle: SubscriptionLifecycle = Depends(get_subscription_lifecycle),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
) -> SubscriptionOut:
    subscription = repository.get_by_user(user_id)
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No subscription found")

    request = payload or CancelSubscriptionRequest()
    try:
        cancelled = lifecycle.cancel(
            subscription.subscription_id,
            reason=request.reason,
            feedback=request.feedback,
        )
    except (EntitlementError, ValueError) as exc:
        raise _to_http_exception(exc) from exc
    return SubscriptionOut.from_subscription(cancelled)


@router.get("/billing-history", response_model=BillingHistoryResponse)
def get_billing_history(
    *,
    user_id: str = Depends(get_current_user_id),
    repository: SubscriptionRepository = Depends(get_subscription_repository),
) -> BillingHistoryResponse:
    return BillingHistoryResponse.from_subscription(repository.get_by_user(user_id))


@router.get("/features", response_model=FeatureMapResponse)
def list_features(
    *,
    user_id: str = Depends(get_current_user_id),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
) -> FeatureMapResponse:
    try:
        features = resolver.check_all(user_id)
    except (EntitlementError, ValueError) as exc:
        raise _to_http_exception(exc) from exc
    return FeatureMapResponse(features={key.value: access for key, access in features.items()})


@router.get("/features/{feature}", response_model=FeatureAccess)
def check_feature(
    feature: str,
    *,
    user_id: str = Depends(get_current_user_id),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
) -> FeatureAccess:
    try:
        return resolver.check(user_id, feature)
    except (EntitlementError, ValueError) as exc:
        raise _to_http_exception(exc) from exc


@router.post("/features/{feature}/consume", response_model=FeatureAccess)
def consume_feature(
    feature: str,
    *,
    user_id: str = Depends(get_current_user_id),
    resolver: EntitlementResolver = Depends(get_entitlement_resolver),
) -> FeatureAccess:
    try:
        return require_access(resolver.consume(user_id, feature))
    except (EntitlementError, FeatureGateError, ValueError) as exc:
        raise _to_http_exception(exc) from exc


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    handler: SubscriptionWebhookHandler = Depends(get_webhook_handler),
    gateway: Any = Depends(get_payment_gateway),
) -> WebhookAck:
    body = await request.body()
    try:
        event = gateway.parse_webhook(body, stripe_signature)
        result = handler.handle(event)
    except UserSyncError as exc:
        # The subscription itself is persisted; acknowledge so the provider stops retrying.
        logger.error("Webhook processed with pending user sync: %s", exc)
        return WebhookAck(processed=True)
    except (EntitlementError, ValueError) as exc:
        raise _to_http_exception(exc) from exc
    return WebhookAck(processed=result is not None)
