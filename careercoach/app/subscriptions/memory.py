"""In-memory subscription repository suitable for tests and local development."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Iterable, Optional, Set

from ..entitlements.models import FeatureKey
from ..usage.periods import is_within_limit
from .models import Renewal, Subscription


class InMemorySubscriptionRepository:
    """Lock-guarded store whose conditional updates mirror the SQL ones."""

    def __init__(self, subscriptions: Iterable[Subscription] = ()) -> None:
        self._lock = Lock()
        self._by_id: Dict[str, Subscription] = {}
        self._by_user: Dict[str, str] = {}
        self._webhook_events: Set[str] = set()
        for subscription in subscriptions:
            self.save_subscription(subscription)

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._by_id.get(subscription_id)

    def get_by_user(self, user_id: str) -> Optional[Subscription]:
        with self._lock:
            subscription_id = self._by_user.get(user_id)
            return self._by_id.get(subscription_id) if subscription_id else None

    def get_by_payment_ref(self, payment_ref: str) -> Optional[Subscription]:
        with self._lock:
            for subscription in self._by_id.values():
                if subscription.payment_ref == payment_ref:
                    return subscription
            return None

    def save_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            previous_id = self._by_user.get(subscription.user_id)
            previous = self._by_id.get(previous_id) if previous_id else None
            if previous is not None and previous.subscription_id == subscription.subscription_id:
                # Counters only move through increment/reset; keep the stored ones.
                subscription = subscription.model_copy(
                    update={
                        "renewals": previous.renewals,
                        "features": subscription.features.with_counters_from(previous.features),
                    }
                )
            elif previous is not None:
                self._by_id.pop(previous.subscription_id, None)
            stored = subscription.model_copy(update={"updated_at": datetime.now(timezone.utc)})
            self._by_id[stored.subscription_id] = stored
            self._by_user[stored.user_id] = stored.subscription_id
            return stored

    def append_renewal(self, subscription_id: str, renewal: Renewal) -> Optional[Subscription]:
        with self._lock:
            subscription = self._by_id.get(subscription_id)
            if subscription is None:
                return None
            updated = subscription.model_copy(
                update={"renewals": subscription.renewals + (renewal,)}
            )
            self._by_id[subscription_id] = updated
            return updated

    def increment_feature_usage(self, subscription_id: str, feature: FeatureKey, *, limit: int) -> bool:
        with self._lock:
            subscription = self._by_id.get(subscription_id)
            if subscription is None:
                return False
            counted = subscription.features.counted(feature)
            if counted is None or not is_within_limit(limit, counted.used):
                return False
            features = subscription.features.replace(
                feature, counted.model_copy(update={"used": counted.used + 1})
            )
            self._by_id[subscription_id] = subscription.model_copy(update={"features": features})
            return True

    def reset_feature_usage(
        self,
        subscription_id: str,
        feature: FeatureKey,
        *,
        observed_anchor: Optional[datetime],
        reset_at: datetime,
    ) -> bool:
        with self._lock:
            subscription = self._by_id.get(subscription_id)
            if subscription is None:
                return False
            counted = subscription.features.counted(feature)
            if counted is None or counted.period_started_at != observed_anchor:
                return False
            features = subscription.features.replace(
                feature,
                counted.model_copy(update={"used": 0, "period_started_at": reset_at}),
            )
            self._by_id[subscription_id] = subscription.model_copy(update={"features": features})
            return True

    def record_webhook_event(self, event_id: str, event_type: str) -> bool:
        with self._lock:
            if event_id in self._webhook_events:
                return False
            self._webhook_events.add(event_id)
            return True

    def forget_webhook_event(self, event_id: str) -> None:
        with self._lock:
            self._webhook_events.discard(event_id)
