"""Plan catalog: static plan tiers, their feature templates, and pricing."""
from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from ..exceptions import ConfigError, UnknownFeatureError
from .models import (
    COUNTED_FEATURES,
    UNLIMITED,
    BillingCycle,
    CapacityFeature,
    CountedFeature,
    FeatureKey,
    FeatureSet,
    PlanKey,
    RateLimitedFeature,
    UsagePeriod,
)


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a subscription plan, its prices, and its feature template."""

    key: PlanKey
    display_name: str
    prices: Mapping[BillingCycle, Decimal]
    features: FeatureSet

    def price_for(self, billing_cycle: BillingCycle) -> Decimal:
        try:
            return self.prices[billing_cycle]
        except KeyError as exc:
            raise ConfigError(
                f"Plan {self.key.value} has no price for {billing_cycle.value} billing"
            ) from exc


FREE_FEATURES = FeatureSet(
    resume_analysis=CountedFeature(monthly_limit=3),
    interviews=CountedFeature(monthly_limit=1),
    job_matches=CountedFeature(enabled=False, weekly_limit=0),
    roadmaps=CapacityFeature(max_active=1),
    linked_in_review=CountedFeature(monthly_limit=1),
    api_access=RateLimitedFeature(enabled=False, rate_limit=100),
    priority_support=False,
    custom_branding=False,
)

PRO_FEATURES = FeatureSet(
    resume_analysis=CountedFeature(monthly_limit=UNLIMITED),
    interviews=CountedFeature(monthly_limit=UNLIMITED),
    job_matches=CountedFeature(weekly_limit=10),
    roadmaps=CapacityFeature(max_active=3),
    linked_in_review=CountedFeature(monthly_limit=UNLIMITED),
    api_access=RateLimitedFeature(enabled=True, rate_limit=1000),
    priority_support=True,
    custom_branding=False,
)

ENTERPRISE_FEATURES = FeatureSet(
    resume_analysis=CountedFeature(monthly_limit=UNLIMITED),
    interviews=CountedFeature(monthly_limit=UNLIMITED),
    job_matches=CountedFeature(weekly_limit=UNLIMITED),
    roadmaps=CapacityFeature(max_active=10),
    linked_in_review=CountedFeature(monthly_limit=UNLIMITED),
    api_access=RateLimitedFeature(enabled=True, rate_limit=10000),
    priority_support=True,
    custom_branding=True,
)

DEFAULT_PLANS: Dict[PlanKey, PlanDefinition] = {
    PlanKey.FREE: PlanDefinition(
        key=PlanKey.FREE,
        display_name="Free",
        prices={BillingCycle.MONTHLY: Decimal("0"), BillingCycle.YEARLY: Decimal("0")},
        features=FREE_FEATURES,
    ),
    PlanKey.PRO: PlanDefinition(
        key=PlanKey.PRO,
        display_name="Pro",
        prices={BillingCycle.MONTHLY: Decimal("29"), BillingCycle.YEARLY: Decimal("290")},
        features=PRO_FEATURES,
    ),
    PlanKey.ENTERPRISE: PlanDefinition(
        key=PlanKey.ENTERPRISE,
        display_name="Enterprise",
        prices={BillingCycle.MONTHLY: Decimal("99"), BillingCycle.YEARLY: Decimal("990")},
        features=ENTERPRISE_FEATURES,
    ),
}

_PERIOD_LABELS = {UsagePeriod.MONTHLY: "month", UsagePeriod.WEEKLY: "week"}


def _parse_plan_key(plan: Union[PlanKey, str]) -> PlanKey:
    if isinstance(plan, PlanKey):
        return plan
    try:
        return PlanKey(plan)
    except ValueError as exc:
        raise ConfigError(f"Unknown plan key: {plan}") from exc


class PlanCatalog:
    """Lookup over plan definitions; limits are data and may be overridden."""

    def __init__(self, plans: Mapping[PlanKey, PlanDefinition], *, currency: str = "USD") -> None:
        missing = [key.value for key in PlanKey if key not in plans]
        if missing:
            raise ConfigError(f"Plan catalog is missing plans: {', '.join(missing)}")
        for definition in plans.values():
            for key in COUNTED_FEATURES:
                counted = definition.features.counted(key)
                if counted is not None and (counted.used or counted.period_started_at):
                    raise ConfigError(
                        f"Plan {definition.key.value} template carries usage for {key.value}"
                    )
        self._plans = dict(plans)
        self.currency = currency.upper()

    def get_plan_definition(self, plan: Union[PlanKey, str]) -> PlanDefinition:
        """Return a plan definition, raising :class:`ConfigError` if unsupported."""

        plan_key = _parse_plan_key(plan)
        try:
            return self._plans[plan_key]
        except KeyError as exc:  # pragma: no cover - guarded by constructor
            raise ConfigError(f"Unknown plan key: {plan_key}") from exc

    def features_for(self, plan: Union[PlanKey, str]) -> FeatureSet:
        """Return the fresh feature template for ``plan`` (usage always zero)."""

        return self.get_plan_definition(plan).features

    def price_for(self, plan: Union[PlanKey, str], billing_cycle: BillingCycle) -> Decimal:
        return self.get_plan_definition(plan).price_for(billing_cycle)

    def free_tier_limits(self) -> Dict[FeatureKey, int]:
        """Limits used when a user has no subscription record at all."""

        features = self.features_for(PlanKey.FREE)
        return {key: features.counted(key).limit for key in COUNTED_FEATURES}

    def merge_features(
        self,
        plan: Union[PlanKey, str],
        existing: Optional[FeatureSet],
    ) -> FeatureSet:
        """Recompute ``plan``'s template while carrying over usage counters.

        Counters and period anchors for counted features present in
        ``existing`` are preserved; everything else comes from the template.
        """

        return self.features_for(plan).with_counters_from(existing)

    def describe(self) -> Dict[str, Any]:
        """Public pricing table with human readable limits."""

        table: Dict[str, Any] = {}
        for plan_key in PlanKey:
            definition = self._plans[plan_key]
            table[plan_key.value] = {
                "name": definition.display_name,
                "currency": self.currency,
                "price": {cycle.value: float(amount) for cycle, amount in definition.prices.items()},
                "features": _describe_features(definition.features),
            }
        return table

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "currency": self.currency,
            "plans": {
                key.value: {
                    "displayName": definition.display_name,
                    "prices": {cycle.value: str(amount) for cycle, amount in definition.prices.items()},
                    "features": definition.features.to_document(),
                }
                for key, definition in self._plans.items()
            },
        }

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        *,
        base: Optional["PlanCatalog"] = None,
    ) -> "PlanCatalog":
        """Build a catalog by overlaying ``data`` on ``base`` (defaults when omitted)."""

        base_catalog = base or DEFAULT_PLAN_CATALOG
        plan_overrides = data.get("plans", {})
        if not isinstance(plan_overrides, Mapping):
            raise ConfigError("'plans' must be a mapping of plan key to overrides")

        plans: Dict[PlanKey, PlanDefinition] = dict(base_catalog._plans)
        for raw_key, override in plan_overrides.items():
            plan_key = _parse_plan_key(raw_key)
            if not isinstance(override, Mapping):
                raise ConfigError(f"Overrides for plan {raw_key} must be a mapping")
            plans[plan_key] = _apply_plan_override(plans[plan_key], override)

        currency = str(data.get("currency", base_catalog.currency))
        return cls(plans, currency=currency)


def _apply_plan_override(definition: PlanDefinition, override: Mapping[str, Any]) -> PlanDefinition:
    prices = dict(definition.prices)
    for raw_cycle, raw_amount in dict(override.get("prices", {})).items():
        try:
            cycle = BillingCycle(raw_cycle)
            prices[cycle] = Decimal(str(raw_amount))
        except (ValueError, InvalidOperation) as exc:
            raise ConfigError(
                f"Invalid price override {raw_cycle}={raw_amount!r} for plan {definition.key.value}"
            ) from exc

    document = definition.features.to_document()
    for feature_name, feature_override in dict(override.get("features", {})).items():
        try:
            key = FeatureKey.parse(feature_name).value
        except UnknownFeatureError as exc:
            raise ConfigError(f"Unknown feature override {feature_name!r}") from exc
        current = document.get(key)
        if isinstance(current, dict) and isinstance(feature_override, Mapping):
            document[key] = {**current, **feature_override}
        else:
            document[key] = feature_override

    try:
        features = FeatureSet.from_document(document)
    except ValidationError as exc:
        raise ConfigError(f"Invalid feature overrides for plan {definition.key.value}: {exc}") from exc

    return PlanDefinition(
        key=definition.key,
        display_name=str(override.get("displayName", definition.display_name)),
        prices=prices,
        features=features,
    )


def _describe_features(features: FeatureSet) -> Dict[str, Any]:
    described: Dict[str, Any] = {}
    for key in FeatureKey:
        value = features.get(key)
        if isinstance(value, CountedFeature):
            limit: Union[int, str] = value.limit if value.enabled else 0
            if limit == UNLIMITED:
                limit = "unlimited"
            described[key.value] = {"limit": limit, "period": _PERIOD_LABELS[value.period]}
        elif isinstance(value, CapacityFeature):
            limit = value.max_active if value.max_active != UNLIMITED else "unlimited"
            described[key.value] = {"limit": limit if value.enabled else 0, "period": "total"}
        elif isinstance(value, RateLimitedFeature):
            described[key.value] = (
                {"limit": value.rate_limit, "period": "month"} if value.enabled else False
            )
        else:
            described[key.value] = bool(value)
    return described


def load_plan_catalog(path: Union[str, Path, None]) -> PlanCatalog:
    """Load catalog overrides from a JSON file; ``None`` returns the defaults."""

    if not path:
        return DEFAULT_PLAN_CATALOG
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Unable to read plan catalog overrides from {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError("Plan catalog overrides must be a JSON object")
    return PlanCatalog.from_mapping(data)


DEFAULT_PLAN_CATALOG = PlanCatalog(DEFAULT_PLANS)
