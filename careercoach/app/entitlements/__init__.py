"""Plan catalog, feature models, and entitlement resolution.

:class:`~careercoach.app.entitlements.service.EntitlementResolver` lives in
``entitlements.service`` and is imported from there; it depends on the
subscription and usage packages, which in turn depend on these models.
"""

from .catalog import (
    DEFAULT_PLAN_CATALOG,
    DEFAULT_PLANS,
    PlanCatalog,
    PlanDefinition,
    load_plan_catalog,
)
from .models import (
    COUNTED_FEATURES,
    UNLIMITED,
    BillingCycle,
    CapacityFeature,
    CountedFeature,
    DenialReason,
    FeatureAccess,
    FeatureKey,
    FeatureKind,
    FeatureSet,
    PlanKey,
    RateLimitedFeature,
    UsagePeriod,
)

__all__ = [
    "COUNTED_FEATURES",
    "DEFAULT_PLAN_CATALOG",
    "DEFAULT_PLANS",
    "UNLIMITED",
    "BillingCycle",
    "CapacityFeature",
    "CountedFeature",
    "DenialReason",
    "FeatureAccess",
    "FeatureKey",
    "FeatureKind",
    "FeatureSet",
    "PlanCatalog",
    "PlanDefinition",
    "PlanKey",
    "RateLimitedFeature",
    "UsagePeriod",
    "load_plan_catalog",
]
