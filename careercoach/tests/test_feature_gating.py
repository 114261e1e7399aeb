from __future__ import annotations

import pytest
from fastapi import HTTPException

from careercoach.app.entitlements import DenialReason, FeatureAccess, FeatureKey
from careercoach.app.feature_gates import (
    CapacityEvaluation,
    FeatureGate,
    FeatureGateError,
    assert_capacity,
    evaluate_capacity,
    require_access,
    require_feature,
)


def test_require_access_passes_granted_decision() -> None:
    access = FeatureAccess(feature=FeatureKey.RESUME_ANALYSIS, has_access=True, limit=3, used=1)

    assert require_access(access) is access


@pytest.mark.parametrize(
    "reason, code",
    [
        (DenialReason.NOT_ENABLED, "feature_not_enabled"),
        (DenialReason.LIMIT_REACHED, "usage_limit_reached"),
        (DenialReason.CAPACITY_REACHED, "capacity_exceeded"),
        (None, "entitlement_required"),
    ],
)
def test_require_access_maps_denial_reason_to_code(reason, code) -> None:
    access = FeatureAccess(
        feature=FeatureKey.INTERVIEWS,
        has_access=False,
        limit=1,
        used=1,
        message="Free tier limit reached. Upgrade to Pro.",
        reason=reason,
    )

    with pytest.raises(FeatureGateError) as exc:
        require_access(access)

    assert exc.value.code == code
    assert exc.value.payload["feature"] == "interviews"
    assert exc.value.payload["limit"] == 1
    assert exc.value.payload["message"] == "Free tier limit reached. Upgrade to Pro."


def test_error_code_override() -> None:
    access = FeatureAccess(feature=FeatureKey.API_ACCESS, has_access=False, reason=DenialReason.NOT_ENABLED)

    with pytest.raises(FeatureGateError) as exc:
        require_access(access, error_code="api_access_required")

    assert exc.value.code == "api_access_required"
    assert exc.value.message == "Access to 'apiAccess' is not available."


def test_feature_gate_error_converts_to_http_exception() -> None:
    error = FeatureGateError(code="pro_required", message="Pro subscription required")

    http_exc = error.to_http_exception()

    assert isinstance(http_exc, HTTPException)
    assert http_exc.status_code == 403
    assert http_exc.detail == {"error": "pro_required", "message": "Pro subscription required"}


def test_capacity_evaluation() -> None:
    evaluation = evaluate_capacity(feature=FeatureKey.ROADMAPS, max_active=3, active_count=2)

    assert isinstance(evaluation, CapacityEvaluation)
    assert evaluation.allowed is True
    assert evaluation.remaining == 1
    assert evaluation.to_dict()["feature"] == "roadmaps"

    unlimited = evaluate_capacity(feature=FeatureKey.ROADMAPS, max_active=-1, active_count=50)
    assert unlimited.allowed is True
    assert unlimited.remaining == -1

    with pytest.raises(ValueError):
        evaluate_capacity(feature=FeatureKey.ROADMAPS, max_active=3, active_count=-1)


def test_assert_capacity_raises_when_full() -> None:
    with pytest.raises(FeatureGateError) as exc:
        assert_capacity(feature=FeatureKey.ROADMAPS, max_active=1, active_count=1)

    assert exc.value.code == "capacity_exceeded"
    assert exc.value.message == "You can have maximum 1 active roadmaps. Complete or pause existing ones."

    with pytest.raises(FeatureGateError) as disabled:
        assert_capacity(feature=FeatureKey.ROADMAPS, max_active=3, active_count=0, enabled=False)

    assert disabled.value.code == "feature_not_enabled"


def test_feature_gate_facade(resolver, make_subscription) -> None:
    gate = FeatureGate(resolver, "user-1")

    assert gate.has("resumeAnalysis") is True
    assert gate.has("prioritySupport") is False
    with pytest.raises(FeatureGateError) as exc:
        gate.require("jobMatches")
    assert exc.value.code == "usage_limit_reached"
    with pytest.raises(FeatureGateError):
        gate.require_elevated()

    gate.consume("interviews")
    with pytest.raises(FeatureGateError) as exhausted:
        gate.consume("interviews")
    assert exhausted.value.code == "usage_limit_reached"

    make_subscription()
    assert gate.require_elevated().user_id == "user-1"
    assert gate.assert_capacity("roadmaps", active_count=2).limit == 3
    with pytest.raises(FeatureGateError) as full:
        gate.assert_capacity("roadmaps", active_count=3)
    assert full.value.code == "capacity_exceeded"


def test_require_feature_helper(resolver, users) -> None:
    require_feature(resolver, "user-1", "interviews", consume=True)

    assert users.get_user("user-1").usage.interview_sessions_count == 1
    with pytest.raises(FeatureGateError):
        require_feature(resolver, "user-1", FeatureKey.INTERVIEWS)
