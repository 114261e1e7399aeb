"""Exceptions raised when a request is refused by entitlement gating."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status

from ..entitlements.models import DenialReason, FeatureAccess

_CODES_BY_REASON = {
    DenialReason.NOT_ENABLED: "feature_not_enabled",
    DenialReason.LIMIT_REACHED: "usage_limit_reached",
    DenialReason.CAPACITY_REACHED: "capacity_exceeded",
}


@dataclass
class FeatureGateError(Exception):
    """Represents an actionable gating failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_403_FORBIDDEN
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @classmethod
    def from_access(cls, access: FeatureAccess, *, code: Optional[str] = None) -> "FeatureGateError":
        """Build the error for a denied :class:`FeatureAccess`."""

        resolved_code = code or _CODES_BY_REASON.get(access.reason, "entitlement_required")
        return cls(
            code=resolved_code,
            message=access.message or f"Access to '{access.feature.value}' is not available.",
            detail={
                "feature": access.feature.value,
                "limit": access.limit,
                "used": access.used,
            },
        )

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))
