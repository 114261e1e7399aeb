"""Helpers for enforcing entitlement checks on API and service layers."""
from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Union

from ..entitlements.models import FeatureAccess, FeatureKey
from .exceptions import FeatureGateError

if TYPE_CHECKING:  # pragma: no cover
    from ..entitlements.service import EntitlementResolver


def require_access(access: FeatureAccess, *, error_code: Optional[str] = None) -> FeatureAccess:
    """Ensure a resolved access decision grants the feature before proceeding.

    Parameters
    ----------
    access:
        Decision returned by :class:`EntitlementResolver`.
    error_code:
        Optional override for the surfaced error code. When omitted the code
        is derived from the denial reason (``feature_not_enabled``,
        ``usage_limit_reached`` or ``capacity_exceeded``).

    Returns
    -------
    FeatureAccess
        The same decision, so callers can report ``limit``/``used``.
    """

    if access.has_access:
        return access
    raise FeatureGateError.from_access(access, code=error_code)


def require_feature(
    resolver: "EntitlementResolver",
    user_id: str,
    feature: Union[FeatureKey, str],
    *,
    consume: bool = False,
) -> FeatureAccess:
    """Resolve ``feature`` for ``user_id`` and raise when access is denied.

    With ``consume=True`` one use is charged as part of the check.
    """

    if consume:
        access = resolver.consume(user_id, feature)
    else:
        access = resolver.check(user_id, feature)
    return require_access(access)
