"""Pure helpers for usage limits and period rollover."""
from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from typing import Tuple

from ..entitlements.models import UNLIMITED, BillingCycle, UsagePeriod

WEEKLY_PERIOD = timedelta(days=7)


def is_within_limit(limit: int, used: int) -> bool:
    """Return whether one more use fits under ``limit`` (``-1`` means unlimited)."""

    if limit == UNLIMITED:
        return True
    return used < limit


def ensure_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def months_between(earlier: datetime, later: datetime) -> int:
    """Number of calendar month boundaries crossed from ``earlier`` to ``later``."""

    return (later.year - earlier.year) * 12 + (later.month - earlier.month)


def reset_if_period_elapsed(
    last_reset: datetime,
    now: datetime,
    period: UsagePeriod,
) -> Tuple[bool, datetime]:
    """Decide whether a counter anchored at ``last_reset`` should roll over.

    Returns ``(should_reset, new_reset_date)``. The new anchor is ``now`` when a
    reset is due, otherwise the unchanged ``last_reset``. Nothing is mutated.
    """

    last = ensure_utc(last_reset)
    current = ensure_utc(now)
    if period == UsagePeriod.MONTHLY:
        elapsed = months_between(last, current) > 0
    elif period == UsagePeriod.WEEKLY:
        elapsed = current - last >= WEEKLY_PERIOD
    else:  # pragma: no cover - enum is exhaustive
        raise ValueError(f"Unsupported usage period: {period}")
    return (True, now) if elapsed else (False, last_reset)


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by whole calendar months, clamping to the last valid day."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def billing_period_end(start: datetime, billing_cycle: BillingCycle) -> datetime:
    """End of the first billing window starting at ``start``."""

    if billing_cycle == BillingCycle.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


__all__ = [
    "WEEKLY_PERIOD",
    "add_months",
    "billing_period_end",
    "ensure_utc",
    "is_within_limit",
    "months_between",
    "reset_if_period_elapsed",
]
