from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from careercoach.app.entitlements import BillingCycle, UsagePeriod
from careercoach.app.usage import add_months, billing_period_end, is_within_limit, reset_if_period_elapsed


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize("limit", [0, 1, 3, 10])
@pytest.mark.parametrize("used", [0, 1, 2, 3, 10, 11])
def test_is_within_limit_compares_strictly(limit: int, used: int) -> None:
    assert is_within_limit(limit, used) == (used < limit)


@pytest.mark.parametrize("used", [0, 5, 10_000])
def test_unlimited_sentinel_always_passes(used: int) -> None:
    assert is_within_limit(-1, used) is True


def test_zero_limit_is_present_but_unusable() -> None:
    assert is_within_limit(0, 0) is False


@pytest.mark.parametrize(
    "now, expected",
    [
        (_utc(2024, 2, 1), True),
        (_utc(2024, 1, 31), False),
        (_utc(2025, 1, 15), True),
        (_utc(2024, 1, 15, 23, 59), False),
    ],
)
def test_monthly_reset_follows_calendar_months(now: datetime, expected: bool) -> None:
    last_reset = _utc(2024, 1, 15)

    should_reset, new_anchor = reset_if_period_elapsed(last_reset, now, UsagePeriod.MONTHLY)

    assert should_reset is expected
    assert new_anchor == (now if expected else last_reset)


def test_weekly_reset_requires_seven_full_days() -> None:
    anchor = _utc(2024, 3, 1, 9, 30)

    assert reset_if_period_elapsed(anchor, anchor + timedelta(days=6, hours=23), UsagePeriod.WEEKLY) == (
        False,
        anchor,
    )
    should_reset, new_anchor = reset_if_period_elapsed(anchor, anchor + timedelta(days=7), UsagePeriod.WEEKLY)
    assert should_reset is True
    assert new_anchor == anchor + timedelta(days=7)


def test_naive_timestamps_are_treated_as_utc() -> None:
    should_reset, _ = reset_if_period_elapsed(
        datetime(2024, 1, 15), _utc(2024, 2, 1), UsagePeriod.MONTHLY
    )
    assert should_reset is True


def test_add_months_clamps_to_month_end() -> None:
    assert add_months(_utc(2024, 1, 31), 1) == _utc(2024, 2, 29)
    assert add_months(_utc(2023, 1, 31), 1) == _utc(2023, 2, 28)
    assert add_months(_utc(2024, 11, 30), 3) == _utc(2025, 2, 28)


def test_billing_period_end_is_calendar_correct() -> None:
    start = _utc(2024, 2, 29, 8)

    assert billing_period_end(start, BillingCycle.MONTHLY) == _utc(2024, 3, 29, 8)
    assert billing_period_end(start, BillingCycle.YEARLY) == _utc(2025, 2, 28, 8)
