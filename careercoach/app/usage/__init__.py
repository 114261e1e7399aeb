"""Usage counters and period rollover."""

from .ledger import UsageLedger
from .models import UsageDecision, UsageSubject
from .periods import add_months, billing_period_end, is_within_limit, reset_if_period_elapsed

__all__ = [
    "UsageDecision",
    "UsageLedger",
    "UsageSubject",
    "add_months",
    "billing_period_end",
    "is_within_limit",
    "reset_if_period_elapsed",
]
