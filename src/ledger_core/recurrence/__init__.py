"""
Recurring templates.

- dates: pure calendar arithmetic (next occurrence, end-date clamp)
- engine: catch-up loop turning due templates into ledger occurrences
"""

from .dates import (
    apply_end_date,
    calculate_next_occurrence,
    is_due,
    month_bounds,
    next_from,
    upcoming_occurrences,
)
from .engine import (
    IterationCapExceeded,
    ProcessingReport,
    RecurrenceEngine,
    TemplateError,
    resolve_budget_bucket,
)

__all__ = [
    "apply_end_date",
    "calculate_next_occurrence",
    "is_due",
    "month_bounds",
    "next_from",
    "upcoming_occurrences",
    "IterationCapExceeded",
    "ProcessingReport",
    "RecurrenceEngine",
    "TemplateError",
    "resolve_budget_bucket",
]
