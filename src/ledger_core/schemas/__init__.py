"""
SSOT (Single Source of Truth) schemas for the ledger core.

These canonical records are the ONLY models used across all modules.
"""

from .ledger import (
    AUTO_GENERATED_NOTE,
    DEFAULT_DAY_OF_WEEK,
    BudgetBucket,
    Category,
    Frequency,
    Priority,
    RecurringTemplate,
    TransactionRecord,
    TransactionType,
    parse_amount,
    parse_date,
)
from .rules import (
    KeywordRule,
    RegexRule,
    Rule,
    RuleCompileError,
    rule_from_dict,
    rule_to_dict,
)

__all__ = [
    "AUTO_GENERATED_NOTE",
    "DEFAULT_DAY_OF_WEEK",
    "BudgetBucket",
    "Category",
    "Frequency",
    "Priority",
    "RecurringTemplate",
    "TransactionRecord",
    "TransactionType",
    "parse_amount",
    "parse_date",
    "KeywordRule",
    "RegexRule",
    "Rule",
    "RuleCompileError",
    "rule_from_dict",
    "rule_to_dict",
]
