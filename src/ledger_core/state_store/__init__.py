"""
State Store (SQLite-based).

Entity store for the ledger core:
- Categories, recurring templates and budget buckets
- Ledger transactions (manual, imported, generated)
- Classification rules and mined archetypes

Enforces uniqueness of generated occurrences per (template, date).
"""

from .sqlite_store import (
    DuplicateOccurrenceError,
    StateStore,
    StoreError,
    TemplateNotFoundError,
    TransactionNotFoundError,
)

__all__ = [
    "StateStore",
    "StoreError",
    "DuplicateOccurrenceError",
    "TemplateNotFoundError",
    "TransactionNotFoundError",
]
