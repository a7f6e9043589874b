"""
Learned memory of past user corrections.

The index is a pure fold over history ordered by date: each categorized
record with a raw description writes its entry under the normalized
description, so for duplicate descriptions the latest record wins.
"""

from dataclasses import dataclass
from datetime import date
from functools import reduce
from typing import Iterable, Optional

from ..schemas.ledger import Category, Priority, TransactionRecord


def normalize_description(text: Optional[str]) -> str:
    """Memory key for a raw description: trimmed and upper-cased."""
    return (text or "").strip().upper()


@dataclass(frozen=True)
class MemoryEntry:
    """What the user last confirmed for a raw description."""

    key: str
    title: str
    category_id: Optional[int]
    category_name: Optional[str]
    priority: Optional[Priority]
    date: date


class MemoryIndex:
    """Read-only lookup of memory entries by raw description."""

    def __init__(self, entries: dict[str, MemoryEntry]):
        self._entries = dict(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, text: object) -> bool:
        return isinstance(text, str) and normalize_description(text) in self._entries

    def lookup(self, raw_description: Optional[str]) -> Optional[MemoryEntry]:
        key = normalize_description(raw_description)
        if not key:
            return None
        return self._entries.get(key)


def _remembers(record: TransactionRecord) -> bool:
    has_category = record.category_id is not None or bool(record.category_name)
    return bool(normalize_description(record.raw_description)) and has_category


def build_memory_index(
    history: Iterable[TransactionRecord],
    categories: Iterable[Category] = (),
) -> MemoryIndex:
    """
    Fold categorized history into a memory index.

    Args:
        history: Past transactions, in any order.
        categories: User categories, used to name entries that only carry
            a category id.

    Returns:
        MemoryIndex keyed by normalized raw description.
    """
    names = {c.id: c.name for c in categories}
    ordered = sorted((r for r in history if _remembers(r)), key=lambda r: r.date)

    def remember(entries: dict[str, MemoryEntry], record: TransactionRecord) -> dict[str, MemoryEntry]:
        # Last value wins per key
        key = normalize_description(record.raw_description)
        entries[key] = MemoryEntry(
            key=key,
            title=record.title,
            category_id=record.category_id,
            category_name=record.category_name or names.get(record.category_id),
            priority=record.priority,
            date=record.date,
        )
        return entries

    return MemoryIndex(reduce(remember, ordered, {}))
