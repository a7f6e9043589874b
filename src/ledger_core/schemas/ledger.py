"""
Canonical ledger records (SSOT).

Templates, transactions, budget buckets and categories as exchanged between
the recurrence engine, the classification pipeline, the match scorer and the
entity store. No other module may define its own copy of these shapes.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional


class Frequency(str, Enum):
    """Cadence of a recurring template."""

    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class Priority(str, Enum):
    """Financial priority used to pick a budget bucket."""

    NEEDS = "needs"
    WANTS = "wants"


class TransactionType(str, Enum):
    """Direction of money. Income and expense never match each other."""

    EXPENSE = "expense"
    INCOME = "income"


# Weekday numbering: 0 = Sunday ... 6 = Saturday
DEFAULT_DAY_OF_WEEK = 1

AUTO_GENERATED_NOTE = "Auto-generated from recurring transaction"


def parse_date(value: Any) -> Optional[date]:
    """Parse a date from a date, datetime or ISO string. None on failure."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse an amount to Decimal. None on failure."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, str):
            cleaned = value.replace("$", "").replace("€", "").replace("£", "").replace(",", "")
            return Decimal(cleaned.strip())
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _enum_value(value: Optional[Enum]) -> Optional[str]:
    return value.value if value is not None else None


@dataclass
class Category:
    """User category. `priority` is the default priority for its transactions."""

    id: Optional[int]
    name: str
    priority: Optional[Priority] = None
    owner: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "priority": _enum_value(self.priority),
            "owner": self.owner,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Category":
        priority = data.get("priority")
        return cls(
            id=data.get("id"),
            name=data.get("name") or "",
            priority=Priority(priority) if priority else None,
            owner=data.get("owner"),
        )


@dataclass
class RecurringTemplate:
    """
    A recurring obligation or income.

    Only the recurrence engine writes `next_occurrence`,
    `last_processed_date` and `is_active`. An inactive template never has a
    pending `next_occurrence`.
    """

    id: Optional[int]
    title: str
    amount: Decimal
    frequency: Frequency
    transaction_type: TransactionType = TransactionType.EXPENSE
    currency: str = "USD"
    category_id: Optional[int] = None
    priority: Optional[Priority] = None
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    next_occurrence: Optional[date] = None
    last_processed_date: Optional[date] = None
    is_active: bool = True
    auto_mark_paid: bool = False
    owner: Optional[str] = None
    notes: Optional[str] = None

    # Matching hints
    known_aliases: list[str] = field(default_factory=list)
    amount_variance_pct: Optional[float] = None
    temporal_variance_days: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "amount": str(self.amount),
            "frequency": self.frequency.value,
            "transaction_type": self.transaction_type.value,
            "currency": self.currency,
            "category_id": self.category_id,
            "priority": _enum_value(self.priority),
            "day_of_month": self.day_of_month,
            "day_of_week": self.day_of_week,
            "start_date": _iso(self.start_date),
            "end_date": _iso(self.end_date),
            "next_occurrence": _iso(self.next_occurrence),
            "last_processed_date": _iso(self.last_processed_date),
            "is_active": self.is_active,
            "auto_mark_paid": self.auto_mark_paid,
            "owner": self.owner,
            "notes": self.notes,
            "known_aliases": list(self.known_aliases),
            "amount_variance_pct": self.amount_variance_pct,
            "temporal_variance_days": self.temporal_variance_days,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecurringTemplate":
        priority = data.get("priority")
        return cls(
            id=data.get("id"),
            title=data.get("title") or "",
            amount=parse_amount(data.get("amount")) or Decimal("0"),
            frequency=Frequency(data.get("frequency", "monthly")),
            transaction_type=TransactionType(data.get("transaction_type", "expense")),
            currency=data.get("currency") or "USD",
            category_id=data.get("category_id"),
            priority=Priority(priority) if priority else None,
            day_of_month=data.get("day_of_month"),
            day_of_week=data.get("day_of_week"),
            start_date=parse_date(data.get("start_date")),
            end_date=parse_date(data.get("end_date")),
            next_occurrence=parse_date(data.get("next_occurrence")),
            last_processed_date=parse_date(data.get("last_processed_date")),
            is_active=bool(data.get("is_active", True)),
            auto_mark_paid=bool(data.get("auto_mark_paid", False)),
            owner=data.get("owner"),
            notes=data.get("notes"),
            known_aliases=list(data.get("known_aliases") or []),
            amount_variance_pct=data.get("amount_variance_pct"),
            temporal_variance_days=data.get("temporal_variance_days"),
        )


@dataclass
class TransactionRecord:
    """
    A ledger transaction.

    Created by the recurrence engine or by external collaborators (manual
    entry, bank import, receipt OCR). `raw_description` keeps the original
    unprocessed bank text; `title` is the display name.
    """

    id: Optional[int]
    date: date
    amount: Decimal
    title: str
    raw_description: Optional[str] = None
    transaction_type: TransactionType = TransactionType.EXPENSE
    currency: str = "USD"
    category_id: Optional[int] = None
    category_name: Optional[str] = None
    priority: Optional[Priority] = None
    is_paid: bool = False
    paid_date: Optional[date] = None
    recurring_template_id: Optional[int] = None
    budget_bucket_id: Optional[int] = None
    owner: Optional[str] = None
    notes: Optional[str] = None

    # Written by the match scorer
    match_status: Optional[str] = None
    match_confidence: Optional[int] = None
    suggested_template_id: Optional[int] = None

    @property
    def text(self) -> str:
        """Best available bank text for matching and classification."""
        return self.raw_description or self.title or ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": _iso(self.date),
            "amount": str(self.amount),
            "title": self.title,
            "raw_description": self.raw_description,
            "transaction_type": self.transaction_type.value,
            "currency": self.currency,
            "category_id": self.category_id,
            "category_name": self.category_name,
            "priority": _enum_value(self.priority),
            "is_paid": self.is_paid,
            "paid_date": _iso(self.paid_date),
            "recurring_template_id": self.recurring_template_id,
            "budget_bucket_id": self.budget_bucket_id,
            "owner": self.owner,
            "notes": self.notes,
            "match_status": self.match_status,
            "match_confidence": self.match_confidence,
            "suggested_template_id": self.suggested_template_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TransactionRecord":
        """Build from an import payload. Missing or invalid dates raise ValueError."""
        txn_date = parse_date(data.get("date"))
        if txn_date is None:
            raise ValueError(f"Transaction has no valid date: {data.get('date')!r}")
        priority = data.get("priority")
        return cls(
            id=data.get("id"),
            date=txn_date,
            amount=abs(parse_amount(data.get("amount")) or Decimal("0")),
            title=data.get("title") or data.get("raw_description") or "",
            raw_description=data.get("raw_description"),
            transaction_type=TransactionType(data.get("transaction_type", "expense")),
            currency=data.get("currency") or "USD",
            category_id=data.get("category_id"),
            category_name=data.get("category_name"),
            priority=Priority(priority) if priority else None,
            is_paid=bool(data.get("is_paid", False)),
            paid_date=parse_date(data.get("paid_date")),
            recurring_template_id=data.get("recurring_template_id"),
            budget_bucket_id=data.get("budget_bucket_id"),
            owner=data.get("owner"),
            notes=data.get("notes"),
        )


@dataclass
class BudgetBucket:
    """Month-scoped allocation for one priority. Created outside this package."""

    id: Optional[int]
    priority_type: Priority
    start_date: date
    end_date: date
    owner: Optional[str] = None
    allocated_amount: Decimal = Decimal("0")

    def covers_month(self, month_start: date, month_end: date) -> bool:
        return self.start_date == month_start and self.end_date == month_end
