"""Test fixtures and utilities."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from ledger_core.config import Config
from ledger_core.schemas.ledger import (
    Category,
    Frequency,
    Priority,
    RecurringTemplate,
    TransactionRecord,
    TransactionType,
)
from ledger_core.state_store import StateStore


def make_template(**overrides) -> RecurringTemplate:
    """Monthly 9.99 expense template due 2026-01-15 unless overridden."""
    fields = {
        "id": None,
        "title": "Netflix",
        "amount": Decimal("9.99"),
        "frequency": Frequency.MONTHLY,
        "transaction_type": TransactionType.EXPENSE,
        "day_of_month": 15,
        "start_date": date(2025, 1, 15),
        "next_occurrence": date(2026, 1, 15),
        "owner": "alice",
    }
    fields.update(overrides)
    return RecurringTemplate(**fields)


def make_transaction(**overrides) -> TransactionRecord:
    """Unlabelled 4.50 expense on 2026-01-15 unless overridden."""
    fields = {
        "id": None,
        "date": date(2026, 1, 15),
        "amount": Decimal("4.50"),
        "title": "SQ *MY COFFEE SHOP",
        "raw_description": "SQ *MY COFFEE SHOP",
        "owner": "alice",
    }
    fields.update(overrides)
    return TransactionRecord(**fields)


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_ledger.db"


@pytest.fixture
def config(temp_db: Path) -> Config:
    """Default configuration with the AI tier switched off."""
    cfg = Config(state_db_path=temp_db)
    cfg.ai.enabled = False
    return cfg


@pytest.fixture
def store(temp_db: Path) -> StateStore:
    """Fresh entity store."""
    return StateStore(temp_db)


@pytest.fixture
def categories() -> list[Category]:
    """A typical user category set."""
    return [
        Category(id=1, name="Groceries", priority=Priority.NEEDS),
        Category(id=2, name="Dining Out", priority=Priority.WANTS),
        Category(id=3, name="Subscriptions", priority=Priority.WANTS),
        Category(id=4, name="Transportation", priority=Priority.NEEDS),
        Category(id=5, name="Travel"),
    ]
