"""
SQLite-based entity store implementation.

Tables:
- categories: User categories with default priority
- recurring_templates: Recurring obligations and income
- transactions: Ledger records (manual, imported, generated)
- budget_buckets: Month-scoped allocations per priority
- classification_rules: User keyword/regex rules
- budget_archetypes: Mined spending-event archetypes per owner

Enforces uniqueness of (recurring_template_id, date) for generated occurrences.
"""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from ..schemas.ledger import (
    BudgetBucket,
    Category,
    Frequency,
    Priority,
    RecurringTemplate,
    TransactionRecord,
    TransactionType,
    parse_date,
)
from ..schemas.rules import Rule, rule_from_dict, rule_to_dict


class StoreError(Exception):
    """Base error for entity store operations."""

    pass


class DuplicateOccurrenceError(StoreError):
    """A transaction already exists for this (template, date)."""

    def __init__(self, template_id: int, occurrence: date):
        self.template_id = template_id
        self.occurrence = occurrence
        super().__init__(f"Occurrence already exists for template {template_id} on {occurrence}")


class TemplateNotFoundError(StoreError):
    """Requested recurring template does not exist."""

    pass


class TransactionNotFoundError(StoreError):
    """Requested transaction does not exist."""

    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _priority(value: Optional[str]) -> Optional[Priority]:
    return Priority(value) if value else None


def _template_from_row(row: sqlite3.Row) -> RecurringTemplate:
    return RecurringTemplate(
        id=row["id"],
        title=row["title"],
        amount=Decimal(row["amount"]),
        frequency=Frequency(row["frequency"]),
        transaction_type=TransactionType(row["transaction_type"]),
        currency=row["currency"],
        category_id=row["category_id"],
        priority=_priority(row["priority"]),
        day_of_month=row["day_of_month"],
        day_of_week=row["day_of_week"],
        start_date=parse_date(row["start_date"]),
        end_date=parse_date(row["end_date"]),
        next_occurrence=parse_date(row["next_occurrence"]),
        last_processed_date=parse_date(row["last_processed_date"]),
        is_active=bool(row["is_active"]),
        auto_mark_paid=bool(row["auto_mark_paid"]),
        owner=row["owner"],
        notes=row["notes"],
        known_aliases=json.loads(row["known_aliases"]) if row["known_aliases"] else [],
        amount_variance_pct=row["amount_variance_pct"],
        temporal_variance_days=row["temporal_variance_days"],
    )


def _transaction_from_row(row: sqlite3.Row) -> TransactionRecord:
    return TransactionRecord(
        id=row["id"],
        date=parse_date(row["date"]),
        amount=Decimal(row["amount"]),
        title=row["title"],
        raw_description=row["raw_description"],
        transaction_type=TransactionType(row["transaction_type"]),
        currency=row["currency"],
        category_id=row["category_id"],
        category_name=row["category_name"],
        priority=_priority(row["priority"]),
        is_paid=bool(row["is_paid"]),
        paid_date=parse_date(row["paid_date"]),
        recurring_template_id=row["recurring_template_id"],
        budget_bucket_id=row["budget_bucket_id"],
        owner=row["owner"],
        notes=row["notes"],
        match_status=row["match_status"],
        match_confidence=row["match_confidence"],
        suggested_template_id=row["suggested_template_id"],
    )


def _bucket_from_row(row: sqlite3.Row) -> BudgetBucket:
    return BudgetBucket(
        id=row["id"],
        priority_type=Priority(row["priority_type"]),
        start_date=parse_date(row["start_date"]),
        end_date=parse_date(row["end_date"]),
        owner=row["owner"],
        allocated_amount=Decimal(row["allocated_amount"]),
    )


class StateStore:
    """
    SQLite-based entity store for the ledger core.

    Offers list/filter/get/create/update per entity. Every public call runs
    in its own transaction; there are no multi-call guarantees.

    Thread-safe for single-writer scenarios.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    priority TEXT,
                    owner TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS recurring_templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    frequency TEXT NOT NULL,
                    transaction_type TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    category_id INTEGER,
                    priority TEXT,
                    day_of_month INTEGER,
                    day_of_week INTEGER,
                    start_date TEXT,
                    end_date TEXT,
                    next_occurrence TEXT,
                    last_processed_date TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    auto_mark_paid INTEGER NOT NULL DEFAULT 0,
                    owner TEXT,
                    notes TEXT,
                    known_aliases TEXT,  -- JSON array
                    amount_variance_pct REAL,
                    temporal_variance_days INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    date TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    title TEXT NOT NULL,
                    raw_description TEXT,
                    transaction_type TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    category_id INTEGER,
                    category_name TEXT,
                    priority TEXT,
                    is_paid INTEGER NOT NULL DEFAULT 0,
                    paid_date TEXT,
                    recurring_template_id INTEGER,
                    budget_bucket_id INTEGER,
                    owner TEXT,
                    notes TEXT,
                    match_status TEXT,
                    match_confidence INTEGER,
                    suggested_template_id INTEGER,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (recurring_template_id) REFERENCES recurring_templates(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS budget_buckets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    priority_type TEXT NOT NULL,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    owner TEXT,
                    allocated_amount TEXT NOT NULL DEFAULT '0'
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS classification_rules (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    rule_json TEXT NOT NULL,
                    owner TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS budget_archetypes (
                    owner TEXT PRIMARY KEY,
                    archetypes_json TEXT NOT NULL,
                    analyzed_at TEXT NOT NULL
                )
            """
            )

            # One occurrence per template and date
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_occurrence
                ON transactions(recurring_template_id, date)
                WHERE recurring_template_id IS NOT NULL
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(date)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_templates_active ON recurring_templates(is_active)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    # Category methods

    def create_category(self, category: Category) -> int:
        """Insert a category. Returns its ID."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO categories (name, priority, owner) VALUES (?, ?, ?)",
                (
                    category.name,
                    category.priority.value if category.priority else None,
                    category.owner,
                ),
            )
            return cursor.lastrowid or 0

    def list_categories(self, owner: Optional[str] = None) -> list[Category]:
        with self._transaction() as conn:
            if owner is None:
                rows = conn.execute("SELECT * FROM categories ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM categories WHERE owner = ? ORDER BY id", (owner,)
                ).fetchall()
            return [
                Category(
                    id=row["id"],
                    name=row["name"],
                    priority=_priority(row["priority"]),
                    owner=row["owner"],
                )
                for row in rows
            ]

    # Recurring template methods

    def create_template(self, template: RecurringTemplate) -> int:
        """Insert a recurring template. Returns its ID."""
        now = _now()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO recurring_templates
                (title, amount, frequency, transaction_type, currency, category_id, priority,
                 day_of_month, day_of_week, start_date, end_date, next_occurrence,
                 last_processed_date, is_active, auto_mark_paid, owner, notes, known_aliases,
                 amount_variance_pct, temporal_variance_days, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    template.title,
                    str(template.amount),
                    template.frequency.value,
                    template.transaction_type.value,
                    template.currency,
                    template.category_id,
                    template.priority.value if template.priority else None,
                    template.day_of_month,
                    template.day_of_week,
                    _iso(template.start_date),
                    _iso(template.end_date),
                    _iso(template.next_occurrence),
                    _iso(template.last_processed_date),
                    int(template.is_active),
                    int(template.auto_mark_paid),
                    template.owner,
                    template.notes,
                    json.dumps(template.known_aliases),
                    template.amount_variance_pct,
                    template.temporal_variance_days,
                    now,
                    now,
                ),
            )
            return cursor.lastrowid or 0

    def get_template(self, template_id: int) -> Optional[RecurringTemplate]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM recurring_templates WHERE id = ?", (template_id,)
            ).fetchone()
            return _template_from_row(row) if row else None

    def list_templates(
        self,
        owner: Optional[str] = None,
        active_only: bool = False,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[RecurringTemplate]:
        """List templates, optionally filtered by owner, activity and type."""
        query = "SELECT * FROM recurring_templates WHERE 1=1"
        params: list[Any] = []
        if owner is not None:
            query += " AND owner = ?"
            params.append(owner)
        if active_only:
            query += " AND is_active = 1"
        if transaction_type is not None:
            query += " AND transaction_type = ?"
            params.append(transaction_type.value)
        query += " ORDER BY id"

        with self._transaction() as conn:
            return [_template_from_row(row) for row in conn.execute(query, params).fetchall()]

    def update_template_state(
        self,
        template_id: int,
        next_occurrence: Optional[date],
        last_processed_date: Optional[date],
        is_active: bool,
        day_of_month: Optional[int] = None,
    ) -> None:
        """Write the scheduling state of a template. Reserved for the recurrence engine.

        A given day_of_month pins the monthly anchor; None leaves it unchanged.
        """
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE recurring_templates
                SET next_occurrence = ?, last_processed_date = ?, is_active = ?,
                    day_of_month = COALESCE(?, day_of_month), updated_at = ?
                WHERE id = ?
            """,
                (
                    _iso(next_occurrence),
                    _iso(last_processed_date),
                    int(is_active),
                    day_of_month,
                    _now(),
                    template_id,
                ),
            )

    # Transaction methods

    def create_transaction(self, record: TransactionRecord) -> int:
        """
        Insert a transaction. Returns its ID.

        Raises:
            DuplicateOccurrenceError: An occurrence for the same template and
                date already exists.
        """
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO transactions
                    (date, amount, title, raw_description, transaction_type, currency,
                     category_id, category_name, priority, is_paid, paid_date,
                     recurring_template_id, budget_bucket_id, owner, notes,
                     match_status, match_confidence, suggested_template_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        _iso(record.date),
                        str(record.amount),
                        record.title,
                        record.raw_description,
                        record.transaction_type.value,
                        record.currency,
                        record.category_id,
                        record.category_name,
                        record.priority.value if record.priority else None,
                        int(record.is_paid),
                        _iso(record.paid_date),
                        record.recurring_template_id,
                        record.budget_bucket_id,
                        record.owner,
                        record.notes,
                        record.match_status,
                        record.match_confidence,
                        record.suggested_template_id,
                        _now(),
                    ),
                )
                return cursor.lastrowid or 0
        except sqlite3.IntegrityError as e:
            if record.recurring_template_id is not None and "UNIQUE" in str(e).upper():
                raise DuplicateOccurrenceError(record.recurring_template_id, record.date) from e
            raise

    def get_transaction(self, transaction_id: int) -> Optional[TransactionRecord]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
            return _transaction_from_row(row) if row else None

    def list_transactions(
        self,
        owner: Optional[str] = None,
        since: Optional[date] = None,
        until: Optional[date] = None,
        transaction_type: Optional[TransactionType] = None,
        paid_only: bool = False,
        recurring_template_id: Optional[int] = None,
    ) -> list[TransactionRecord]:
        """List transactions in date order, optionally filtered."""
        query = "SELECT * FROM transactions WHERE 1=1"
        params: list[Any] = []
        if owner is not None:
            query += " AND owner = ?"
            params.append(owner)
        if since is not None:
            query += " AND date >= ?"
            params.append(since.isoformat())
        if until is not None:
            query += " AND date <= ?"
            params.append(until.isoformat())
        if transaction_type is not None:
            query += " AND transaction_type = ?"
            params.append(transaction_type.value)
        if paid_only:
            query += " AND is_paid = 1"
        if recurring_template_id is not None:
            query += " AND recurring_template_id = ?"
            params.append(recurring_template_id)
        query += " ORDER BY date, id"

        with self._transaction() as conn:
            return [_transaction_from_row(row) for row in conn.execute(query, params).fetchall()]

    def get_occurrence_keys(
        self,
        since: Optional[date] = None,
        until: Optional[date] = None,
    ) -> set[tuple[int, date]]:
        """Return (recurring_template_id, date) for every generated occurrence in range."""
        query = "SELECT recurring_template_id, date FROM transactions WHERE recurring_template_id IS NOT NULL"
        params: list[Any] = []
        if since is not None:
            query += " AND date >= ?"
            params.append(since.isoformat())
        if until is not None:
            query += " AND date <= ?"
            params.append(until.isoformat())

        with self._transaction() as conn:
            return {
                (row["recurring_template_id"], parse_date(row["date"]))
                for row in conn.execute(query, params).fetchall()
            }

    def update_transaction_match(
        self,
        transaction_id: int,
        match_status: str,
        match_confidence: int,
        recurring_template_id: Optional[int] = None,
        suggested_template_id: Optional[int] = None,
    ) -> None:
        """
        Record the match scorer's verdict on a transaction.

        Raises:
            DuplicateOccurrenceError: Linking would give the template two
                transactions on the same date.
        """
        if recurring_template_id is not None:
            try:
                with self._transaction() as conn:
                    conn.execute(
                        """
                        UPDATE transactions
                        SET match_status = ?, match_confidence = ?, recurring_template_id = ?,
                            suggested_template_id = NULL
                        WHERE id = ?
                    """,
                        (match_status, match_confidence, recurring_template_id, transaction_id),
                    )
            except sqlite3.IntegrityError as e:
                existing = self.get_transaction(transaction_id)
                raise DuplicateOccurrenceError(
                    recurring_template_id, existing.date if existing else None
                ) from e
            return

        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE transactions
                SET match_status = ?, match_confidence = ?, suggested_template_id = ?
                WHERE id = ?
            """,
                (match_status, match_confidence, suggested_template_id, transaction_id),
            )

    def update_transaction_classification(
        self,
        transaction_id: int,
        title: str,
        category_id: Optional[int],
        category_name: Optional[str],
        priority: Optional[Priority],
    ) -> None:
        """Persist a classification result onto an existing transaction."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE transactions
                SET title = ?, category_id = ?, category_name = ?, priority = ?
                WHERE id = ?
            """,
                (
                    title,
                    category_id,
                    category_name,
                    priority.value if priority else None,
                    transaction_id,
                ),
            )

    # Budget bucket methods

    def create_budget_bucket(self, bucket: BudgetBucket) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO budget_buckets (priority_type, start_date, end_date, owner, allocated_amount)
                VALUES (?, ?, ?, ?, ?)
            """,
                (
                    bucket.priority_type.value,
                    bucket.start_date.isoformat(),
                    bucket.end_date.isoformat(),
                    bucket.owner,
                    str(bucket.allocated_amount),
                ),
            )
            return cursor.lastrowid or 0

    def list_budget_buckets(self, owner: Optional[str] = None) -> list[BudgetBucket]:
        with self._transaction() as conn:
            if owner is None:
                rows = conn.execute("SELECT * FROM budget_buckets ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM budget_buckets WHERE owner = ? ORDER BY id", (owner,)
                ).fetchall()
            return [_bucket_from_row(row) for row in rows]

    # Rule methods

    def create_rule(self, rule: Rule, owner: Optional[str] = None) -> int:
        payload = rule_to_dict(rule)
        payload.pop("id", None)
        with self._transaction() as conn:
            cursor = conn.execute(
                "INSERT INTO classification_rules (rule_json, owner, created_at) VALUES (?, ?, ?)",
                (json.dumps(payload), owner, _now()),
            )
            return cursor.lastrowid or 0

    def list_rules(self, owner: Optional[str] = None) -> list[Rule]:
        """List rules in creation order (evaluation order)."""
        with self._transaction() as conn:
            if owner is None:
                rows = conn.execute("SELECT * FROM classification_rules ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM classification_rules WHERE owner = ? ORDER BY id", (owner,)
                ).fetchall()
            rules = []
            for row in rows:
                data = json.loads(row["rule_json"])
                data["id"] = row["id"]
                rules.append(rule_from_dict(data))
            return rules

    # Archetype methods

    def save_archetypes(self, owner: str, archetypes: list[dict]) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO budget_archetypes (owner, archetypes_json, analyzed_at)
                VALUES (?, ?, ?)
            """,
                (owner, json.dumps(archetypes), _now()),
            )

    def get_archetypes(self, owner: str) -> list[dict]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT archetypes_json FROM budget_archetypes WHERE owner = ?", (owner,)
            ).fetchone()
            return json.loads(row["archetypes_json"]) if row else []

    # Statistics

    def get_stats(self) -> dict:
        """Get store statistics."""
        with self._transaction() as conn:
            stats = {}

            stats["templates_total"] = conn.execute(
                "SELECT COUNT(*) FROM recurring_templates"
            ).fetchone()[0]
            stats["templates_active"] = conn.execute(
                "SELECT COUNT(*) FROM recurring_templates WHERE is_active = 1"
            ).fetchone()[0]
            stats["transactions_total"] = conn.execute(
                "SELECT COUNT(*) FROM transactions"
            ).fetchone()[0]
            stats["transactions_generated"] = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE recurring_template_id IS NOT NULL"
            ).fetchone()[0]
            stats["transactions_uncategorized"] = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE category_id IS NULL AND category_name IS NULL"
            ).fetchone()[0]
            stats["rules_total"] = conn.execute(
                "SELECT COUNT(*) FROM classification_rules"
            ).fetchone()[0]

            return stats
