"""Tests for the recurrence engine."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
from conftest import make_template

from ledger_core.config import Config
from ledger_core.recurrence.engine import (
    IterationCapExceeded,
    ProcessingReport,
    RecurrenceEngine,
    occurrence_notes,
)
from ledger_core.schemas.ledger import (
    AUTO_GENERATED_NOTE,
    BudgetBucket,
    Frequency,
    Priority,
    TransactionRecord,
    TransactionType,
)
from ledger_core.state_store import StateStore, TemplateNotFoundError


@pytest.fixture
def engine(store: StateStore, config: Config) -> RecurrenceEngine:
    return RecurrenceEngine(store, config)


class TestProcessingReport:
    """Tests for ProcessingReport."""

    def test_to_dict(self) -> None:
        report = ProcessingReport(target_date=date(2026, 3, 1), processed=2, skipped=1)
        report.add_error(make_template(id=7), "boom")
        data = report.to_dict()

        assert data["target_date"] == "2026-03-01"
        assert data["processed"] == 2
        assert data["skipped"] == 1
        assert data["errors"] == [{"template_id": 7, "title": "Netflix", "error": "boom"}]


class TestOccurrenceNotes:
    def test_suffixes_template_notes(self) -> None:
        assert occurrence_notes(make_template(notes="Family plan")) == "Family plan (Auto-generated)"

    def test_default_note(self) -> None:
        assert occurrence_notes(make_template(notes=None)) == AUTO_GENERATED_NOTE


class TestCatchUp:
    """Catch-up loop behavior."""

    def test_month_end_clamping_scenario(self, engine: RecurrenceEngine, store: StateStore) -> None:
        """Day 31 template catches up Jan 31 and Feb 28, then waits for Mar 31."""
        tid = store.create_template(
            make_template(day_of_month=31, next_occurrence=date(2026, 1, 31))
        )

        report = engine.process(date(2026, 3, 1))

        assert report.processed == 2
        dates = [t.date for t in store.list_transactions(recurring_template_id=tid)]
        assert dates == [date(2026, 1, 31), date(2026, 2, 28)]

        template = store.get_template(tid)
        assert template.next_occurrence == date(2026, 3, 31)
        assert template.last_processed_date == date(2026, 2, 28)
        assert template.is_active is True

    def test_not_due_template_untouched(self, engine: RecurrenceEngine, store: StateStore) -> None:
        tid = store.create_template(make_template(next_occurrence=date(2026, 2, 15)))

        report = engine.process(date(2026, 2, 14))

        assert report.processed == 0
        assert store.get_template(tid).next_occurrence == date(2026, 2, 15)
        assert store.list_transactions() == []

    def test_occurrence_fields_copied_from_template(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = store.create_template(
            make_template(
                amount=Decimal("1200.00"),
                title="Rent",
                currency="EUR",
                category_id=9,
                priority=Priority.NEEDS,
                auto_mark_paid=True,
                notes="Flat",
            )
        )

        engine.process(date(2026, 1, 15))

        [txn] = store.list_transactions(recurring_template_id=tid)
        assert txn.amount == Decimal("1200.00")
        assert txn.title == "Rent"
        assert txn.currency == "EUR"
        assert txn.category_id == 9
        assert txn.priority == Priority.NEEDS
        assert txn.is_paid is True
        assert txn.paid_date == date(2026, 1, 15)
        assert txn.notes == "Flat (Auto-generated)"
        assert txn.owner == "alice"

    def test_unpaid_occurrence_has_no_paid_date(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = store.create_template(make_template(auto_mark_paid=False))

        engine.process(date(2026, 1, 15))

        [txn] = store.list_transactions(recurring_template_id=tid)
        assert txn.is_paid is False
        assert txn.paid_date is None

    def test_weekly_catch_up_is_chronological(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = store.create_template(
            make_template(
                frequency=Frequency.WEEKLY,
                day_of_week=1,
                day_of_month=None,
                next_occurrence=date(2026, 1, 5),
            )
        )

        report = engine.process(date(2026, 1, 31))

        dates = [t.date for t in store.list_transactions(recurring_template_id=tid)]
        assert dates == [date(2026, 1, 5), date(2026, 1, 12), date(2026, 1, 19), date(2026, 1, 26)]
        assert report.processed == 4
        assert store.get_template(tid).next_occurrence == date(2026, 2, 2)

    def test_owner_filter(self, engine: RecurrenceEngine, store: StateStore) -> None:
        store.create_template(make_template(owner="alice"))
        bob_id = store.create_template(make_template(owner="bob"))

        report = engine.process(date(2026, 1, 15), owner="alice")

        assert report.processed == 1
        assert store.get_template(bob_id).next_occurrence == date(2026, 1, 15)


class TestBackfill:
    """Missed occurrences without a caller-supplied last run date."""

    def test_missed_occurrences_backfilled_by_default(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        """Every missed occurrence is created, as in the month-end catch-up."""
        tid = store.create_template(
            make_template(frequency=Frequency.DAILY, next_occurrence=date(2026, 1, 1))
        )

        report = engine.process(date(2026, 1, 5))

        assert report.processed == 5
        dates = [t.date for t in store.list_transactions(recurring_template_id=tid)]
        assert dates == [date(2026, 1, 1) + timedelta(days=n) for n in range(5)]
        assert store.get_template(tid).next_occurrence == date(2026, 1, 6)

    def test_no_backfill_creates_only_target_date(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = store.create_template(
            make_template(frequency=Frequency.DAILY, next_occurrence=date(2026, 1, 1))
        )

        report = engine.process(date(2026, 1, 5), backfill=False)

        assert report.processed == 1
        assert report.skipped == 4
        dates = [t.date for t in store.list_transactions(recurring_template_id=tid)]
        assert dates == [date(2026, 1, 5)]
        assert store.get_template(tid).next_occurrence == date(2026, 1, 6)

    def test_no_backfill_skips_template_not_due_on_target(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        """A monthly occurrence missed earlier is not created, but the schedule moves on."""
        tid = store.create_template(make_template(next_occurrence=date(2026, 1, 15)))

        report = engine.process(date(2026, 1, 20), backfill=False)

        assert report.processed == 0
        assert report.skipped == 1
        assert store.list_transactions(recurring_template_id=tid) == []
        assert store.get_template(tid).next_occurrence == date(2026, 2, 15)

    def test_explicit_last_processed_wins_over_no_backfill(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = store.create_template(
            make_template(frequency=Frequency.DAILY, next_occurrence=date(2026, 1, 1))
        )

        report = engine.process(
            date(2026, 1, 5), last_processed_date=date(2026, 1, 2), backfill=False
        )

        assert report.processed == 3
        dates = [t.date for t in store.list_transactions(recurring_template_id=tid)]
        assert dates == [date(2026, 1, 3), date(2026, 1, 4), date(2026, 1, 5)]

    def test_single_template_no_backfill(self, engine: RecurrenceEngine, store: StateStore) -> None:
        tid = store.create_template(
            make_template(frequency=Frequency.DAILY, next_occurrence=date(2026, 1, 1))
        )

        report = engine.process_template_by_id(tid, date(2026, 1, 3), backfill=False)

        assert report.processed == 1
        assert report.skipped == 2


class TestMonthlyAnchor:
    """Month-end templates keep their day across separate runs."""

    def _month_end_template(self, store: StateStore) -> int:
        return store.create_template(
            make_template(day_of_month=None, start_date=None, next_occurrence=date(2026, 1, 31))
        )

    def test_split_run_across_february_keeps_day(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = self._month_end_template(store)

        engine.process(date(2026, 2, 15))
        engine.process(date(2026, 4, 1))

        dates = [t.date for t in store.list_transactions(recurring_template_id=tid)]
        assert dates == [date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31)]
        assert store.get_template(tid).next_occurrence == date(2026, 4, 30)

    def test_split_run_matches_single_run(self, store: StateStore, config: Config) -> None:
        split_id = self._month_end_template(store)
        single_id = self._month_end_template(store)
        engine = RecurrenceEngine(store, config)

        engine.process_template_by_id(split_id, date(2026, 2, 15))
        engine.process_template_by_id(split_id, date(2026, 4, 1))
        engine.process_template_by_id(single_id, date(2026, 4, 1))

        split = [t.date for t in store.list_transactions(recurring_template_id=split_id)]
        single = [t.date for t in store.list_transactions(recurring_template_id=single_id)]
        assert split == single
        assert (
            store.get_template(split_id).next_occurrence
            == store.get_template(single_id).next_occurrence
        )

    def test_anchor_day_stored_after_first_run(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = self._month_end_template(store)

        engine.process(date(2026, 1, 31))

        assert store.get_template(tid).day_of_month == 31

    def test_explicit_day_of_month_unchanged(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = store.create_template(make_template(day_of_month=15))

        engine.process(date(2026, 2, 15))

        assert store.get_template(tid).day_of_month == 15


class TestIdempotence:
    """Re-running never duplicates occurrences."""

    def test_second_run_is_noop(self, engine: RecurrenceEngine, store: StateStore) -> None:
        tid = store.create_template(make_template(next_occurrence=date(2026, 1, 15)))

        first = engine.process(date(2026, 3, 20))
        second = engine.process(date(2026, 3, 20))

        assert first.processed == 3
        assert second.processed == 0
        assert len(store.list_transactions(recurring_template_id=tid)) == 3

    def test_existing_occurrence_skipped_but_advanced(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        """A run that created records but never saved template state converges."""
        tid = store.create_template(make_template(next_occurrence=date(2026, 1, 15)))
        store.create_transaction(
            TransactionRecord(
                id=None,
                date=date(2026, 1, 15),
                amount=Decimal("9.99"),
                title="Netflix",
                recurring_template_id=tid,
                owner="alice",
            )
        )

        report = engine.process(date(2026, 2, 15))

        assert report.skipped == 1
        assert report.processed == 1
        dates = [t.date for t in store.list_transactions(recurring_template_id=tid)]
        assert dates == [date(2026, 1, 15), date(2026, 2, 15)]
        assert store.get_template(tid).next_occurrence == date(2026, 3, 15)

    def test_last_processed_date_skips_covered_occurrences(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = store.create_template(make_template(next_occurrence=date(2026, 1, 15)))

        report = engine.process(date(2026, 3, 15), last_processed_date=date(2026, 2, 28))

        assert report.skipped == 2
        assert report.processed == 1
        dates = [t.date for t in store.list_transactions(recurring_template_id=tid)]
        assert dates == [date(2026, 3, 15)]
        assert store.get_template(tid).next_occurrence == date(2026, 4, 15)

    def test_next_occurrence_never_regresses(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        ids = [
            store.create_template(make_template(next_occurrence=date(2026, 1, 10))),
            store.create_template(
                make_template(frequency=Frequency.DAILY, next_occurrence=date(2026, 1, 20))
            ),
            store.create_template(
                make_template(end_date=date(2026, 1, 25), next_occurrence=date(2026, 1, 15))
            ),
        ]
        before = {tid: store.get_template(tid).next_occurrence for tid in ids}

        engine.process(date(2026, 1, 25))

        for tid in ids:
            after = store.get_template(tid).next_occurrence
            assert after is None or after > before[tid]


class TestRetirement:
    """Templates retire once past their end date."""

    def test_expired_template_retired_without_transactions(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = store.create_template(
            make_template(end_date=date(2025, 12, 31), next_occurrence=date(2025, 12, 15))
        )

        report = engine.process(date(2026, 1, 10))

        assert report.retired == 1
        assert report.processed == 0
        assert store.list_transactions() == []
        template = store.get_template(tid)
        assert template.is_active is False
        assert template.next_occurrence is None

    def test_retires_when_schedule_passes_end_date(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        tid = store.create_template(
            make_template(end_date=date(2026, 2, 20), next_occurrence=date(2026, 1, 15))
        )

        report = engine.process(date(2026, 2, 20))

        assert report.processed == 2
        assert report.retired == 1
        template = store.get_template(tid)
        assert template.is_active is False
        assert template.next_occurrence is None
        assert template.last_processed_date == date(2026, 2, 15)

    def test_retired_template_not_processed_again(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        store.create_template(
            make_template(end_date=date(2025, 12, 31), next_occurrence=date(2025, 12, 15))
        )
        engine.process(date(2026, 1, 10))

        report = engine.process(date(2026, 6, 1))

        assert report.retired == 0
        assert report.processed == 0


class TestIterationCap:
    """Safety cap on catch-up iterations."""

    def test_cap_reports_error_and_keeps_completed_state(
        self, store: StateStore, config: Config
    ) -> None:
        config.recurrence.max_iterations_per_template = 10
        engine = RecurrenceEngine(store, config)
        tid = store.create_template(
            make_template(frequency=Frequency.DAILY, next_occurrence=date(2025, 1, 1))
        )

        report = engine.process(date(2026, 1, 1))

        assert report.processed == 10
        assert len(report.errors) == 1
        assert report.errors[0]["template_id"] == tid
        template = store.get_template(tid)
        assert template.next_occurrence == date(2025, 1, 11)
        assert template.last_processed_date == date(2025, 1, 10)
        assert template.is_active is True

    def test_cap_not_hit_when_exactly_enough(self, store: StateStore, config: Config) -> None:
        config.recurrence.max_iterations_per_template = 5
        engine = RecurrenceEngine(store, config)
        store.create_template(
            make_template(frequency=Frequency.DAILY, next_occurrence=date(2026, 1, 1))
        )

        report = engine.process(date(2026, 1, 5))

        assert report.processed == 5
        assert report.errors == []

    def test_cap_does_not_abort_siblings(self, store: StateStore, config: Config) -> None:
        config.recurrence.max_iterations_per_template = 3
        engine = RecurrenceEngine(store, config)
        store.create_template(
            make_template(frequency=Frequency.DAILY, next_occurrence=date(2025, 1, 1))
        )
        monthly_id = store.create_template(make_template(next_occurrence=date(2026, 1, 15)))

        report = engine.process(date(2026, 1, 20))

        assert len(report.errors) == 1
        assert len(store.list_transactions(recurring_template_id=monthly_id)) == 1

    def test_cap_exception_message(self) -> None:
        error = IterationCapExceeded(4, 100)
        assert "100" in str(error)
        assert error.template_id == 4

    def test_daily_catch_up_rate(self, store: StateStore, config: Config) -> None:
        engine = RecurrenceEngine(store, config)
        tid = store.create_template(
            make_template(frequency=Frequency.DAILY, next_occurrence=date(2026, 1, 1))
        )

        engine.process(date(2026, 1, 1) + timedelta(days=29))

        assert len(store.list_transactions(recurring_template_id=tid)) == 30


class TestBudgetBuckets:
    """Budget bucket resolution."""

    def test_bucket_for_month_and_priority(
        self, engine: RecurrenceEngine, store: StateStore
    ) -> None:
        bucket_id = store.create_budget_bucket(
            BudgetBucket(
                id=None,
                priority_type=Priority.NEEDS,
                start_date=date(2026, 2, 1),
                end_date=date(2026, 2, 28),
                owner="alice",
            )
        )
        store.create_budget_bucket(
            BudgetBucket(
                id=None,
                priority_type=Priority.WANTS,
                start_date=date(2026, 2, 1),
                end_date=date(2026, 2, 28),
                owner="alice",
            )
        )
        tid = store.create_template(make_template(priority=Priority.NEEDS))

        engine.process(date(2026, 2, 15))

        january, february = store.list_transactions(recurring_template_id=tid)
        assert january.budget_bucket_id is None
        assert february.budget_bucket_id == bucket_id

    def test_other_owner_bucket_ignored(self, engine: RecurrenceEngine, store: StateStore) -> None:
        store.create_budget_bucket(
            BudgetBucket(
                id=None,
                priority_type=Priority.NEEDS,
                start_date=date(2026, 1, 1),
                end_date=date(2026, 1, 31),
                owner="bob",
            )
        )
        tid = store.create_template(make_template(priority=Priority.NEEDS))

        engine.process(date(2026, 1, 15))

        [txn] = store.list_transactions(recurring_template_id=tid)
        assert txn.budget_bucket_id is None

    def test_income_never_linked(self, engine: RecurrenceEngine, store: StateStore) -> None:
        store.create_budget_bucket(
            BudgetBucket(
                id=None,
                priority_type=Priority.NEEDS,
                start_date=date(2026, 1, 1),
                end_date=date(2026, 1, 31),
                owner="alice",
            )
        )
        tid = store.create_template(
            make_template(
                title="Salary",
                transaction_type=TransactionType.INCOME,
                priority=Priority.NEEDS,
            )
        )

        engine.process(date(2026, 1, 15))

        [txn] = store.list_transactions(recurring_template_id=tid)
        assert txn.transaction_type == TransactionType.INCOME
        assert txn.budget_bucket_id is None


class TestProcessTemplateById:
    def test_missing_template_raises(self, engine: RecurrenceEngine) -> None:
        with pytest.raises(TemplateNotFoundError):
            engine.process_template_by_id(999, date(2026, 1, 15))

    def test_processes_single_template(self, engine: RecurrenceEngine, store: StateStore) -> None:
        tid = store.create_template(make_template())
        other = store.create_template(make_template(title="Spotify"))

        report = engine.process_template_by_id(tid, date(2026, 1, 15))

        assert report.processed == 1
        assert store.list_transactions(recurring_template_id=other) == []
