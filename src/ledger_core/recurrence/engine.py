"""Recurrence engine: turns due recurring templates into ledger occurrences.

Each invocation is a synchronous pass over the due templates for one
target date. Due state lives entirely in the persisted template records, so
the engine holds nothing between calls and a retried call converges on the
same ledger (already-created occurrences are skipped through the
(template, date) dedup key, never duplicated).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import TYPE_CHECKING

from ..schemas.ledger import (
    AUTO_GENERATED_NOTE,
    BudgetBucket,
    RecurringTemplate,
    TransactionRecord,
    TransactionType,
)
from ..state_store import DuplicateOccurrenceError, TemplateNotFoundError
from .dates import advance, is_due, month_bounds, pinned_day_of_month

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


class TemplateError(Exception):
    """Recoverable per-template failure, reported instead of aborting the run."""

    pass


class IterationCapExceeded(TemplateError):
    """A template needed more catch-up iterations than allowed in one run."""

    def __init__(self, template_id: int | None, cap: int):
        self.template_id = template_id
        self.cap = cap
        super().__init__(
            f"Exceeded {cap} iterations; check the template frequency and next occurrence"
        )


@dataclass
class ProcessingReport:
    """Outcome of one recurrence run."""

    target_date: date
    processed: int = 0
    skipped: int = 0
    retired: int = 0
    created_ids: list[int] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    def add_error(self, template: RecurringTemplate, error: Exception | str) -> None:
        self.errors.append(
            {
                "template_id": template.id,
                "title": template.title,
                "error": str(error),
            }
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "target_date": self.target_date.isoformat(),
            "processed": self.processed,
            "skipped": self.skipped,
            "retired": self.retired,
            "created_ids": list(self.created_ids),
            "errors": list(self.errors),
        }


def occurrence_notes(template: RecurringTemplate) -> str:
    """Notes stamped on a generated occurrence."""
    if template.notes:
        return f"{template.notes} (Auto-generated)"
    return AUTO_GENERATED_NOTE


def _effective_last_processed(
    target_date: date, last_processed_date: date | None, backfill: bool
) -> date | None:
    if last_processed_date is None and not backfill:
        return target_date - timedelta(days=1)
    return last_processed_date


def resolve_budget_bucket(
    template: RecurringTemplate,
    occurrence: date,
    buckets: list[BudgetBucket],
) -> BudgetBucket | None:
    """Find the bucket for this occurrence's month and the template's priority.

    Only expense templates with a priority are linked. Returns None when no
    bucket covers the month; budget linkage is best effort.
    """
    if template.transaction_type is not TransactionType.EXPENSE or template.priority is None:
        return None

    month_start, month_end = month_bounds(occurrence)
    for bucket in buckets:
        if (
            bucket.priority_type == template.priority
            and bucket.owner == template.owner
            and bucket.covers_month(month_start, month_end)
        ):
            return bucket
    return None


class RecurrenceEngine:
    """Generate occurrences for due recurring templates.

    Per template the engine runs a catch-up loop: create (or skip) the
    occurrence at next_occurrence, advance, and repeat while the next
    occurrence is still on or before the target date. Template state is
    written once when the loop exits. Occurrences of one template are always
    produced in chronological order.
    """

    def __init__(self, state_store: StateStore, config: Config) -> None:
        """Initialize the recurrence engine.

        Args:
            state_store: Entity store for templates, buckets and transactions.
            config: Application configuration.
        """
        self.store = state_store
        self.config = config
        self.max_iterations = config.recurrence.max_iterations_per_template

    def process(
        self,
        target_date: date,
        last_processed_date: date | None = None,
        owner: str | None = None,
        backfill: bool = True,
    ) -> ProcessingReport:
        """Process every active template due on or before target_date.

        Args:
            target_date: Processing date (usually the caller's local today).
            last_processed_date: Date of the caller's previous successful run.
                Occurrences on or before it are treated as handled: the
                template advances past them without creating records.
            owner: Restrict the run to one owner's templates.
            backfill: Without a last_processed_date, create every missed
                occurrence up to target_date. When False, only occurrences
                falling exactly on target_date are created; earlier ones are
                skipped and the schedule still advances past them.

        Returns:
            ProcessingReport with counts and per-template errors.
        """
        last_processed_date = _effective_last_processed(target_date, last_processed_date, backfill)
        report = ProcessingReport(target_date=target_date)

        templates = [
            t
            for t in self.store.list_templates(owner=owner, active_only=True)
            if is_due(t, target_date)
        ]
        if not templates:
            logger.info("No recurring templates due on %s", target_date)
            return report

        logger.info("Processing %d due recurring templates for %s", len(templates), target_date)

        # Prefetch once per run; dedup and bucket lookups stay in memory
        earliest = min(t.next_occurrence for t in templates if t.next_occurrence)
        existing = self.store.get_occurrence_keys(since=earliest, until=target_date)
        buckets = self.store.list_budget_buckets(owner=owner)

        for template in templates:
            try:
                self._process_template(
                    template, target_date, last_processed_date, existing, buckets, report
                )
            except Exception as e:
                logger.exception("Recurring template %s failed: %s", template.id, e)
                report.add_error(template, e)

        logger.info(
            "Recurring run for %s: %d processed, %d skipped, %d retired, %d errors",
            target_date,
            report.processed,
            report.skipped,
            report.retired,
            len(report.errors),
        )
        return report

    def process_template_by_id(
        self,
        template_id: int,
        target_date: date,
        last_processed_date: date | None = None,
        backfill: bool = True,
    ) -> ProcessingReport:
        """Process a single template.

        Raises:
            TemplateNotFoundError: No template with this ID exists.
        """
        last_processed_date = _effective_last_processed(target_date, last_processed_date, backfill)
        template = self.store.get_template(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Recurring template {template_id} not found")

        report = ProcessingReport(target_date=target_date)
        if not is_due(template, target_date):
            logger.info("Recurring template %d is not due on %s", template_id, target_date)
            return report

        existing = self.store.get_occurrence_keys(
            since=template.next_occurrence, until=target_date
        )
        buckets = self.store.list_budget_buckets(owner=template.owner)
        try:
            self._process_template(
                template, target_date, last_processed_date, existing, buckets, report
            )
        except Exception as e:
            logger.exception("Recurring template %s failed: %s", template.id, e)
            report.add_error(template, e)
        return report

    def _process_template(
        self,
        template: RecurringTemplate,
        target_date: date,
        last_processed_date: date | None,
        existing: set[tuple[int, date]],
        buckets: list[BudgetBucket],
        report: ProcessingReport,
    ) -> None:
        """Run the catch-up loop for one template and persist its final state."""
        if template.end_date is not None and template.end_date < target_date:
            self.store.update_template_state(
                template.id, None, template.last_processed_date, is_active=False
            )
            report.retired += 1
            logger.info(
                "Retired recurring template %d (ended %s)", template.id, template.end_date
            )
            return

        pinned_day = pinned_day_of_month(template)
        if pinned_day is not None:
            template = replace(template, day_of_month=pinned_day)

        next_occurrence = template.next_occurrence
        last_processed = template.last_processed_date
        iterations = 0
        failure: Exception | None = None

        while next_occurrence is not None and next_occurrence <= target_date:
            if iterations >= self.max_iterations:
                failure = IterationCapExceeded(template.id, self.max_iterations)
                break

            occurrence = next_occurrence
            try:
                following = advance(template, occurrence)
                self._emit_occurrence(
                    template, occurrence, last_processed_date, existing, buckets, report
                )
            except Exception as e:
                failure = e
                break

            # Iteration complete: occurrence handled and successor known
            iterations += 1
            last_processed = occurrence
            next_occurrence = following

        if iterations == 0 and failure is not None:
            report.add_error(template, failure)
            logger.warning("Recurring template %d not advanced: %s", template.id, failure)
            return

        is_active = next_occurrence is not None
        if not is_active:
            report.retired += 1
            logger.info("Recurring template %d retired after %s", template.id, last_processed)

        self.store.update_template_state(
            template.id, next_occurrence, last_processed, is_active, day_of_month=pinned_day
        )

        if failure is not None:
            report.add_error(template, failure)
            logger.warning(
                "Recurring template %d stopped after %d iterations: %s",
                template.id,
                iterations,
                failure,
            )

    def _emit_occurrence(
        self,
        template: RecurringTemplate,
        occurrence: date,
        last_processed_date: date | None,
        existing: set[tuple[int, date]],
        buckets: list[BudgetBucket],
        report: ProcessingReport,
    ) -> None:
        """Create the occurrence record unless it was already handled."""
        key = (template.id, occurrence)

        if last_processed_date is not None and occurrence <= last_processed_date:
            report.skipped += 1
            logger.debug(
                "Template %d: %s already covered by run of %s",
                template.id,
                occurrence,
                last_processed_date,
            )
            return

        if key in existing:
            report.skipped += 1
            logger.debug("Template %d: occurrence %s exists, skipping", template.id, occurrence)
            return

        record = self.build_occurrence(template, occurrence, buckets)
        try:
            transaction_id = self.store.create_transaction(record)
        except DuplicateOccurrenceError:
            report.skipped += 1
            logger.debug("Template %d: occurrence %s created concurrently", template.id, occurrence)
        else:
            report.processed += 1
            report.created_ids.append(transaction_id)
            logger.debug(
                "Template %d: created transaction %d on %s", template.id, transaction_id, occurrence
            )
        existing.add(key)

    def build_occurrence(
        self,
        template: RecurringTemplate,
        occurrence: date,
        buckets: list[BudgetBucket],
    ) -> TransactionRecord:
        """Build the transaction record for one occurrence of a template."""
        bucket = resolve_budget_bucket(template, occurrence, buckets)
        return TransactionRecord(
            id=None,
            date=occurrence,
            amount=template.amount,
            title=template.title,
            transaction_type=template.transaction_type,
            currency=template.currency,
            category_id=template.category_id,
            priority=template.priority,
            is_paid=template.auto_mark_paid,
            paid_date=occurrence if template.auto_mark_paid else None,
            recurring_template_id=template.id,
            budget_bucket_id=bucket.id if bucket else None,
            owner=template.owner,
            notes=occurrence_notes(template),
        )
