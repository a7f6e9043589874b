"""Spending-event mining and budget archetypes.

Paid expenses are grouped by day. Days well above the typical daily spend
seed clusters; a cluster that spans at least two active days is an event.
Events are typed from their line items and grouped into archetypes that
suggest a budget amount and duration for the next occurrence.
"""

from __future__ import annotations

import logging
import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Iterable, Optional

from dateutil.relativedelta import relativedelta

from ..schemas.ledger import Category, TransactionRecord, TransactionType

if TYPE_CHECKING:
    from ..config import Config, EventsConfig
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

ANCHOR_KEYWORDS = ("ticket", "concert", "festival", "gig", "show", "flight", "hotel")

ARCHETYPE_NAMES = {
    "Trip": "Weekend Trip",
    "Event Holiday": "Festival Holiday",
    "Special Period": "Special Occasion",
}


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class DailySpend:
    day: date
    total: float
    transactions: list[TransactionRecord] = field(default_factory=list)


@dataclass
class SpendingEvent:
    """A cluster of unusually expensive, closely spaced days."""

    event_type: str
    start_date: date
    end_date: date
    duration_days: int
    total_amount: float
    anchor_title: str
    anchor_amount: float
    priority_amounts: dict[str, float] = field(default_factory=dict)
    transaction_count: int = 0

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "duration_days": self.duration_days,
            "total_amount": round(self.total_amount, 2),
            "anchor_title": self.anchor_title,
            "anchor_amount": round(self.anchor_amount, 2),
            "priority_amounts": {k: round(v, 2) for k, v in self.priority_amounts.items()},
            "transaction_count": self.transaction_count,
        }


@dataclass
class BudgetArchetype:
    """Learned template for one type of spending event."""

    event_type: str
    name: str
    recommended_amount: int
    typical_duration: int
    occurrences: int
    category_breakdown: dict[str, float]
    confidence: int
    last_occurrence: date

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "event_type": self.event_type,
            "name": self.name,
            "recommended_amount": self.recommended_amount,
            "typical_duration": self.typical_duration,
            "occurrences": self.occurrences,
            "category_breakdown": dict(self.category_breakdown),
            "confidence": self.confidence,
            "last_occurrence": self.last_occurrence.isoformat(),
        }


def archetype_confidence(totals: list[float]) -> int:
    """Occurrence count (capped at 50) plus consistency of amounts (up to 50)."""
    if len(totals) < 2:
        return 50
    mean = statistics.fmean(totals)
    cv = statistics.pstdev(totals) / mean if mean else 1.0
    occurrence_score = min(len(totals) * 15, 50)
    consistency_score = max(0.0, 50 - cv * 100)
    return _round_half_up(occurrence_score + consistency_score)


class EventClusterMiner:
    """Detect spending events in paid-expense history and derive archetypes."""

    def __init__(self, config: Config, state_store: StateStore | None = None) -> None:
        self.events_config: EventsConfig = config.events
        self.store = state_store

    def mine(
        self,
        history: Iterable[TransactionRecord],
        categories: Iterable[Category] = (),
    ) -> list[BudgetArchetype]:
        """Derive archetypes from history. Pure; nothing is persisted."""
        category_map = {c.id: c for c in categories}
        events = self.detect_events(history, category_map)
        archetypes = self.build_archetypes(events)
        logger.info("Mined %d events into %d archetypes", len(events), len(archetypes))
        return archetypes

    def analyze(self, owner: str | None = None, since: date | None = None) -> list[BudgetArchetype]:
        """Mine the owner's stored history and save the archetypes.

        Args:
            owner: Owner whose history is analyzed.
            since: Start of the history window. Defaults to
                `events.history_months` before today.
        """
        if self.store is None:
            raise ValueError("EventClusterMiner.analyze requires a state store")

        if since is None:
            since = date.today() - relativedelta(months=self.events_config.history_months)

        history = self.store.list_transactions(
            owner=owner,
            since=since,
            transaction_type=TransactionType.EXPENSE,
            paid_only=True,
        )
        archetypes = self.mine(history, self.store.list_categories(owner=owner))
        self.store.save_archetypes(owner or "", [a.to_dict() for a in archetypes])
        return archetypes

    def daily_totals(self, history: Iterable[TransactionRecord]) -> list[DailySpend]:
        """Paid expenses grouped by day, in date order."""
        by_day: dict[date, DailySpend] = {}
        expenses = sorted(
            (
                t
                for t in history
                if t.is_paid and t.transaction_type is TransactionType.EXPENSE
            ),
            key=lambda t: t.date,
        )
        for txn in expenses:
            day = by_day.setdefault(txn.date, DailySpend(day=txn.date, total=0.0))
            day.total += float(txn.amount)
            day.transactions.append(txn)
        return [by_day[d] for d in sorted(by_day)]

    def baseline(self, days: list[DailySpend]) -> float:
        """Upper median of daily totals above the noise floor, or 0."""
        totals = sorted(d.total for d in days if d.total > self.events_config.noise_floor)
        if not totals:
            return 0.0
        return totals[len(totals) // 2]

    def detect_events(
        self,
        history: Iterable[TransactionRecord],
        category_map: dict[Optional[int], Category],
    ) -> list[SpendingEvent]:
        cfg = self.events_config
        days = self.daily_totals(history)
        baseline = self.baseline(days)
        threshold = max(baseline * cfg.anomaly_multiplier, cfg.min_threshold)
        logger.debug("Event baseline %.2f, threshold %.2f over %d days", baseline, threshold, len(days))

        events: list[SpendingEvent] = []
        i = 0
        while i < len(days):
            start = days[i]
            if start.total <= threshold:
                i += 1
                continue

            cluster = [start]
            j = i + 1
            while j < len(days) and (days[j].day - start.day).days <= cfg.lookahead_days:
                if (days[j].day - cluster[-1].day).days > cfg.max_gap_days:
                    break
                if days[j].total > baseline * cfg.continuation_factor:
                    cluster.append(days[j])
                j += 1

            if len(cluster) >= cfg.min_cluster_days:
                events.append(self._build_event(cluster, category_map))
            i = j

        return events

    def _build_event(
        self,
        cluster: list[DailySpend],
        category_map: dict[Optional[int], Category],
    ) -> SpendingEvent:
        transactions = [t for day in cluster for t in day.transactions]
        duration = (cluster[-1].day - cluster[0].day).days + 1

        priority_amounts: dict[str, float] = defaultdict(float)
        for txn in transactions:
            category = category_map.get(txn.category_id)
            priority = category.priority if category and category.priority else txn.priority
            if priority is not None:
                priority_amounts[priority.value] += float(txn.amount)

        anchor = self.anchor_expense(transactions, category_map)
        return SpendingEvent(
            event_type=self.infer_event_type(transactions, category_map, duration),
            start_date=cluster[0].day,
            end_date=cluster[-1].day,
            duration_days=duration,
            total_amount=sum(float(t.amount) for t in transactions),
            anchor_title=anchor.title,
            anchor_amount=float(anchor.amount),
            priority_amounts=dict(priority_amounts),
            transaction_count=len(transactions),
        )

    @staticmethod
    def _category_name(txn: TransactionRecord, category_map: dict[Optional[int], Category]) -> str:
        category = category_map.get(txn.category_id)
        return (category.name if category else txn.category_name or "").lower()

    def anchor_expense(
        self,
        transactions: list[TransactionRecord],
        category_map: dict[Optional[int], Category],
    ) -> TransactionRecord:
        """The line item that explains the event: a keyword hit, else the largest."""
        for txn in transactions:
            title = (txn.title or "").lower()
            category = self._category_name(txn, category_map)
            if any(kw in title or kw in category for kw in ANCHOR_KEYWORDS):
                return txn
        return max(transactions, key=lambda t: t.amount)

    def infer_event_type(
        self,
        transactions: list[TransactionRecord],
        category_map: dict[Optional[int], Category],
        duration_days: int,
    ) -> str:
        names = [n for n in (self._category_name(t, category_map) for t in transactions) if n]
        titles = [t.title.lower() for t in transactions if t.title]

        def seen(category_words: tuple[str, ...], title_words: tuple[str, ...] = ()) -> bool:
            return any(w in n for n in names for w in category_words) or any(
                w in t for t in titles for w in title_words
            )

        has_ticket = seen(("ticket",), ("ticket", "concert", "festival", "gig"))
        has_flight = seen(("flight", "airline"), ("flight", "airport"))
        has_stay = seen(("hotel", "accommodation", "airbnb"), ("hotel", "airbnb"))
        has_transport = seen(("transport", "travel", "train"), ("transport", "train"))
        has_dining = seen(("dining", "restaurant", "food"))
        count = len(transactions)

        if has_ticket:
            return "Event Holiday" if duration_days > 4 else "Concert Trip"
        if has_flight or (has_stay and has_transport):
            return "Trip"
        if has_stay and count <= 7:
            return "Weekend Trip"
        if has_transport and has_dining and count <= 5:
            return "Day Trip"
        if has_dining and count >= 5:
            return "Social Week"
        return "Special Period"

    def build_archetypes(self, events: list[SpendingEvent]) -> list[BudgetArchetype]:
        """Group events by type; most confident archetype first."""
        by_type: dict[str, list[SpendingEvent]] = defaultdict(list)
        for event in events:
            by_type[event.event_type].append(event)

        archetypes = []
        for event_type, typed in by_type.items():
            totals = [e.total_amount for e in typed]
            total_spend = sum(totals)

            breakdown: dict[str, float] = defaultdict(float)
            for event in typed:
                for priority, amount in event.priority_amounts.items():
                    breakdown[priority] += amount

            archetypes.append(
                BudgetArchetype(
                    event_type=event_type,
                    name=ARCHETYPE_NAMES.get(event_type, event_type),
                    recommended_amount=_round_half_up(statistics.fmean(totals)),
                    typical_duration=_round_half_up(
                        statistics.fmean(e.duration_days for e in typed)
                    ),
                    occurrences=len(typed),
                    category_breakdown={
                        p: round(amount / total_spend * 100, 1) if total_spend else 0.0
                        for p, amount in breakdown.items()
                    },
                    confidence=archetype_confidence(totals),
                    last_occurrence=max(e.start_date for e in typed),
                )
            )

        archetypes.sort(key=lambda a: a.confidence, reverse=True)
        return archetypes
