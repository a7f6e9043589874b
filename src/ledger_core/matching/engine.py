"""Match scorer for linking observed transactions to recurring templates.

Every candidate template of the same transaction type is scored on three
signals, each on a 0-100 scale:
- Identity: token overlap between the bank text and the template's
  aliases/title (exact token 1.0, typo-tolerant token 0.8)
- Amount: linear falloff to 0 at the template's allowed variance
- Temporal: linear falloff to 0 at the allowed day window around the
  template's expected next date

The weighted total is rounded to an integer confidence. The best candidate
is linked automatically only when it clears the auto-match threshold and no
runner-up is within the tie-breaker margin.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import TYPE_CHECKING

from rapidfuzz import fuzz, process

from ..config import MatchingConfig
from ..schemas.ledger import RecurringTemplate, TransactionRecord
from ..state_store import DuplicateOccurrenceError, TransactionNotFoundError

if TYPE_CHECKING:
    from ..config import Config
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

# Generic banking terms that carry no merchant identity
STOP_WORDS = frozenset(
    {
        "pos",
        "dd",
        "so",
        "crd",
        "auth",
        "fee",
        "visa",
        "mastercard",
        "payment",
        "transfer",
        "standing",
        "order",
        "direct",
        "debit",
    }
)

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def tokenize(text: str | None) -> list[str]:
    """Lower-case, strip non-alphanumerics, drop single characters and stop words."""
    if not text:
        return []
    return [
        token
        for token in _NON_ALNUM.sub(" ", text.lower()).split()
        if len(token) > 1 and token not in STOP_WORDS
    ]


def _round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _linear_score(difference: float, allowed: float) -> float:
    """100 at zero difference, falling linearly to 0 at the allowed bound."""
    if difference == 0:
        return 100.0
    if allowed <= 0 or difference > allowed:
        return 0.0
    return 100.0 - (difference / allowed) * 100.0


class MatchStatus(str, Enum):
    AUTO_MATCH = "auto_match"
    NEEDS_REVIEW = "needs_review"
    NO_MATCH = "no_match"


@dataclass
class MatchScore:
    """Individual signal contribution to a match score."""

    signal: str
    score: float
    weight: float
    detail: str

    @property
    def weighted_score(self) -> float:
        """Get the weighted score for this signal."""
        return self.score * self.weight


@dataclass
class CandidateScore:
    """Scores of one template against the transaction."""

    template_id: int | None
    title: str
    total: int
    signals: list[MatchScore] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "template_id": self.template_id,
            "title": self.title,
            "total": self.total,
            "signals": [
                {
                    "signal": s.signal,
                    "score": round(s.score, 2),
                    "weight": s.weight,
                    "weighted_score": round(s.weighted_score, 2),
                    "detail": s.detail,
                }
                for s in self.signals
            ],
        }


@dataclass
class MatchResult:
    """Outcome of matching one transaction against recurring templates."""

    status: MatchStatus
    confidence: int = 0
    matched_template_id: int | None = None
    candidates: list[CandidateScore] = field(default_factory=list)

    @property
    def is_linked(self) -> bool:
        return self.status is MatchStatus.AUTO_MATCH

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status.value,
            "confidence": self.confidence,
            "matched_template_id": self.matched_template_id,
            "candidates": [c.to_dict() for c in self.candidates],
        }


class MatchScorer:
    """Score a transaction against recurring templates and classify the best fit.

    Pure apart from `link_transaction`, which reads and writes the store.
    """

    def __init__(self, config: Config | None = None) -> None:
        """Initialize the scorer.

        Args:
            config: Application configuration. Defaults apply when omitted.
        """
        self.match_config: MatchingConfig = config.matching if config else MatchingConfig()

    def evaluate(
        self,
        transaction: TransactionRecord,
        templates: list[RecurringTemplate],
    ) -> MatchResult:
        """Find the best template for a transaction.

        Templates of the other transaction type are never candidates.

        Returns:
            MatchResult with status, confidence of the best candidate and the
            ranked candidate breakdown.
        """
        candidates = [
            self.score_candidate(transaction, template)
            for template in templates
            if template.transaction_type == transaction.transaction_type
        ]
        if not candidates:
            logger.debug("No %s templates to match against", transaction.transaction_type.value)
            return MatchResult(status=MatchStatus.NO_MATCH)

        # Stable sort keeps input order among equal totals
        candidates.sort(key=lambda c: c.total, reverse=True)
        top = candidates[0]
        runner_up = candidates[1] if len(candidates) > 1 else None
        cfg = self.match_config

        if top.total >= cfg.auto_match_threshold:
            if runner_up is not None and top.total - runner_up.total < cfg.tie_breaker_margin:
                logger.info(
                    "Ambiguous match: template %s (%d) vs %s (%d), needs review",
                    top.template_id,
                    top.total,
                    runner_up.template_id,
                    runner_up.total,
                )
                status = MatchStatus.NEEDS_REVIEW
            else:
                status = MatchStatus.AUTO_MATCH
        elif top.total >= cfg.review_threshold:
            status = MatchStatus.NEEDS_REVIEW
        else:
            return MatchResult(
                status=MatchStatus.NO_MATCH, confidence=top.total, candidates=candidates
            )

        return MatchResult(
            status=status,
            confidence=top.total,
            matched_template_id=top.template_id,
            candidates=candidates,
        )

    def score_candidate(
        self,
        transaction: TransactionRecord,
        template: RecurringTemplate,
    ) -> CandidateScore:
        """Compute the three weighted signals for one template."""
        signals = [
            self._score_identity(transaction.text, template),
            self._score_amount(transaction.amount, template),
            self._score_temporal(transaction.date, template),
        ]
        total = _round_half_up(sum(s.weighted_score for s in signals))
        return CandidateScore(
            template_id=template.id,
            title=template.title,
            total=min(total, 100),
            signals=signals,
        )

    def _score_identity(self, text: str, template: RecurringTemplate) -> MatchScore:
        """Best token-overlap score across the template's aliases and title."""
        weight = self.match_config.weight_identity
        tx_tokens = tokenize(text)
        if not tx_tokens:
            return MatchScore(signal="identity", score=0.0, weight=weight, detail="no tokens")

        targets = [t for t in [*template.known_aliases, template.title] if t]
        best = 0.0
        best_target = ""
        for target in targets:
            target_tokens = tokenize(target)
            if not target_tokens:
                continue

            awarded = 0.0
            for token in target_tokens:
                if token in tx_tokens:
                    awarded += 1.0
                elif process.extractOne(
                    token,
                    tx_tokens,
                    scorer=fuzz.ratio,
                    score_cutoff=self.match_config.fuzzy_token_cutoff,
                ):
                    awarded += self.match_config.fuzzy_token_award

            score = min(awarded / len(target_tokens) * 100.0, 100.0)
            if score > best:
                best = score
                best_target = target

        detail = f"{best:.0f} via {best_target!r}" if best_target else "no overlap"
        return MatchScore(signal="identity", score=best, weight=weight, detail=detail)

    def _score_amount(self, amount: Decimal, template: RecurringTemplate) -> MatchScore:
        weight = self.match_config.weight_amount
        allowed = template.amount_variance_pct
        if allowed is None:
            allowed = self.match_config.default_amount_variance_pct

        difference = abs(amount - template.amount)
        if difference == 0:
            return MatchScore(signal="amount", score=100.0, weight=weight, detail=f"exact: {amount}")
        if template.amount == 0:
            return MatchScore(
                signal="amount", score=0.0, weight=weight, detail="template amount is zero"
            )

        diff_pct = float(difference / abs(template.amount) * 100)
        return MatchScore(
            signal="amount",
            score=_linear_score(diff_pct, float(allowed)),
            weight=weight,
            detail=f"{diff_pct:.1f}% off (allowed {allowed}%)",
        )

    def _score_temporal(self, txn_date: date, template: RecurringTemplate) -> MatchScore:
        weight = self.match_config.weight_temporal
        if txn_date is None or template.next_occurrence is None:
            return MatchScore(signal="temporal", score=0.0, weight=weight, detail="missing")

        allowed = template.temporal_variance_days
        if allowed is None:
            allowed = self.match_config.default_temporal_variance_days

        days = abs((txn_date - template.next_occurrence).days)
        return MatchScore(
            signal="temporal",
            score=_linear_score(days, allowed),
            weight=weight,
            detail=f"{days} days from {template.next_occurrence.isoformat()}",
        )

    def link_transaction(self, state_store: StateStore, transaction_id: int) -> MatchResult:
        """Evaluate a stored transaction and record the verdict on it.

        Candidates are the active templates of the transaction's owner.

        Raises:
            TransactionNotFoundError: No transaction with this ID exists.
        """
        transaction = state_store.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")

        templates = state_store.list_templates(
            owner=transaction.owner,
            active_only=True,
            transaction_type=transaction.transaction_type,
        )
        result = self.evaluate(transaction, templates)

        if result.status is MatchStatus.AUTO_MATCH:
            try:
                state_store.update_transaction_match(
                    transaction_id,
                    result.status.value,
                    result.confidence,
                    recurring_template_id=result.matched_template_id,
                )
                logger.info(
                    "Transaction %d auto-matched to template %s (%d)",
                    transaction_id,
                    result.matched_template_id,
                    result.confidence,
                )
                return result
            except DuplicateOccurrenceError:
                # Template already has a transaction that day; let a human decide
                logger.warning(
                    "Template %s already linked on %s, transaction %d needs review",
                    result.matched_template_id,
                    transaction.date,
                    transaction_id,
                )
                result.status = MatchStatus.NEEDS_REVIEW

        state_store.update_transaction_match(
            transaction_id,
            result.status.value,
            result.confidence,
            suggested_template_id=result.matched_template_id,
        )
        logger.info(
            "Transaction %d: %s (%d)", transaction_id, result.status.value, result.confidence
        )
        return result
