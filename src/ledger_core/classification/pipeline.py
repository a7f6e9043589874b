"""Classification pipeline for unlabelled transactions.

Tiers, in strict precedence (the first tier that answers wins):
1. Memory - past user correction for the same raw description (1.0)
2. User rule - first matching keyword or regex rule (1.0)
3. Standard taxonomy - keyword substring per slug (0.8)
4. Regex fallback - ordered (pattern, slug) list (0.8)
5. AI - fast model, strong model for weak results (model confidence)

Priority resolution: memory > rule > resolved category default > taxonomy
slug default > "wants".
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Optional

from ..llm.prompts import UNCATEGORIZED
from ..schemas.ledger import Category, Priority, TransactionRecord
from ..schemas.rules import RegexRule, Rule, RuleCompileError
from .memory import MemoryIndex, build_memory_index
from .taxonomy import TaxonomyConfig, load_taxonomy

if TYPE_CHECKING:
    from ..config import Config
    from ..llm.service import AIClassificationService

logger = logging.getLogger(__name__)

LOCAL_CONFIDENCE = 1.0
TAXONOMY_CONFIDENCE = 0.8


class ClassificationSource(str, Enum):
    MEMORY = "memory"
    USER_RULE = "user_rule"
    STANDARD_TAXONOMY = "standard_taxonomy"
    REGEX_FALLBACK = "regex_fallback"
    AI = "ai"


@dataclass
class ClassifiedTransaction:
    """A transaction annotated with its classification."""

    key: str
    transaction: TransactionRecord
    category_id: Optional[int]
    category_name: str
    title: str
    confidence: float
    source: ClassificationSource
    priority: Priority
    needs_review: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        data = self.transaction.to_dict()
        data.update(
            {
                "key": self.key,
                "category_id": self.category_id,
                "category_name": self.category_name,
                "title": self.title,
                "confidence": self.confidence,
                "source": self.source.value,
                "priority": self.priority.value,
                "needs_review": self.needs_review,
            }
        )
        return data


@dataclass
class ClassificationReport:
    """Pipeline output in input order, plus per-item errors."""

    transactions: list[ClassifiedTransaction] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def stats(self) -> dict[str, int]:
        counts = Counter(t.source.value for t in self.transactions)
        counts["needs_review"] = sum(1 for t in self.transactions if t.needs_review)
        return dict(counts)

    def to_dict(self) -> dict:
        return {
            "transactions": [t.to_dict() for t in self.transactions],
            "errors": list(self.errors),
            "stats": self.stats,
        }


def find_category(name: Optional[str], categories: Iterable[Category]) -> Optional[Category]:
    """Category with this name, compared case-insensitively."""
    if not name:
        return None
    wanted = name.strip().lower()
    return next((c for c in categories if c.name.strip().lower() == wanted), None)


class ClassificationPipeline:
    """Resolve unlabelled transactions into category, title and confidence.

    The taxonomy, the memory index and the AI service are injected; without
    an AI service the AI tier answers "Uncategorized" at confidence 0.
    """

    def __init__(
        self,
        config: Config,
        ai_service: AIClassificationService | None = None,
        taxonomy: TaxonomyConfig | None = None,
        memory: MemoryIndex | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Application configuration.
            ai_service: AI collaborator for the last tier.
            taxonomy: Taxonomy tables. Loaded from config when omitted.
            memory: Memory index of past corrections.
        """
        self.config = config
        self.ai_service = ai_service
        self.taxonomy = taxonomy or load_taxonomy(config.classification.taxonomy_path)
        self.memory = memory or MemoryIndex({})
        self.review_threshold = config.classification.review_threshold

    def classify(
        self,
        transactions: list[TransactionRecord],
        rules: list[Rule],
        categories: list[Category],
        history: Iterable[TransactionRecord] | None = None,
    ) -> ClassificationReport:
        """Classify a batch of transactions.

        Args:
            transactions: Transactions to label.
            rules: User rules in evaluation order.
            categories: The user's categories.
            history: Past transactions to rebuild the memory index from.
                The injected index is used when omitted.

        Returns:
            ClassificationReport with one entry per input, in input order.

        Raises:
            AIConfigurationError: AI is enabled but not configured.
        """
        report = ClassificationReport()
        if not transactions:
            return report

        if self.ai_service is not None:
            self.ai_service.ensure_configured()

        memory = build_memory_index(history, categories) if history is not None else self.memory
        active_rules = self._compile_rules(rules, report)

        resolved: dict[str, ClassifiedTransaction] = {}
        pending: dict[str, TransactionRecord] = {}

        for index, transaction in enumerate(transactions):
            # Stable per-batch key; identical descriptions never share one
            key = str(index)
            result = self._classify_locally(key, transaction, memory, active_rules, categories)
            if result is None:
                pending[key] = transaction
            else:
                resolved[key] = result

        if pending:
            resolved.update(self._classify_with_ai(pending, categories, report))

        report.transactions = [resolved[str(i)] for i in range(len(transactions))]

        logger.info(
            "Classified %d transactions (%s)",
            len(report.transactions),
            ", ".join(f"{k}={v}" for k, v in sorted(report.stats.items())),
        )
        return report

    def resolve_slug(self, slug: str, categories: list[Category]) -> Optional[Category]:
        """Map a taxonomy slug onto one of the user's categories.

        Exact case-insensitive name match first, then a category whose name
        contains, or is contained in, one of the slug's keywords.
        """
        exact = find_category(slug, categories)
        if exact:
            return exact

        keywords = [k.upper() for k in self.taxonomy.keywords_for(slug)]
        for category in categories:
            name = category.name.strip().upper()
            if not name:
                continue
            if any(name in keyword or keyword in name for keyword in keywords):
                return category
        return None

    def _compile_rules(self, rules: list[Rule], report: ClassificationReport) -> list[Rule]:
        """Drop regex rules that do not compile, keeping evaluation order."""
        usable: list[Rule] = []
        for rule in rules:
            if isinstance(rule, RegexRule):
                try:
                    rule.compile()
                except RuleCompileError as e:
                    logger.debug("Skipping rule %s: %s", rule.id, e)
                    report.errors.append({"rule_id": rule.id, "error": str(e)})
                    continue
            usable.append(rule)
        return usable

    def _classify_locally(
        self,
        key: str,
        transaction: TransactionRecord,
        memory: MemoryIndex,
        rules: list[Rule],
        categories: list[Category],
    ) -> ClassifiedTransaction | None:
        """Tiers 1-4. None when the transaction needs the AI tier."""
        text = transaction.text

        entry = memory.lookup(text)
        if entry is not None:
            category = next((c for c in categories if c.id == entry.category_id), None)
            return self._build(
                key,
                transaction,
                category_id=entry.category_id,
                category_name=entry.category_name or UNCATEGORIZED,
                title=entry.title,
                confidence=LOCAL_CONFIDENCE,
                source=ClassificationSource.MEMORY,
                priority=entry.priority or self._default_priority(category),
            )

        for rule in rules:
            if rule.matches(text):
                category = next((c for c in categories if c.id == rule.category_id), None)
                logger.debug("Transaction %s matched rule %s", key, rule.id)
                return self._build(
                    key,
                    transaction,
                    category_id=rule.category_id,
                    category_name=category.name if category else UNCATEGORIZED,
                    title=rule.renamed_title or transaction.title,
                    confidence=LOCAL_CONFIDENCE,
                    source=ClassificationSource.USER_RULE,
                    priority=rule.priority or self._default_priority(category),
                )

        hit = self.taxonomy.match_keyword(text)
        source = ClassificationSource.STANDARD_TAXONOMY
        if hit is None:
            hit = self.taxonomy.match_fallback(text)
            source = ClassificationSource.REGEX_FALLBACK
        if hit is None:
            return None

        slug, matched = hit
        category = self.resolve_slug(slug, categories)
        return self._build(
            key,
            transaction,
            category_id=category.id if category else None,
            category_name=category.name if category else slug,
            title=matched.title(),
            confidence=TAXONOMY_CONFIDENCE,
            source=source,
            priority=self._default_priority(category, slug),
        )

    def _classify_with_ai(
        self,
        pending: dict[str, TransactionRecord],
        categories: list[Category],
        report: ClassificationReport,
    ) -> dict[str, ClassifiedTransaction]:
        """Tier 5 for everything the local tiers left open."""
        suggestions = {}
        if self.ai_service is not None and self.ai_service.is_enabled:
            items = {key: txn.text for key, txn in pending.items()}
            try:
                batch = self.ai_service.classify(items, [c.name for c in categories])
            except Exception as e:
                logger.exception("AI tier failed for %d transactions: %s", len(items), e)
                report.errors.append({"items": len(items), "error": f"AI tier failed: {e}"})
            else:
                suggestions = batch.suggestions
                report.errors.extend(batch.errors)
        else:
            logger.debug("AI tier disabled, %d transactions left uncategorized", len(pending))

        results: dict[str, ClassifiedTransaction] = {}
        for key, transaction in pending.items():
            suggestion = suggestions.get(key)
            category = find_category(suggestion.category, categories) if suggestion else None
            if suggestion is not None and category is not None:
                confidence = suggestion.confidence
            else:
                confidence = 0.0
            results[key] = self._build(
                key,
                transaction,
                category_id=category.id if category else None,
                category_name=category.name if category else UNCATEGORIZED,
                title=suggestion.clean_name if suggestion else transaction.title,
                confidence=confidence,
                source=ClassificationSource.AI,
                priority=self._default_priority(category),
            )
        return results

    def _default_priority(self, category: Category | None, slug: str | None = None) -> Priority:
        if category is not None and category.priority is not None:
            return category.priority
        if slug is not None:
            slug_priority = self.taxonomy.priority_for(slug)
            if slug_priority is not None:
                return slug_priority
        return Priority.WANTS

    def _build(self, key: str, transaction: TransactionRecord, **fields) -> ClassifiedTransaction:
        return ClassifiedTransaction(
            key=key,
            transaction=transaction,
            needs_review=fields["confidence"] < self.review_threshold,
            **fields,
        )
