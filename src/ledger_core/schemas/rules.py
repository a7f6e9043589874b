"""
User-authored classification rules.

A rule is either a keyword rule or a regex rule; callers dispatch on the
concrete type instead of probing for optional fields.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Union

from .ledger import Priority


class RuleCompileError(ValueError):
    """Raised when a regex rule carries a malformed pattern."""

    pass


@dataclass
class KeywordRule:
    """
    Case-insensitive substring rule.

    `keyword` may hold comma-separated variations ("AMZN, AMAZON MKTP");
    any one of them matching is enough.
    """

    keyword: str
    category_id: Optional[int] = None
    priority: Optional[Priority] = None
    renamed_title: Optional[str] = None
    id: Optional[int] = None

    @property
    def variations(self) -> list[str]:
        return [k.strip().upper() for k in self.keyword.split(",") if k.strip()]

    def matches(self, text: str) -> bool:
        upper = text.upper()
        return any(variation in upper for variation in self.variations)


@dataclass
class RegexRule:
    """Case-insensitive regex rule."""

    pattern: str
    category_id: Optional[int] = None
    priority: Optional[Priority] = None
    renamed_title: Optional[str] = None
    id: Optional[int] = None
    _compiled: Optional[re.Pattern] = field(default=None, init=False, repr=False, compare=False)

    def compile(self) -> re.Pattern:
        """Compile the pattern once. Raises RuleCompileError if malformed."""
        if self._compiled is None:
            try:
                self._compiled = re.compile(self.pattern, re.IGNORECASE)
            except re.error as e:
                raise RuleCompileError(f"Invalid regex {self.pattern!r}: {e}") from e
        return self._compiled

    def matches(self, text: str) -> bool:
        return self.compile().search(text) is not None


Rule = Union[KeywordRule, RegexRule]


def rule_from_dict(data: dict) -> Rule:
    """
    Build a rule from a stored or imported payload.

    Accepts `regex_pattern` (or `regexPattern`) for regex rules and
    `keyword` for keyword rules. A payload with both is a regex rule.
    """
    priority = data.get("priority")
    common = {
        "category_id": data.get("category_id", data.get("categoryId")),
        "priority": Priority(priority) if priority else None,
        "renamed_title": data.get("renamed_title", data.get("renamedTitle")),
        "id": data.get("id"),
    }
    pattern = data.get("regex_pattern") or data.get("regexPattern")
    if pattern:
        return RegexRule(pattern=pattern, **common)
    keyword = data.get("keyword")
    if keyword:
        return KeywordRule(keyword=keyword, **common)
    raise ValueError("Rule needs either 'keyword' or 'regex_pattern'")


def rule_to_dict(rule: Rule) -> dict:
    data = {
        "id": rule.id,
        "category_id": rule.category_id,
        "priority": rule.priority.value if rule.priority else None,
        "renamed_title": rule.renamed_title,
    }
    if isinstance(rule, RegexRule):
        data["regex_pattern"] = rule.pattern
    else:
        data["keyword"] = rule.keyword
    return data
