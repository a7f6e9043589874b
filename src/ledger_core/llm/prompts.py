"""Prompt templates for AI transaction classification.

Prompts are versioned so stored AI outcomes can be traced to the wording
that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass

# v1.1: results keyed by stable item id instead of the raw description
PROMPT_VERSION = "v1.1"

UNCATEGORIZED = "Uncategorized"


@dataclass
class ClassificationPrompt:
    """Prompt template for batch classification of bank descriptions.

    Attributes:
        version: Prompt version.
        system_prompt: System message setting model behavior.
        user_template: Template for the user message.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You are a financial data cleaner.
For each bank transaction description you receive, provide:
1. "clean_name": a short human-readable merchant name
   (e.g. "SQ *MY COFFEE" -> "My Coffee")
2. "category": exactly one category from the provided list
3. "confidence": how sure you are, from 0.0 to 1.0

Rules:
1. Only use categories from the provided list
2. If you are truly unsure, use "Uncategorized" with a low confidence
3. Return one result per input id, using the id exactly as given

Respond ONLY with a JSON object:
{
    "results": [
        {"id": "0", "clean_name": "My Coffee", "category": "Dining", "confidence": 0.9}
    ]
}"""

    user_template: str = """Classify these transactions:

{items}

Available Categories:
{categories}

Respond in JSON format."""

    def format_user_message(self, items: dict[str, str], categories: list[str]) -> str:
        """Format the user message.

        Args:
            items: Stable item id -> bank description.
            categories: Available category names.

        Returns:
            Formatted user message.
        """
        items_str = "\n".join(f'- id "{key}": {text}' for key, text in items.items())
        categories_str = "\n".join(f"- {cat}" for cat in [*categories, UNCATEGORIZED])
        return self.user_template.format(items=items_str, categories=categories_str)
