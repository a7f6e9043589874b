"""AI collaborator for transaction classification.

Fast-then-strong two-tier classification over an OpenAI-compatible
chat-completions API. Failures degrade to "Uncategorized" at confidence 0.
"""

from .prompts import PROMPT_VERSION, UNCATEGORIZED, ClassificationPrompt
from .service import AIBatchResult, AIClassificationService, AIConfigurationError, AISuggestion

__all__ = [
    "PROMPT_VERSION",
    "UNCATEGORIZED",
    "ClassificationPrompt",
    "AIBatchResult",
    "AIClassificationService",
    "AIConfigurationError",
    "AISuggestion",
]
