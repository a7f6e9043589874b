"""AI classification service for transactions the local tiers cannot label.

Talks to an OpenAI-compatible chat-completions API.
Features:
- Two tiers: a fast low-cost model first, then a stronger model for
  results below the escalation threshold
- Results keyed by a stable per-batch item id, never by the raw text
- Chunked requests; a failing chunk degrades to "Uncategorized" at
  confidence 0 without affecting its siblings
- Robust JSON parsing of model output

Privacy Constraints:
- Never log prompts or raw descriptions at INFO level
- Never log the API key
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from .prompts import PROMPT_VERSION, UNCATEGORIZED, ClassificationPrompt

if TYPE_CHECKING:
    from ..config import AIConfig, Config

logger = logging.getLogger(__name__)


class AIConfigurationError(Exception):
    """AI tier is enabled but cannot run (missing credentials or endpoint)."""

    pass


@dataclass
class AISuggestion:
    """Model verdict for one item."""

    key: str
    clean_name: str
    category: str
    confidence: float
    model: str
    degraded: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "key": self.key,
            "clean_name": self.clean_name,
            "category": self.category,
            "confidence": self.confidence,
            "model": self.model,
            "degraded": self.degraded,
        }


@dataclass
class AIBatchResult:
    """Suggestions per item key plus the chunk-level errors met on the way."""

    suggestions: dict[str, AISuggestion] = field(default_factory=dict)
    errors: list[dict] = field(default_factory=list)


def _fallback(key: str, text: str, model: str) -> AISuggestion:
    return AISuggestion(
        key=key,
        clean_name=text,
        category=UNCATEGORIZED,
        confidence=0.0,
        model=model,
        degraded=True,
    )


class AIClassificationService:
    """Batch transaction classification against a chat-completions endpoint.

    The service never raises for model or transport failures; affected items
    come back degraded. Only missing configuration raises, from
    `ensure_configured`, before any request is sent.
    """

    def __init__(self, config: Config) -> None:
        """Initialize the AI service.

        Args:
            config: Application configuration.
        """
        self.config = config
        self.ai_config: AIConfig = config.ai
        self._prompt = ClassificationPrompt()

        headers = {"Content-Type": "application/json"}
        if self.ai_config.api_key:
            headers["Authorization"] = f"Bearer {self.ai_config.api_key}"

        # connect: 10 seconds; read: the configured model timeout
        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(self.ai_config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )

    @property
    def is_enabled(self) -> bool:
        """Check if the AI tier is enabled (SSOT)."""
        return self.ai_config.enabled

    @property
    def prompt_version(self) -> str:
        return PROMPT_VERSION

    def ensure_configured(self) -> None:
        """Fail fast when the AI tier is enabled without credentials.

        Raises:
            AIConfigurationError: API key or base URL missing.
        """
        if self.is_enabled and not self.ai_config.is_configured():
            raise AIConfigurationError(
                "AI classification is enabled but no API key is configured "
                "(set ai.api_key or LEDGER_AI_API_KEY, or disable ai.enabled)"
            )

    def classify(self, items: dict[str, str], categories: list[str]) -> AIBatchResult:
        """Classify items with the fast model, escalating weak results.

        Items whose fast-tier confidence is below the escalation threshold are
        re-submitted to the strong model; a strong result that came back
        replaces the fast one for the same key.

        Args:
            items: Stable item id -> bank description.
            categories: Available category names.

        Returns:
            AIBatchResult with one suggestion per input key.
        """
        if not items:
            return AIBatchResult()

        result = self.classify_batch(items, categories, self.ai_config.model_fast)

        threshold = self.ai_config.escalation_threshold
        weak = {
            key: items[key]
            for key, suggestion in result.suggestions.items()
            if suggestion.confidence < threshold
        }
        strong_model = self.ai_config.model_strong
        if not weak or not strong_model:
            return result

        logger.info(
            "Escalating %d of %d items to %s (confidence < %.2f)",
            len(weak),
            len(items),
            strong_model,
            threshold,
        )
        strong = self.classify_batch(weak, categories, strong_model)
        for key, suggestion in strong.suggestions.items():
            if not suggestion.degraded:
                result.suggestions[key] = suggestion
        result.errors.extend(strong.errors)
        return result

    def classify_batch(
        self,
        items: dict[str, str],
        categories: list[str],
        model: str,
    ) -> AIBatchResult:
        """Classify items with one model, one request per chunk.

        Args:
            items: Stable item id -> bank description.
            categories: Available category names.
            model: Model name.

        Returns:
            AIBatchResult with one suggestion per input key. Items of a
            failed chunk, and items the model skipped, are degraded.
        """
        result = AIBatchResult()
        keys = list(items)
        size = max(1, self.ai_config.batch_size)

        for start in range(0, len(keys), size):
            chunk = {key: items[key] for key in keys[start : start + size]}
            user_message = self._prompt.format_user_message(chunk, categories)

            content = self._call_completion(model, self._prompt.system_prompt, user_message)
            if content is None:
                result.errors.append(
                    {"model": model, "items": len(chunk), "error": "AI request failed"}
                )
                for key, text in chunk.items():
                    result.suggestions[key] = _fallback(key, text, model)
                continue

            try:
                data = self._parse_json_response(content)
                parsed = self._suggestions_from(data, chunk, model)
            except (json.JSONDecodeError, ValueError, TypeError, KeyError) as e:
                logger.warning("Unusable response from %s for %d items: %s", model, len(chunk), e)
                result.errors.append({"model": model, "items": len(chunk), "error": str(e)})
                parsed = {}

            for key, text in chunk.items():
                result.suggestions[key] = parsed.get(key) or _fallback(key, text, model)

        return result

    def _suggestions_from(
        self,
        data: dict,
        chunk: dict[str, str],
        model: str,
    ) -> dict[str, AISuggestion]:
        """Map a parsed model response onto the chunk's keys."""
        entries: list[dict] = []
        results = data.get("results")
        if isinstance(results, list):
            entries = [e for e in results if isinstance(e, dict)]
        else:
            # Tolerate {"<id>": {...}} shaped answers
            for key, value in data.items():
                if isinstance(value, dict):
                    entries.append({"id": key, **value})

        if not entries:
            raise ValueError("Response contains no results")

        parsed: dict[str, AISuggestion] = {}
        for entry in entries:
            key = str(entry.get("id", ""))
            if key not in chunk:
                logger.debug("Ignoring AI result for unknown id %r", key)
                continue
            try:
                confidence = float(entry.get("confidence", 0.0))
            except (TypeError, ValueError):
                confidence = 0.0
            parsed[key] = AISuggestion(
                key=key,
                clean_name=str(entry.get("clean_name") or entry.get("cleanName") or chunk[key]),
                category=str(entry.get("category") or UNCATEGORIZED),
                confidence=min(max(confidence, 0.0), 1.0),
                model=model,
            )
        return parsed

    def _call_completion(self, model: str, system_prompt: str, user_message: str) -> str | None:
        """Call the chat-completions API.

        Never logs prompts or raw content at INFO level.

        Args:
            model: Model name.
            system_prompt: System message.
            user_message: User message.

        Returns:
            The assistant message content, or None on failure.
        """
        url = f"{self.ai_config.base_url.rstrip('/')}/chat/completions"
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "response_format": {"type": "json_object"},
            "temperature": self.ai_config.temperature,
        }

        logger.debug("Calling model %s at %s", model, self.ai_config.base_url)

        try:
            response = self._client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
            content = data["choices"][0]["message"]["content"] or ""
            logger.debug("Model %s returned %d chars", model, len(content))
            return content

        except httpx.TimeoutException:
            logger.warning("AI request timed out after %ds", self.ai_config.timeout_seconds)
            return None
        except httpx.HTTPStatusError as e:
            logger.error("AI API error %s for model '%s'", e.response.status_code, model)
            return None
        except httpx.RequestError as e:
            logger.error("AI request failed: %s (URL: %s)", e, self.ai_config.base_url)
            return None
        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning("Unexpected completion payload from model '%s': %s", model, e)
            return None

    def _parse_json_response(self, content: str) -> dict:
        """Parse JSON from model output with robust handling of malformed responses.

        Handles:
        - Markdown code blocks (```json ... ```)
        - Leading/trailing whitespace
        - JSON embedded in surrounding prose
        - Trailing commas and control characters

        Args:
            content: Raw model output.

        Returns:
            Parsed JSON dict. A bare list is wrapped as {"results": [...]}.

        Raises:
            json.JSONDecodeError: If content cannot be parsed as valid JSON.
        """
        if not content:
            raise json.JSONDecodeError("Empty response", "", 0)

        content = content.strip()

        # Remove markdown code blocks
        if content.startswith("```json"):
            content = content[7:]
        elif content.startswith("```"):
            content = content[3:]
        if content.endswith("```"):
            content = content[:-3]
        content = content.strip()

        candidates = [content]

        # Outermost { ... } block, then a bare [ ... ] array
        object_match = re.search(r"\{[\s\S]*\}", content)
        if object_match:
            candidates.append(object_match.group())
        array_match = re.search(r"\[[\s\S]*\]", content)
        if array_match:
            candidates.append(array_match.group())

        for candidate in list(candidates):
            # Remove control characters except newlines and tabs
            cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", candidate)
            # Trailing commas before } or ]
            cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
            candidates.append(cleaned)

        for candidate in candidates:
            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, list):
                return {"results": parsed}
            if isinstance(parsed, dict):
                return parsed

        raise json.JSONDecodeError(
            f"Could not parse JSON from response: {content[:200]}...", content, 0
        )

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> AIClassificationService:
        """Enter context manager."""
        return self

    def __exit__(self, *args) -> None:
        """Exit context manager."""
        self.close()
