"""Tests for the AI classification service and prompts."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from ledger_core.config import Config
from ledger_core.llm.prompts import PROMPT_VERSION, ClassificationPrompt
from ledger_core.llm.service import AIClassificationService, AIConfigurationError

CATEGORIES = ["Groceries", "Dining Out"]


def completion(results: list[dict]) -> str:
    return json.dumps({"results": results})


@pytest.fixture
def ai_config() -> Config:
    config = Config()
    config.ai.api_key = "test-key"
    config.ai.batch_size = 2
    return config


@pytest.fixture
def service(ai_config: Config):
    with patch("ledger_core.llm.service.httpx.Client"):
        yield AIClassificationService(ai_config)


class TestClassificationPrompt:
    """Tests for ClassificationPrompt."""

    def test_prompt_version_set(self) -> None:
        assert ClassificationPrompt().version == PROMPT_VERSION

    def test_format_user_message(self) -> None:
        message = ClassificationPrompt().format_user_message(
            {"0": "SQ *MY COFFEE", "1": "ZXQ 9981"}, CATEGORIES
        )

        assert 'id "0": SQ *MY COFFEE' in message
        assert 'id "1": ZXQ 9981' in message
        assert "- Groceries" in message
        assert "- Uncategorized" in message


class TestServiceSetup:
    """Tests for client construction and configuration checks."""

    @patch("ledger_core.llm.service.httpx.Client")
    def test_bearer_header(self, mock_client_class: MagicMock, ai_config: Config) -> None:
        AIClassificationService(ai_config)

        headers = mock_client_class.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer test-key"

    @patch("ledger_core.llm.service.httpx.Client")
    def test_no_key_no_header(self, mock_client_class: MagicMock) -> None:
        AIClassificationService(Config())

        assert "Authorization" not in mock_client_class.call_args.kwargs["headers"]

    def test_ensure_configured_without_key(self) -> None:
        with patch("ledger_core.llm.service.httpx.Client"):
            service = AIClassificationService(Config())

        with pytest.raises(AIConfigurationError):
            service.ensure_configured()

    def test_ensure_configured_when_disabled(self) -> None:
        config = Config()
        config.ai.enabled = False
        with patch("ledger_core.llm.service.httpx.Client"):
            service = AIClassificationService(config)

        service.ensure_configured()
        assert service.is_enabled is False

    @patch("ledger_core.llm.service.httpx.Client")
    def test_context_manager_closes_client(
        self, mock_client_class: MagicMock, ai_config: Config
    ) -> None:
        with AIClassificationService(ai_config) as service:
            assert service.is_enabled is True

        mock_client_class.return_value.close.assert_called_once()


class TestCallCompletion:
    """Tests for the chat-completions request."""

    @patch("ledger_core.llm.service.httpx.Client")
    def test_posts_payload(self, mock_client_class: MagicMock, ai_config: Config) -> None:
        mock_response = MagicMock()
        mock_response.json.return_value = {"choices": [{"message": {"content": '{"results": []}'}}]}
        mock_client = MagicMock()
        mock_client.post.return_value = mock_response
        mock_client_class.return_value = mock_client

        service = AIClassificationService(ai_config)
        content = service._call_completion("fast-model", "system", "user")

        assert content == '{"results": []}'
        url = mock_client.post.call_args.args[0]
        payload = mock_client.post.call_args.kwargs["json"]
        assert url == "https://api.groq.com/openai/v1/chat/completions"
        assert payload["model"] == "fast-model"
        assert payload["response_format"] == {"type": "json_object"}
        assert [m["role"] for m in payload["messages"]] == ["system", "user"]

    @patch("ledger_core.llm.service.httpx.Client")
    def test_timeout_returns_none(self, mock_client_class: MagicMock, ai_config: Config) -> None:
        mock_client_class.return_value.post.side_effect = httpx.ReadTimeout("slow")

        service = AIClassificationService(ai_config)

        assert service._call_completion("m", "s", "u") is None

    @patch("ledger_core.llm.service.httpx.Client")
    def test_connection_error_returns_none(
        self, mock_client_class: MagicMock, ai_config: Config
    ) -> None:
        mock_client_class.return_value.post.side_effect = httpx.ConnectError("refused")

        service = AIClassificationService(ai_config)

        assert service._call_completion("m", "s", "u") is None

    @patch("ledger_core.llm.service.httpx.Client")
    def test_http_error_returns_none(self, mock_client_class: MagicMock, ai_config: Config) -> None:
        request = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")
        response = httpx.Response(429, request=request)
        mock_client_class.return_value.post.return_value = response

        service = AIClassificationService(ai_config)

        assert service._call_completion("m", "s", "u") is None

    @patch("ledger_core.llm.service.httpx.Client")
    def test_unexpected_payload_returns_none(
        self, mock_client_class: MagicMock, ai_config: Config
    ) -> None:
        mock_client_class.return_value.post.return_value.json.return_value = {"choices": []}

        service = AIClassificationService(ai_config)

        assert service._call_completion("m", "s", "u") is None


class TestParseJsonResponse:
    """Tests for tolerant parsing of model output."""

    def test_plain(self, service: AIClassificationService) -> None:
        assert service._parse_json_response('{"key": "value"}') == {"key": "value"}

    def test_markdown_code_block(self, service: AIClassificationService) -> None:
        assert service._parse_json_response('```json\n{"key": "value"}\n```') == {"key": "value"}

    def test_surrounding_prose(self, service: AIClassificationService) -> None:
        result = service._parse_json_response('Sure!\n{"results": []}\nHope this helps')
        assert result == {"results": []}

    def test_trailing_comma(self, service: AIClassificationService) -> None:
        result = service._parse_json_response('{"results": [{"id": "0",},],}')
        assert result == {"results": [{"id": "0"}]}

    def test_bare_list_wrapped(self, service: AIClassificationService) -> None:
        assert service._parse_json_response('[{"id": "0"}]') == {"results": [{"id": "0"}]}

    def test_garbage_raises(self, service: AIClassificationService) -> None:
        with pytest.raises(json.JSONDecodeError):
            service._parse_json_response("no json here")

    def test_empty_raises(self, service: AIClassificationService) -> None:
        with pytest.raises(json.JSONDecodeError):
            service._parse_json_response("")


class TestClassifyBatch:
    """Tests for single-model batch classification."""

    def test_parses_results_by_id(self, service: AIClassificationService) -> None:
        content = completion(
            [
                {"id": "1", "clean_name": "Corner Deli", "category": "Groceries", "confidence": 0.9},
                {"id": "0", "clean_name": "My Coffee", "category": "Dining Out", "confidence": 0.8},
            ]
        )
        with patch.object(AIClassificationService, "_call_completion", return_value=content):
            result = service.classify_batch({"0": "SQ *MY COFFEE", "1": "ZXQ"}, CATEGORIES, "fast")

        assert result.suggestions["0"].clean_name == "My Coffee"
        assert result.suggestions["1"].category == "Groceries"
        assert result.suggestions["1"].model == "fast"
        assert result.errors == []

    def test_id_keyed_object(self, service: AIClassificationService) -> None:
        content = json.dumps({"0": {"clean_name": "My Coffee", "category": "Dining Out", "confidence": 0.7}})
        with patch.object(AIClassificationService, "_call_completion", return_value=content):
            result = service.classify_batch({"0": "SQ *MY COFFEE"}, CATEGORIES, "fast")

        assert result.suggestions["0"].confidence == 0.7

    def test_missing_and_unknown_ids_degrade(self, service: AIClassificationService) -> None:
        content = completion([{"id": "99", "clean_name": "X", "category": "Groceries", "confidence": 1}])
        with patch.object(AIClassificationService, "_call_completion", return_value=content):
            result = service.classify_batch({"0": "SQ *MY COFFEE"}, CATEGORIES, "fast")

        fallback = result.suggestions["0"]
        assert fallback.degraded is True
        assert fallback.category == "Uncategorized"
        assert fallback.confidence == 0.0
        assert fallback.clean_name == "SQ *MY COFFEE"

    def test_confidence_clamped(self, service: AIClassificationService) -> None:
        content = completion(
            [
                {"id": "0", "clean_name": "A", "category": "Groceries", "confidence": 1.7},
                {"id": "1", "clean_name": "B", "category": "Groceries", "confidence": "high"},
            ]
        )
        with patch.object(AIClassificationService, "_call_completion", return_value=content):
            result = service.classify_batch({"0": "a", "1": "b"}, CATEGORIES, "fast")

        assert result.suggestions["0"].confidence == 1.0
        assert result.suggestions["1"].confidence == 0.0

    def test_failed_chunk_does_not_affect_siblings(self, service: AIClassificationService) -> None:
        first = completion(
            [
                {"id": "0", "clean_name": "A", "category": "Groceries", "confidence": 0.9},
                {"id": "1", "clean_name": "B", "category": "Groceries", "confidence": 0.9},
            ]
        )
        items = {"0": "a", "1": "b", "2": "c"}
        with patch.object(
            AIClassificationService, "_call_completion", side_effect=[first, None]
        ) as mock_call:
            result = service.classify_batch(items, CATEGORIES, "fast")

        assert mock_call.call_count == 2
        assert result.suggestions["0"].degraded is False
        assert result.suggestions["1"].degraded is False
        assert result.suggestions["2"].degraded is True
        assert result.errors == [{"model": "fast", "items": 1, "error": "AI request failed"}]

    def test_unparseable_chunk_degrades(self, service: AIClassificationService) -> None:
        with patch.object(AIClassificationService, "_call_completion", return_value="I cannot help"):
            result = service.classify_batch({"0": "a"}, CATEGORIES, "fast")

        assert result.suggestions["0"].degraded is True
        assert len(result.errors) == 1


class TestClassify:
    """Tests for fast/strong escalation."""

    def test_weak_results_escalated(self, service: AIClassificationService) -> None:
        fast = completion(
            [
                {"id": "0", "clean_name": "Maybe", "category": "Groceries", "confidence": 0.5},
                {"id": "1", "clean_name": "Sure", "category": "Dining Out", "confidence": 0.9},
            ]
        )
        strong = completion(
            [{"id": "0", "clean_name": "Corner Deli", "category": "Groceries", "confidence": 0.95}]
        )
        with patch.object(
            AIClassificationService, "_call_completion", side_effect=[fast, strong]
        ) as mock_call:
            result = service.classify({"0": "ZXQ", "1": "SQ *MY COFFEE"}, CATEGORIES)

        assert result.suggestions["0"].clean_name == "Corner Deli"
        assert result.suggestions["0"].model == "llama-3.3-70b-versatile"
        assert result.suggestions["1"].model == "llama-3.1-8b-instant"

        strong_call = mock_call.call_args_list[1]
        assert strong_call.args[0] == "llama-3.3-70b-versatile"
        assert 'id "0"' in strong_call.args[2]
        assert 'id "1"' not in strong_call.args[2]

    def test_no_escalation_when_confident(self, service: AIClassificationService) -> None:
        fast = completion([{"id": "0", "clean_name": "A", "category": "Groceries", "confidence": 0.8}])
        with patch.object(
            AIClassificationService, "_call_completion", return_value=fast
        ) as mock_call:
            service.classify({"0": "a"}, CATEGORIES)

        assert mock_call.call_count == 1

    def test_failed_strong_call_keeps_fast_result(self, service: AIClassificationService) -> None:
        fast = completion([{"id": "0", "clean_name": "Maybe", "category": "Groceries", "confidence": 0.5}])
        with patch.object(AIClassificationService, "_call_completion", side_effect=[fast, None]):
            result = service.classify({"0": "ZXQ"}, CATEGORIES)

        assert result.suggestions["0"].clean_name == "Maybe"
        assert result.suggestions["0"].confidence == 0.5
        assert len(result.errors) == 1

    def test_empty_input(self, service: AIClassificationService) -> None:
        with patch.object(AIClassificationService, "_call_completion") as mock_call:
            result = service.classify({}, CATEGORIES)

        assert result.suggestions == {}
        mock_call.assert_not_called()
