"""Tests for the OpenAI client wrapper."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from contaflix.clients.openai_client import (
    LLMNotConfiguredError,
    OpenAIClient,
    extract_json_object,
)


def _completion(content: str, finish_reason: str = "stop") -> MagicMock:
    choice = MagicMock()
    choice.message.content = content
    choice.finish_reason = finish_reason
    response = MagicMock()
    response.choices = [choice]
    response.usage.prompt_tokens = 120
    response.usage.completion_tokens = 40
    return response


class TestExtractJsonObject:
    def test_extracts_embedded_object(self):
        content = 'Segue a análise:\n```json\n{"ai_anomalies": []}\n```'

        assert extract_json_object(content) == {"ai_anomalies": []}

    def test_invalid_json(self):
        assert extract_json_object("{not json}") is None

    def test_no_object(self):
        assert extract_json_object("sem anomalias") is None


class TestOpenAIClient:
    """Tests for OpenAIClient."""

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with pytest.raises(LLMNotConfiguredError):
            OpenAIClient()

    def test_initialization_with_custom_params(self):
        client = OpenAIClient(api_key="sk-test", model="gpt-4o", max_tokens=500, temperature=0.0)

        assert client._model == "gpt-4o"
        assert client._max_tokens == 500
        assert client._temperature == 0.0

    def test_defaults_from_settings(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

        client = OpenAIClient()

        assert client._model == "gpt-4o-mini"
        assert client._max_tokens == 1000
        assert client._temperature == 0.3

    @pytest.mark.asyncio
    async def test_generate_maps_response(self):
        client = OpenAIClient(api_key="sk-test")
        create = AsyncMock(return_value=_completion("ok", finish_reason="length"))

        with patch.object(client._client.chat.completions, "create", create):
            response = await client.generate("system", "user")

        assert response.content == "ok"
        assert response.stop_reason == "max_tokens"
        assert response.usage == {"input_tokens": 120, "output_tokens": 40}
        kwargs = create.call_args.kwargs
        assert kwargs["max_tokens"] == 1000
        assert kwargs["temperature"] == 0.3
        assert kwargs["messages"][0] == {"role": "system", "content": "system"}

    @pytest.mark.asyncio
    async def test_newer_models_use_completion_tokens(self):
        client = OpenAIClient(api_key="sk-test", model="gpt-5-nano")
        create = AsyncMock(return_value=_completion("ok"))

        with patch.object(client._client.chat.completions, "create", create):
            await client.generate("system", "user")

        kwargs = create.call_args.kwargs
        assert kwargs["max_completion_tokens"] == 1000
        assert "max_tokens" not in kwargs
        assert "temperature" not in kwargs

    @pytest.mark.asyncio
    async def test_generate_json(self):
        client = OpenAIClient(api_key="sk-test")
        create = AsyncMock(return_value=_completion('{"ai_anomalies": [{"type": "x"}]}'))

        with patch.object(client._client.chat.completions, "create", create):
            parsed = await client.generate_json("system", "user")

        assert parsed == {"ai_anomalies": [{"type": "x"}]}
