"""OpenAI GPT client used for LLM-assisted analysis."""

import json
import re
from dataclasses import dataclass
from typing import Any

import openai
import structlog

from contaflix.config import get_settings

logger = structlog.get_logger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class LLMNotConfiguredError(Exception):
    """Raised when no API key is available for the LLM client."""

    pass


@dataclass
class OpenAIResponse:
    """Response from OpenAI API."""

    content: str
    stop_reason: str
    usage: dict[str, int]


def extract_json_object(content: str) -> dict[str, Any] | None:
    """Parse the outermost ``{...}`` block of a reply, if any."""
    match = _JSON_OBJECT.search(content)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class OpenAIClient:
    """Async client for OpenAI chat completions.

    Also supports OpenAI-compatible APIs via custom base_url.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ):
        settings = get_settings()
        if api_key is None and settings.openai_api_key is not None:
            api_key = settings.openai_api_key.get_secret_value()
        if not api_key:
            raise LLMNotConfiguredError("OPENAI_API_KEY is not configured")

        self._model = model or settings.gpt_model
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._temperature = temperature if temperature is not None else settings.llm_temperature

        client_kwargs: dict[str, Any] = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = openai.AsyncOpenAI(**client_kwargs)
        self._logger = logger.bind(client="openai", model=self._model)

    def _parse_response(
        self, response: openai.types.chat.ChatCompletion
    ) -> OpenAIResponse:
        """Parse OpenAI response into our format."""
        content = response.choices[0].message.content or ""

        finish_reason = response.choices[0].finish_reason
        stop_reason_map = {
            "stop": "end_turn",
            "length": "max_tokens",
            "content_filter": "content_filter",
        }
        stop_reason = stop_reason_map.get(finish_reason or "stop", "end_turn")

        return OpenAIResponse(
            content=content,
            stop_reason=stop_reason,
            usage={
                "input_tokens": response.usage.prompt_tokens if response.usage else 0,
                "output_tokens": response.usage.completion_tokens if response.usage else 0,
            },
        )

    async def generate(self, system_prompt: str, user_prompt: str) -> OpenAIResponse:
        """Generate a single-turn reply.

        Args:
            system_prompt: The system prompt framing the analyst role.
            user_prompt: The request, usually carrying serialized data.

        Returns:
            OpenAIResponse with content and usage info.
        """
        self._logger.debug("generating_response", prompt_chars=len(user_prompt))

        # GPT-5+ models use max_completion_tokens instead of max_tokens
        is_gpt5_plus = self._model.startswith("gpt-5") or self._model.startswith("o3")
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if "nano" not in self._model:
            kwargs["temperature"] = self._temperature
        if is_gpt5_plus:
            kwargs["max_completion_tokens"] = self._max_tokens
        else:
            kwargs["max_tokens"] = self._max_tokens

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            self._logger.error("api_error", error=str(e))
            raise

        parsed = self._parse_response(response)
        self._logger.info(
            "response_generated",
            stop_reason=parsed.stop_reason,
            input_tokens=parsed.usage["input_tokens"],
            output_tokens=parsed.usage["output_tokens"],
        )
        return parsed

    async def generate_json(self, system_prompt: str, user_prompt: str) -> dict[str, Any] | None:
        """Generate a reply and extract its JSON object; None when unparseable."""
        response = await self.generate(system_prompt, user_prompt)
        parsed = extract_json_object(response.content)
        if parsed is None:
            self._logger.warning("json_parse_failed", content_chars=len(response.content))
        return parsed
