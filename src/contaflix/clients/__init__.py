"""LLM client implementations for ContaFlix."""

from contaflix.clients.openai_client import (
    LLMNotConfiguredError,
    OpenAIClient,
    OpenAIResponse,
    extract_json_object,
)

__all__ = [
    "LLMNotConfiguredError",
    "OpenAIClient",
    "OpenAIResponse",
    "extract_json_object",
]
