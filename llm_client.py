# llm_client.py
"""Chat-completion helpers for the hosted LLM providers (OpenAI, Anthropic Claude)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Union

import requests  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

OPENAI_ENDPOINT = "https://api.openai.com/v1/chat/completions"
CLAUDE_ENDPOINT = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


class LlmProvider(str, Enum):
    OPENAI = "openai"
    CLAUDE = "claude"


SUPPORTED_MODELS: dict[LlmProvider, tuple[str, ...]] = {
    LlmProvider.OPENAI: ("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"),
    LlmProvider.CLAUDE: (
        "claude-sonnet-4-5-20250929",
        "claude-opus-4-6",
        "claude-haiku-4-5-20251001",
    ),
}


@dataclass(frozen=True)
class LlmSettings:
    provider: LlmProvider
    model: str
    api_key: str
    timeout: int = 30


@dataclass(frozen=True)
class CompletionText:
    text: str


@dataclass(frozen=True)
class CompletionError:
    """``kind`` is one of ``http``, ``empty_response``, ``transport``, ``configuration``."""

    kind: str
    status: Optional[int] = None
    body: str = ""

    def describe(self) -> str:
        if self.kind == "http":
            return f"LLM request failed ({self.status}): {self.body}"
        if self.kind == "empty_response":
            return "LLM returned an empty response."
        return self.body or self.kind


CompletionResult = Union[CompletionText, CompletionError]


class CompletionProvider(Protocol):
    def complete(
        self, settings: LlmSettings, system_prompt: str, user_message: str, max_tokens: int
    ) -> CompletionResult: ...


class OpenAICompletion:
    """OpenAI chat completions: bearer auth, system prompt as the first message."""

    endpoint = OPENAI_ENDPOINT

    def complete(
        self, settings: LlmSettings, system_prompt: str, user_message: str, max_tokens: int
    ) -> CompletionResult:
        payload = {
            "model": settings.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "max_tokens": max_tokens,
        }
        headers = {
            "Authorization": f"Bearer {settings.api_key}",
            "Content-Type": "application/json",
        }
        return _post_completion(self.endpoint, payload, headers, settings.timeout, _parse_openai)


class ClaudeCompletion:
    """Anthropic messages API: ``x-api-key`` auth, system prompt as a top-level field."""

    endpoint = CLAUDE_ENDPOINT

    def complete(
        self, settings: LlmSettings, system_prompt: str, user_message: str, max_tokens: int
    ) -> CompletionResult:
        payload = {
            "model": settings.model,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_message}],
            "max_tokens": max_tokens,
        }
        headers = {
            "x-api-key": settings.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
        }
        return _post_completion(self.endpoint, payload, headers, settings.timeout, _parse_claude)


_PROVIDERS: dict[LlmProvider, CompletionProvider] = {
    LlmProvider.OPENAI: OpenAICompletion(),
    LlmProvider.CLAUDE: ClaudeCompletion(),
}


def parse_provider(value: Any) -> Optional[LlmProvider]:
    if isinstance(value, LlmProvider):
        return value
    try:
        return LlmProvider(str(value or "").strip().lower())
    except ValueError:
        return None


def get_provider(kind: LlmProvider) -> CompletionProvider:
    return _PROVIDERS[kind]


def complete(
    settings: Optional[LlmSettings], system_prompt: str, user_message: str, max_tokens: int = 400
) -> CompletionResult:
    """Run one completion against the configured provider.

    Never raises. Callers must keep a deterministic reply ready for any
    :class:`CompletionError`.
    """

    if settings is None or not settings.api_key:
        return CompletionError(kind="configuration", body="LLM API key is not configured.")
    if not settings.model:
        return CompletionError(kind="configuration", body="LLM model is not configured.")
    return get_provider(settings.provider).complete(
        settings, system_prompt, user_message, max_tokens
    )


def _post_completion(
    endpoint: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout: int,
    parser,
) -> CompletionResult:
    try:
        response = requests.post(endpoint, json=payload, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        logger.warning("llm_request_failed", extra={"endpoint": endpoint, "error": str(exc)})
        return CompletionError(kind="transport", body=str(exc))

    if response.status_code != 200:
        logger.warning(
            "llm_http_error",
            extra={"endpoint": endpoint, "status": response.status_code},
        )
        return CompletionError(kind="http", status=response.status_code, body=response.text)

    try:
        data = response.json()
    except ValueError:
        return CompletionError(kind="empty_response")

    text = parser(data) if isinstance(data, dict) else ""
    if not text or not text.strip():
        logger.warning("llm_empty_response", extra={"endpoint": endpoint})
        return CompletionError(kind="empty_response")
    return CompletionText(text=text.strip())


def _parse_openai(data: dict[str, Any]) -> str:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message") if isinstance(choices[0], dict) else None
    if not isinstance(message, dict):
        return ""
    return str(message.get("content") or "")


def _parse_claude(data: dict[str, Any]) -> str:
    content = data.get("content")
    if not isinstance(content, list):
        return ""
    parts = [
        str(block.get("text", ""))
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "".join(parts)
