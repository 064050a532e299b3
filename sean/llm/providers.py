"""LLM provider abstraction used by allocation fallback and bootstrap answering.

Each provider knows its own request and response shape. Callers only see
complete(system, prompt, max_tokens) -> str and the provider's name, which
is stored on cached answers.

Providers are selected by a configuration string (claude, openai, grok);
get_provider() is the single place that maps names to classes.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod

import anthropic
import httpx

from sean.config import Config

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

DEFAULT_MODELS = {
    "claude": "claude-3-haiku-20240307",
    "openai": "gpt-4o-mini",
    "grok": "grok-beta",
}

DEFAULT_URLS = {
    "openai": "https://api.openai.com/v1/chat/completions",
    "grok": "https://api.x.ai/v1/chat/completions",
}


class LLMError(Exception):
    """Raised when a provider returns an unusable response."""


class LLMProvider(ABC):
    """A chat-completion backend."""

    name: str = ""

    def __init__(self, api_key: str, model: str, timeout: float = DEFAULT_TIMEOUT):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    @abstractmethod
    def build_request(self, system: str | None, prompt: str, max_tokens: int) -> dict:
        """Provider-specific request body."""

    @abstractmethod
    def parse_response(self, body) -> str:
        """Extract the completion text from a provider response."""

    @abstractmethod
    def complete(self, system: str | None, prompt: str, max_tokens: int = 500) -> str:
        """Send one prompt and return the model's text."""


class ClaudeProvider(LLMProvider):
    """Anthropic Messages API via the official SDK."""

    name = "claude"

    def __init__(self, api_key: str, model: str = DEFAULT_MODELS["claude"],
                 timeout: float = DEFAULT_TIMEOUT, client=None):
        super().__init__(api_key, model, timeout)
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def build_request(self, system: str | None, prompt: str, max_tokens: int) -> dict:
        request = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            request["system"] = system
        return request

    def parse_response(self, body) -> str:
        content = getattr(body, "content", None)
        if not content:
            raise LLMError("Claude response has no content")
        text = getattr(content[0], "text", None)
        if text is None:
            raise LLMError("Claude response content has no text block")
        return text

    def complete(self, system: str | None, prompt: str, max_tokens: int = 500) -> str:
        response = self.client.messages.create(
            **self.build_request(system, prompt, max_tokens)
        )
        return self.parse_response(response)


class ChatCompletionsProvider(LLMProvider):
    """OpenAI-style /chat/completions endpoint over plain HTTP."""

    default_url = ""

    def __init__(self, api_key: str, model: str, timeout: float = DEFAULT_TIMEOUT,
                 url: str | None = None, http_client: httpx.Client | None = None):
        super().__init__(api_key, model, timeout)
        self.url = url or self.default_url
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=self.timeout)
        return self._http_client

    def build_request(self, system: str | None, prompt: str, max_tokens: int) -> dict:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        return {"model": self.model, "max_tokens": max_tokens, "messages": messages}

    def parse_response(self, body) -> str:
        try:
            return body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise LLMError(f"{self.name} response missing choices[0].message.content") from e

    def complete(self, system: str | None, prompt: str, max_tokens: int = 500) -> str:
        response = self.http_client.post(
            self.url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json=self.build_request(system, prompt, max_tokens),
        )
        response.raise_for_status()
        return self.parse_response(response.json())


class OpenAIProvider(ChatCompletionsProvider):
    name = "openai"
    default_url = DEFAULT_URLS["openai"]


class GrokProvider(ChatCompletionsProvider):
    name = "grok"
    default_url = DEFAULT_URLS["grok"]


PROVIDERS: dict[str, type[LLMProvider]] = {
    "claude": ClaudeProvider,
    "openai": OpenAIProvider,
    "grok": GrokProvider,
}


def get_provider(name: str, api_key: str, config: Config | None = None) -> LLMProvider:
    """Build a provider by name (case-insensitive).

    Raises:
        ValueError: If the name is not a known provider.
    """
    key = (name or "").strip().lower()
    cls = PROVIDERS.get(key)
    if cls is None:
        raise ValueError(
            f"Unknown LLM provider '{name}'. Expected one of: {', '.join(PROVIDERS)}"
        )

    overrides = config.llm_provider_settings(key) if config else {}
    timeout = float(config.llm.get("timeout", DEFAULT_TIMEOUT)) if config else DEFAULT_TIMEOUT
    model = overrides.get("model", DEFAULT_MODELS[key])
    if issubclass(cls, ChatCompletionsProvider):
        return cls(api_key, model, timeout=timeout, url=overrides.get("url"))
    return cls(api_key, model, timeout=timeout)


def provider_from_env(config: Config | None = None) -> LLMProvider | None:
    """Provider configured by LLM_PROVIDER / LLM_API_KEY, or None without a key."""
    api_key = os.environ.get("LLM_API_KEY")
    if not api_key:
        return None
    default = config.llm.get("default_provider", "claude") if config else "claude"
    name = os.environ.get("LLM_PROVIDER", default)
    try:
        return get_provider(name, api_key, config)
    except ValueError as e:
        logger.warning("LLM provider not available: %s", e)
        return None
