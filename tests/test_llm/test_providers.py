"""Tests for LLM providers: request shapes, response parsing and selection."""

import json
from unittest.mock import MagicMock

import httpx
import pytest

from sean.config import Config
from sean.llm.providers import (
    ClaudeProvider,
    GrokProvider,
    LLMError,
    OpenAIProvider,
    get_provider,
    provider_from_env,
)
from tests.conftest import CONFIG_DIR


def _chat_client(captured: list, body=None, status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        payload = body if body is not None else {
            "choices": [{"message": {"content": "hello"}}],
        }
        return httpx.Response(status, json=payload)
    return httpx.Client(transport=httpx.MockTransport(handler))


# ── Chat completions (OpenAI / Grok) ──────────────────────


class TestChatCompletions:
    def test_openai_request(self):
        captured = []
        provider = OpenAIProvider("sk-test", "gpt-4o-mini", http_client=_chat_client(captured))
        assert provider.complete("be brief", "hi", max_tokens=50) == "hello"

        request = captured[0]
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "gpt-4o-mini"
        assert body["max_tokens"] == 50
        assert body["messages"] == [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ]

    def test_no_system_message_when_none(self):
        captured = []
        provider = GrokProvider("xai-test", "grok-beta", http_client=_chat_client(captured))
        provider.complete(None, "hi")
        body = json.loads(captured[0].content)
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert str(captured[0].url) == "https://api.x.ai/v1/chat/completions"

    def test_custom_url(self):
        captured = []
        provider = OpenAIProvider(
            "k", "m", url="http://localhost:8080/v1/chat/completions",
            http_client=_chat_client(captured),
        )
        provider.complete(None, "hi")
        assert captured[0].url.host == "localhost"

    def test_http_error_raises(self):
        provider = OpenAIProvider("k", "m", http_client=_chat_client([], body={}, status=500))
        with pytest.raises(httpx.HTTPStatusError):
            provider.complete(None, "hi")

    @pytest.mark.parametrize("body", [{}, {"choices": []}, {"choices": [{}]}])
    def test_malformed_body_raises(self, body):
        provider = OpenAIProvider("k", "m", http_client=_chat_client([], body=body))
        with pytest.raises(LLMError):
            provider.complete(None, "hi")


# ── Claude ────────────────────────────────────────────────


class TestClaude:
    def _client(self, text="hello"):
        client = MagicMock()
        block = MagicMock()
        block.text = text
        client.messages.create.return_value = MagicMock(content=[block])
        return client

    def test_complete(self):
        client = self._client()
        provider = ClaudeProvider("sk-ant", client=client)
        assert provider.complete("be brief", "hi", max_tokens=50) == "hello"
        client.messages.create.assert_called_once_with(
            model="claude-3-haiku-20240307",
            max_tokens=50,
            messages=[{"role": "user", "content": "hi"}],
            system="be brief",
        )

    def test_system_omitted_when_none(self):
        client = self._client()
        ClaudeProvider("sk-ant", client=client).complete(None, "hi")
        assert "system" not in client.messages.create.call_args.kwargs

    def test_empty_content_raises(self):
        client = MagicMock()
        client.messages.create.return_value = MagicMock(content=[])
        with pytest.raises(LLMError):
            ClaudeProvider("sk-ant", client=client).complete(None, "hi")


# ── Selection ─────────────────────────────────────────────


class TestGetProvider:
    @pytest.mark.parametrize("name,cls", [
        ("claude", ClaudeProvider),
        ("OpenAI", OpenAIProvider),
        (" grok ", GrokProvider),
    ])
    def test_known(self, name, cls):
        provider = get_provider(name, "key")
        assert isinstance(provider, cls)
        assert provider.api_key == "key"

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            get_provider("gemini", "key")

    def test_config_overrides(self, tmp_path):
        (tmp_path / "settings.yaml").write_text(
            "llm:\n"
            "  timeout: 3\n"
            "  providers:\n"
            "    openai:\n"
            "      model: gpt-test\n"
            "      url: http://proxy.local/chat\n"
        )
        provider = get_provider("openai", "key", Config(tmp_path))
        assert provider.model == "gpt-test"
        assert provider.url == "http://proxy.local/chat"
        assert provider.timeout == 3.0

    def test_repo_config_models(self):
        provider = get_provider("grok", "key", Config(CONFIG_DIR))
        assert provider.model == "grok-beta"


class TestProviderFromEnv:
    def test_none_without_key(self, monkeypatch):
        monkeypatch.delenv("LLM_API_KEY", raising=False)
        assert provider_from_env() is None

    def test_default_is_claude(self, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "key")
        monkeypatch.delenv("LLM_PROVIDER", raising=False)
        assert isinstance(provider_from_env(), ClaudeProvider)

    def test_named_provider(self, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "key")
        monkeypatch.setenv("LLM_PROVIDER", "openai")
        assert isinstance(provider_from_env(), OpenAIProvider)

    def test_unknown_provider_is_none(self, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "key")
        monkeypatch.setenv("LLM_PROVIDER", "gemini")
        assert provider_from_env() is None
