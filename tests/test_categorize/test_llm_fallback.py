"""Tests for the LLM allocation fallback and its permanent cache."""

import json
from unittest.mock import MagicMock

import pytest

from sean.categorize.llm_fallback import (
    build_allocation_prompt,
    get_llm_allocation,
    parse_allocation_response,
)
from sean.config import Config
from sean.database.repository import Repository
from tests.conftest import CONFIG_DIR, MIGRATIONS_DIR


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def config():
    return Config(CONFIG_DIR)


def _provider(category="SUBSCRIPTIONS", confidence=0.8, reasoning="Software licence"):
    provider = MagicMock()
    provider.name = "claude"
    provider.complete.return_value = (
        "Here you go:\n"
        + json.dumps({"category": category, "confidence": confidence, "reasoning": reasoning})
    )
    return provider


class TestBuildPrompt:
    def test_lists_every_category(self, config):
        prompt = build_allocation_prompt("QWERTY LABS", config)
        assert '"QWERTY LABS"' in prompt
        for code in config.category_codes:
            assert f"- {code}: " in prompt
        assert '"OTHER"' in prompt


class TestParseResponse:
    def test_json_embedded_in_prose(self, config):
        text = 'Sure. {"category": "FUEL", "confidence": 0.7, "reasoning": "petrol"} Done.'
        assert parse_allocation_response(text, config) == ("FUEL", 0.7, "petrol")

    def test_confidence_clamped_high(self, config):
        text = '{"category": "FUEL", "confidence": 0.99}'
        assert parse_allocation_response(text, config)[1] == pytest.approx(0.95)

    def test_confidence_clamped_low(self, config):
        text = '{"category": "FUEL", "confidence": 0.01}'
        assert parse_allocation_response(text, config)[1] == pytest.approx(0.1)

    def test_missing_confidence_defaults(self, config):
        text = '{"category": "FUEL"}'
        category, confidence, reasoning = parse_allocation_response(text, config)
        assert confidence == pytest.approx(0.5)
        assert reasoning == ""

    def test_unknown_category(self, config):
        assert parse_allocation_response('{"category": "CRYPTO"}', config) is None

    def test_no_json(self, config):
        assert parse_allocation_response("I think it is fuel.", config) is None

    def test_malformed_json(self, config):
        assert parse_allocation_response('{"category": FUEL}', config) is None


class TestGetLLMAllocation:
    def test_calls_provider_and_caches(self, repo, config):
        provider = _provider()
        result = get_llm_allocation("QWERTY LABS R 99.00", repo, config, provider)
        assert result.category == "SUBSCRIPTIONS"
        assert result.confidence == pytest.approx(0.8)
        assert result.provider == "claude"
        assert result.cached is False
        entry = repo.get_llm_cache("qwerty labs")
        assert entry.suggested_category == "SUBSCRIPTIONS"
        assert entry.used_count == 1

    def test_provider_called_once_per_pattern(self, repo, config):
        provider = _provider()
        get_llm_allocation("QWERTY LABS R 99.00", repo, config, provider)
        second = get_llm_allocation("QWERTY LABS R 120.00", repo, config, provider)
        assert provider.complete.call_count == 1
        assert second.cached is True
        assert second.category == "SUBSCRIPTIONS"
        assert repo.get_llm_cache("qwerty labs").used_count == 2

    def test_cache_hit_without_provider(self, repo, config):
        get_llm_allocation("QWERTY LABS", repo, config, _provider())
        result = get_llm_allocation("QWERTY LABS", repo, config, None)
        assert result.cached is True

    def test_no_provider_returns_none(self, repo, config):
        assert get_llm_allocation("QWERTY LABS", repo, config, None) is None
        assert repo.count_llm_cache() == 0

    def test_provider_error_returns_none(self, repo, config):
        provider = _provider()
        provider.complete.side_effect = RuntimeError("timeout")
        assert get_llm_allocation("QWERTY LABS", repo, config, provider) is None
        assert repo.count_llm_cache() == 0

    def test_unparseable_reply_not_cached(self, repo, config):
        provider = _provider(category="CRYPTO")
        assert get_llm_allocation("QWERTY LABS", repo, config, provider) is None
        assert repo.count_llm_cache() == 0

    def test_audits_external_call(self, repo, config):
        get_llm_allocation("QWERTY LABS", repo, config, _provider())
        get_llm_allocation("QWERTY LABS", repo, config, _provider())
        entries = repo.get_audit_entries("LLM_ALLOCATION")
        assert len(entries) == 1
        assert entries[0].details["provider"] == "claude"

    def test_uses_configured_max_tokens(self, repo, config):
        provider = _provider()
        get_llm_allocation("QWERTY LABS", repo, config, provider)
        system, prompt, max_tokens = provider.complete.call_args.args
        assert system is None
        assert max_tokens == 500
