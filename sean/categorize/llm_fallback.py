"""LLM allocation fallback for descriptions no rule or keyword can place.

Answers are cached permanently by normalized pattern, so each distinct
pattern costs at most one external call. Every failure mode (no provider,
HTTP error, unparseable reply, unknown category) degrades to None.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

from sean.audit import record_audit
from sean.categorize.normalize import normalize_description
from sean.config import Config
from sean.database.models import LLMCacheEntry
from sean.database.repository import Repository
from sean.llm.providers import LLMProvider

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95
ALLOCATION_MAX_TOKENS = 500

_JSON_OBJECT = re.compile(r'\{.*?"category".*?\}', re.DOTALL)


@dataclass
class LLMAllocation:
    category: str
    category_label: str
    confidence: float
    reasoning: str
    provider: str
    cached: bool


def build_allocation_prompt(description: str, config: Config) -> str:
    category_list = "\n".join(
        f"- {c['code']}: {c['label']}" for c in config.categories
    )
    return (
        "You are a South African accounting assistant. Categorize this bank "
        "transaction into one of the following categories.\n\n"
        f'Transaction description: "{description}"\n\n'
        f"Available categories:\n{category_list}\n\n"
        "Respond in this exact JSON format only:\n"
        '{"category": "CATEGORY_CODE", "confidence": 0.8, "reasoning": "Brief explanation"}\n\n'
        'If truly uncertain, use "OTHER" with lower confidence.'
    )


def parse_allocation_response(text: str, config: Config) -> tuple[str, float, str] | None:
    """Pull (category, confidence, reasoning) out of a model reply."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        logger.error("No JSON object in LLM allocation response: %s", (text or "")[:200])
        return None

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.error("Failed to parse LLM allocation response: %s", match.group(0)[:200])
        return None

    category = data.get("category")
    if not category or not config.category_by_code(category):
        logger.warning("LLM returned invalid category '%s'", category)
        return None

    try:
        confidence = float(data.get("confidence") or DEFAULT_CONFIDENCE)
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE
    confidence = max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, confidence))

    return category, confidence, str(data.get("reasoning") or "")


def get_llm_allocation(
    description: str,
    repo: Repository,
    config: Config,
    provider: LLMProvider | None = None,
) -> LLMAllocation | None:
    """Categorize via cache or LLM.

    Returns:
        LLMAllocation (cached=True on a cache hit), or None when no provider
        is configured or the call/parse failed.
    """
    normalized = normalize_description(description)

    cached = repo.get_llm_cache(normalized)
    if cached:
        repo.increment_llm_cache_usage(cached.id)
        logger.debug("LLM cache hit for '%s'", normalized)
        return LLMAllocation(
            category=cached.suggested_category,
            category_label=config.category_label(cached.suggested_category),
            confidence=cached.confidence,
            reasoning=cached.reasoning or "",
            provider=cached.provider,
            cached=True,
        )

    if provider is None:
        logger.warning("No LLM provider configured, skipping fallback for '%s'", normalized)
        return None

    max_tokens = int(config.llm.get("allocation_max_tokens", ALLOCATION_MAX_TOKENS))
    try:
        response = provider.complete(
            None, build_allocation_prompt(description, config), max_tokens
        )
        parsed = parse_allocation_response(response, config)
        if parsed is None:
            return None
        category, confidence, reasoning = parsed

        entry = repo.upsert_llm_cache(LLMCacheEntry(
            normalized_pattern=normalized,
            suggested_category=category,
            confidence=confidence,
            reasoning=reasoning,
            provider=provider.name,
        ))
        record_audit(
            repo, "LLM_ALLOCATION", "AllocationLLMCache",
            entry.id if entry else None,
            details={
                "description": description,
                "category": category,
                "confidence": confidence,
                "provider": provider.name,
            },
        )
    except Exception:
        logger.exception("LLM allocation failed for '%s' via %s", normalized, provider.name)
        return None

    logger.info(
        "LLM (%s) allocated '%s' -> %s (%.2f)",
        provider.name, normalized, category, confidence,
    )
    return LLMAllocation(
        category=category,
        category_label=config.category_label(category),
        confidence=confidence,
        reasoning=reasoning,
        provider=provider.name,
        cached=False,
    )
