"""Category suggestion: 5-stage fallback chain over learned and static knowledge.

Stages (first hit wins):
1. Client exact       — client-scoped learned rule for the exact pattern
2. Client keyword     — a client's custom category keyword in the description
3. Exact learned      — global (or client) rule for the exact pattern
4. Fuzzy learned      — token overlap against the most-reinforced rules
5. Keyword scoring    — static taxonomy keywords, longest matches win

If nothing matches the suggestion has no category and zero confidence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sean.categorize.normalize import extract_keywords, normalize_description
from sean.config import Config
from sean.database.models import AllocationRule
from sean.database.repository import Repository

logger = logging.getLogger(__name__)

MAX_RULE_CONFIDENCE = 0.99
CLIENT_KEYWORD_CONFIDENCE = 0.85
KEYWORD_CONFIDENCE_CAP = 0.85
ALTERNATIVE_CONFIDENCE_CAP = 0.7
FUZZY_CANDIDATE_THRESHOLD = 0.4
FUZZY_ACCEPT_THRESHOLD = 0.6
FUZZY_RULE_LIMIT = 500


@dataclass
class Alternative:
    code: str
    label: str
    confidence: float


@dataclass
class Suggestion:
    """Result of suggest_category()."""
    category: str | None
    category_label: str | None
    confidence: float
    match_type: str  # exact | learned | keyword | client_keyword | none
    rule_id: str | None = None
    alternatives: list[Alternative] = field(default_factory=list)


def suggest_category(
    description: str,
    repo: Repository,
    config: Config,
    client_id: str | None = None,
) -> Suggestion:
    """Suggest a category for a raw bank description."""
    normalized = normalize_description(description)
    keywords = extract_keywords(description)

    if client_id:
        result = _match_client_exact(normalized, client_id, repo, config)
        if result:
            return result
        result = _match_client_keyword(description, client_id, repo)
        if result:
            return result

    rule = repo.get_exact_rule(normalized, client_id)
    if rule:
        logger.debug("Exact rule %s matched '%s'", rule.id, normalized)
        return _from_rule(rule, config, "exact", min(rule.confidence, MAX_RULE_CONFIDENCE))

    limit = config.allocation.get("fuzzy_rule_limit", FUZZY_RULE_LIMIT)
    result = _match_fuzzy(keywords, repo.get_rules_in_scope(client_id, limit), config)
    if result:
        return result

    result = _match_keywords(description, config)
    if result:
        return result

    return Suggestion(category=None, category_label=None, confidence=0.0, match_type="none")


def batch_suggest(
    descriptions: list[str],
    repo: Repository,
    config: Config,
    client_id: str | None = None,
) -> list[Suggestion]:
    return [suggest_category(d, repo, config, client_id) for d in descriptions]


def _from_rule(
    rule: AllocationRule, config: Config, match_type: str, confidence: float,
    label: str | None = None,
) -> Suggestion:
    return Suggestion(
        category=rule.category,
        category_label=label or config.category_label(rule.category),
        confidence=confidence,
        match_type=match_type,
        rule_id=rule.id,
    )


def _match_client_exact(
    normalized: str, client_id: str, repo: Repository, config: Config
) -> Suggestion | None:
    rule = repo.get_client_rule(normalized, client_id)
    if rule is None:
        return None
    custom = repo.get_client_category(client_id, rule.category)
    label = custom.label if custom else None
    return _from_rule(
        rule, config, "exact", min(rule.confidence, MAX_RULE_CONFIDENCE), label=label
    )


def _match_client_keyword(
    description: str, client_id: str, repo: Repository
) -> Suggestion | None:
    lowered = description.lower()
    for cat in repo.get_client_categories(client_id):
        for kw in cat.keywords:
            if kw and kw.lower() in lowered:
                return Suggestion(
                    category=cat.code,
                    category_label=cat.label,
                    confidence=CLIENT_KEYWORD_CONFIDENCE,
                    match_type="client_keyword",
                )
    return None


def _match_fuzzy(
    keywords: list[str], rules: list[AllocationRule], config: Config
) -> Suggestion | None:
    """Best rule by keyword overlap ratio; accepted only above 0.6."""
    best_rule: AllocationRule | None = None
    best_score = 0.0

    for rule in rules:
        rule_tokens = [t for t in rule.normalized_pattern.split(" ") if len(t) > 2]
        if not rule_tokens:
            continue
        overlap = sum(
            1 for kw in keywords
            if any(kw in tok or tok in kw for tok in rule_tokens)
        )
        score = overlap / max(len(keywords), len(rule_tokens))
        if score > FUZZY_CANDIDATE_THRESHOLD and score > best_score:
            best_score = score
            best_rule = rule

    if best_rule is None or best_score <= FUZZY_ACCEPT_THRESHOLD:
        return None

    confidence = min(best_score * best_rule.confidence, MAX_RULE_CONFIDENCE)
    logger.debug(
        "Fuzzy rule %s matched with score %.2f", best_rule.id, best_score
    )
    return _from_rule(best_rule, config, "learned", confidence)


def _match_keywords(description: str, config: Config) -> Suggestion | None:
    """Score every taxonomy category by total length of matched keywords."""
    lowered = description.lower()
    scores: list[tuple[dict, int]] = []
    for cat in config.categories:
        score = sum(len(kw) for kw in cat["keywords"] if kw in lowered)
        if score > 0:
            scores.append((cat, score))

    if not scores:
        return None

    scores.sort(key=lambda s: s[1], reverse=True)
    max_possible = config.max_keyword_length * 2
    best, best_score = scores[0]

    return Suggestion(
        category=best["code"],
        category_label=best["label"],
        confidence=min(best_score / max_possible, KEYWORD_CONFIDENCE_CAP),
        match_type="keyword",
        alternatives=[
            Alternative(
                code=cat["code"],
                label=cat["label"],
                confidence=min(score / max_possible, ALTERNATIVE_CONFIDENCE_CAP),
            )
            for cat, score in scores[1:4]
        ],
    )
