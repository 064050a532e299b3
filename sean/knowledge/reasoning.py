"""Knowledge retrieval: answer a question from APPROVED knowledge items.

Pipeline (lexical only, no embeddings):
1. Candidates   — APPROVED items in global scope plus the client's own
2. Inference    — domain, topic and qualifiers (numbers, ages, phrases)
3. Filters      — qualifier, then domain, then topic
4. Relaxation   — if filters removed everything and the question had
                  numbers, fall back to first-word matching
5. Scoring      — +10 per long question word in the title, +1 in content;
                  top three kept
6. Answer       — best item's content with its citation, plus advisory
                  actions (teach, clarify, missing-year risk)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from uuid import uuid4

from sean.audit import record_audit
from sean.database.models import KnowledgeItem
from sean.database.repository import Repository
from sean.knowledge.citations import parse_citation_version
from sean.validation import VALID_LAYERS, validate_question

logger = logging.getLogger(__name__)

# Table order is match priority
DOMAIN_KEYWORDS: dict[str, list[str]] = {
    "VAT": ["vat", "value added", "input tax", "output tax"],
    "INCOME_TAX": ["income tax", "taxable income", "personal tax", "salary tax"],
    "COMPANY_TAX": ["company tax", "corporate tax", "business tax", "profit tax"],
    "PAYROLL": ["payroll", "salary", "wage", "employee tax", "paye"],
    "CAPITAL_GAINS_TAX": ["cgt", "capital gains", "investment income", "property sale"],
    "WITHHOLDING_TAX": ["withholding", "dividend tax", "interest tax"],
}

AGE_PATTERNS = [
    re.compile(r"\b(\d+)\+\b"),
    re.compile(r"aged\s+(\d+)"),
    re.compile(r"(\d+)\s+years?"),
    re.compile(r"under\s+(\d+)"),
    re.compile(r"(\d+)\s+to\s+(\d+)"),
    re.compile(r"(\d+)\s+and\s+older"),
    re.compile(r"(\d+)\s+and\s+above"),
]

QUALIFIER_PHRASES = ("rebate", "threshold", "rate", "limit", "allowance")

_NUMBER = re.compile(r"\d+")
_YEAR_REFERENCE = re.compile(r"\d{4}|current|year", re.IGNORECASE)

MAX_RESULTS = 3
TITLE_WORD_SCORE = 10
CONTENT_WORD_SCORE = 1

NO_KNOWLEDGE_ANSWER = (
    "I don't have knowledge about that specific question yet. "
    "Could you teach me using TEACH: with the relevant information?"
)


@dataclass
class Qualifiers:
    numbers: list[str] = field(default_factory=list)
    age_ranges: list[str] = field(default_factory=list)
    phrases: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.numbers or self.age_ranges or self.phrases)


@dataclass
class ScoredItem:
    item: KnowledgeItem
    score: int


@dataclass
class ProposedAction:
    """Advisory follow-up. Never executed automatically."""
    type: str
    title: str
    summary: str
    id: str = field(default_factory=lambda: f"proposed:{uuid4().hex[:12]}")
    requires_approval: bool = False
    confidence: float | None = None


@dataclass
class Citation:
    citation_id: str
    title: str


@dataclass
class ReasoningResult:
    answer: str
    citations: list[Citation]
    match_count: int
    inferred_domain: str
    inferred_topic: str
    applied_layer: str
    actions: list[ProposedAction] = field(default_factory=list)
    debug: dict = field(default_factory=dict)

    @property
    def has_relevant_kb(self) -> bool:
        return self.match_count > 0


def infer_domain(question: str) -> str:
    q = question.lower()
    for domain, keywords in DOMAIN_KEYWORDS.items():
        if any(kw in q for kw in keywords):
            return domain
    return "OTHER"


def infer_topic(question: str) -> str:
    q = question.lower()
    if "threshold" in q:
        return "THRESHOLD"
    if "rebate" in q:
        return "REBATE"
    if "bracket" in q or "rate" in q or "marginal" in q:
        return "BRACKET_RATE"
    return "GENERAL"


def extract_qualifiers(question: str) -> Qualifiers:
    q = question.lower()
    qualifiers = Qualifiers()
    qualifiers.numbers = list(dict.fromkeys(_NUMBER.findall(q)))
    for pattern in AGE_PATTERNS:
        match = pattern.search(q)
        if match:
            qualifiers.age_ranges.append(match.group(1) or match.group(0))
    qualifiers.phrases = [p for p in QUALIFIER_PHRASES if p in q]
    return qualifiers


def _combined_text(item: KnowledgeItem) -> str:
    return f"{item.title.lower()} {(item.content_text or '').lower()}"


def item_matches_qualifier(item: KnowledgeItem, qualifiers: Qualifiers) -> bool:
    """With no qualifiers everything matches; otherwise one must appear."""
    if qualifiers.is_empty():
        return True
    combined = _combined_text(item)
    return (
        any(n in combined for n in qualifiers.numbers)
        or any(a in combined for a in qualifiers.age_ranges)
        or any(p in combined for p in qualifiers.phrases)
    )


def item_matches_domain(item: KnowledgeItem, domain: str) -> bool:
    if domain == "OTHER":
        return True
    if item.primary_domain == "OTHER":
        # Untagged items still match when their text names the domain
        combined = _combined_text(item)
        if f"domain: {domain.lower()}" in combined or domain.lower() in combined:
            return True
    if item.primary_domain == domain:
        return True
    return domain in item.secondary_domains


def item_matches_topic(item: KnowledgeItem, topic: str, question: str) -> bool:
    combined = _combined_text(item)
    if topic == "THRESHOLD":
        about_rebate = "rebate" in combined
        return "threshold" in combined and (not about_rebate or "rebate" in question.lower())
    if topic == "REBATE":
        return "rebate" in combined
    if topic == "BRACKET_RATE":
        return "rate" in combined or "bracket" in combined or "marginal" in combined
    return True


def calculate_score(question: str, item: KnowledgeItem) -> int:
    title = item.title.lower()
    content = (item.content_text or "").lower()
    score = 0
    for word in question.lower().split():
        if len(word) <= 3:
            continue
        if word in title:
            score += TITLE_WORD_SCORE
        if word in content:
            score += CONTENT_WORD_SCORE
    return score


def pick_best_item(scored: list[ScoredItem]) -> ScoredItem:
    """Highest score, ties broken by highest citation version."""
    return sorted(
        scored,
        key=lambda s: (s.score, parse_citation_version(s.item.citation_id)),
        reverse=True,
    )[0]


def generate_answer(scored: list[ScoredItem]) -> str:
    if not scored:
        return NO_KNOWLEDGE_ANSWER
    best = scored[0] if len(scored) == 1 else pick_best_item(scored)
    return f"{best.item.content_text} [{best.item.citation_id}]"


def generate_actions(scored: list[ScoredItem], topic: str, question: str) -> list[ProposedAction]:
    if not scored:
        return [ProposedAction(
            type="SUGGEST_KB_TEACH",
            title="Teach system",
            summary="No matching knowledge base. Use TEACH: prefix to teach me about this topic.",
        )]
    if len(scored) > 1:
        return [ProposedAction(
            type="REQUEST_INFO",
            title="Request clarification",
            summary=(
                f"Found {len(scored)} matching items. "
                "More details would help narrow down the answer."
            ),
            confidence=0.6,
        )]
    if topic in ("THRESHOLD", "REBATE") and not _YEAR_REFERENCE.search(question):
        return [ProposedAction(
            type="FLAG_RISK",
            title="Missing year reference",
            summary=(
                "Threshold or rebate rules may vary by year. "
                "Please specify the tax year or period."
            ),
            confidence=0.5,
        )]
    return []


def reason(
    question: str,
    repo: Repository,
    client_id: str | None = None,
    layer: str | None = None,
    user_id: str | None = None,
) -> ReasoningResult:
    """Answer a question from the knowledge base.

    Raises:
        ValidationError: If the question is shorter than 3 or longer than
            1000 characters after trimming.
    """
    question = validate_question(question)
    layer = layer.upper() if layer and layer.upper() in VALID_LAYERS else None

    candidates = repo.get_approved_knowledge(client_id=client_id, layer=layer)
    domain = infer_domain(question)
    topic = infer_topic(question)
    qualifiers = extract_qualifiers(question)
    logger.debug(
        "Reasoning over %d candidates (domain=%s topic=%s qualifiers=%s)",
        len(candidates), domain, topic, qualifiers,
    )

    matched = [i for i in candidates if item_matches_qualifier(i, qualifiers)]
    after_qualifier = len(matched)
    matched = [i for i in matched if item_matches_domain(i, domain)]
    after_domain = len(matched)
    matched = [i for i in matched if item_matches_topic(i, topic, question)]
    after_topic = len(matched)
    logger.debug(
        "Candidates after qualifier=%d domain=%d topic=%d",
        after_qualifier, after_domain, after_topic,
    )

    if not matched and qualifiers.numbers:
        first_word = question.split()[0]
        matched = [
            i for i in candidates
            if (first_word in (i.content_text or "").lower() or first_word in i.title.lower())
            and item_matches_domain(i, domain)
            and item_matches_topic(i, topic, question)
        ]
        logger.debug("Relaxed on first word '%s': %d candidates", first_word, len(matched))

    scored = [ScoredItem(item=i, score=calculate_score(question, i)) for i in matched]
    scored = [s for s in scored if s.score > 0]
    scored.sort(key=lambda s: s.score, reverse=True)
    scored = scored[:MAX_RESULTS]

    citations = [
        Citation(citation_id=s.item.citation_id, title=s.item.title) for s in scored
    ]
    chosen = scored[0].item.citation_id if len(scored) == 1 else None
    debug = {
        "inferred_domain": domain,
        "inferred_topic": topic,
        "match_count": len(scored),
        "applied_layer": layer or "ALL",
        "candidates": {
            "after_db_query": len(candidates),
            "after_qualifier": after_qualifier,
            "after_domain": after_domain,
            "after_topic": after_topic,
            "after_scoring": len(scored),
        },
        "top_matches": [
            {"citation_id": s.item.citation_id, "title": s.item.title, "score": s.score}
            for s in scored
        ],
    }

    record_audit(
        repo, "REASON_QUERY", "None",
        details={
            "question": question,
            "client_id": client_id,
            "layer": layer or "ALL",
            "inferred_domain": domain,
            "inferred_topic": topic,
            "qualifiers": {
                "numbers": qualifiers.numbers,
                "age_ranges": qualifiers.age_ranges,
                "phrases": qualifiers.phrases,
            },
            "candidates": debug["candidates"],
            "citations_used": [c.citation_id for c in citations],
            "chosen_citation_id": chosen,
        },
        user_id=user_id,
    )

    return ReasoningResult(
        answer=generate_answer(scored),
        citations=citations if len(scored) == 1 else [],
        match_count=len(scored),
        inferred_domain=domain,
        inferred_topic=topic,
        applied_layer=layer or "ALL",
        actions=generate_actions(scored, topic, question),
        debug=debug,
    )
