"""Bootstrap answering: consult the knowledge base, else ask an LLM once and keep the answer.

Order of attempts:
1. Query-hash cache — an APPROVED item whose slug carries this question's hash
2. Keyword match    — best APPROVED item in the inferred domain (or OTHER)
3. LLM              — one call; the answer is stored as an APPROVED FIRM item

Never raises for LLM trouble: the caller always gets a displayable answer.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass

from sean.audit import record_audit
from sean.config import Config
from sean.database.models import KnowledgeItem
from sean.database.repository import DuplicateKnowledgeItemError, Repository
from sean.knowledge.citations import generate_citation_id, generate_slug
from sean.llm.providers import LLMProvider
from sean.validation import validate_domain, validate_question

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "need", "dare", "ought",
    "used", "to", "of", "in", "for", "on", "with", "at", "by", "from", "as",
    "into", "through", "during", "before", "after", "above", "below", "between",
    "under", "again", "further", "then", "once", "here", "there", "when", "where",
    "why", "how", "all", "each", "few", "more", "most", "other", "some", "such",
    "no", "nor", "not", "only", "own", "same", "so", "than", "too", "very", "just",
    "what", "which", "who", "whom", "this", "that", "these", "those", "am", "i", "me", "my",
})

# Wider than the reasoning table: bootstrap also has to place general accounting questions
DOMAIN_KEYWORDS: dict[str, list[str]] = {
    "VAT": ["vat", "value added", "input tax", "output tax", "zero rated", "exempt"],
    "INCOME_TAX": [
        "income tax", "taxable income", "personal tax", "salary tax",
        "rebate", "threshold", "bracket", "tax table",
    ],
    "COMPANY_TAX": [
        "company tax", "corporate tax", "business tax", "profit tax",
        "sbc", "small business",
    ],
    "PAYROLL": ["payroll", "salary", "wage", "employee tax", "paye", "uif", "sdl"],
    "CAPITAL_GAINS_TAX": [
        "cgt", "capital gains", "capital gain", "investment income",
        "property sale", "disposal",
    ],
    "WITHHOLDING_TAX": ["withholding", "dividend tax", "interest tax", "dwt"],
    "ACCOUNTING_GENERAL": [
        "accounting", "journal", "ledger", "debit", "credit",
        "balance sheet", "income statement",
    ],
}

KB_CANDIDATE_LIMIT = 200
KB_CANDIDATE_SCORE = 0.5
KB_ACCEPT_SCORE = 0.6
BOOTSTRAP_MAX_TOKENS = 1500
TITLE_QUESTION_LENGTH = 80

NOT_CONFIGURED_ANSWER = (
    "I don't have knowledge about that yet, and external AI is not configured. "
    "Please teach me using TEACH: prefix."
)

SYSTEM_PROMPT = """You are Sean AI, a South African accounting and tax assistant for Lorenco Accounting.

Key instructions:
- Answer questions accurately and concisely
- Focus on South African regulations (SARS, Companies Act, etc.)
- For tax questions, cite relevant tax years when applicable
- Current domain context: {domain}
- If you're unsure about current rates/thresholds, say so and provide the general principle
- Keep answers focused and practical for accounting professionals

Remember: Your answer will be cached and reused, so be accurate and include relevant context."""

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class BootstrapResult:
    answer: str
    source: str  # KB | LLM
    cached: bool
    domain: str
    citation_id: str | None = None
    provider: str | None = None


def normalize_query(question: str) -> str:
    """Stop-word-free, alphabetized tokens: word order and filler don't change it."""
    text = _PUNCTUATION.sub("", question.lower())
    text = _WHITESPACE.sub(" ", text).strip()
    words = [w for w in text.split(" ") if len(w) > 2 and w not in STOP_WORDS]
    return " ".join(sorted(words))


def hash_query(question: str) -> str:
    """Stable short tag for a question, embedded in bootstrap item slugs."""
    digest = hashlib.sha256(normalize_query(question).encode("utf-8")).hexdigest()
    return f"qh{digest[:12]}"


def infer_domain_from_question(question: str) -> str:
    q = question.lower()
    for domain, keywords in DOMAIN_KEYWORDS.items():
        if any(kw in q for kw in keywords):
            return domain
    return "OTHER"


def _best_kb_match(question: str, items: list[KnowledgeItem]) -> tuple[KnowledgeItem | None, float]:
    keywords = [w for w in question.lower().split() if len(w) > 3]
    if not keywords:
        return None, 0.0
    best: KnowledgeItem | None = None
    best_score = 0.0
    for item in items:
        text = f"{item.title} {item.content_text}".lower()
        score = sum(1 for k in keywords if k in text) / len(keywords)
        if score > best_score and score >= KB_CANDIDATE_SCORE:
            best, best_score = item, score
    return best, best_score


def bootstrap_answer(
    question: str,
    repo: Repository,
    user_id: str,
    domain: str | None = None,
    provider: LLMProvider | None = None,
    config: Config | None = None,
) -> BootstrapResult:
    """Answer from the knowledge base, or from one LLM call stored for reuse."""
    question = validate_question(question)
    query_hash = hash_query(question)
    inferred = validate_domain(domain) or infer_domain_from_question(question)

    # An all-stop-word question hashes like every other one: no cache, no storage
    cacheable = bool(normalize_query(question))
    if cacheable:
        cached = repo.find_approved_by_slug_fragment(query_hash)
        if cached:
            logger.info("Bootstrap cache hit for %s", query_hash)
            return BootstrapResult(
                answer=cached.content_text,
                source="KB",
                cached=True,
                domain=cached.primary_domain,
                citation_id=cached.citation_id,
            )

    items = repo.get_approved_by_domains(
        list(dict.fromkeys([inferred, "OTHER"])), KB_CANDIDATE_LIMIT
    )
    best, score = _best_kb_match(question, items)
    if best and score >= KB_ACCEPT_SCORE:
        logger.info("Bootstrap KB match %s (score %.2f)", best.citation_id, score)
        return BootstrapResult(
            answer=best.content_text,
            source="KB",
            cached=False,
            domain=best.primary_domain,
            citation_id=best.citation_id,
        )

    if provider is None:
        logger.warning("No LLM provider configured, returning teach fallback")
        return BootstrapResult(answer=NOT_CONFIGURED_ANSWER, source="KB", cached=False, domain=inferred)

    max_tokens = (
        int(config.llm.get("bootstrap_max_tokens", BOOTSTRAP_MAX_TOKENS))
        if config else BOOTSTRAP_MAX_TOKENS
    )
    try:
        answer = provider.complete(SYSTEM_PROMPT.format(domain=inferred), question, max_tokens)
    except Exception as e:
        logger.exception("Bootstrap LLM call via %s failed", provider.name)
        return BootstrapResult(
            answer=(
                f"I couldn't fetch an answer from {provider.name}. Error: {e}. "
                "Please try again or teach me directly using TEACH: prefix."
            ),
            source="KB",
            cached=False,
            domain=inferred,
        )

    if not cacheable:
        logger.info("Bootstrap answer for an all-stop-word question not stored")
        return BootstrapResult(
            answer=answer, source="LLM", cached=False, domain=inferred, provider=provider.name,
        )

    item = _store_answer(question, answer, query_hash, inferred, provider.name, repo, user_id)
    return BootstrapResult(
        answer=item.content_text,
        source="LLM",
        cached=False,
        domain=inferred,
        citation_id=item.citation_id,
        provider=provider.name,
    )


def _store_answer(
    question: str, answer: str, query_hash: str, domain: str,
    provider_name: str, repo: Repository, user_id: str,
) -> KnowledgeItem:
    slug = generate_slug(f"bootstrap-{query_hash}")
    title = question[:TITLE_QUESTION_LENGTH] + ("..." if len(question) > TITLE_QUESTION_LENGTH else "")
    item = KnowledgeItem(
        title=f"Bootstrap: {title}",
        slug=slug,
        content_text=answer,
        citation_id=generate_citation_id("FIRM", slug, 1),
        layer="FIRM",
        scope_type="GLOBAL",
        language="EN",
        tags=["bootstrap", "auto-generated", provider_name.lower()],
        primary_domain=domain,
        status="APPROVED",
        kb_version=1,
        submitted_by_user_id=user_id,
        source_type="llm-bootstrap",
        source_url=f"query:{query_hash}",
    )
    try:
        repo.insert_knowledge_item(item)
    except DuplicateKnowledgeItemError:
        existing = repo.get_knowledge_item_by_citation(item.citation_id)
        if existing is None:
            raise
        logger.info("Bootstrap answer for %s already stored, reusing it", query_hash)
        return existing

    logger.info("Stored bootstrap answer as %s", item.citation_id)
    record_audit(
        repo, "LLM_BOOTSTRAP", "KnowledgeItem", item.id,
        details={
            "question": question[:200],
            "query_hash": query_hash,
            "domain": domain,
            "provider": provider_name,
            "response_length": len(answer),
        },
        user_id=user_id,
    )
    return item


def get_bootstrap_stats(repo: Repository, user_id: str | None = None) -> dict:
    return {
        "total_bootstraps": repo.count_audit_entries("LLM_BOOTSTRAP", user_id),
        "recent_bootstraps": [
            {"created_at": e.created_at, "details": e.details}
            for e in repo.get_audit_entries("LLM_BOOTSTRAP", user_id, limit=10)
        ],
    }
