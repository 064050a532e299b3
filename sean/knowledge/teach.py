"""Teach mode: parse LEER:/TEACH:/SAVE TO KNOWLEDGE: messages into knowledge items.

Message format (metadata lines are optional, in any order, before the content):

    TEACH:
    LAYER: FIRM
    TITLE: VAT registration threshold
    DOMAIN: VAT
    TAGS: vat, registration
    CONTENT: Compulsory VAT registration applies once taxable supplies
    exceed R1 million in any 12-month period.

A blank line or the first non-metadata line also starts the content.
Submitted items are PENDING until approved; resubmitting a title creates
the next version of its slug.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from sean.audit import record_audit
from sean.database.models import KnowledgeItem
from sean.database.repository import DuplicateKnowledgeItemError, Repository
from sean.knowledge.citations import generate_citation_id, generate_slug
from sean.validation import (
    VALID_DOMAINS,
    VALID_LANGUAGES,
    VALID_LAYERS,
    NotFoundError,
    ValidationError,
    validate_content,
    validate_title,
)

logger = logging.getLogger(__name__)

_TEACH_PREFIX = re.compile(r"^(LEER:|TEACH:|SAVE TO KNOWLEDGE:)", re.IGNORECASE)
TITLE_FROM_CONTENT_LENGTH = 60


@dataclass
class TeachInput:
    title: str
    content_text: str
    layer: str = "FIRM"
    scope_type: str = "GLOBAL"
    scope_client_id: str | None = None
    language: str = "EN"
    tags: list[str] = field(default_factory=list)
    primary_domain: str = "OTHER"
    secondary_domains: list[str] = field(default_factory=list)


def is_teach_message(text: str) -> bool:
    return bool(_TEACH_PREFIX.match(text or ""))


def parse_teach_message(text: str) -> TeachInput:
    """Parse a teach message.

    Raises:
        ValidationError: Not a teach message, no content, or a CLIENT layer
            without a CLIENT: line.
    """
    match = _TEACH_PREFIX.match(text or "")
    if not match:
        raise ValidationError("Not a teach message")

    lines = text[match.end():].strip().split("\n")
    parsed = TeachInput(title="", content_text="")
    content_start = len(lines)

    for i, raw in enumerate(lines):
        line = raw.strip()
        if line.startswith("LAYER:"):
            value = line[len("LAYER:"):].strip().upper()
            if value in VALID_LAYERS:
                parsed.layer = value
        elif line.startswith("CLIENT:"):
            parsed.scope_type = "CLIENT"
            parsed.scope_client_id = line[len("CLIENT:"):].strip()
        elif line.startswith("TITLE:"):
            parsed.title = line[len("TITLE:"):].strip()
        elif line.startswith("TAGS:"):
            parsed.tags = [t.strip() for t in line[len("TAGS:"):].split(",") if t.strip()]
        elif line.startswith("LANGUAGE:"):
            value = line[len("LANGUAGE:"):].strip().upper()
            if value in VALID_LANGUAGES:
                parsed.language = value
        elif line.startswith("DOMAIN:"):
            value = line[len("DOMAIN:"):].strip().upper()
            if value in VALID_DOMAINS:
                parsed.primary_domain = value
        elif line.startswith("SECONDARY_DOMAINS:"):
            parsed.secondary_domains = [
                d for d in (
                    s.strip().upper()
                    for s in line[len("SECONDARY_DOMAINS:"):].split(",")
                )
                if d in VALID_DOMAINS
            ]
        elif line.startswith("CONTENT:"):
            parsed.content_text = line[len("CONTENT:"):].strip()
            content_start = i + 1
            break
        elif line == "":
            content_start = i + 1
            break
        else:
            content_start = i
            break

    if content_start < len(lines) and not parsed.content_text:
        parsed.content_text = "\n".join(lines[content_start:]).strip()
    elif parsed.content_text and content_start < len(lines):
        rest = "\n".join(lines[content_start:]).strip()
        if rest:
            parsed.content_text = f"{parsed.content_text}\n{rest}"

    if not parsed.content_text:
        raise ValidationError(
            "No content provided. Please add content after CONTENT: or after metadata."
        )
    if parsed.layer == "CLIENT" and not parsed.scope_client_id:
        raise ValidationError("CLIENT layer requires CLIENT: field with client ID")

    if not parsed.title:
        first_line = parsed.content_text.split("\n")[0][:TITLE_FROM_CONTENT_LENGTH]
        parsed.title = first_line if first_line.endswith(".") else first_line + "..."

    return parsed


def submit_knowledge(
    teach: TeachInput, repo: Repository, user_id: str
) -> KnowledgeItem:
    """Store a teach submission as the next PENDING version of its slug."""
    title = validate_title(teach.title)
    content = validate_content(teach.content_text)
    slug = generate_slug(title)
    if not slug:
        raise ValidationError("Title must contain at least one letter or digit")

    version = repo.get_latest_kb_version(slug) + 1
    item = KnowledgeItem(
        title=title,
        slug=slug,
        content_text=content,
        citation_id=generate_citation_id(teach.layer, slug, version),
        layer=teach.layer,
        scope_type=teach.scope_type,
        scope_client_id=teach.scope_client_id,
        language=teach.language,
        tags=list(teach.tags),
        primary_domain=teach.primary_domain,
        secondary_domains=list(teach.secondary_domains),
        status="PENDING",
        kb_version=version,
        submitted_by_user_id=user_id,
    )
    try:
        repo.insert_knowledge_item(item)
    except DuplicateKnowledgeItemError:
        # A concurrent submission took this version; take the next one
        version = repo.get_latest_kb_version(slug) + 1
        item.kb_version = version
        item.citation_id = generate_citation_id(teach.layer, slug, version)
        repo.insert_knowledge_item(item)

    logger.info("Knowledge submitted: %s", item.citation_id)
    record_audit(
        repo, "KB_SUBMIT", "KnowledgeItem", item.id,
        details={
            "layer": item.layer,
            "citation_id": item.citation_id,
            "primary_domain": item.primary_domain,
            "secondary_domains": item.secondary_domains,
            "is_new_version": version > 1,
        },
        user_id=user_id,
    )
    return item


def set_item_status(
    item_id: str, status: str, repo: Repository, user_id: str
) -> KnowledgeItem:
    """Approve or reject a knowledge item.

    Raises:
        ValidationError: status is not APPROVED or REJECTED.
        NotFoundError: no item with this id.
    """
    status = status.upper()
    if status not in ("APPROVED", "REJECTED"):
        raise ValidationError(f"Invalid knowledge status '{status}'")
    item = repo.get_knowledge_item(item_id)
    if item is None:
        raise NotFoundError("Knowledge item", item_id)

    repo.update_knowledge_status(item_id, status)
    action = "KB_APPROVE" if status == "APPROVED" else "KB_REJECT"
    record_audit(
        repo, action, "KnowledgeItem", item_id,
        details={
            "citation_id": item.citation_id,
            "layer": item.layer,
            "primary_domain": item.primary_domain,
        },
        user_id=user_id,
    )
    return repo.get_knowledge_item(item_id)
