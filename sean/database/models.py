"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()).
List-valued fields are stored as JSON text and decoded by the repository.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AllocationRule:
    pattern: str
    normalized_pattern: str
    category: str
    id: str = field(default_factory=_new_id)
    confidence: float = 0.7
    learned_from_count: int = 1
    is_global: bool = True
    client_id: str | None = None
    created_by_user_id: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class ClientCategory:
    client_id: str
    code: str
    label: str
    id: str = field(default_factory=_new_id)
    keywords: list[str] = field(default_factory=list)
    is_active: bool = True
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class LLMCacheEntry:
    normalized_pattern: str
    suggested_category: str
    confidence: float
    provider: str
    id: str = field(default_factory=_new_id)
    reasoning: str | None = None
    used_count: int = 1
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class BankTransaction:
    user_id: str
    date: str
    description: str
    raw_description: str
    amount: float
    id: str = field(default_factory=_new_id)
    client_id: str | None = None
    is_debit: bool = True
    suggested_category: str | None = None
    suggested_confidence: float | None = None
    confirmed_category: str | None = None
    confirmed_by_user_id: str | None = None
    feedback: str | None = None
    processed: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class SeanAgent:
    id: str = field(default_factory=_new_id)
    name: str = "Sean"
    status: str = "INACTIVE"
    authorized_actions: list[str] = field(
        default_factory=lambda: ["ALLOCATE", "RESPOND", "LEARN"]
    )
    auto_allocate_enabled: bool = False
    auto_allocate_interval: int = 60
    auto_allocate_min_confidence: float = 0.8
    llm_fallback_enabled: bool = True
    llm_fallback_provider: str | None = None
    auto_allocate_last_run: str | None = None
    auto_allocate_next_run: str | None = None
    total_allocations: int = 0
    total_llm_calls: int = 0
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class AllocationJobRun:
    agent_id: str
    id: str = field(default_factory=_new_id)
    status: str = "RUNNING"
    started_at: str = field(default_factory=_now)
    completed_at: str | None = None
    transactions_processed: int = 0
    auto_allocated: int = 0
    llm_allocated: int = 0
    needs_review: int = 0
    errors: int = 0
    error_message: str | None = None
    details: dict = field(default_factory=dict)


@dataclass
class KnowledgeItem:
    title: str
    slug: str
    content_text: str
    citation_id: str
    id: str = field(default_factory=_new_id)
    layer: str = "FIRM"
    scope_type: str = "GLOBAL"
    scope_client_id: str | None = None
    language: str = "EN"
    tags: list[str] = field(default_factory=list)
    primary_domain: str = "OTHER"
    secondary_domains: list[str] = field(default_factory=list)
    status: str = "PENDING"
    kb_version: int = 1
    submitted_by_user_id: str | None = None
    source_type: str | None = None
    source_url: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class AuditEntry:
    action_type: str
    entity_type: str
    id: str = field(default_factory=_new_id)
    entity_id: str | None = None
    user_id: str | None = None
    details: dict = field(default_factory=dict)
    created_at: str = field(default_factory=_now)
