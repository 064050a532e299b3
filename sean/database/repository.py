"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled.
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

from .models import (
    AllocationJobRun,
    AllocationRule,
    AuditEntry,
    BankTransaction,
    ClientCategory,
    KnowledgeItem,
    LLMCacheEntry,
    SeanAgent,
    _now,
)


class DuplicateRuleError(Exception):
    """Raised when a rule already exists for (pattern, category, scope)."""

    def __init__(self, normalized_pattern: str, category: str,
                 client_id: str | None = None):
        self.normalized_pattern = normalized_pattern
        self.category = category
        self.client_id = client_id
        scope = f"client '{client_id}'" if client_id else "global scope"
        super().__init__(
            f"Rule '{normalized_pattern}' -> {category} already exists in {scope}"
        )


class DuplicateKnowledgeItemError(Exception):
    """Raised when a knowledge item with the same citation or slug+version exists."""

    def __init__(self, citation_id: str, existing_item_id: str | None = None):
        self.citation_id = citation_id
        self.existing_item_id = existing_item_id
        super().__init__(f"Knowledge item '{citation_id}' already exists")


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    for statement in sql_file.read_text().split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Allocation Rules ────────────────────────────────────

    def insert_rule(self, rule: AllocationRule) -> AllocationRule:
        """Insert a learned rule.

        Raises:
            DuplicateRuleError: If another writer already created a rule for
                the same (pattern, category, scope).
        """
        try:
            self.conn.execute(
                "INSERT INTO allocation_rules"
                " (id, pattern, normalized_pattern, category, confidence,"
                "  learned_from_count, is_global, client_id, created_by_user_id,"
                "  created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                (rule.id, rule.pattern, rule.normalized_pattern, rule.category,
                 rule.confidence, rule.learned_from_count, int(rule.is_global),
                 rule.client_id, rule.created_by_user_id,
                 rule.created_at, rule.updated_at),
            )
            self.conn.commit()
            return rule
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise DuplicateRuleError(
                    rule.normalized_pattern, rule.category, rule.client_id
                ) from e
            raise

    def get_rule(self, rule_id: str) -> AllocationRule | None:
        row = self.conn.execute(
            "SELECT * FROM allocation_rules WHERE id = ?", (rule_id,)
        ).fetchone()
        return self._row_to_rule(row) if row else None

    def get_client_rule(
        self, normalized_pattern: str, client_id: str
    ) -> AllocationRule | None:
        """Most-reinforced client-scoped rule for an exact pattern."""
        row = self.conn.execute(
            "SELECT * FROM allocation_rules"
            " WHERE normalized_pattern = ? AND is_global = 0 AND client_id = ?"
            " ORDER BY learned_from_count DESC, rowid LIMIT 1",
            (normalized_pattern, client_id),
        ).fetchone()
        return self._row_to_rule(row) if row else None

    def get_exact_rule(
        self, normalized_pattern: str, client_id: str | None = None
    ) -> AllocationRule | None:
        """Most-reinforced rule for an exact pattern among global and client rules."""
        sql = "SELECT * FROM allocation_rules WHERE normalized_pattern = ?"
        params: list = [normalized_pattern]
        if client_id:
            sql += " AND (is_global = 1 OR client_id = ?)"
            params.append(client_id)
        else:
            sql += " AND is_global = 1"
        sql += " ORDER BY learned_from_count DESC, rowid LIMIT 1"
        row = self.conn.execute(sql, params).fetchone()
        return self._row_to_rule(row) if row else None

    def get_rules_in_scope(
        self, client_id: str | None = None, limit: int = 500
    ) -> list[AllocationRule]:
        """Top rules by learned_from_count visible to a client (or global only)."""
        sql = "SELECT * FROM allocation_rules"
        params: list = []
        if client_id:
            sql += " WHERE is_global = 1 OR client_id = ?"
            params.append(client_id)
        else:
            sql += " WHERE is_global = 1"
        sql += " ORDER BY learned_from_count DESC, rowid LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def _scope_clause(self, is_global: bool, client_id: str | None) -> tuple[str, list]:
        if is_global:
            return "is_global = 1", []
        return "is_global = 0 AND client_id = ?", [client_id]

    def find_rule(
        self, normalized_pattern: str, category: str,
        is_global: bool, client_id: str | None = None,
    ) -> AllocationRule | None:
        clause, params = self._scope_clause(is_global, client_id)
        row = self.conn.execute(
            "SELECT * FROM allocation_rules"
            f" WHERE normalized_pattern = ? AND category = ? AND {clause}",
            [normalized_pattern, category, *params],
        ).fetchone()
        return self._row_to_rule(row) if row else None

    def find_conflicting_rule(
        self, normalized_pattern: str, category: str,
        is_global: bool, client_id: str | None = None,
    ) -> AllocationRule | None:
        """A rule in the same scope mapping the pattern to a different category."""
        clause, params = self._scope_clause(is_global, client_id)
        row = self.conn.execute(
            "SELECT * FROM allocation_rules"
            f" WHERE normalized_pattern = ? AND category != ? AND {clause}"
            " ORDER BY learned_from_count DESC, rowid LIMIT 1",
            [normalized_pattern, category, *params],
        ).fetchone()
        return self._row_to_rule(row) if row else None

    def reinforce_rule(self, rule_id: str, step: float = 0.05) -> AllocationRule | None:
        """Bump learned_from_count and raise confidence, capped at 1.0."""
        self.conn.execute(
            "UPDATE allocation_rules SET"
            "  learned_from_count = learned_from_count + 1,"
            "  confidence = MIN(1.0, confidence + ?),"
            "  updated_at = ?"
            " WHERE id = ?",
            (step, _now(), rule_id),
        )
        self.conn.commit()
        return self.get_rule(rule_id)

    def demote_rule(
        self, rule_id: str, step: float = 0.1, floor: float = 0.1
    ) -> AllocationRule | None:
        """Lower confidence by step, never below floor."""
        self.conn.execute(
            "UPDATE allocation_rules SET"
            "  confidence = MAX(?, confidence - ?),"
            "  updated_at = ?"
            " WHERE id = ?",
            (floor, step, _now(), rule_id),
        )
        self.conn.commit()
        return self.get_rule(rule_id)

    # ── Client Categories ───────────────────────────────────

    def upsert_client_category(self, cat: ClientCategory) -> ClientCategory:
        """Create or update a client's custom category (reactivates it)."""
        self.conn.execute(
            "INSERT INTO client_categories"
            " (id, client_id, code, label, keywords, is_active, created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?,?)"
            " ON CONFLICT(client_id, code) DO UPDATE SET"
            "  label = excluded.label,"
            "  keywords = excluded.keywords,"
            "  is_active = excluded.is_active,"
            "  updated_at = excluded.updated_at",
            (cat.id, cat.client_id, cat.code, cat.label,
             json.dumps(cat.keywords), int(cat.is_active),
             cat.created_at, cat.updated_at),
        )
        self.conn.commit()
        return self.get_client_category(cat.client_id, cat.code)

    def get_client_category(self, client_id: str, code: str) -> ClientCategory | None:
        row = self.conn.execute(
            "SELECT * FROM client_categories WHERE client_id = ? AND code = ?",
            (client_id, code),
        ).fetchone()
        return self._row_to_client_category(row) if row else None

    def get_client_categories(
        self, client_id: str, active_only: bool = True
    ) -> list[ClientCategory]:
        sql = "SELECT * FROM client_categories WHERE client_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY code"
        rows = self.conn.execute(sql, (client_id,)).fetchall()
        return [self._row_to_client_category(r) for r in rows]

    def deactivate_client_category(self, client_id: str, code: str) -> bool:
        cur = self.conn.execute(
            "UPDATE client_categories SET is_active = 0, updated_at = ?"
            " WHERE client_id = ? AND code = ?",
            (_now(), client_id, code),
        )
        self.conn.commit()
        return cur.rowcount > 0

    # ── LLM Cache ───────────────────────────────────────────

    def get_llm_cache(self, normalized_pattern: str) -> LLMCacheEntry | None:
        row = self.conn.execute(
            "SELECT * FROM allocation_llm_cache WHERE normalized_pattern = ?",
            (normalized_pattern,),
        ).fetchone()
        return self._row_to_llm_cache(row) if row else None

    def upsert_llm_cache(self, entry: LLMCacheEntry) -> LLMCacheEntry:
        """Insert a cache row, or overwrite the answer if a racing writer got there first."""
        self.conn.execute(
            "INSERT INTO allocation_llm_cache"
            " (id, normalized_pattern, suggested_category, confidence, reasoning,"
            "  provider, used_count, created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?,?,?)"
            " ON CONFLICT(normalized_pattern) DO UPDATE SET"
            "  suggested_category = excluded.suggested_category,"
            "  confidence = excluded.confidence,"
            "  reasoning = excluded.reasoning,"
            "  provider = excluded.provider,"
            "  updated_at = excluded.updated_at",
            (entry.id, entry.normalized_pattern, entry.suggested_category,
             entry.confidence, entry.reasoning, entry.provider,
             entry.used_count, entry.created_at, entry.updated_at),
        )
        self.conn.commit()
        return self.get_llm_cache(entry.normalized_pattern)

    def increment_llm_cache_usage(self, entry_id: str):
        self.conn.execute(
            "UPDATE allocation_llm_cache SET used_count = used_count + 1,"
            " updated_at = ? WHERE id = ?",
            (_now(), entry_id),
        )
        self.conn.commit()

    def count_llm_cache(self) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM allocation_llm_cache"
        ).fetchone()[0]

    # ── Bank Transactions ───────────────────────────────────

    def insert_bank_transaction(self, txn: BankTransaction) -> BankTransaction:
        self.conn.execute(
            "INSERT INTO bank_transactions"
            " (id, user_id, client_id, date, description, raw_description,"
            "  amount, is_debit, suggested_category, suggested_confidence,"
            "  confirmed_category, confirmed_by_user_id, feedback, processed,"
            "  created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (txn.id, txn.user_id, txn.client_id, txn.date, txn.description,
             txn.raw_description, txn.amount, int(txn.is_debit),
             txn.suggested_category, txn.suggested_confidence,
             txn.confirmed_category, txn.confirmed_by_user_id, txn.feedback,
             int(txn.processed), txn.created_at, txn.updated_at),
        )
        self.conn.commit()
        return txn

    def get_bank_transaction(self, txn_id: str) -> BankTransaction | None:
        row = self.conn.execute(
            "SELECT * FROM bank_transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_bank_transaction(row) if row else None

    def find_duplicate_transaction(
        self, user_id: str, date: str, raw_description: str, amount: float
    ) -> BankTransaction | None:
        row = self.conn.execute(
            "SELECT * FROM bank_transactions"
            " WHERE user_id = ? AND date = ? AND raw_description = ? AND amount = ?",
            (user_id, date, raw_description, amount),
        ).fetchone()
        return self._row_to_bank_transaction(row) if row else None

    def get_pending_transactions(
        self, limit: int = 100, user_id: str | None = None
    ) -> list[BankTransaction]:
        """Unprocessed, unconfirmed transactions, newest first."""
        sql = (
            "SELECT * FROM bank_transactions"
            " WHERE processed = 0 AND confirmed_category IS NULL"
        )
        params: list = []
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY date DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_bank_transaction(r) for r in rows]

    def count_pending_transactions(self, user_id: str | None = None) -> int:
        sql = (
            "SELECT COUNT(*) FROM bank_transactions"
            " WHERE processed = 0 AND confirmed_category IS NULL"
        )
        params: list = []
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        return self.conn.execute(sql, params).fetchone()[0]

    def count_transactions(self, processed: bool, suggested_only: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM bank_transactions WHERE processed = ?"
        if suggested_only:
            sql += " AND suggested_category IS NOT NULL"
        return self.conn.execute(sql, (int(processed),)).fetchone()[0]

    def set_transaction_suggestion(
        self, txn_id: str, category: str, confidence: float
    ) -> bool:
        """Record a suggestion on an unprocessed transaction.

        Returns False when the transaction was already processed (claimed
        by another runner or confirmed by a user).
        """
        cur = self.conn.execute(
            "UPDATE bank_transactions SET suggested_category = ?,"
            " suggested_confidence = ?, updated_at = ?"
            " WHERE id = ? AND processed = 0",
            (category, confidence, _now(), txn_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    def confirm_transaction(
        self, txn_id: str, category: str,
        confidence: float | None = None,
        user_id: str | None = None,
        feedback: str | None = None,
        claim: bool = True,
    ) -> bool:
        """Confirm a category and mark the transaction processed.

        With claim=True (automatic allocation) the update only applies to
        an unprocessed row; a user correction passes claim=False to
        overwrite an earlier confirmation.
        """
        sets = ["confirmed_category = ?", "processed = 1", "updated_at = ?"]
        vals: list = [category, _now()]
        if confidence is not None:
            sets += ["suggested_category = ?", "suggested_confidence = ?"]
            vals += [category, confidence]
        if user_id is not None:
            sets.append("confirmed_by_user_id = ?")
            vals.append(user_id)
        if feedback is not None:
            sets.append("feedback = ?")
            vals.append(feedback)
        sql = f"UPDATE bank_transactions SET {', '.join(sets)} WHERE id = ?"
        vals.append(txn_id)
        if claim:
            sql += " AND processed = 0"
        cur = self.conn.execute(sql, vals)
        self.conn.commit()
        return cur.rowcount > 0

    # ── Agent ───────────────────────────────────────────────

    def get_agent(self, defaults: dict | None = None) -> SeanAgent:
        """Return the singleton agent, creating it with defaults on first access."""
        row = self.conn.execute(
            "SELECT * FROM sean_agent ORDER BY created_at, rowid LIMIT 1"
        ).fetchone()
        if row:
            return self._row_to_agent(row)

        agent = SeanAgent(**(defaults or {}))
        self.conn.execute(
            "INSERT INTO sean_agent"
            " (id, name, status, authorized_actions, auto_allocate_enabled,"
            "  auto_allocate_interval, auto_allocate_min_confidence,"
            "  llm_fallback_enabled, llm_fallback_provider, total_allocations,"
            "  total_llm_calls, created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (agent.id, agent.name, agent.status,
             json.dumps(agent.authorized_actions),
             int(agent.auto_allocate_enabled), agent.auto_allocate_interval,
             agent.auto_allocate_min_confidence,
             int(agent.llm_fallback_enabled), agent.llm_fallback_provider,
             agent.total_allocations, agent.total_llm_calls,
             agent.created_at, agent.updated_at),
        )
        self.conn.commit()
        return agent

    _AGENT_UPDATE_COLS = frozenset({
        "status", "authorized_actions", "auto_allocate_enabled",
        "auto_allocate_interval", "auto_allocate_min_confidence",
        "llm_fallback_enabled", "llm_fallback_provider",
        "auto_allocate_last_run", "auto_allocate_next_run",
    })

    def update_agent(self, agent_id: str, **kwargs) -> SeanAgent:
        unknown = set(kwargs.keys()) - self._AGENT_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for update_agent: {unknown}")

        sets = ["updated_at = ?"]
        vals: list = [_now()]
        for col, val in kwargs.items():
            if col == "authorized_actions":
                val = json.dumps(list(val))
            elif isinstance(val, bool):
                val = int(val)
            sets.append(f"{col} = ?")
            vals.append(val)
        vals.append(agent_id)
        self.conn.execute(
            f"UPDATE sean_agent SET {', '.join(sets)} WHERE id = ?", vals
        )
        self.conn.commit()
        return self._row_to_agent(self.conn.execute(
            "SELECT * FROM sean_agent WHERE id = ?", (agent_id,)
        ).fetchone())

    def record_agent_run(
        self, agent_id: str, allocations: int, llm_calls: int,
        last_run: str, next_run: str,
    ):
        """Add job totals to the agent and advance its schedule."""
        self.conn.execute(
            "UPDATE sean_agent SET"
            "  total_allocations = total_allocations + ?,"
            "  total_llm_calls = total_llm_calls + ?,"
            "  auto_allocate_last_run = ?,"
            "  auto_allocate_next_run = ?,"
            "  updated_at = ?"
            " WHERE id = ?",
            (allocations, llm_calls, last_run, next_run, _now(), agent_id),
        )
        self.conn.commit()

    # ── Job Runs ────────────────────────────────────────────

    def insert_job_run(self, job: AllocationJobRun) -> AllocationJobRun:
        self.conn.execute(
            "INSERT INTO allocation_job_runs"
            " (id, agent_id, status, started_at, details)"
            " VALUES (?,?,?,?,?)",
            (job.id, job.agent_id, job.status, job.started_at,
             json.dumps(job.details)),
        )
        self.conn.commit()
        return job

    def complete_job_run(
        self, job_id: str, processed: int, auto_allocated: int,
        llm_allocated: int, needs_review: int, errors: int,
        details: dict | None = None,
    ):
        self.conn.execute(
            "UPDATE allocation_job_runs SET status = 'COMPLETED',"
            "  completed_at = ?, transactions_processed = ?,"
            "  auto_allocated = ?, llm_allocated = ?, needs_review = ?,"
            "  errors = ?, details = ?"
            " WHERE id = ? AND status = 'RUNNING'",
            (_now(), processed, auto_allocated, llm_allocated, needs_review,
             errors, json.dumps(details or {}), job_id),
        )
        self.conn.commit()

    def fail_job_run(self, job_id: str, error_message: str):
        self.conn.execute(
            "UPDATE allocation_job_runs SET status = 'FAILED',"
            "  completed_at = ?, error_message = ?"
            " WHERE id = ? AND status = 'RUNNING'",
            (_now(), error_message, job_id),
        )
        self.conn.commit()

    def get_job_run(self, job_id: str) -> AllocationJobRun | None:
        row = self.conn.execute(
            "SELECT * FROM allocation_job_runs WHERE id = ?", (job_id,)
        ).fetchone()
        return self._row_to_job_run(row) if row else None

    def get_recent_job_runs(self, limit: int = 5) -> list[AllocationJobRun]:
        rows = self.conn.execute(
            "SELECT * FROM allocation_job_runs"
            " ORDER BY started_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._row_to_job_run(r) for r in rows]

    # ── Knowledge Items ─────────────────────────────────────

    def insert_knowledge_item(self, item: KnowledgeItem) -> KnowledgeItem:
        """Insert a knowledge item.

        Raises:
            DuplicateKnowledgeItemError: If the citation id or (slug, version)
                is already taken.
        """
        try:
            self.conn.execute(
                "INSERT INTO knowledge_items"
                " (id, layer, scope_type, scope_client_id, title, slug,"
                "  content_text, language, tags, primary_domain,"
                "  secondary_domains, status, kb_version, citation_id,"
                "  submitted_by_user_id, source_type, source_url,"
                "  created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (item.id, item.layer, item.scope_type, item.scope_client_id,
                 item.title, item.slug, item.content_text, item.language,
                 json.dumps(item.tags), item.primary_domain,
                 json.dumps(item.secondary_domains), item.status,
                 item.kb_version, item.citation_id, item.submitted_by_user_id,
                 item.source_type, item.source_url,
                 item.created_at, item.updated_at),
            )
            self.conn.commit()
            return item
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            if "UNIQUE constraint failed" in str(e):
                existing = self.get_knowledge_item_by_citation(item.citation_id)
                raise DuplicateKnowledgeItemError(
                    item.citation_id, existing.id if existing else None
                ) from e
            raise

    def get_knowledge_item(self, item_id: str) -> KnowledgeItem | None:
        row = self.conn.execute(
            "SELECT * FROM knowledge_items WHERE id = ?", (item_id,)
        ).fetchone()
        return self._row_to_knowledge_item(row) if row else None

    def get_knowledge_item_by_citation(self, citation_id: str) -> KnowledgeItem | None:
        row = self.conn.execute(
            "SELECT * FROM knowledge_items WHERE citation_id = ?", (citation_id,)
        ).fetchone()
        return self._row_to_knowledge_item(row) if row else None

    def get_latest_kb_version(self, slug: str) -> int:
        """Highest kb_version stored for a slug, 0 when the slug is new."""
        row = self.conn.execute(
            "SELECT MAX(kb_version) FROM knowledge_items WHERE slug = ?", (slug,)
        ).fetchone()
        return row[0] or 0

    def get_approved_knowledge(
        self, client_id: str | None = None, layer: str | None = None
    ) -> list[KnowledgeItem]:
        """APPROVED items visible globally, plus a client's own items."""
        sql = "SELECT * FROM knowledge_items WHERE status = 'APPROVED'"
        params: list = []
        if client_id:
            sql += (" AND (scope_type = 'GLOBAL'"
                    " OR (scope_type = 'CLIENT' AND scope_client_id = ?))")
            params.append(client_id)
        else:
            sql += " AND scope_type = 'GLOBAL'"
        if layer:
            sql += " AND layer = ?"
            params.append(layer)
        sql += " ORDER BY created_at, rowid"
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_knowledge_item(r) for r in rows]

    def find_approved_by_slug_fragment(self, fragment: str) -> KnowledgeItem | None:
        row = self.conn.execute(
            "SELECT * FROM knowledge_items"
            " WHERE status = 'APPROVED' AND instr(slug, ?) > 0"
            " ORDER BY kb_version DESC, rowid LIMIT 1",
            (fragment,),
        ).fetchone()
        return self._row_to_knowledge_item(row) if row else None

    def get_approved_by_domains(
        self, domains: list[str], limit: int = 200
    ) -> list[KnowledgeItem]:
        placeholders = ",".join("?" * len(domains))
        rows = self.conn.execute(
            "SELECT * FROM knowledge_items"
            f" WHERE status = 'APPROVED' AND primary_domain IN ({placeholders})"
            " ORDER BY created_at, rowid LIMIT ?",
            [*domains, limit],
        ).fetchall()
        return [self._row_to_knowledge_item(r) for r in rows]

    def update_knowledge_status(self, item_id: str, status: str) -> bool:
        cur = self.conn.execute(
            "UPDATE knowledge_items SET status = ?, updated_at = ? WHERE id = ?",
            (status, _now(), item_id),
        )
        self.conn.commit()
        return cur.rowcount > 0

    # ── Audit Log ───────────────────────────────────────────

    def insert_audit(self, entry: AuditEntry) -> AuditEntry:
        self.conn.execute(
            "INSERT INTO audit_log"
            " (id, user_id, action_type, entity_type, entity_id, details, created_at)"
            " VALUES (?,?,?,?,?,?,?)",
            (entry.id, entry.user_id, entry.action_type, entry.entity_type,
             entry.entity_id, json.dumps(entry.details, default=str),
             entry.created_at),
        )
        self.conn.commit()
        return entry

    def get_audit_entries(
        self, action_type: str, user_id: str | None = None, limit: int = 10
    ) -> list[AuditEntry]:
        sql = "SELECT * FROM audit_log WHERE action_type = ?"
        params: list = [action_type]
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_audit(r) for r in rows]

    def count_audit_entries(self, action_type: str, user_id: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM audit_log WHERE action_type = ?"
        params: list = [action_type]
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        return self.conn.execute(sql, params).fetchone()[0]

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> AllocationRule:
        return AllocationRule(
            id=row["id"], pattern=row["pattern"],
            normalized_pattern=row["normalized_pattern"],
            category=row["category"], confidence=row["confidence"],
            learned_from_count=row["learned_from_count"],
            is_global=bool(row["is_global"]), client_id=row["client_id"],
            created_by_user_id=row["created_by_user_id"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_client_category(row: sqlite3.Row) -> ClientCategory:
        return ClientCategory(
            id=row["id"], client_id=row["client_id"], code=row["code"],
            label=row["label"], keywords=json.loads(row["keywords"] or "[]"),
            is_active=bool(row["is_active"]),
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_llm_cache(row: sqlite3.Row) -> LLMCacheEntry:
        return LLMCacheEntry(
            id=row["id"], normalized_pattern=row["normalized_pattern"],
            suggested_category=row["suggested_category"],
            confidence=row["confidence"], reasoning=row["reasoning"],
            provider=row["provider"], used_count=row["used_count"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_bank_transaction(row: sqlite3.Row) -> BankTransaction:
        return BankTransaction(
            id=row["id"], user_id=row["user_id"], client_id=row["client_id"],
            date=row["date"], description=row["description"],
            raw_description=row["raw_description"], amount=row["amount"],
            is_debit=bool(row["is_debit"]),
            suggested_category=row["suggested_category"],
            suggested_confidence=row["suggested_confidence"],
            confirmed_category=row["confirmed_category"],
            confirmed_by_user_id=row["confirmed_by_user_id"],
            feedback=row["feedback"], processed=bool(row["processed"]),
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_agent(row: sqlite3.Row) -> SeanAgent:
        return SeanAgent(
            id=row["id"], name=row["name"], status=row["status"],
            authorized_actions=json.loads(row["authorized_actions"] or "[]"),
            auto_allocate_enabled=bool(row["auto_allocate_enabled"]),
            auto_allocate_interval=row["auto_allocate_interval"],
            auto_allocate_min_confidence=row["auto_allocate_min_confidence"],
            llm_fallback_enabled=bool(row["llm_fallback_enabled"]),
            llm_fallback_provider=row["llm_fallback_provider"],
            auto_allocate_last_run=row["auto_allocate_last_run"],
            auto_allocate_next_run=row["auto_allocate_next_run"],
            total_allocations=row["total_allocations"],
            total_llm_calls=row["total_llm_calls"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_job_run(row: sqlite3.Row) -> AllocationJobRun:
        return AllocationJobRun(
            id=row["id"], agent_id=row["agent_id"], status=row["status"],
            started_at=row["started_at"], completed_at=row["completed_at"],
            transactions_processed=row["transactions_processed"],
            auto_allocated=row["auto_allocated"],
            llm_allocated=row["llm_allocated"],
            needs_review=row["needs_review"], errors=row["errors"],
            error_message=row["error_message"],
            details=json.loads(row["details"] or "{}"),
        )

    @staticmethod
    def _row_to_knowledge_item(row: sqlite3.Row) -> KnowledgeItem:
        return KnowledgeItem(
            id=row["id"], layer=row["layer"], scope_type=row["scope_type"],
            scope_client_id=row["scope_client_id"], title=row["title"],
            slug=row["slug"], content_text=row["content_text"],
            language=row["language"], tags=json.loads(row["tags"] or "[]"),
            primary_domain=row["primary_domain"],
            secondary_domains=json.loads(row["secondary_domains"] or "[]"),
            status=row["status"], kb_version=row["kb_version"],
            citation_id=row["citation_id"],
            submitted_by_user_id=row["submitted_by_user_id"],
            source_type=row["source_type"], source_url=row["source_url"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_audit(row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            id=row["id"], user_id=row["user_id"],
            action_type=row["action_type"], entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            details=json.loads(row["details"] or "{}"),
            created_at=row["created_at"],
        )
