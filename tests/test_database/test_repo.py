"""Tests for Repository CRUD operations."""

import pytest

from sean.database.models import (
    AllocationJobRun,
    AllocationRule,
    AuditEntry,
    BankTransaction,
    ClientCategory,
    KnowledgeItem,
    LLMCacheEntry,
)
from sean.database.repository import (
    DuplicateKnowledgeItemError,
    DuplicateRuleError,
    Repository,
)
from tests.conftest import MIGRATIONS_DIR


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


def _rule(**overrides) -> AllocationRule:
    defaults = dict(pattern="ENGEN SANDTON", normalized_pattern="engen sandton", category="FUEL")
    defaults.update(overrides)
    return AllocationRule(**defaults)


def _txn(**overrides) -> BankTransaction:
    defaults = dict(
        user_id="u1", date="2024-03-01", description="ENGEN SANDTON",
        raw_description="ENGEN SANDTON", amount=450.0,
    )
    defaults.update(overrides)
    return BankTransaction(**defaults)


def _item(slug="vat_threshold", version=1, **overrides) -> KnowledgeItem:
    defaults = dict(
        title="VAT threshold", slug=slug,
        content_text="Compulsory registration above R1 million.",
        citation_id=f"KB:FIRM:{slug}:v{version}", kb_version=version,
    )
    defaults.update(overrides)
    return KnowledgeItem(**defaults)


# ── Allocation Rules ──────────────────────────────────────


class TestRules:
    def test_insert_and_get(self, repo):
        rule = repo.insert_rule(_rule())
        found = repo.get_rule(rule.id)
        assert found.category == "FUEL"
        assert found.is_global is True
        assert found.confidence == pytest.approx(0.7)

    def test_duplicate_in_same_scope_raises(self, repo):
        repo.insert_rule(_rule())
        with pytest.raises(DuplicateRuleError) as exc:
            repo.insert_rule(_rule())
        assert exc.value.normalized_pattern == "engen sandton"
        assert exc.value.category == "FUEL"

    def test_same_pattern_other_scope_allowed(self, repo):
        repo.insert_rule(_rule())
        repo.insert_rule(_rule(is_global=False, client_id="c1"))
        repo.insert_rule(_rule(is_global=False, client_id="c2"))
        assert len(repo.get_rules_in_scope("c1")) == 2

    def test_duplicate_client_rule_raises(self, repo):
        repo.insert_rule(_rule(is_global=False, client_id="c1"))
        with pytest.raises(DuplicateRuleError):
            repo.insert_rule(_rule(is_global=False, client_id="c1"))

    def test_exact_rule_scope(self, repo):
        repo.insert_rule(_rule(is_global=False, client_id="c1"))
        assert repo.get_exact_rule("engen sandton") is None
        assert repo.get_exact_rule("engen sandton", "c2") is None
        assert repo.get_exact_rule("engen sandton", "c1").client_id == "c1"

    def test_client_rule_only_matches_client(self, repo):
        repo.insert_rule(_rule())
        assert repo.get_client_rule("engen sandton", "c1") is None

    def test_rules_in_scope_ordered_by_count(self, repo):
        repo.insert_rule(_rule(normalized_pattern="a"))
        repo.insert_rule(_rule(normalized_pattern="b", learned_from_count=5))
        rules = repo.get_rules_in_scope(limit=1)
        assert [r.normalized_pattern for r in rules] == ["b"]

    def test_reinforce_caps_at_one(self, repo):
        rule = repo.insert_rule(_rule(confidence=0.98))
        updated = repo.reinforce_rule(rule.id, 0.05)
        assert updated.confidence == pytest.approx(1.0)
        assert updated.learned_from_count == 2

    def test_demote_floors(self, repo):
        rule = repo.insert_rule(_rule(confidence=0.15))
        assert repo.demote_rule(rule.id, 0.1, 0.1).confidence == pytest.approx(0.1)

    def test_find_conflicting(self, repo):
        repo.insert_rule(_rule())
        conflict = repo.find_conflicting_rule("engen sandton", "TRAVEL", True)
        assert conflict.category == "FUEL"
        assert repo.find_conflicting_rule("engen sandton", "FUEL", True) is None


# ── Client Categories ─────────────────────────────────────


class TestClientCategories:
    def test_upsert_updates_in_place(self, repo):
        first = repo.upsert_client_category(ClientCategory(
            client_id="c1", code="MINING", label="Mining", keywords=["drill"],
        ))
        second = repo.upsert_client_category(ClientCategory(
            client_id="c1", code="MINING", label="Mining Equipment", keywords=["drill", "bit"],
        ))
        assert second.id == first.id
        assert second.label == "Mining Equipment"
        assert second.keywords == ["drill", "bit"]

    def test_deactivate(self, repo):
        repo.upsert_client_category(ClientCategory(client_id="c1", code="MINING", label="Mining"))
        assert repo.deactivate_client_category("c1", "MINING") is True
        assert repo.get_client_categories("c1") == []
        assert len(repo.get_client_categories("c1", active_only=False)) == 1
        assert repo.deactivate_client_category("c1", "NOPE") is False

    def test_upsert_reactivates(self, repo):
        repo.upsert_client_category(ClientCategory(client_id="c1", code="MINING", label="Mining"))
        repo.deactivate_client_category("c1", "MINING")
        repo.upsert_client_category(ClientCategory(client_id="c1", code="MINING", label="Mining"))
        assert len(repo.get_client_categories("c1")) == 1


# ── LLM Cache ─────────────────────────────────────────────


class TestLLMCache:
    def test_upsert_keeps_one_row_per_pattern(self, repo):
        repo.upsert_llm_cache(LLMCacheEntry(
            normalized_pattern="qwerty labs", suggested_category="FUEL",
            confidence=0.6, provider="claude",
        ))
        repo.upsert_llm_cache(LLMCacheEntry(
            normalized_pattern="qwerty labs", suggested_category="SUBSCRIPTIONS",
            confidence=0.8, provider="openai",
        ))
        assert repo.count_llm_cache() == 1
        assert repo.get_llm_cache("qwerty labs").suggested_category == "SUBSCRIPTIONS"

    def test_increment_usage(self, repo):
        entry = repo.upsert_llm_cache(LLMCacheEntry(
            normalized_pattern="qwerty labs", suggested_category="FUEL",
            confidence=0.6, provider="claude",
        ))
        repo.increment_llm_cache_usage(entry.id)
        assert repo.get_llm_cache("qwerty labs").used_count == 2


# ── Bank Transactions ─────────────────────────────────────


class TestBankTransactions:
    def test_insert_and_get(self, repo):
        txn = repo.insert_bank_transaction(_txn(client_id="c1"))
        found = repo.get_bank_transaction(txn.id)
        assert found.client_id == "c1"
        assert found.is_debit is True
        assert found.processed is False

    def test_find_duplicate(self, repo):
        repo.insert_bank_transaction(_txn())
        assert repo.find_duplicate_transaction("u1", "2024-03-01", "ENGEN SANDTON", 450.0)
        assert repo.find_duplicate_transaction("u2", "2024-03-01", "ENGEN SANDTON", 450.0) is None

    def test_pending_newest_first(self, repo):
        repo.insert_bank_transaction(_txn(date="2024-01-01", raw_description="A"))
        repo.insert_bank_transaction(_txn(date="2024-02-01", raw_description="B"))
        pending = repo.get_pending_transactions()
        assert [t.raw_description for t in pending] == ["B", "A"]

    def test_suggestion_only_on_unprocessed(self, repo):
        txn = repo.insert_bank_transaction(_txn())
        assert repo.set_transaction_suggestion(txn.id, "FUEL", 0.4) is True
        repo.confirm_transaction(txn.id, "TRAVEL")
        assert repo.set_transaction_suggestion(txn.id, "FUEL", 0.4) is False
        assert repo.get_bank_transaction(txn.id).confirmed_category == "TRAVEL"

    def test_claim_is_exclusive(self, repo):
        txn = repo.insert_bank_transaction(_txn())
        assert repo.confirm_transaction(txn.id, "FUEL", confidence=0.95) is True
        assert repo.confirm_transaction(txn.id, "TRAVEL", confidence=0.95) is False
        assert repo.get_bank_transaction(txn.id).confirmed_category == "FUEL"

    def test_correction_overrides_claim(self, repo):
        txn = repo.insert_bank_transaction(_txn())
        repo.confirm_transaction(txn.id, "FUEL", confidence=0.95)
        assert repo.confirm_transaction(txn.id, "TRAVEL", user_id="u1", claim=False) is True
        found = repo.get_bank_transaction(txn.id)
        assert found.confirmed_category == "TRAVEL"
        assert found.confirmed_by_user_id == "u1"

    def test_counts(self, repo):
        a = repo.insert_bank_transaction(_txn(raw_description="A"))
        repo.insert_bank_transaction(_txn(raw_description="B"))
        repo.confirm_transaction(a.id, "FUEL")
        assert repo.count_pending_transactions() == 1
        assert repo.count_transactions(processed=True) == 1


# ── Agent & Jobs ──────────────────────────────────────────


class TestAgent:
    def test_lazy_create_with_defaults(self, repo):
        agent = repo.get_agent({"name": "Sean", "auto_allocate_interval": 30})
        assert agent.auto_allocate_interval == 30
        assert repo.get_agent().id == agent.id

    def test_update_rejects_unknown_columns(self, repo):
        agent = repo.get_agent()
        with pytest.raises(ValueError, match="Unknown columns"):
            repo.update_agent(agent.id, total_allocations=5)

    def test_update_encodes_lists_and_bools(self, repo):
        agent = repo.get_agent()
        updated = repo.update_agent(
            agent.id, authorized_actions=["RESPOND"], auto_allocate_enabled=True,
        )
        assert updated.authorized_actions == ["RESPOND"]
        assert updated.auto_allocate_enabled is True

    def test_record_run_accumulates(self, repo):
        agent = repo.get_agent()
        repo.record_agent_run(agent.id, 3, 1, "2024-03-01T08:00", "2024-03-01T09:00")
        repo.record_agent_run(agent.id, 2, 0, "2024-03-01T09:00", "2024-03-01T10:00")
        agent = repo.get_agent()
        assert agent.total_allocations == 5
        assert agent.total_llm_calls == 1
        assert agent.auto_allocate_next_run == "2024-03-01T10:00"


class TestJobRuns:
    def test_complete(self, repo):
        agent = repo.get_agent()
        job = repo.insert_job_run(AllocationJobRun(agent_id=agent.id, details={"limit": 5}))
        repo.complete_job_run(job.id, 4, 2, 1, 1, 0)
        found = repo.get_job_run(job.id)
        assert found.status == "COMPLETED"
        assert found.transactions_processed == 4

    def test_failed_job_not_completed_later(self, repo):
        agent = repo.get_agent()
        job = repo.insert_job_run(AllocationJobRun(agent_id=agent.id))
        repo.fail_job_run(job.id, "boom")
        repo.complete_job_run(job.id, 1, 1, 0, 0, 0)
        assert repo.get_job_run(job.id).status == "FAILED"


# ── Knowledge Items ───────────────────────────────────────


class TestKnowledgeItems:
    def test_insert_and_get(self, repo):
        item = repo.insert_knowledge_item(_item(tags=["vat"], secondary_domains=["PAYROLL"]))
        found = repo.get_knowledge_item(item.id)
        assert found.tags == ["vat"]
        assert found.secondary_domains == ["PAYROLL"]
        assert found.status == "PENDING"

    def test_duplicate_citation_raises(self, repo):
        first = repo.insert_knowledge_item(_item())
        with pytest.raises(DuplicateKnowledgeItemError) as exc:
            repo.insert_knowledge_item(_item())
        assert exc.value.existing_item_id == first.id

    def test_latest_version(self, repo):
        assert repo.get_latest_kb_version("vat_threshold") == 0
        repo.insert_knowledge_item(_item(version=1))
        repo.insert_knowledge_item(_item(version=2))
        assert repo.get_latest_kb_version("vat_threshold") == 2

    def test_approved_visibility(self, repo):
        repo.insert_knowledge_item(_item(slug="a", status="APPROVED"))
        repo.insert_knowledge_item(_item(slug="b", status="PENDING"))
        repo.insert_knowledge_item(_item(
            slug="c", status="APPROVED", layer="CLIENT",
            scope_type="CLIENT", scope_client_id="c1",
        ))
        assert {i.slug for i in repo.get_approved_knowledge()} == {"a"}
        assert {i.slug for i in repo.get_approved_knowledge("c1")} == {"a", "c"}
        assert {i.slug for i in repo.get_approved_knowledge("c1", "CLIENT")} == {"c"}

    def test_slug_fragment(self, repo):
        repo.insert_knowledge_item(_item(slug="bootstrap_qhabc123", status="APPROVED"))
        assert repo.find_approved_by_slug_fragment("qhabc123").slug == "bootstrap_qhabc123"
        assert repo.find_approved_by_slug_fragment("qhzzz") is None

    def test_by_domains(self, repo):
        repo.insert_knowledge_item(_item(slug="a", status="APPROVED", primary_domain="VAT"))
        repo.insert_knowledge_item(_item(slug="b", status="APPROVED", primary_domain="PAYROLL"))
        found = repo.get_approved_by_domains(["VAT", "OTHER"])
        assert [i.slug for i in found] == ["a"]

    def test_update_status(self, repo):
        item = repo.insert_knowledge_item(_item())
        assert repo.update_knowledge_status(item.id, "APPROVED") is True
        assert repo.get_knowledge_item(item.id).status == "APPROVED"


class TestAudit:
    def test_insert_and_count(self, repo):
        repo.insert_audit(AuditEntry(action_type="KB_SUBMIT", entity_type="KnowledgeItem",
                                     user_id="u1", details={"x": 1}))
        repo.insert_audit(AuditEntry(action_type="KB_SUBMIT", entity_type="KnowledgeItem",
                                     user_id="u2"))
        assert repo.count_audit_entries("KB_SUBMIT") == 2
        assert repo.count_audit_entries("KB_SUBMIT", "u1") == 1
        assert repo.get_audit_entries("KB_SUBMIT", "u1")[0].details == {"x": 1}
