"""Tests for teach-message parsing, submission and approval."""

import pytest

from sean.knowledge.teach import (
    TeachInput,
    is_teach_message,
    parse_teach_message,
    set_item_status,
    submit_knowledge,
)
from sean.database.repository import Repository
from sean.validation import NotFoundError, ValidationError
from tests.conftest import MIGRATIONS_DIR

CONTENT = "Compulsory VAT registration applies once taxable supplies exceed R1 million."


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


class TestIsTeachMessage:
    @pytest.mark.parametrize("text", [
        "TEACH: something", "leer: iets", "Save to knowledge: x",
    ])
    def test_prefixes(self, text):
        assert is_teach_message(text)

    @pytest.mark.parametrize("text", ["What is VAT?", "", None, " TEACH: leading space"])
    def test_not_teach(self, text):
        assert not is_teach_message(text)


class TestParse:
    def test_full_metadata(self):
        parsed = parse_teach_message(
            "TEACH:\n"
            "LAYER: legal\n"
            "TITLE: VAT registration threshold\n"
            "DOMAIN: vat\n"
            "SECONDARY_DOMAINS: company_tax, bogus\n"
            "TAGS: vat, registration, \n"
            "LANGUAGE: af\n"
            f"CONTENT: {CONTENT}\n"
            "Voluntary registration is possible above R50 000."
        )
        assert parsed.layer == "LEGAL"
        assert parsed.title == "VAT registration threshold"
        assert parsed.primary_domain == "VAT"
        assert parsed.secondary_domains == ["COMPANY_TAX"]
        assert parsed.tags == ["vat", "registration"]
        assert parsed.language == "AF"
        assert parsed.content_text == (
            f"{CONTENT}\nVoluntary registration is possible above R50 000."
        )

    def test_inline_content_and_derived_title(self):
        parsed = parse_teach_message(f"TEACH: {CONTENT}")
        assert parsed.content_text == CONTENT
        assert parsed.title == CONTENT[:60] + "..."
        assert parsed.layer == "FIRM"
        assert parsed.primary_domain == "OTHER"

    def test_short_first_line_with_period_kept_as_title(self):
        parsed = parse_teach_message("LEER: Provisional tax is due twice a year.")
        assert parsed.title == "Provisional tax is due twice a year."

    def test_blank_line_starts_content(self):
        parsed = parse_teach_message(f"TEACH:\nTITLE: VAT threshold\n\n{CONTENT}")
        assert parsed.title == "VAT threshold"
        assert parsed.content_text == CONTENT

    def test_invalid_values_fall_back(self):
        parsed = parse_teach_message(f"TEACH:\nLAYER: GALAXY\nDOMAIN: SPACE\nCONTENT: {CONTENT}")
        assert parsed.layer == "FIRM"
        assert parsed.primary_domain == "OTHER"

    def test_client_scope(self):
        parsed = parse_teach_message(
            f"TEACH:\nLAYER: CLIENT\nCLIENT: acme-001\nCONTENT: {CONTENT}"
        )
        assert parsed.scope_type == "CLIENT"
        assert parsed.scope_client_id == "acme-001"

    def test_client_layer_requires_client(self):
        with pytest.raises(ValidationError, match="CLIENT layer requires"):
            parse_teach_message(f"TEACH:\nLAYER: CLIENT\nCONTENT: {CONTENT}")

    @pytest.mark.parametrize("text", ["TEACH:", "TEACH:\nTITLE: Only a title"])
    def test_no_content(self, text):
        with pytest.raises(ValidationError, match="No content"):
            parse_teach_message(text)

    def test_not_a_teach_message(self):
        with pytest.raises(ValidationError):
            parse_teach_message("What is VAT?")


class TestSubmit:
    def test_first_version_pending(self, repo):
        item = submit_knowledge(
            TeachInput(title="VAT registration threshold", content_text=CONTENT,
                       primary_domain="VAT"),
            repo, "u1",
        )
        assert item.citation_id == "KB:FIRM:vat_registration_threshold:v1"
        assert item.status == "PENDING"
        assert repo.get_knowledge_item(item.id).submitted_by_user_id == "u1"
        audit = repo.get_audit_entries("KB_SUBMIT")[0]
        assert audit.details["is_new_version"] is False

    def test_resubmission_is_next_version(self, repo):
        teach = TeachInput(title="VAT registration threshold", content_text=CONTENT)
        submit_knowledge(teach, repo, "u1")
        second = submit_knowledge(teach, repo, "u1")
        assert second.kb_version == 2
        assert second.citation_id.endswith(":v2")
        assert repo.get_audit_entries("KB_SUBMIT")[0].details["is_new_version"] is True

    def test_layer_in_citation(self, repo):
        item = submit_knowledge(
            TeachInput(title="Income Tax Act s11", content_text=CONTENT, layer="LEGAL"),
            repo, "u1",
        )
        assert item.citation_id.startswith("KB:LEGAL:")

    @pytest.mark.parametrize("title,content", [
        ("VAT", CONTENT),
        ("VAT registration threshold", "too short"),
        ("!!!!!", CONTENT),
    ])
    def test_validation(self, repo, title, content):
        with pytest.raises(ValidationError):
            submit_knowledge(TeachInput(title=title, content_text=content), repo, "u1")


class TestSetStatus:
    @pytest.fixture
    def item(self, repo):
        return submit_knowledge(
            TeachInput(title="VAT registration threshold", content_text=CONTENT), repo, "u1",
        )

    def test_approve(self, repo, item):
        updated = set_item_status(item.id, "approved", repo, "reviewer")
        assert updated.status == "APPROVED"
        audit = repo.get_audit_entries("KB_APPROVE")[0]
        assert audit.user_id == "reviewer"
        assert audit.details["citation_id"] == item.citation_id

    def test_reject(self, repo, item):
        assert set_item_status(item.id, "REJECTED", repo, "reviewer").status == "REJECTED"
        assert repo.count_audit_entries("KB_REJECT") == 1

    def test_invalid_status(self, repo, item):
        with pytest.raises(ValidationError):
            set_item_status(item.id, "PENDING", repo, "reviewer")

    def test_missing_item(self, repo):
        with pytest.raises(NotFoundError):
            set_item_status("nope", "APPROVED", repo, "reviewer")
