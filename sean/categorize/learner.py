"""Correction learner: turns user (or system) confirmations into rules.

A correction either reinforces the rule that already maps the pattern to
the confirmed category, or creates a new rule and weakens any rule in the
same scope that disagreed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sean.audit import record_audit
from sean.categorize.normalize import normalize_description
from sean.config import Config
from sean.database.models import AllocationRule
from sean.database.repository import DuplicateRuleError, Repository
from sean.validation import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

NEW_RULE_CONFIDENCE = 0.7
REINFORCE_STEP = 0.05
CONFLICT_PENALTY = 0.1
CONFLICT_FLOOR = 0.1


@dataclass
class LearnResult:
    rule_id: str
    is_new: bool


def validate_category(
    category: str, repo: Repository, config: Config, client_id: str | None = None
) -> None:
    """Raise NotFoundError unless category is in the taxonomy or the client's list."""
    if config.category_by_code(category):
        return
    if client_id and repo.get_client_category(client_id, category):
        return
    raise NotFoundError("Category", category)


def learn_from_correction(
    description: str,
    correct_category: str,
    repo: Repository,
    config: Config,
    user_id: str,
    feedback: str | None = None,
    client_id: str | None = None,
    is_global: bool | None = None,
) -> LearnResult:
    """Record that `description` belongs to `correct_category`.

    Scope is the client when client_id is given and is_global is not
    explicitly True; otherwise the rule is global.
    """
    if not description or not description.strip():
        raise ValidationError("Description is required")
    if not correct_category:
        raise ValidationError("Category is required")
    if is_global is False and not client_id:
        raise ValidationError("client_id is required for a client-scoped rule")
    validate_category(correct_category, repo, config, client_id)

    if is_global is None:
        is_global = not client_id
    scope_client = None if is_global else client_id
    normalized = normalize_description(description)

    existing = repo.find_rule(normalized, correct_category, is_global, scope_client)
    if existing:
        return _reinforce(existing, repo, user_id, feedback)

    conflicting = repo.find_conflicting_rule(
        normalized, correct_category, is_global, scope_client
    )
    if conflicting:
        demoted = repo.demote_rule(conflicting.id, CONFLICT_PENALTY, CONFLICT_FLOOR)
        logger.info(
            "Demoted rule %s (%s) to %.2f after correction to %s",
            conflicting.id, conflicting.category,
            demoted.confidence if demoted else CONFLICT_FLOOR, correct_category,
        )

    rule = AllocationRule(
        pattern=description,
        normalized_pattern=normalized,
        category=correct_category,
        confidence=NEW_RULE_CONFIDENCE,
        learned_from_count=1,
        is_global=is_global,
        client_id=scope_client,
        created_by_user_id=user_id,
    )
    try:
        repo.insert_rule(rule)
    except DuplicateRuleError:
        # Another writer created the same rule first; count ours as a reinforcement
        winner = repo.find_rule(normalized, correct_category, is_global, scope_client)
        if winner is None:
            raise
        return _reinforce(winner, repo, user_id, feedback)

    logger.info(
        "Learned rule %s: '%s' -> %s (%s)",
        rule.id, normalized, correct_category,
        "global" if is_global else f"client {scope_client}",
    )
    record_audit(
        repo, "ALLOCATION_LEARN", "AllocationRule", rule.id,
        details={
            "pattern": normalized,
            "category": correct_category,
            "feedback": feedback,
            "had_conflict": conflicting is not None,
        },
        user_id=user_id,
    )
    return LearnResult(rule_id=rule.id, is_new=True)


def _reinforce(
    rule: AllocationRule, repo: Repository, user_id: str, feedback: str | None
) -> LearnResult:
    updated = repo.reinforce_rule(rule.id, REINFORCE_STEP)
    logger.debug(
        "Reinforced rule %s (count=%d)",
        rule.id, updated.learned_from_count if updated else rule.learned_from_count + 1,
    )
    record_audit(
        repo, "ALLOCATION_REINFORCE", "AllocationRule", rule.id,
        details={
            "pattern": rule.normalized_pattern,
            "category": rule.category,
            "feedback": feedback,
        },
        user_id=user_id,
    )
    return LearnResult(rule_id=rule.id, is_new=False)


def apply_correction(
    transaction_id: str,
    correct_category: str,
    repo: Repository,
    config: Config,
    user_id: str,
    feedback: str | None = None,
) -> LearnResult:
    """Confirm a transaction's category and learn from it in the transaction's scope."""
    txn = repo.get_bank_transaction(transaction_id)
    if txn is None:
        raise NotFoundError("Transaction", transaction_id)

    result = learn_from_correction(
        txn.raw_description, correct_category, repo, config, user_id,
        feedback=feedback, client_id=txn.client_id,
    )
    repo.confirm_transaction(
        transaction_id, correct_category,
        user_id=user_id, feedback=feedback, claim=False,
    )
    return result
