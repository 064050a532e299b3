"""Allocation job runner: categorizes pending bank transactions in batches.

Per transaction: suggestion engine first, LLM fallback second, and an
OTHER placeholder when neither produces anything. Confident results are
confirmed; the rest are left as suggestions for review. A failing
transaction is counted and skipped; a failure outside the loop marks the
whole job FAILED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sean.audit import record_audit
from sean.categorize.learner import learn_from_correction
from sean.categorize.llm_fallback import get_llm_allocation
from sean.categorize.suggest import suggest_category
from sean.config import Config
from sean.database.models import AllocationJobRun
from sean.database.repository import Repository
from sean.llm.providers import LLMProvider

logger = logging.getLogger(__name__)

UNALLOCATED_CATEGORY = "OTHER"
UNALLOCATED_CONFIDENCE = 0.1
SYSTEM_USER = "system"


@dataclass
class ProcessResult:
    success: bool
    category: str | None = None
    confidence: float = 0.0
    source: str = "none"  # exact | learned | keyword | client_keyword | llm | none
    auto_confirmed: bool = False
    needs_review: bool = True
    error: str | None = None


@dataclass
class JobResult:
    job_id: str
    processed: int = 0
    auto_allocated: int = 0
    llm_allocated: int = 0
    needs_review: int = 0
    errors: int = 0


def _already_processed(repo: Repository, transaction_id: str) -> ProcessResult:
    txn = repo.get_bank_transaction(transaction_id)
    return ProcessResult(
        success=True,
        category=txn.confirmed_category if txn else None,
        confidence=1.0,
        source="exact",
        auto_confirmed=False,
        needs_review=False,
    )


def process_transaction(
    transaction_id: str,
    repo: Repository,
    config: Config,
    provider: LLMProvider | None = None,
    auto_confirm_above: float = 0.9,
    use_llm_fallback: bool = True,
) -> ProcessResult:
    """Suggest, and if confident enough confirm, one transaction's category."""
    txn = repo.get_bank_transaction(transaction_id)
    if txn is None:
        return ProcessResult(success=False, error="Transaction not found")

    if txn.confirmed_category and txn.processed:
        return _already_processed(repo, transaction_id)

    suggestion = suggest_category(txn.raw_description, repo, config, txn.client_id)

    if suggestion.category and suggestion.match_type != "none":
        if suggestion.confidence >= auto_confirm_above:
            if not repo.confirm_transaction(
                transaction_id, suggestion.category, confidence=suggestion.confidence
            ):
                return _already_processed(repo, transaction_id)
            return ProcessResult(
                success=True,
                category=suggestion.category,
                confidence=suggestion.confidence,
                source=suggestion.match_type,
                auto_confirmed=True,
                needs_review=False,
            )

        if not repo.set_transaction_suggestion(
            transaction_id, suggestion.category, suggestion.confidence
        ):
            return _already_processed(repo, transaction_id)
        return ProcessResult(
            success=True,
            category=suggestion.category,
            confidence=suggestion.confidence,
            source=suggestion.match_type,
        )

    if use_llm_fallback:
        llm = get_llm_allocation(txn.raw_description, repo, config, provider)
        if llm:
            if llm.confidence >= auto_confirm_above:
                if not repo.confirm_transaction(
                    transaction_id, llm.category, confidence=llm.confidence
                ):
                    return _already_processed(repo, transaction_id)
                learn_from_correction(
                    txn.raw_description, llm.category, repo, config, SYSTEM_USER,
                    feedback=f"Auto-learned from {llm.provider}: {llm.reasoning}",
                )
                return ProcessResult(
                    success=True,
                    category=llm.category,
                    confidence=llm.confidence,
                    source="llm",
                    auto_confirmed=True,
                    needs_review=False,
                )

            if not repo.set_transaction_suggestion(
                transaction_id, llm.category, llm.confidence
            ):
                return _already_processed(repo, transaction_id)
            return ProcessResult(
                success=True,
                category=llm.category,
                confidence=llm.confidence,
                source="llm",
            )

    if not repo.set_transaction_suggestion(
        transaction_id, UNALLOCATED_CATEGORY, UNALLOCATED_CONFIDENCE
    ):
        return _already_processed(repo, transaction_id)
    return ProcessResult(
        success=True,
        category=UNALLOCATED_CATEGORY,
        confidence=UNALLOCATED_CONFIDENCE,
        source="none",
    )


def run_allocation_job(
    repo: Repository,
    config: Config,
    provider: LLMProvider | None = None,
    user_id: str | None = None,
    limit: int = 100,
    auto_confirm_above: float = 0.85,
    use_llm_fallback: bool = True,
) -> JobResult:
    """Process up to `limit` pending transactions and record the run.

    Raises:
        Exception: Anything escaping the per-transaction loop, after the
            job row has been marked FAILED.
    """
    agent = repo.get_agent(config.agent_defaults)
    job = repo.insert_job_run(AllocationJobRun(
        agent_id=agent.id,
        details={
            "user_id": user_id,
            "limit": limit,
            "auto_confirm_above": auto_confirm_above,
            "use_llm_fallback": use_llm_fallback,
        },
    ))
    result = JobResult(job_id=job.id)

    try:
        pending = repo.get_pending_transactions(limit, user_id)
        logger.info("Allocation job %s: %d pending transactions", job.id, len(pending))

        for txn in pending:
            try:
                outcome = process_transaction(
                    txn.id, repo, config, provider,
                    auto_confirm_above=auto_confirm_above,
                    use_llm_fallback=use_llm_fallback,
                )
            except Exception as e:
                logger.warning("Failed to allocate txn %s: %s", txn.id, e)
                result.errors += 1
                continue

            if not outcome.success:
                continue
            result.processed += 1
            if outcome.auto_confirmed:
                if outcome.source == "llm":
                    result.llm_allocated += 1
                else:
                    result.auto_allocated += 1
            elif outcome.needs_review:
                result.needs_review += 1

        repo.complete_job_run(
            job.id,
            processed=result.processed,
            auto_allocated=result.auto_allocated,
            llm_allocated=result.llm_allocated,
            needs_review=result.needs_review,
            errors=result.errors,
            details=job.details,
        )

        now = datetime.now(timezone.utc)
        interval = repo.get_agent(config.agent_defaults).auto_allocate_interval
        repo.record_agent_run(
            agent.id,
            allocations=result.auto_allocated + result.llm_allocated,
            llm_calls=result.llm_allocated,
            last_run=now.isoformat(),
            next_run=(now + timedelta(minutes=interval)).isoformat(),
        )
    except Exception as e:
        logger.exception("Allocation job %s failed", job.id)
        repo.fail_job_run(job.id, str(e))
        raise

    logger.info(
        "Allocation job %s complete: %d processed, %d auto, %d llm, %d review, %d errors",
        job.id, result.processed, result.auto_allocated, result.llm_allocated,
        result.needs_review, result.errors,
    )
    record_audit(
        repo, "ALLOCATION_JOB_COMPLETE", "AllocationJobRun", job.id,
        details={
            "processed": result.processed,
            "auto_allocated": result.auto_allocated,
            "llm_allocated": result.llm_allocated,
            "needs_review": result.needs_review,
            "errors": result.errors,
        },
        user_id=user_id,
    )
    return result
