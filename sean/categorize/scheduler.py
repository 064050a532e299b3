"""Auto-allocation agent: state machine, authorization and scheduled runs.

The agent is a single persisted row created lazily with defaults from
settings.yaml. Scheduling is pull-based: an external trigger (cron, the
`sean cron` command) asks should_run_auto_allocation() and, when due,
runs one allocation job. Nothing here sleeps or loops.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sean.audit import record_audit
from sean.categorize.jobs import JobResult, run_allocation_job
from sean.config import Config
from sean.database.models import SeanAgent
from sean.database.repository import Repository
from sean.llm.providers import LLMProvider
from sean.validation import ValidationError

logger = logging.getLogger(__name__)

AGENT_STATUSES = ("ACTIVE", "INACTIVE", "PAUSED")
AGENT_ACTIONS = ("ALLOCATE", "RESPOND", "LEARN")
SCHEDULED_RUN_LIMIT = 200


@dataclass
class ScheduledRunResult:
    executed: bool
    reason: str | None = None
    job: JobResult | None = None
    next_run: str | None = None
    details: dict = field(default_factory=dict)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_agent(repo: Repository, config: Config | None = None) -> SeanAgent:
    return repo.get_agent(config.agent_defaults if config else None)


def is_authorized(repo: Repository, action: str, config: Config | None = None) -> bool:
    """True when the agent is ACTIVE and the action is in its authorized set."""
    agent = get_agent(repo, config)
    return agent.status == "ACTIVE" and action in agent.authorized_actions


def _not_due_reason(agent: SeanAgent, now: datetime) -> str | None:
    if agent.status != "ACTIVE":
        return "Agent is not active"
    if not agent.auto_allocate_enabled:
        return "Auto-allocation is disabled"
    if "ALLOCATE" not in agent.authorized_actions:
        return "ALLOCATE action is not authorized"
    next_run = _parse_time(agent.auto_allocate_next_run)
    if next_run is not None and now < next_run:
        return "Not yet time for next run"
    return None


def should_run_auto_allocation(
    repo: Repository, now: datetime | None = None, config: Config | None = None
) -> bool:
    """ACTIVE, enabled, ALLOCATE authorized, and next run unset or due."""
    agent = get_agent(repo, config)
    return _not_due_reason(agent, now or datetime.now(timezone.utc)) is None


def update_agent_status(
    repo: Repository,
    status: str,
    user_id: str | None = None,
    config: Config | None = None,
    now: datetime | None = None,
    **settings,
) -> SeanAgent:
    """Move the agent to `status` and apply optional settings.

    Accepted settings: authorized_actions, auto_allocate_enabled,
    auto_allocate_interval, auto_allocate_min_confidence,
    llm_fallback_enabled, llm_fallback_provider.

    Activating with auto-allocation enabled schedules the first run one
    interval from now.

    Raises:
        ValidationError: On an unknown status, action or out-of-range setting.
    """
    status = (status or "").upper()
    if status not in AGENT_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'. Expected one of: {', '.join(AGENT_STATUSES)}"
        )

    updates = {k: v for k, v in settings.items() if v is not None}
    if "authorized_actions" in updates:
        actions = [a.upper() for a in updates["authorized_actions"]]
        unknown = set(actions) - set(AGENT_ACTIONS)
        if unknown:
            raise ValidationError(f"Unknown agent actions: {', '.join(sorted(unknown))}")
        updates["authorized_actions"] = actions
    if "auto_allocate_interval" in updates and int(updates["auto_allocate_interval"]) < 1:
        raise ValidationError("auto_allocate_interval must be at least 1 minute")
    if "auto_allocate_min_confidence" in updates:
        min_conf = float(updates["auto_allocate_min_confidence"])
        if not 0.0 <= min_conf <= 1.0:
            raise ValidationError("auto_allocate_min_confidence must be between 0 and 1")

    agent = get_agent(repo, config)
    previous = agent.status
    enabled = updates.get("auto_allocate_enabled", agent.auto_allocate_enabled)
    if status == "ACTIVE" and enabled:
        interval = int(updates.get("auto_allocate_interval", agent.auto_allocate_interval))
        start = now or datetime.now(timezone.utc)
        updates["auto_allocate_next_run"] = (start + timedelta(minutes=interval)).isoformat()

    updated = repo.update_agent(agent.id, status=status, **updates)
    logger.info("Agent %s: %s -> %s", agent.name, previous, status)
    record_audit(
        repo, "AGENT_STATUS_CHANGE", "SeanAgent", agent.id,
        details={"from": previous, "to": status, "settings": updates},
        user_id=user_id,
    )
    return updated


def run_scheduled_allocation(
    repo: Repository,
    config: Config,
    provider: LLMProvider | None = None,
    now: datetime | None = None,
    limit: int | None = None,
) -> ScheduledRunResult:
    """Run one allocation job if the agent is due.

    Raises:
        Exception: Whatever the job raised, after a CRON_ALLOCATION_FAILED audit.
    """
    now = now or datetime.now(timezone.utc)
    agent = get_agent(repo, config)

    reason = _not_due_reason(agent, now)
    if reason:
        logger.debug("Scheduled allocation skipped: %s", reason)
        return ScheduledRunResult(
            executed=False, reason=reason, next_run=agent.auto_allocate_next_run
        )

    next_run = (now + timedelta(minutes=agent.auto_allocate_interval)).isoformat()
    if repo.count_pending_transactions() == 0:
        repo.update_agent(
            agent.id,
            auto_allocate_last_run=now.isoformat(),
            auto_allocate_next_run=next_run,
        )
        return ScheduledRunResult(
            executed=True, reason="No pending transactions", next_run=next_run
        )

    if limit is None:
        limit = int(config.allocation.get("scheduled_limit", SCHEDULED_RUN_LIMIT))
    try:
        job = run_allocation_job(
            repo, config, provider,
            limit=limit,
            auto_confirm_above=agent.auto_allocate_min_confidence,
            use_llm_fallback=agent.llm_fallback_enabled,
        )
    except Exception as e:
        record_audit(
            repo, "CRON_ALLOCATION_FAILED", "SeanAgent", agent.id,
            details={"error": str(e)},
        )
        raise

    agent = get_agent(repo, config)
    record_audit(
        repo, "CRON_ALLOCATION", "AllocationJobRun", job.job_id,
        details={
            "processed": job.processed,
            "auto_allocated": job.auto_allocated,
            "llm_allocated": job.llm_allocated,
            "needs_review": job.needs_review,
            "errors": job.errors,
        },
    )
    return ScheduledRunResult(executed=True, job=job, next_run=agent.auto_allocate_next_run)
