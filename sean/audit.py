"""Best-effort audit trail.

Every state-changing operation records an entry here after it succeeds.
Callers never depend on the write: storage failures are logged and dropped.
"""

from __future__ import annotations

import logging
import sqlite3

from sean.database.models import AuditEntry
from sean.database.repository import Repository

logger = logging.getLogger(__name__)


def record_audit(
    repo: Repository,
    action_type: str,
    entity_type: str,
    entity_id: str | None = None,
    details: dict | None = None,
    user_id: str | None = None,
) -> AuditEntry | None:
    """Append an audit entry. Returns None if the write failed."""
    entry = AuditEntry(
        action_type=action_type,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details or {},
        user_id=user_id,
    )
    try:
        return repo.insert_audit(entry)
    except sqlite3.Error as e:
        logger.warning("Failed to record audit %s for %s: %s", action_type, entity_id, e)
        return None
