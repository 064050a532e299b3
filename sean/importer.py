"""Transaction import: parsed records into the pending allocation queue.

A record is a duplicate when the same user already has a transaction with
the same date, raw description and amount. Duplicates are skipped, not
errors. Imported rows start unprocessed so the next allocation job or
cron run picks them up.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field

from sean.audit import record_audit
from sean.database.models import BankTransaction
from sean.database.repository import Repository
from sean.parsers.base import RawTransaction

logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LENGTH = 500


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    transaction_ids: list[str] = field(default_factory=list)


def import_transactions(
    records: list[RawTransaction],
    repo: Repository,
    user_id: str,
) -> ImportResult:
    """Insert parsed records as pending bank transactions."""
    result = ImportResult()

    for raw in records:
        raw_description = raw.description.strip()[:DESCRIPTION_MAX_LENGTH]
        amount = round(abs(raw.amount), 2)
        is_debit = raw.is_debit if raw.is_debit is not None else raw.amount < 0

        if repo.find_duplicate_transaction(user_id, raw.date, raw_description, amount):
            result.skipped += 1
            continue

        txn = BankTransaction(
            user_id=user_id,
            client_id=raw.client_id,
            date=raw.date,
            description=" ".join(raw_description.split()),
            raw_description=raw_description,
            amount=amount,
            is_debit=is_debit,
        )
        try:
            repo.insert_bank_transaction(txn)
        except sqlite3.IntegrityError:
            # Same row inserted between the duplicate check and ours
            repo.conn.rollback()
            result.skipped += 1
            continue
        except sqlite3.Error:
            logger.exception("Failed to import transaction '%s' on %s", raw_description, raw.date)
            repo.conn.rollback()
            result.errors += 1
            continue

        result.imported += 1
        result.transaction_ids.append(txn.id)

    logger.info(
        "Imported %d transactions (%d duplicates skipped, %d errors)",
        result.imported, result.skipped, result.errors,
    )
    if result.imported:
        record_audit(
            repo, "TRANSACTION_IMPORT", "BankTransaction",
            details={
                "imported": result.imported,
                "skipped": result.skipped,
                "errors": result.errors,
            },
            user_id=user_id,
        )
    return result
