"""Bank statement CSV parser.

Expects a header row with Date, Description and Amount columns (case and
surrounding whitespace ignored). Reference, Client and Debit columns are
optional. Rows missing a required field or with an unreadable date or
amount are skipped and counted, as are rows with more fields than the header.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from .base import BaseParser, RawTransaction, parse_amount, parse_date, parse_flag

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("date", "description", "amount")


class BankCsvParser(BaseParser):
    """Parse generic bank CSV exports.

    Args:
        client_id: Client to attach to every row that has no Client column
            value of its own.
    """

    def __init__(self, client_id: str | None = None):
        super().__init__()
        self.client_id = client_id

    def detect(self, file_path: Path) -> bool:
        try:
            with open(file_path, "r", encoding="utf-8-sig", errors="replace") as f:
                header = f.readline()
        except (OSError, UnicodeDecodeError):
            return False
        columns = {c.strip().lower() for c in header.split(",")}
        return all(c in columns for c in REQUIRED_COLUMNS)

    def parse(self, file_path: Path) -> list[RawTransaction]:
        transactions: list[RawTransaction] = []
        self.skipped_count = 0  # Reset for each parse

        with open(file_path, "r", newline="", encoding="utf-8-sig", errors="replace") as f:
            reader = csv.DictReader(f)
            for row in reader:
                txn = self._parse_row(row)
                if txn is not None:
                    transactions.append(txn)
                else:
                    self.skipped_count += 1

        if self.skipped_count:
            logger.warning("Skipped %d unreadable rows in %s", self.skipped_count, file_path)
        return transactions

    def _parse_row(self, row: dict) -> RawTransaction | None:
        # Extra fields land under a None key, usually from an unquoted comma
        if None in row:
            return None
        row = {(k or "").strip().lower(): (v or "").strip() for k, v in row.items()}

        description = row.get("description", "")
        date = parse_date(row.get("date", ""))
        amount = parse_amount(row.get("amount", ""))
        if not description or date is None or amount is None:
            return None

        return RawTransaction(
            date=date,
            description=description,
            amount=amount,
            is_debit=parse_flag(row.get("debit")),
            reference=row.get("reference") or None,
            client_id=row.get("client") or self.client_id,
        )
