"""JSON transaction parser.

Accepts a list of transaction objects, {"transactions": [...]},
{"transaction": {...}} or a single transaction object. Keys follow the
API payloads: date, description, amount and optionally isDebit/is_debit,
reference and clientId/client_id.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from .base import BaseParser, RawTransaction, parse_amount, parse_date, parse_flag

logger = logging.getLogger(__name__)


class JsonTransactionParser(BaseParser):

    def __init__(self, client_id: str | None = None):
        super().__init__()
        self.client_id = client_id

    def detect(self, file_path: Path) -> bool:
        return Path(file_path).suffix.lower() == ".json"

    def parse(self, file_path: Path) -> list[RawTransaction]:
        with open(file_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        return self.parse_payload(payload)

    def parse_payload(self, payload) -> list[RawTransaction]:
        self.skipped_count = 0
        transactions: list[RawTransaction] = []
        for record in self._records(payload):
            txn = self._parse_record(record) if isinstance(record, dict) else None
            if txn is not None:
                transactions.append(txn)
            else:
                self.skipped_count += 1
        if self.skipped_count:
            logger.warning("Skipped %d unreadable transaction records", self.skipped_count)
        return transactions

    @staticmethod
    def _records(payload) -> list:
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            if isinstance(payload.get("transactions"), list):
                return payload["transactions"]
            if isinstance(payload.get("transaction"), dict):
                return [payload["transaction"]]
            return [payload]
        return []

    def _parse_record(self, record: dict) -> RawTransaction | None:
        description = str(record.get("description") or "").strip()
        date = parse_date(str(record.get("date") or ""))
        amount = parse_amount(record.get("amount"))
        if not description or date is None or amount is None:
            return None

        is_debit = record.get("isDebit", record.get("is_debit"))
        return RawTransaction(
            date=date,
            description=description,
            amount=amount,
            is_debit=parse_flag(is_debit) if is_debit is not None else None,
            reference=str(record["reference"]) if record.get("reference") else None,
            client_id=record.get("clientId") or record.get("client_id") or self.client_id,
        )
