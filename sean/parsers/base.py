"""Base parser: shared interface, data structures, and utility functions."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

# Day-first before month-first: statements here are South African
DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d %b %Y",
    "%d %B %Y",
    "%Y%m%d",
)


@dataclass
class RawTransaction:
    """Intermediate representation output by parsers, before DB insertion."""
    date: str              # YYYY-MM-DD (normalized by parser)
    description: str
    amount: float          # signed as it appeared in the file
    is_debit: bool | None = None   # None: derive from the sign of amount
    reference: str | None = None
    client_id: str | None = None


class BaseParser(ABC):
    """Abstract base for transaction parsers.

    Attributes:
        skipped_count: Number of records skipped during parsing (missing
            fields, bad dates or amounts). Check this after parse() to
            detect silent data loss.
    """

    def __init__(self):
        self.skipped_count: int = 0

    @abstractmethod
    def parse(self, file_path: Path) -> list[RawTransaction]:
        """Parse a file and return normalized transactions."""

    @abstractmethod
    def detect(self, file_path: Path) -> bool:
        """Return True if this parser can handle the given file."""


def parse_date(value: str) -> str | None:
    """Normalize a statement date to YYYY-MM-DD. Returns None if unrecognized."""
    value = (value or "").strip()
    if not value:
        return None
    # ISO timestamps carry a time part we don't need
    if len(value) > 10 and value[4:5] == "-" and value[10:11] in ("T", " "):
        value = value[:10]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).strftime("%Y-%m-%d")
        except ValueError:
            continue
    return None


def parse_amount(value) -> float | None:
    """Float from a number or a string like 'R 1,250.00' or '(45.10)'."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value or "").strip().replace(",", "").replace(" ", "")
    if text.upper().startswith("R"):
        text = text[1:]
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    try:
        amount = float(text)
    except ValueError:
        return None
    return -amount if negative else amount


def parse_flag(value) -> bool | None:
    """Truthy/falsy column text as a bool, None when blank or unknown."""
    if isinstance(value, bool):
        return value
    text = str(value or "").strip().lower()
    if text in ("1", "true", "yes", "y", "debit", "dr"):
        return True
    if text in ("0", "false", "no", "n", "credit", "cr"):
        return False
    return None
