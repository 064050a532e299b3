"""Pattern normalization for bank transaction descriptions.

Two descriptions that differ only in amounts, dates or reference numbers
normalize to the same pattern, so rules learned on one apply to the other.
Changing these rules invalidates every stored normalized_pattern.
"""

from __future__ import annotations

import re

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
_AMOUNT = re.compile(r"\b(r|zar)?\s*\d+([.,]\d+)?\b")
_ISO_DATE = re.compile(r"\b\d{4}[-/]\d{2}[-/]\d{2}\b")
_LONG_NUMBER = re.compile(r"\b\d{6,}\b")

STOP_WORDS = frozenset({
    "the", "and", "for", "from", "with", "ref", "reference",
    "payment", "debit", "order",
})


def normalize_description(description: str) -> str:
    """Reduce a description to its learnable pattern.

    >>> normalize_description("ENGEN Sandton R 450.00 2024-01-15 Ref 12345678")
    'engen sandton ref'
    """
    text = (description or "").lower()
    text = _NON_ALNUM.sub("", text)
    text = _WHITESPACE.sub(" ", text)
    text = _AMOUNT.sub("", text)
    text = _ISO_DATE.sub("", text)
    text = _LONG_NUMBER.sub("", text)
    # Removals can leave doubled spaces behind
    text = _WHITESPACE.sub(" ", text)
    return text.strip()


def extract_keywords(description: str) -> list[str]:
    """Significant tokens of the normalized description, in order."""
    return [
        word
        for word in normalize_description(description).split(" ")
        if len(word) > 2 and word not in STOP_WORDS
    ]
