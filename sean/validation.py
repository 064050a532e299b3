"""Input validation shared by the CLI and the engines.

All checks raise before any state is touched.
"""

from __future__ import annotations

VALID_LAYERS = ("LEGAL", "FIRM", "CLIENT")
VALID_SCOPES = ("GLOBAL", "CLIENT")
VALID_LANGUAGES = ("AF", "EN", "MIXED")
VALID_DOMAINS = (
    "VAT",
    "INCOME_TAX",
    "COMPANY_TAX",
    "PAYROLL",
    "CAPITAL_GAINS_TAX",
    "WITHHOLDING_TAX",
    "ACCOUNTING_GENERAL",
    "OTHER",
)


class ValidationError(ValueError):
    """Raised when user input is malformed."""


class NotFoundError(LookupError):
    """Raised when a referenced category, transaction or item does not exist."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


def _check_length(value: str | None, name: str, min_len: int, max_len: int) -> str:
    text = (value or "").strip()
    if len(text) < min_len:
        raise ValidationError(f"{name} must be at least {min_len} characters")
    if len(text) > max_len:
        raise ValidationError(f"{name} must be at most {max_len} characters")
    return text


def validate_question(question: str | None) -> str:
    """A question is 3-1000 characters after trimming."""
    return _check_length(question, "Question", 3, 1000)


def validate_title(title: str | None) -> str:
    return _check_length(title, "Title", 5, 200)


def validate_content(content: str | None) -> str:
    return _check_length(content, "Content", 20, 10000)


def validate_layer(layer: str | None) -> str | None:
    """Uppercase a layer name; None passes through, unknown names raise."""
    if layer is None:
        return None
    upper = layer.strip().upper()
    if upper not in VALID_LAYERS:
        raise ValidationError(
            f"Invalid layer '{layer}'. Expected one of: {', '.join(VALID_LAYERS)}"
        )
    return upper


def validate_domain(domain: str | None) -> str | None:
    if domain is None:
        return None
    upper = domain.strip().upper()
    if upper not in VALID_DOMAINS:
        raise ValidationError(
            f"Invalid domain '{domain}'. Expected one of: {', '.join(VALID_DOMAINS)}"
        )
    return upper
