"""
PII redaction - strips obvious personal identifiers from free-form metadata
before it is written to a case audit trail or the activity log.

Best effort only: misses and over-matches are both expected. The contract is
that the pattern classes below are replaced with REDACTED and nothing else in
the string changes.
"""

import re
from typing import Any

REDACTED = "[REDACTED]"

EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
SSN_RE = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
LONG_DIGITS_RE = re.compile(r"\b\d{10,16}\b")
PHONE_RE = re.compile(
    r"(?<!\w)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?:\s*ext\.?\s*\d+)?(?!\w)",
    re.IGNORECASE,
)

# Long digit runs go before phones so a 16 digit card number is not split
# into a phone match plus a readable tail.
PATTERNS = (
    ("email", EMAIL_RE),
    ("ssn", SSN_RE),
    ("long_digits", LONG_DIGITS_RE),
    ("phone", PHONE_RE),
)


def redact_string(value: str) -> str:
    for _, pattern in PATTERNS:
        value = pattern.sub(REDACTED, value)
    return value


def redact_pii(value: Any) -> Any:
    """Recursively redact PII in string values of dicts, lists and tuples.

    Keys are left alone; non-string leaves (numbers, bools, None) pass through.
    """
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        return {k: redact_pii(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact_pii(item) for item in value]
    return value
