"""PII redaction for log/audit payloads and regex detection of raw PII in text.

Everything here is pure: nothing is logged, stored or returned except the
redacted copy or a yes/no answer.
"""

import re
from typing import Any

REDACTED = "[REDACTED]"
MAX_DEPTH = 32
MASK_PREFIX = "****"
HINT_VISIBLE = 4

# Key-name substrings (matched case-insensitively)
SENSITIVE_KEYS: tuple[str, ...] = (
    "password",
    "passwd",
    "ssn",
    "social_security",
    "card",
    "cvv",
    "cvc",
    "token",
    "secret",
    "apikey",
    "api_key",
    "private_key",
    "authorization",
    "email",
    "phone",
    "account_number",
    "iban",
)

PII_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "credit_card": re.compile(r"(?<!\d)(?:\d[ -]?){12,18}\d(?!\d)"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"(?<!\d)(?:\+?\d{1,2}[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}(?!\d)"),
}


def is_sensitive_key(key: Any) -> bool:
    lowered = str(key).lower()
    return any(fragment in lowered for fragment in SENSITIVE_KEYS)


def sanitize_for_logging(obj: Any, _depth: int = 0) -> Any:
    """Return a copy of ``obj`` with every sensitive-named field redacted.

    Recurses into dicts, lists and tuples; other values pass through.
    """
    if _depth > MAX_DEPTH:
        return REDACTED
    if isinstance(obj, dict):
        return {
            key: REDACTED if is_sensitive_key(key) else sanitize_for_logging(value, _depth + 1)
            for key, value in obj.items()
        }
    if isinstance(obj, (list, tuple)):
        return [sanitize_for_logging(item, _depth + 1) for item in obj]
    return obj


def detect_pii(text: str) -> list[str]:
    """Names of the PII detectors that match ``text``."""
    if not isinstance(text, str) or not text:
        return []
    return [name for name, pattern in PII_PATTERNS.items() if pattern.search(text)]


def contains_pii(text: str) -> bool:
    return bool(detect_pii(text))


def redact_pii(text: str) -> str:
    """Replace every detected PII match in free text with a typed marker."""
    if not isinstance(text, str):
        return text
    for name, pattern in PII_PATTERNS.items():
        text = pattern.sub(f"[REDACTED:{name}]", text)
    return text


def mask_value(value: str) -> str:
    """Display hint disclosing at most the last four characters.

    Values of four characters or fewer disclose nothing.
    """
    if len(value) <= HINT_VISIBLE:
        return MASK_PREFIX
    return MASK_PREFIX + value[-HINT_VISIBLE:]
