"""Redaction helpers for safe logging.

Reservation records carry producer contacts, NIFs and free-text notes.
None of that may reach the logs; only ids, rooms, day keys and counts.
"""

import re
from datetime import date, datetime
from typing import Any

_PHONE_PATTERN = re.compile(r"\+?\d[\d\s\-()]{8,}\d")
_EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

_REDACTED = "[REDACTED]"

# Reservation fields that are never logged, whatever their content.
SENSITIVE_FIELDS = frozenset({
    "notes",
    "adminNotes",
    "admin_notes",
    "nif",
    "email",
    "contact",
    "producerName",
    "producer_name",
    "responsablePerson",
    "responsable_person",
})


def redact_string(value: str) -> str:
    """Redact PII patterns from a string."""
    result = _PHONE_PATTERN.sub(_REDACTED, value)
    result = _EMAIL_PATTERN.sub(_REDACTED, result)
    return result


def redact_value(value: Any) -> str:
    """Redact any value for safe logging. Returns string representation."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        # For dicts, only log keys (structure), never values
        return f"dict(keys={sorted(value.keys())})"
    if isinstance(value, (list, tuple, set, frozenset)):
        return f"list(len={len(value)})"
    return f"<{type(value).__name__}>"


def safe_log_context(**kwargs: Any) -> dict[str, str]:
    """Build a context dict safe for logging.

    Sensitive reservation fields are dropped to a marker; everything else
    is redacted.
    """
    return {
        k: (_REDACTED if k in SENSITIVE_FIELDS else redact_value(v))
        for k, v in kwargs.items()
    }
