"""Redaction of sensitive values in free text.

Error messages from collaborators (database drivers, AWS SDK, LLM replies)
can echo fragments of the document or user input. Anything persisted to a
job row, written to an audit record or rendered into a log line passes
through here first.

Never-log policy:
- Document content, interpretations and chat messages
- Data keys (plaintext or wrapped) and secrets
- Bearer tokens
"""

import re

SSN_PATTERN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
CARD_PATTERN = re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b")

JOB_ERROR_MAX_CHARS = 500
AUDIT_ERROR_MAX_CHARS = 100


def redact_sensitive(value: str) -> str:
    """Mask SSNs, email addresses and card numbers."""
    value = SSN_PATTERN.sub("[SSN]", value)
    value = EMAIL_PATTERN.sub("[EMAIL]", value)
    value = CARD_PATTERN.sub("[CARD]", value)
    return value


def sanitize_error_text(
    value: str | BaseException | None, max_chars: int = JOB_ERROR_MAX_CHARS
) -> str:
    """Redact and truncate an error message for persistence.

    Args:
        value: The error message or exception.
        max_chars: Maximum length of the returned text.

    Returns:
        Redacted text, at most max_chars long. Empty input yields
        "Unknown error".
    """
    text = str(value) if value is not None else ""
    text = redact_sensitive(text).strip()
    if not text:
        return "Unknown error"
    return text[:max_chars]
