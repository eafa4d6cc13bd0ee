"""Object key building utilities.

Single point of logic for object keys in the temporary bucket.

Key layout:
    uploads/{user_id}/{job_id}/{sanitized_file_name}
    results/{job_id}.json
    chat-responses/{chat_job_id}.json

Rules:
    - No leading slash
    - Sanitized file names only
    - STORAGE_TEST_PREFIX (if set) is applied exactly once
"""

import os
import re

# Environment variable for test run prefix
TEST_PREFIX_ENV_VAR = "STORAGE_TEST_PREFIX"

MAX_FILE_NAME_CHARS = 100
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_REPEATED_UNDERSCORES = re.compile(r"_+")


def _get_test_prefix() -> str:
    prefix = os.environ.get(TEST_PREFIX_ENV_VAR, "")
    if prefix and not prefix.endswith("/"):
        prefix = f"{prefix}/"
    return prefix


def sanitize_file_name(file_name: str) -> str:
    """Make a user-supplied file name safe for use in an object key.

    Replaces anything outside [A-Za-z0-9._-] with "_", collapses repeated
    underscores and truncates to 100 characters.

    Raises:
        ValueError: If nothing usable remains.
    """
    cleaned = _UNSAFE_CHARS.sub("_", file_name.strip())
    cleaned = _REPEATED_UNDERSCORES.sub("_", cleaned)
    cleaned = cleaned[:MAX_FILE_NAME_CHARS]
    if not cleaned.strip("._"):
        raise ValueError("File name has no usable characters")
    return cleaned


def build_upload_key(user_id: str, job_id: str, sanitized_file_name: str) -> str:
    """Key for an uploaded document awaiting processing."""
    return f"{_get_test_prefix()}uploads/{user_id}/{job_id}/{sanitized_file_name}"


def build_result_key(job_id: str) -> str:
    """Key for a completed document result artifact."""
    return f"{_get_test_prefix()}results/{job_id}.json"


def build_chat_response_key(chat_job_id: str) -> str:
    """Key for a chat response artifact."""
    return f"{_get_test_prefix()}chat-responses/{chat_job_id}.json"
