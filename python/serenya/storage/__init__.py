"""Storage module for the temporary object bucket.

Provides:
- ObjectStoreBase with S3 and in-memory implementations
- Key building utilities for uploads, results and chat artifacts
"""

from serenya.storage.client import (
    FakeObjectStore,
    ObjectMetadata,
    ObjectNotFoundError,
    ObjectStoreBase,
    S3ObjectStore,
    StorageError,
    compute_sha256,
)
from serenya.storage.paths import (
    build_chat_response_key,
    build_result_key,
    build_upload_key,
    sanitize_file_name,
)

__all__ = [
    "ObjectStoreBase",
    "S3ObjectStore",
    "FakeObjectStore",
    "ObjectMetadata",
    "ObjectNotFoundError",
    "StorageError",
    "compute_sha256",
    "build_upload_key",
    "build_result_key",
    "build_chat_response_key",
    "sanitize_file_name",
]
