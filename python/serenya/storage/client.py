"""Object storage client abstraction.

Provides a clean interface for the temporary bucket that holds:
- Uploaded documents pending processing
- Completed result artifacts
- Chat response artifacts

Every key is write-once-then-delete. "Not found" is reported as
ObjectNotFoundError so callers can tell a missing artifact apart from an
outage. All methods receive the full object key; see storage.paths.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from serenya.logging import get_logger

logger = get_logger(__name__)

NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


@dataclass(frozen=True)
class ObjectMetadata:
    """Storage object metadata.

    Advisory only - do not trust for security validation.
    """

    content_type: str
    size_bytes: int
    metadata: dict[str, str]


class StorageError(Exception):
    """Storage operation error."""

    def __init__(self, message: str, code: str = "E_STORAGE_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


class ObjectNotFoundError(StorageError):
    """The requested key does not exist."""

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}", code="E_STORAGE_MISSING")
        self.key = key


class ObjectStoreBase(ABC):
    """Abstract base class for object store implementations."""

    @abstractmethod
    def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> None:
        """Write an object.

        Raises:
            StorageError: If the write fails.
        """
        ...

    @abstractmethod
    def get_object(self, key: str) -> bytes:
        """Read an object's full content.

        Raises:
            ObjectNotFoundError: If the key does not exist.
            StorageError: On any other failure.
        """
        ...

    @abstractmethod
    def head_object(self, key: str) -> ObjectMetadata | None:
        """Return metadata, or None if the key does not exist.

        Raises:
            StorageError: On failures other than not-found.
        """
        ...

    @abstractmethod
    def delete_object(self, key: str) -> bool:
        """Delete an object.

        Best-effort operation - logs errors but doesn't raise.

        Returns:
            True if the delete call succeeded (including already-absent keys).
        """
        ...


class S3ObjectStore(ObjectStoreBase):
    """Production object store backed by S3 via boto3."""

    def __init__(self, bucket: str, region_name: str, client=None):
        """Initialize the S3 store.

        Args:
            bucket: Bucket name.
            region_name: AWS region.
            client: Optional pre-built boto3 S3 client (tests pass a stubbed one).
        """
        self._bucket = bucket
        self._client = client or boto3.client("s3", region_name=region_name)

    def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> None:
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata or {},
                ServerSideEncryption="aws:kms",
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to write object {key}: {e}") from e

    def get_object(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                raise ObjectNotFoundError(key) from e
            raise StorageError(f"Failed to read object {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to read object {key}: {e}") from e

    def head_object(self, key: str) -> ObjectMetadata | None:
        try:
            response = self._client.head_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return None
            raise StorageError(f"Failed to head object {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to head object {key}: {e}") from e
        return ObjectMetadata(
            content_type=response.get("ContentType", "application/octet-stream"),
            size_bytes=int(response.get("ContentLength", 0)),
            metadata=dict(response.get("Metadata", {})),
        )

    def delete_object(self, key: str) -> bool:
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning("storage_delete_failed", key=key, error=str(e))
            return False


class FakeObjectStore(ObjectStoreBase):
    """In-memory object store for local development and tests.

    Test helpers:
    - keys(): stored keys
    - fail_deletes: make delete_object report failure without deleting
    - fail_reads: make get_object raise StorageError
    """

    def __init__(self):
        self._objects: dict[str, tuple[bytes, str, dict[str, str]]] = {}
        self.fail_deletes = False
        self.fail_reads = False

    def put_object(
        self,
        key: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        metadata: dict[str, str] | None = None,
    ) -> None:
        self._objects[key] = (bytes(data), content_type, dict(metadata or {}))

    def get_object(self, key: str) -> bytes:
        if self.fail_reads:
            raise StorageError(f"Simulated read failure: {key}")
        if key not in self._objects:
            raise ObjectNotFoundError(key)
        return self._objects[key][0]

    def head_object(self, key: str) -> ObjectMetadata | None:
        if key not in self._objects:
            return None
        data, content_type, metadata = self._objects[key]
        return ObjectMetadata(content_type=content_type, size_bytes=len(data), metadata=metadata)

    def delete_object(self, key: str) -> bool:
        if self.fail_deletes:
            logger.warning("storage_delete_failed", key=key, error="simulated")
            return False
        self._objects.pop(key, None)
        return True

    # Test helper methods

    def keys(self) -> list[str]:
        """List stored keys (test helper)."""
        return sorted(self._objects)

    def clear(self) -> None:
        """Clear all stored objects (test helper)."""
        self._objects.clear()


def compute_sha256(data: bytes) -> str:
    """Compute the SHA-256 hex digest of object content."""
    return hashlib.sha256(data).hexdigest()
