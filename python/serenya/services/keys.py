"""Data key provisioning for field-level envelope encryption.

The key-management service holds the master key. For each encryption
context it issues a 256-bit data key in two forms: plaintext (used locally,
never persisted) and wrapped (encrypted under the master key, stored next to
the ciphertext).

Caching rules:
- get_data_key() results are cached per (master key id, context) for the
  cache TTL; a hit makes no network call
- unwrap_data_key() is never cached; caching it would mean holding one
  plaintext key per stored record
- Concurrent misses for the same context may each fetch a fresh key and
  overwrite each other's entry; data keys are interchangeable, so this only
  costs an extra round trip

Failure:
- Every collaborator error surfaces as KeyProviderError; callers never
  proceed without a key
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass

import boto3
import nacl.utils
from botocore.exceptions import BotoCoreError, ClientError
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError as NaclCryptoError

from serenya.cache import TTLCache
from serenya.logging import get_logger

logger = get_logger(__name__)

DATA_KEY_SIZE = 32  # 256-bit
FAKE_NONCE_SIZE = 24


class KeyProviderError(Exception):
    """Raised when a data key cannot be issued or unwrapped."""


@dataclass(frozen=True)
class DataKey:
    """A data key in plaintext and wrapped form.

    The plaintext half must never be logged or persisted.
    """

    plaintext: bytes
    wrapped: bytes

    def __repr__(self) -> str:
        return f"DataKey(wrapped_len={len(self.wrapped)})"


def canonical_context(context: dict[str, str]) -> str:
    """Serialize an encryption context deterministically.

    Used both as the cache key component and as the additional authenticated
    data, so key order in the caller's dict never matters.

    Raises:
        KeyProviderError: If a key or value is not a string.
    """
    for key, value in context.items():
        if not isinstance(key, str) or not isinstance(value, str):
            raise KeyProviderError("Encryption context keys and values must be strings")
    return json.dumps(context, sort_keys=True, separators=(",", ":"))


class KmsClientBase(ABC):
    """Interface to the key-management service."""

    @abstractmethod
    def generate_data_key(self, master_key_id: str, context: dict[str, str]) -> DataKey:
        """Issue a fresh 256-bit data key bound to the context.

        Raises:
            KeyProviderError: On any service failure.
        """
        ...

    @abstractmethod
    def decrypt(self, wrapped: bytes, context: dict[str, str]) -> bytes:
        """Unwrap a data key. Fails if the context differs from issuance.

        Raises:
            KeyProviderError: On any service failure or context mismatch.
        """
        ...


class BotoKmsClient(KmsClientBase):
    """AWS KMS client backed by boto3."""

    def __init__(self, region_name: str, client=None):
        """Initialize the KMS client.

        Args:
            region_name: AWS region.
            client: Optional pre-built boto3 KMS client (tests pass a stubbed one).
        """
        self._client = client or boto3.client("kms", region_name=region_name)

    def generate_data_key(self, master_key_id: str, context: dict[str, str]) -> DataKey:
        try:
            response = self._client.generate_data_key(
                KeyId=master_key_id,
                KeySpec="AES_256",
                EncryptionContext=context,
            )
        except (BotoCoreError, ClientError) as e:
            raise KeyProviderError(f"GenerateDataKey failed: {e}") from e
        return DataKey(plaintext=response["Plaintext"], wrapped=response["CiphertextBlob"])

    def decrypt(self, wrapped: bytes, context: dict[str, str]) -> bytes:
        try:
            response = self._client.decrypt(CiphertextBlob=wrapped, EncryptionContext=context)
        except (BotoCoreError, ClientError) as e:
            raise KeyProviderError(f"Decrypt failed: {e}") from e
        return response["Plaintext"]


class FakeKmsClient(KmsClientBase):
    """In-memory KMS for local development and tests.

    Wraps data keys with a process-local master secret and binds the
    context and master key id as additional authenticated data, so a
    context mismatch fails the same way real KMS does.

    Test helpers:
    - generate_calls / decrypt_calls: number of calls made
    - fail_next: make the next call raise KeyProviderError
    """

    def __init__(self):
        self._master_secret = nacl.utils.random(DATA_KEY_SIZE)
        self.generate_calls = 0
        self.decrypt_calls = 0
        self.fail_next = False

    def _check_failure(self) -> None:
        if self.fail_next:
            self.fail_next = False
            raise KeyProviderError("Simulated KMS outage")

    def generate_data_key(self, master_key_id: str, context: dict[str, str]) -> DataKey:
        self.generate_calls += 1
        self._check_failure()
        plaintext = nacl.utils.random(DATA_KEY_SIZE)
        nonce = nacl.utils.random(FAKE_NONCE_SIZE)
        key_id_bytes = master_key_id.encode("utf-8")
        aad = key_id_bytes + b"|" + canonical_context(context).encode("utf-8")
        sealed = crypto_aead_xchacha20poly1305_ietf_encrypt(
            plaintext, aad, nonce, self._master_secret
        )
        wrapped = len(key_id_bytes).to_bytes(2, "big") + key_id_bytes + nonce + sealed
        return DataKey(plaintext=plaintext, wrapped=wrapped)

    def decrypt(self, wrapped: bytes, context: dict[str, str]) -> bytes:
        self.decrypt_calls += 1
        self._check_failure()
        try:
            key_id_len = int.from_bytes(wrapped[:2], "big")
            key_id_bytes = wrapped[2 : 2 + key_id_len]
            nonce = wrapped[2 + key_id_len : 2 + key_id_len + FAKE_NONCE_SIZE]
            sealed = wrapped[2 + key_id_len + FAKE_NONCE_SIZE :]
            aad = key_id_bytes + b"|" + canonical_context(context).encode("utf-8")
            return crypto_aead_xchacha20poly1305_ietf_decrypt(
                sealed, aad, nonce, self._master_secret
            )
        except (NaclCryptoError, ValueError) as e:
            raise KeyProviderError("InvalidCiphertextException") from e


class KeyProvider:
    """Issues cached data keys and unwraps stored ones.

    Args:
        kms_client: The key-management service client.
        cache: Cache for issued data keys, keyed by (master key id, context).
    """

    def __init__(self, kms_client: KmsClientBase, cache: TTLCache):
        self._kms = kms_client
        self._cache = cache

    def get_data_key(self, master_key_id: str, context: dict[str, str]) -> DataKey:
        """Return a data key for the context, from cache when fresh.

        Raises:
            KeyProviderError: If the key service fails.
        """
        cache_key = (master_key_id, canonical_context(context))
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            data_key = self._kms.generate_data_key(master_key_id, context)
        except KeyProviderError as e:
            logger.error("data_key_generation_failed", error=str(e))
            raise
        except Exception as e:
            logger.error("data_key_generation_failed", error=str(e))
            raise KeyProviderError("Failed to generate data key") from e

        if len(data_key.plaintext) != DATA_KEY_SIZE:
            raise KeyProviderError(
                f"Data key must be {DATA_KEY_SIZE} bytes, got {len(data_key.plaintext)}"
            )

        self._cache.set(cache_key, data_key)
        logger.debug("data_key_issued", context_keys=sorted(context))
        return data_key

    def unwrap_data_key(self, wrapped: bytes, context: dict[str, str]) -> bytes:
        """Unwrap a stored data key. Always calls the key service.

        Raises:
            KeyProviderError: If the key service fails or the context does not match.
        """
        canonical_context(context)
        try:
            return self._kms.decrypt(wrapped, context)
        except KeyProviderError as e:
            logger.error("data_key_unwrap_failed", error=str(e))
            raise
        except Exception as e:
            logger.error("data_key_unwrap_failed", error=str(e))
            raise KeyProviderError("Failed to unwrap data key") from e
