"""Field-level envelope encryption for PHI and PII.

Each sensitive field is encrypted with a data key from the KeyProvider using
XChaCha20-Poly1305 (libsodium via PyNaCl). The encryption context is bound
as additional authenticated data and embedded in the envelope.

Security invariants:
- Fresh 24-byte random nonce per encryption; rewriting a field always
  produces a new envelope even for identical plaintext
- Decryption fails closed with CryptoError on an unknown version or
  algorithm, a tag mismatch, a context mismatch, or a malformed envelope
- Per-field context includes the field name, so envelopes cannot be moved
  between fields
- Plaintext values and data keys are never logged

Envelope format (base64 of compact JSON):
    {"version": "1.0", "algorithm": "XCHACHA20-POLY1305",
     "wrapped_key": b64, "iv": b64, "auth_tag": b64, "ciphertext": b64,
     "context": {...}}
"""

import base64
import binascii
import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import nacl.utils
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError as NaclCryptoError

from serenya.logging import get_logger
from serenya.services.keys import KeyProvider, KeyProviderError, canonical_context

logger = get_logger(__name__)

ENVELOPE_VERSION = "1.0"
ALGORITHM = "XCHACHA20-POLY1305"
NONCE_SIZE = 24
TAG_SIZE = 16

SUPPORTED_VERSIONS = frozenset({ENVELOPE_VERSION})


class CryptoError(Exception):
    """Encryption or decryption/integrity failure."""


@dataclass(frozen=True)
class EncryptedFieldEnvelope:
    """Persisted representation of one encrypted field value."""

    wrapped_key: bytes
    iv: bytes
    auth_tag: bytes
    ciphertext: bytes
    context: dict[str, str] = field(default_factory=dict)
    version: str = ENVELOPE_VERSION
    algorithm: str = ALGORITHM

    def serialize(self) -> str:
        """Encode as a transportable base64 string."""
        payload = {
            "version": self.version,
            "algorithm": self.algorithm,
            "wrapped_key": _b64(self.wrapped_key),
            "iv": _b64(self.iv),
            "auth_tag": _b64(self.auth_tag),
            "ciphertext": _b64(self.ciphertext),
            "context": self.context,
        }
        raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    @classmethod
    def parse(cls, value: str) -> "EncryptedFieldEnvelope":
        """Decode a serialized envelope.

        Raises:
            CryptoError: If the value is not a well-formed envelope.
        """
        try:
            payload = json.loads(base64.b64decode(value, validate=True))
            context = payload["context"]
            if not isinstance(context, dict):
                raise ValueError("context must be an object")
            return cls(
                version=str(payload["version"]),
                algorithm=str(payload["algorithm"]),
                wrapped_key=base64.b64decode(payload["wrapped_key"], validate=True),
                iv=base64.b64decode(payload["iv"], validate=True),
                auth_tag=base64.b64decode(payload["auth_tag"], validate=True),
                ciphertext=base64.b64decode(payload["ciphertext"], validate=True),
                context=context,
            )
        except (binascii.Error, ValueError, KeyError, TypeError) as e:
            raise CryptoError("Malformed encrypted field envelope") from e


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class EnvelopeCipher:
    """Encrypts and decrypts individual fields under a master key.

    Args:
        key_provider: Source of data keys.
        master_key_id: Default master key for encryption.
    """

    def __init__(self, key_provider: KeyProvider, master_key_id: str):
        self._keys = key_provider
        self.master_key_id = master_key_id

    def encrypt_field(
        self,
        plaintext: str | None,
        context: dict[str, str] | None = None,
        *,
        master_key_id: str | None = None,
    ) -> str | None:
        """Encrypt one value.

        Args:
            plaintext: Value to encrypt. Empty or None returns None.
            context: Encryption context bound as additional authenticated data.
            master_key_id: Override for the default master key.

        Returns:
            Serialized envelope, or None for absent input.

        Raises:
            CryptoError: If a data key cannot be obtained.
        """
        if plaintext is None or plaintext == "":
            return None

        context = dict(context or {})
        try:
            data_key = self._keys.get_data_key(master_key_id or self.master_key_id, context)
        except KeyProviderError as e:
            raise CryptoError("Encryption failed: data key unavailable") from e

        nonce = nacl.utils.random(NONCE_SIZE)
        aad = canonical_context(context).encode("utf-8")
        sealed = crypto_aead_xchacha20poly1305_ietf_encrypt(
            plaintext.encode("utf-8"), aad, nonce, data_key.plaintext
        )

        envelope = EncryptedFieldEnvelope(
            wrapped_key=data_key.wrapped,
            iv=nonce,
            auth_tag=sealed[-TAG_SIZE:],
            ciphertext=sealed[:-TAG_SIZE],
            context=context,
        )
        return envelope.serialize()

    def decrypt_field(
        self,
        serialized: str | None,
        expected_context: dict[str, str] | None = None,
    ) -> str | None:
        """Decrypt one value.

        Args:
            serialized: Envelope from encrypt_field. Empty or None returns None.
            expected_context: If given, must equal the embedded context.

        Returns:
            The plaintext.

        Raises:
            CryptoError: On any version, context, key or tag failure.
        """
        if serialized is None or serialized == "":
            return None

        envelope = EncryptedFieldEnvelope.parse(serialized)

        if envelope.version not in SUPPORTED_VERSIONS:
            raise CryptoError(f"Unsupported envelope version: {envelope.version}")
        if envelope.algorithm != ALGORITHM:
            raise CryptoError(f"Unsupported algorithm: {envelope.algorithm}")
        if len(envelope.iv) != NONCE_SIZE or len(envelope.auth_tag) != TAG_SIZE:
            raise CryptoError("Malformed encrypted field envelope")
        if expected_context is not None and expected_context != envelope.context:
            logger.warning("decryption_context_mismatch", context_keys=sorted(envelope.context))
            raise CryptoError("Encryption context mismatch")

        try:
            key = self._keys.unwrap_data_key(envelope.wrapped_key, envelope.context)
        except KeyProviderError as e:
            raise CryptoError("Decryption failed: data key could not be unwrapped") from e

        try:
            plaintext = crypto_aead_xchacha20poly1305_ietf_decrypt(
                envelope.ciphertext + envelope.auth_tag,
                canonical_context(envelope.context).encode("utf-8"),
                envelope.iv,
                key,
            )
        except NaclCryptoError as e:
            logger.error("decryption_failed", error=type(e).__name__)
            raise CryptoError("Decryption failed: authentication tag did not verify") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoError("Decryption failed: plaintext is not valid UTF-8") from e

    def encrypt_fields(
        self,
        record: dict[str, Any],
        field_names: Iterable[str],
        context: dict[str, str] | None = None,
        *,
        master_key_id: str | None = None,
    ) -> dict[str, Any]:
        """Return a copy of record with the named fields encrypted.

        Each field is encrypted under context plus {"field": name}. Absent or
        empty fields are left untouched.
        """
        result = dict(record)
        for name in field_names:
            value = result.get(name)
            if value is None or value == "":
                continue
            field_context = {**(context or {}), "field": name}
            result[name] = self.encrypt_field(
                str(value), field_context, master_key_id=master_key_id
            )
        return result

    def decrypt_fields(self, record: dict[str, Any], field_names: Iterable[str]) -> dict[str, Any]:
        """Return a copy of record with the named fields decrypted.

        Raises:
            CryptoError: If an envelope was encrypted for a different field.
        """
        result = dict(record)
        for name in field_names:
            value = result.get(name)
            if value is None or value == "":
                continue
            envelope = EncryptedFieldEnvelope.parse(value)
            if envelope.context.get("field") != name:
                raise CryptoError(f"Envelope was not encrypted for field {name!r}")
            result[name] = self.decrypt_field(value)
        return result


def hash_for_index(value: str | None) -> str | None:
    """One-way SHA-256 hex digest for exact-match lookups."""
    if not value:
        return None
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_email(email: str | None, salt: str) -> str | None:
    """Salted SHA-256 of a lowercased email for equality lookups.

    Args:
        email: The email address.
        salt: Environment-wide salt (EMAIL_HASH_SALT).

    Raises:
        ValueError: If salt is empty.
    """
    if not email:
        return None
    if not salt:
        raise ValueError("EMAIL_HASH_SALT is required for email hashing")
    return hashlib.sha256((email.lower() + salt).encode("utf-8")).hexdigest()
