"""Tests for field-level envelope encryption.

Tests cover:
- Round trip, absent values, fresh nonce per encryption
- Context binding (expected context, tampered context)
- Tag, version, algorithm and malformed-envelope failures
- Per-field contexts in encrypt_fields / decrypt_fields
- Data keys are reused from cache for encryption
- Index and email hashing
"""

import base64
import json

import pytest

from serenya.services.crypto import (
    ALGORITHM,
    ENVELOPE_VERSION,
    CryptoError,
    EncryptedFieldEnvelope,
    hash_email,
    hash_for_index,
)

CONTEXT = {"job_id": "job-1", "purpose": "document_result"}


def _tamper(serialized: str, **changes) -> str:
    """Rewrite envelope JSON fields and re-encode."""
    payload = json.loads(base64.b64decode(serialized))
    payload.update(changes)
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


class TestRoundTrip:
    def test_encrypt_then_decrypt(self, cipher):
        sealed = cipher.encrypt_field("Total cholesterol 245 mg/dL", CONTEXT)
        assert cipher.decrypt_field(sealed, CONTEXT) == "Total cholesterol 245 mg/dL"

    def test_unicode_round_trip(self, cipher):
        sealed = cipher.encrypt_field("Hämoglobin 13,5 g/dl", CONTEXT)
        assert cipher.decrypt_field(sealed) == "Hämoglobin 13,5 g/dl"

    @pytest.mark.parametrize("value", [None, ""])
    def test_absent_values_pass_through(self, cipher, value):
        assert cipher.encrypt_field(value, CONTEXT) is None
        assert cipher.decrypt_field(value) is None

    def test_fresh_nonce_per_encryption(self, cipher):
        first = cipher.encrypt_field("same", CONTEXT)
        second = cipher.encrypt_field("same", CONTEXT)

        assert first != second
        assert EncryptedFieldEnvelope.parse(first).iv != EncryptedFieldEnvelope.parse(second).iv

    def test_data_key_reused_from_cache(self, cipher, kms):
        cipher.encrypt_field("one", CONTEXT)
        cipher.encrypt_field("two", CONTEXT)
        assert kms.generate_calls == 1

    def test_envelope_shape(self, cipher):
        envelope = EncryptedFieldEnvelope.parse(cipher.encrypt_field("value", CONTEXT))

        assert envelope.version == ENVELOPE_VERSION
        assert envelope.algorithm == ALGORITHM
        assert envelope.context == CONTEXT
        assert len(envelope.iv) == 24
        assert len(envelope.auth_tag) == 16
        assert b"value" not in envelope.ciphertext


class TestFailClosed:
    """Every integrity problem raises CryptoError."""

    def test_expected_context_mismatch(self, cipher):
        sealed = cipher.encrypt_field("value", CONTEXT)
        with pytest.raises(CryptoError, match="context mismatch"):
            cipher.decrypt_field(sealed, {**CONTEXT, "job_id": "job-2"})

    def test_tampered_embedded_context(self, cipher):
        sealed = cipher.encrypt_field("value", CONTEXT)
        tampered = _tamper(sealed, context={**CONTEXT, "job_id": "job-2"})
        with pytest.raises(CryptoError):
            cipher.decrypt_field(tampered)

    def test_tampered_ciphertext(self, cipher):
        sealed = cipher.encrypt_field("value", CONTEXT)
        payload = json.loads(base64.b64decode(sealed))
        raw = bytearray(base64.b64decode(payload["ciphertext"]))
        raw[0] ^= 0x01
        tampered = _tamper(sealed, ciphertext=base64.b64encode(bytes(raw)).decode("ascii"))

        with pytest.raises(CryptoError, match="authentication tag"):
            cipher.decrypt_field(tampered)

    def test_unknown_version(self, cipher):
        sealed = _tamper(cipher.encrypt_field("value", CONTEXT), version="9.9")
        with pytest.raises(CryptoError, match="Unsupported envelope version"):
            cipher.decrypt_field(sealed)

    def test_unknown_algorithm(self, cipher):
        sealed = _tamper(cipher.encrypt_field("value", CONTEXT), algorithm="AES-256-GCM")
        with pytest.raises(CryptoError, match="Unsupported algorithm"):
            cipher.decrypt_field(sealed)

    @pytest.mark.parametrize("value", ["not-base64!", base64.b64encode(b"[]").decode(), "e30="])
    def test_malformed_envelope(self, cipher, value):
        with pytest.raises(CryptoError, match="Malformed"):
            cipher.decrypt_field(value)

    def test_key_service_outage_on_encrypt(self, cipher, kms):
        kms.fail_next = True
        with pytest.raises(CryptoError, match="data key unavailable"):
            cipher.encrypt_field("value", CONTEXT)

    def test_key_service_outage_on_decrypt(self, cipher, kms):
        sealed = cipher.encrypt_field("value", CONTEXT)
        kms.fail_next = True
        with pytest.raises(CryptoError, match="could not be unwrapped"):
            cipher.decrypt_field(sealed)


class TestRecordFields:
    """encrypt_fields / decrypt_fields bind each value to its field name."""

    def test_named_fields_encrypted(self, cipher):
        record = {"interpretation_text": "Normal", "confidence_score": 8, "empty": ""}
        encrypted = cipher.encrypt_fields(record, ["interpretation_text", "empty"], CONTEXT)

        assert encrypted["confidence_score"] == 8
        assert encrypted["empty"] == ""
        assert encrypted["interpretation_text"] != "Normal"
        envelope = EncryptedFieldEnvelope.parse(encrypted["interpretation_text"])
        assert envelope.context == {**CONTEXT, "field": "interpretation_text"}

    def test_round_trip(self, cipher):
        record = {"a": "alpha", "b": "beta"}
        encrypted = cipher.encrypt_fields(record, ["a", "b"], CONTEXT)
        assert cipher.decrypt_fields(encrypted, ["a", "b"]) == record

    def test_swapped_fields_rejected(self, cipher):
        encrypted = cipher.encrypt_fields({"a": "alpha", "b": "beta"}, ["a", "b"], CONTEXT)
        swapped = {"a": encrypted["b"], "b": encrypted["a"]}

        with pytest.raises(CryptoError, match="not encrypted for field"):
            cipher.decrypt_fields(swapped, ["a", "b"])


class TestHashing:
    def test_hash_for_index_is_stable(self):
        assert hash_for_index("user-1") == hash_for_index("user-1")
        assert len(hash_for_index("user-1")) == 64

    def test_hash_for_index_absent(self):
        assert hash_for_index(None) is None
        assert hash_for_index("") is None

    def test_hash_email_is_case_insensitive(self):
        assert hash_email("Pat@Example.com", "salt") == hash_email("pat@example.com", "salt")

    def test_hash_email_depends_on_salt(self):
        assert hash_email("pat@example.com", "a") != hash_email("pat@example.com", "b")

    def test_hash_email_requires_salt(self):
        with pytest.raises(ValueError, match="EMAIL_HASH_SALT"):
            hash_email("pat@example.com", "")
