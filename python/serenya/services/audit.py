"""Audit trail for security- and PHI-relevant actions.

Each call appends one AuditEvent row:
- user ids are stored only as a SHA-256 hash
- details are encrypted with the envelope cipher when the classification is
  medical_phi or restricted, stored as compact JSON otherwise
- event_hash covers the stored record (timestamp, type, subtype, user hash,
  request id, stored details) so tampering is detectable without keys

record_audit_event() propagates failures. try_record_audit_event() is the
variant used on error paths: an audit failure is logged and never masks the
primary error.
"""

import hashlib
import json
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from serenya.db.models import AuditEvent, DataClassification
from serenya.logging import get_logger, get_request_id
from serenya.services.crypto import EnvelopeCipher, hash_for_index
from serenya.services.sanitize import AUDIT_ERROR_MAX_CHARS, sanitize_error_text

logger = get_logger(__name__)

ENCRYPTED_CLASSIFICATIONS = frozenset(
    {DataClassification.medical_phi, DataClassification.restricted}
)


def compute_event_hash(
    event_timestamp: datetime,
    event_type: str,
    event_subtype: str,
    user_id_hash: str | None,
    request_id: str | None,
    stored_details: str | None,
) -> str:
    """SHA-256 over the pipe-joined stored fields of an audit record."""
    hash_input = "|".join(
        [
            event_timestamp.isoformat(),
            event_type,
            event_subtype,
            user_id_hash or "",
            request_id or "",
            stored_details or "",
        ]
    )
    return hashlib.sha256(hash_input.encode("utf-8")).hexdigest()


def verify_event_hash(event: AuditEvent) -> bool:
    """Whether a stored audit row still matches its event_hash."""
    expected = compute_event_hash(
        event.event_timestamp,
        event.event_type,
        event.event_subtype,
        event.user_id_hash,
        event.request_id,
        event.details,
    )
    return expected == event.event_hash


def _prepare_details(details: dict[str, Any] | None) -> dict[str, Any]:
    prepared = dict(details or {})
    if "error" in prepared:
        prepared["error"] = sanitize_error_text(prepared["error"], max_chars=AUDIT_ERROR_MAX_CHARS)
    return prepared


def record_audit_event(
    db: Session,
    cipher: EnvelopeCipher | None,
    *,
    event_type: str,
    event_subtype: str,
    user_id: str | None,
    details: dict[str, Any] | None = None,
    classification: DataClassification = DataClassification.internal,
    request_id: str | None = None,
    now: datetime | None = None,
) -> AuditEvent:
    """Append an audit event and commit.

    Raises:
        ValueError: If the classification requires encryption and no cipher is given.
        CryptoError: If encryption fails.
    """
    now = now or datetime.now(UTC)
    request_id = request_id or get_request_id()
    prepared = _prepare_details(details)
    serialized = json.dumps(prepared, sort_keys=True, separators=(",", ":"), default=str)

    encrypted = classification in ENCRYPTED_CLASSIFICATIONS
    if encrypted:
        if cipher is None:
            raise ValueError(f"{classification.value} audit details require a cipher")
        stored = cipher.encrypt_field(
            serialized, {"purpose": "audit_details", "event_type": event_type}
        )
    else:
        stored = serialized

    user_id_hash = hash_for_index(user_id)
    event = AuditEvent(
        event_timestamp=now,
        event_type=event_type,
        event_subtype=event_subtype,
        user_id_hash=user_id_hash,
        request_id=request_id,
        data_classification=classification,
        details=stored,
        details_encrypted=encrypted,
        event_hash=compute_event_hash(
            now, event_type, event_subtype, user_id_hash, request_id, stored
        ),
    )
    db.add(event)
    db.commit()

    logger.info(
        "audit_event_recorded",
        event_type=event_type,
        event_subtype=event_subtype,
        classification=classification.value,
    )
    return event


def try_record_audit_event(db: Session, cipher: EnvelopeCipher | None, **kwargs: Any) -> bool:
    """Best-effort record_audit_event for error paths.

    Returns:
        True if the event was written.
    """
    try:
        record_audit_event(db, cipher, **kwargs)
        return True
    except Exception as e:
        db.rollback()
        logger.warning(
            "audit_event_failed",
            event_type=kwargs.get("event_type"),
            event_subtype=kwargs.get("event_subtype"),
            error_type=type(e).__name__,
        )
        return False


def read_audit_details(event: AuditEvent, cipher: EnvelopeCipher | None) -> dict[str, Any]:
    """Decode (and if needed decrypt) an event's details."""
    if not event.details:
        return {}
    raw = event.details
    if event.details_encrypted:
        if cipher is None:
            raise ValueError("Encrypted audit details require a cipher")
        raw = cipher.decrypt_field(
            raw, {"purpose": "audit_details", "event_type": event.event_type}
        )
    return json.loads(raw)
