"""Result Assembler: client-facing payload for a completed document job.

Safety warnings are derived deterministically from the confidence score and
the medical flags:
- score <= 3: LOW_CONFIDENCE (high)
- score <= 6: MODERATE_CONFIDENCE (medium)
- ABNORMAL_VALUES: high, URGENT_CONSULTATION: critical,
  REQUIRES_FOLLOWUP: FOLLOWUP_NEEDED (medium); additive
- MEDICAL_DISCLAIMER (info) is always present and always last
"""

import re
from dataclasses import asdict, dataclass
from typing import Any

MAX_INTERPRETATION_CHARS = 5000

LOW_CONFIDENCE_MAX = 3
MODERATE_CONFIDENCE_MAX = 6


@dataclass(frozen=True)
class SafetyWarning:
    type: str
    message: str
    severity: str


LOW_CONFIDENCE_WARNING = SafetyWarning(
    type="LOW_CONFIDENCE",
    message="The AI interpretation has low confidence. Please consult a healthcare provider.",
    severity="high",
)
MODERATE_CONFIDENCE_WARNING = SafetyWarning(
    type="MODERATE_CONFIDENCE",
    message="The AI interpretation has moderate confidence. Consider discussing with your doctor.",
    severity="medium",
)
MEDICAL_DISCLAIMER_WARNING = SafetyWarning(
    type="MEDICAL_DISCLAIMER",
    message=(
        "This interpretation is for informational purposes only. "
        "Always consult healthcare professionals for medical advice."
    ),
    severity="info",
)

# Evaluated in this order
FLAG_WARNINGS: tuple[tuple[str, SafetyWarning], ...] = (
    (
        "ABNORMAL_VALUES",
        SafetyWarning(
            type="ABNORMAL_VALUES",
            message="Abnormal values detected. Please consult your healthcare provider promptly.",
            severity="high",
        ),
    ),
    (
        "URGENT_CONSULTATION",
        SafetyWarning(
            type="URGENT_CONSULTATION",
            message="Urgent consultation recommended. Contact your healthcare provider immediately.",
            severity="critical",
        ),
    ),
    (
        "REQUIRES_FOLLOWUP",
        SafetyWarning(
            type="FOLLOWUP_NEEDED",
            message="Follow-up recommended. Schedule an appointment with your healthcare provider.",
            severity="medium",
        ),
    ),
)

FLAG_DESCRIPTIONS = {
    "ABNORMAL_VALUES": "Some values appear outside normal ranges",
    "URGENT_CONSULTATION": "Urgent medical consultation recommended",
    "REQUIRES_FOLLOWUP": "Follow-up appointment recommended",
    "PROCESSING_ERROR": "Processing completed with technical issues",
    "LOW_QUALITY_IMAGE": "Image quality may affect interpretation accuracy",
    "INCOMPLETE_DATA": "Some information may be missing or unclear",
}

_SCRIPT_BLOCK = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]*>")
_JS_SCHEME = re.compile(r"javascript:", re.IGNORECASE)


def confidence_level(score: int) -> str:
    """Band a 1-10 confidence score into low / moderate / high."""
    if score <= LOW_CONFIDENCE_MAX:
        return "low"
    if score <= MODERATE_CONFIDENCE_MAX:
        return "moderate"
    return "high"


def derive_safety_warnings(score: int, flags: list[str] | None) -> list[SafetyWarning]:
    """Warnings for a result, disclaimer last."""
    flags = flags or []
    warnings: list[SafetyWarning] = []

    if score <= LOW_CONFIDENCE_MAX:
        warnings.append(LOW_CONFIDENCE_WARNING)
    elif score <= MODERATE_CONFIDENCE_MAX:
        warnings.append(MODERATE_CONFIDENCE_WARNING)

    for flag, warning in FLAG_WARNINGS:
        if flag in flags:
            warnings.append(warning)

    warnings.append(MEDICAL_DISCLAIMER_WARNING)
    return warnings


def format_medical_flags(flags: list[str] | None) -> list[dict[str, str]]:
    """Attach a display description to each flag code."""
    return [
        {"code": flag, "description": FLAG_DESCRIPTIONS.get(flag, flag)} for flag in flags or []
    ]


def sanitize_interpretation_text(text: str | None) -> str:
    """Strip markup and script schemes from model text and cap its length."""
    if not text:
        return ""
    text = _SCRIPT_BLOCK.sub("", text)
    text = _TAG.sub("", text)
    text = _JS_SCHEME.sub("", text)
    return text[:MAX_INTERPRETATION_CHARS]


def assemble_result(job: Any, analysis: dict[str, Any]) -> dict[str, Any]:
    """Build the result payload for a completed job.

    Args:
        job: The completed ProcessingJob.
        analysis: Decrypted analysis artifact (confidence_score,
            interpretation_text, detailed_interpretation, medical_flags,
            recommendations, disclaimers, metadata).

    Returns:
        JSON-ready dict.
    """
    score = int(analysis.get("confidence_score", 1))
    flags = list(analysis.get("medical_flags") or [])
    warnings = derive_safety_warnings(score, flags)

    return {
        "job_id": job.id,
        "confidence_score": score,
        "confidence_level": confidence_level(score),
        "interpretation_text": sanitize_interpretation_text(analysis.get("interpretation_text")),
        "detailed_interpretation": sanitize_interpretation_text(
            analysis.get("detailed_interpretation")
        ),
        "medical_flags": flags,
        "flag_details": format_medical_flags(flags),
        "recommendations": list(analysis.get("recommendations") or []),
        "disclaimers": list(analysis.get("disclaimers") or []),
        "safety_warnings": [asdict(w) for w in warnings],
        "processed_at": job.completed_at.isoformat() if job.completed_at else None,
        "processing_duration_ms": job.processing_duration_ms,
        "file_info": {
            "original_name": job.file_name,
            "type": job.file_type,
            "size": job.file_size,
            "uploaded_at": job.uploaded_at.isoformat(),
        },
        "metadata": dict(analysis.get("metadata") or {}),
    }
