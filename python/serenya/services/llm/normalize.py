"""Validation and normalization of model replies.

Model output is untrusted. Everything the rest of the system stores or shows
passes through here first:
- confidence clamped to 1-10 (missing or zero means 5), and capped at 4 when
  the summary itself calls the document unclear or uncertain
- summary 1000 chars, detailed text 5000 chars
- at most 10 flags and 10 recommendations
- the three standard disclaimers first, then the model's, at most 5
"""

import json
import re
from typing import Any

from serenya.services.llm.types import ChatAnswer, DocumentAnalysis, LLMUsage

DEFAULT_CONFIDENCE = 5
MIN_CONFIDENCE = 1
MAX_CONFIDENCE = 10
UNCERTAIN_CONFIDENCE_CAP = 4
UNCERTAINTY_MARKERS = ("unclear", "uncertain")

MAX_SUMMARY_CHARS = 1000
MAX_DETAIL_CHARS = 5000
MAX_LIST_ITEMS = 10
MAX_DISCLAIMERS = 5
MAX_FOLLOW_UPS = 3
MAX_CHAT_MESSAGE_CHARS = 4000
TEXT_FALLBACK_SUMMARY_CHARS = 500

STANDARD_DISCLAIMERS = (
    "This interpretation is for informational purposes only and is not medical advice.",
    "Always consult with a qualified healthcare provider for medical decisions.",
    "In case of emergency, contact emergency services immediately.",
)

CHAT_DISCLAIMER = (
    "This response is for educational purposes only and is not medical advice. "
    "Please consult your healthcare provider for medical decisions."
)

_CONFIDENCE_IN_TEXT = re.compile(r"confidence[:\s]+(\d+)", re.IGNORECASE)
_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_model_reply(text: str) -> dict[str, Any] | None:
    """Parse a JSON object out of a model reply, or return None."""
    candidate = text.strip()
    fenced = _CODE_FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def extract_flags(text: str) -> list[str]:
    """Infer flag codes from free text."""
    lowered = text.lower()
    flags = []
    if "abnormal" in lowered or "elevated" in lowered:
        flags.append("ABNORMAL_VALUES")
    if "urgent" in lowered or "critical" in lowered:
        flags.append("URGENT_CONSULTATION")
    if "follow up" in lowered or "follow-up" in lowered:
        flags.append("REQUIRES_FOLLOWUP")
    return flags


def structure_text_reply(text: str) -> dict[str, Any]:
    """Best-effort structure for a reply that is not JSON."""
    match = _CONFIDENCE_IN_TEXT.search(text)
    recommendations = [
        "Consult with your healthcare provider",
        "Keep a copy for your medical records",
    ]
    if "abnormal" in text.lower():
        recommendations.append("Discuss abnormal findings with your doctor")

    return {
        "confidence_score": int(match.group(1)) if match else DEFAULT_CONFIDENCE,
        "interpretation_text": text[:TEXT_FALLBACK_SUMMARY_CHARS],
        "detailed_interpretation": text,
        "medical_flags": extract_flags(text),
        "recommendations": recommendations,
        "disclaimers": [],
    }


def _coerce_confidence(value: Any) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if score == 0:
        return DEFAULT_CONFIDENCE
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, score))


def _string_list(value: Any, limit: int) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item not in (None, "")][:limit]


def _text(value: Any, limit: int) -> str:
    if value is None:
        return ""
    return str(value)[:limit]


def normalize_analysis(
    raw: dict[str, Any],
    usage: LLMUsage | None = None,
    model_id: str | None = None,
) -> DocumentAnalysis:
    """Validate and bound a raw analysis dict."""
    interpretation = _text(raw.get("interpretation_text"), MAX_SUMMARY_CHARS)
    confidence = _coerce_confidence(raw.get("confidence_score"))

    lowered = interpretation.lower()
    if any(marker in lowered for marker in UNCERTAINTY_MARKERS):
        confidence = min(confidence, UNCERTAIN_CONFIDENCE_CAP)

    disclaimers = list(STANDARD_DISCLAIMERS) + _string_list(raw.get("disclaimers"), MAX_LIST_ITEMS)

    return DocumentAnalysis(
        confidence_score=confidence,
        interpretation_text=interpretation,
        detailed_interpretation=_text(raw.get("detailed_interpretation"), MAX_DETAIL_CHARS),
        medical_flags=_string_list(raw.get("medical_flags"), MAX_LIST_ITEMS),
        recommendations=_string_list(raw.get("recommendations"), MAX_LIST_ITEMS),
        disclaimers=disclaimers[:MAX_DISCLAIMERS],
        usage=usage,
        model_id=model_id,
    )


def normalize_chat_answer(
    text: str,
    usage: LLMUsage | None = None,
    model_id: str | None = None,
) -> ChatAnswer:
    """Turn a chat reply (JSON or plain text) into a ChatAnswer."""
    parsed = parse_model_reply(text)
    if parsed is not None and parsed.get("message"):
        message = str(parsed["message"])
        suggestions = _string_list(parsed.get("follow_up_suggestions"), MAX_FOLLOW_UPS)
    else:
        message = text.strip()
        suggestions = []

    return ChatAnswer(
        message=message[:MAX_CHAT_MESSAGE_CHARS],
        follow_up_suggestions=suggestions,
        disclaimers=[CHAT_DISCLAIMER],
        usage=usage,
        model_id=model_id,
    )
