"""Shared type definitions for the LLM layer.

- DocumentInput: The uploaded document handed to analyze()
- LLMUsage: Token usage reported by the model
- DocumentAnalysis: Normalized interpretation of a medical document
- ChatAnswer: Normalized answer to a chat question
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class DocumentInput:
    """A document to analyze.

    Attributes:
        content: Raw file bytes.
        file_type: Declared type ("pdf", "jpg", "jpeg", "png").
        file_name: Sanitized file name (never the user's original name).
    """

    content: bytes
    file_type: str
    file_name: str


@dataclass(frozen=True)
class LLMUsage:
    """Token usage from a model response."""

    input_tokens: int = 0
    output_tokens: int = 0

    def as_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass(frozen=True)
class DocumentAnalysis:
    """Normalized analysis of one document.

    Attributes:
        confidence_score: 1-10, already clamped.
        interpretation_text: Short summary (<= 1000 chars).
        detailed_interpretation: Full analysis (<= 5000 chars).
        medical_flags: Flag codes (<= 10).
        recommendations: Recommendations (<= 10).
        disclaimers: Standard disclaimers followed by the model's (<= 5).
        usage: Token usage, if the provider reported it.
        model_id: Model that produced the analysis.
    """

    confidence_score: int
    interpretation_text: str
    detailed_interpretation: str
    medical_flags: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    disclaimers: list[str] = field(default_factory=list)
    usage: LLMUsage | None = None
    model_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "confidence_score": self.confidence_score,
            "interpretation_text": self.interpretation_text,
            "detailed_interpretation": self.detailed_interpretation,
            "medical_flags": list(self.medical_flags),
            "recommendations": list(self.recommendations),
            "disclaimers": list(self.disclaimers),
            "metadata": {
                "model_id": self.model_id,
                "token_usage": self.usage.as_dict() if self.usage else None,
            },
        }


@dataclass(frozen=True)
class ChatAnswer:
    """Normalized answer to a chat question."""

    message: str
    follow_up_suggestions: list[str] = field(default_factory=list)
    disclaimers: list[str] = field(default_factory=list)
    usage: LLMUsage | None = None
    model_id: str | None = None
