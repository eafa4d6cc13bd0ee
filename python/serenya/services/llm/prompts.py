"""Prompt rendering for document analysis and chat.

Both prompts ask for a JSON reply; replies that are not JSON are handled by
services.llm.normalize. Prompts carry the sanitized file name and type,
never user identifiers.
"""

import json
from typing import Any

ANALYSIS_MAX_TOKENS = 1500
ANALYSIS_TEMPERATURE = 0.2
CHAT_MAX_TOKENS = 800
CHAT_TEMPERATURE = 0.4

ANALYSIS_SYSTEM_PROMPT = """You are Serenya, a medical AI assistant specialized in interpreting medical documents and lab results. You must:
1. Provide clear, accurate interpretations of medical data
2. Always include a confidence score from 1-10 (where 10 is highest confidence)
3. Flag any abnormal values or concerning findings
4. Use conservative medical judgment
5. Always recommend consulting healthcare providers for medical decisions

Never provide definitive diagnoses. Be conservative in confidence scoring.

Return only a JSON object with:
- confidence_score: number (1-10)
- interpretation_text: string (brief summary)
- detailed_interpretation: string (comprehensive analysis)
- medical_flags: array of strings, using ABNORMAL_VALUES, URGENT_CONSULTATION, REQUIRES_FOLLOWUP where they apply
- recommendations: array of strings
- disclaimers: array of strings"""

CHAT_SYSTEM_PROMPT = """You are Serenya, a warm and empathetic medical AI assistant specialized in health education.
- Provide helpful, educational responses about health and medical information
- Never provide medical advice, diagnoses, or treatment recommendations
- Use simple, everyday language and keep to 2-3 short paragraphs
- Encourage users to consult healthcare providers for medical decisions

Return only a JSON object with:
- message: string (your answer)
- follow_up_suggestions: array of up to 3 short follow-up questions"""

MEDIA_TYPES = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
}


def render_analysis_prompt(file_type: str, file_name: str) -> str:
    """User-turn text that accompanies the document."""
    return (
        "Please analyze this medical document and provide an interpretation.\n\n"
        f"Document Type: {file_type}\n"
        f"File Name: {file_name}\n\n"
        "Follow the safety guidelines and reply with the JSON object only."
    )


def render_chat_prompt(
    question: str,
    context: dict[str, Any] | None,
    prior_context: list[dict[str, str]] | None = None,
) -> str:
    """User-turn text for a chat question.

    Args:
        question: The user's question (already validated).
        context: The user's latest document interpretation, if any.
        prior_context: Earlier question/answer pairs in this conversation.
    """
    document_context = (
        json.dumps(context, indent=2, sort_keys=True)
        if context
        else "No previous analysis available"
    )
    lines = ["Document Context:", document_context, ""]

    if prior_context:
        lines.append("Earlier Conversation:")
        for turn in prior_context:
            lines.append(f"{turn.get('role', 'user')}: {turn.get('content', '')}")
        lines.append("")

    lines.extend(
        [
            "Patient Question:",
            question,
            "",
            "Please provide a helpful response based on the medical context.",
        ]
    )
    return "\n".join(lines)
