"""LLM clients for document analysis and chat.

BedrockClient calls Anthropic models through the bedrock-runtime
invoke_model API (Anthropic messages body). FakeLLMClient returns canned,
deterministic analyses for local development, tests and USE_MOCK_AI.

Rules:
- No retries inside clients; retries are user-initiated
- No DB access
- No logging of prompts, documents or replies (lengths and token counts only)
- Provider exceptions are classified and re-raised as LLMError
- Bedrock calls go through a circuit breaker that fails fast while open
"""

import base64
import hashlib
import json
import time
from abc import ABC, abstractmethod
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from serenya.logging import get_logger
from serenya.services.llm.breaker import CircuitBreaker
from serenya.services.llm.errors import LLMError, LLMErrorClass, classify_bedrock_error
from serenya.services.llm.normalize import (
    normalize_analysis,
    normalize_chat_answer,
    parse_model_reply,
    structure_text_reply,
)
from serenya.services.llm.prompts import (
    ANALYSIS_MAX_TOKENS,
    ANALYSIS_SYSTEM_PROMPT,
    ANALYSIS_TEMPERATURE,
    CHAT_MAX_TOKENS,
    CHAT_SYSTEM_PROMPT,
    CHAT_TEMPERATURE,
    MEDIA_TYPES,
    render_analysis_prompt,
    render_chat_prompt,
)
from serenya.services.llm.types import ChatAnswer, DocumentAnalysis, DocumentInput, LLMUsage

logger = get_logger(__name__)

DEFAULT_MODEL_ID = "anthropic.claude-3-haiku-20240307-v1:0"
ANTHROPIC_BEDROCK_VERSION = "bedrock-2023-05-31"
NOT_MEDICAL_REPLY = "not a valid medical document"

# Readers report a job as timed out after three minutes
READ_TIMEOUT_S = 120
CONNECT_TIMEOUT_S = 10


class LLMClient(ABC):
    """Interface the document and chat services depend on."""

    @abstractmethod
    def analyze(
        self, document: DocumentInput, context: dict[str, Any] | None = None
    ) -> DocumentAnalysis:
        """Interpret a medical document.

        Raises:
            LLMError: On any provider failure or unusable reply.
        """
        ...

    @abstractmethod
    def answer(
        self,
        question: str,
        context: dict[str, Any] | None = None,
        prior_context: list[dict[str, str]] | None = None,
    ) -> ChatAnswer:
        """Answer a question about the user's latest interpretation.

        Raises:
            LLMError: On any provider failure.
        """
        ...


def _document_block(document: DocumentInput) -> dict[str, Any]:
    media_type = MEDIA_TYPES.get(document.file_type.lower())
    if media_type is None:
        raise LLMError(LLMErrorClass.INVALID_DOCUMENT, detail=f"type={document.file_type}")
    block_type = "document" if media_type == "application/pdf" else "image"
    return {
        "type": block_type,
        "source": {
            "type": "base64",
            "media_type": media_type,
            "data": base64.b64encode(document.content).decode("ascii"),
        },
    }


def _render_context(context: dict[str, Any] | None) -> str:
    if not context:
        return ""
    lines = [f"{key}: {value}" for key, value in sorted(context.items())]
    return "\n\nAdditional Context:\n" + "\n".join(lines)


class BedrockClient(LLMClient):
    """Anthropic models on Amazon Bedrock."""

    def __init__(
        self,
        region_name: str,
        model_id: str = DEFAULT_MODEL_ID,
        client=None,
        breaker: CircuitBreaker | None = None,
    ):
        """Initialize the client.

        Args:
            region_name: AWS region.
            model_id: Bedrock model identifier.
            client: Optional pre-built bedrock-runtime client (tests pass a stubbed one).
            breaker: Circuit breaker shared by every call this client makes.
        """
        self._model_id = model_id
        self._breaker = breaker or CircuitBreaker()
        self._client = client or boto3.client(
            "bedrock-runtime",
            region_name=region_name,
            config=Config(
                read_timeout=READ_TIMEOUT_S,
                connect_timeout=CONNECT_TIMEOUT_S,
                retries={"max_attempts": 1},
            ),
        )

    @property
    def model_id(self) -> str:
        return self._model_id

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def analyze(
        self, document: DocumentInput, context: dict[str, Any] | None = None
    ) -> DocumentAnalysis:
        content = [
            _document_block(document),
            {
                "type": "text",
                "text": render_analysis_prompt(document.file_type, document.file_name)
                + _render_context(context),
            },
        ]
        text, usage = self._invoke(
            system=ANALYSIS_SYSTEM_PROMPT,
            content=content,
            max_tokens=ANALYSIS_MAX_TOKENS,
            temperature=ANALYSIS_TEMPERATURE,
        )

        if text.strip().lower().startswith(NOT_MEDICAL_REPLY):
            raise LLMError(LLMErrorClass.INVALID_DOCUMENT, detail="model_rejected_document")

        raw = parse_model_reply(text)
        if raw is None:
            logger.info("llm_reply_not_json", reply_chars=len(text))
            raw = structure_text_reply(text)
        return normalize_analysis(raw, usage=usage, model_id=self._model_id)

    def answer(
        self,
        question: str,
        context: dict[str, Any] | None = None,
        prior_context: list[dict[str, str]] | None = None,
    ) -> ChatAnswer:
        text, usage = self._invoke(
            system=CHAT_SYSTEM_PROMPT,
            content=render_chat_prompt(question, context, prior_context),
            max_tokens=CHAT_MAX_TOKENS,
            temperature=CHAT_TEMPERATURE,
        )
        return normalize_chat_answer(text, usage=usage, model_id=self._model_id)

    def _invoke(
        self,
        *,
        system: str,
        content: str | list[dict[str, Any]],
        max_tokens: int,
        temperature: float,
    ) -> tuple[str, LLMUsage]:
        return self._breaker.call(
            lambda: self._invoke_once(
                system=system, content=content, max_tokens=max_tokens, temperature=temperature
            )
        )

    def _invoke_once(
        self,
        *,
        system: str,
        content: str | list[dict[str, Any]],
        max_tokens: int,
        temperature: float,
    ) -> tuple[str, LLMUsage]:
        body = {
            "anthropic_version": ANTHROPIC_BEDROCK_VERSION,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": [{"role": "user", "content": content}],
        }

        start = time.monotonic()
        try:
            response = self._client.invoke_model(
                modelId=self._model_id,
                contentType="application/json",
                accept="application/json",
                body=json.dumps(body),
            )
            payload = json.loads(response["body"].read())
        except (BotoCoreError, ClientError) as e:
            error_class = classify_bedrock_error(e)
            logger.warning(
                "bedrock_invocation_failed",
                error_class=error_class.value,
                error_type=type(e).__name__,
                latency_ms=int((time.monotonic() - start) * 1000),
            )
            raise LLMError(error_class, detail=str(e)) from e
        except (ValueError, KeyError) as e:
            raise LLMError(LLMErrorClass.PROCESSING_FAILED, detail="malformed_response") from e

        blocks = payload.get("content") or []
        text = "".join(
            block.get("text", "") for block in blocks if block.get("type", "text") == "text"
        )
        if not text.strip():
            raise LLMError(LLMErrorClass.PROCESSING_FAILED, detail="empty_response")

        raw_usage = payload.get("usage") or {}
        usage = LLMUsage(
            input_tokens=int(raw_usage.get("input_tokens") or 0),
            output_tokens=int(raw_usage.get("output_tokens") or 0),
        )
        logger.info(
            "bedrock_invocation_succeeded",
            latency_ms=int((time.monotonic() - start) * 1000),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        return text, usage


MOCK_ANALYSES: tuple[dict[str, Any], ...] = (
    {
        "confidence_score": 7,
        "interpretation_text": (
            "Lab results show mostly normal values with one elevated cholesterol level."
        ),
        "detailed_interpretation": (
            "Most laboratory values appear to be within normal ranges. Total cholesterol "
            "of 245 mg/dL is elevated (normal range: <200 mg/dL) and should be discussed "
            "with your healthcare provider. Blood glucose, liver function and kidney "
            "function markers appear normal."
        ),
        "medical_flags": ["ABNORMAL_VALUES"],
        "recommendations": [
            "Consult with your healthcare provider about the elevated cholesterol",
            "Consider dietary changes to reduce cholesterol intake",
            "Keep a copy for your medical records",
        ],
    },
    {
        "confidence_score": 8,
        "interpretation_text": "Blood work shows normal values across all major health indicators.",
        "detailed_interpretation": (
            "Your comprehensive metabolic panel shows values within normal ranges, "
            "including glucose (92 mg/dL), creatinine (0.9 mg/dL) and liver enzymes "
            "(ALT 24 U/L, AST 22 U/L). Your lipid panel is also healthy."
        ),
        "medical_flags": [],
        "recommendations": [
            "Maintain your current healthy lifestyle",
            "Continue regular check-ups as scheduled",
        ],
    },
    {
        "confidence_score": 6,
        "interpretation_text": (
            "Some blood markers are slightly elevated and require medical follow-up."
        ),
        "detailed_interpretation": (
            "White blood cell count is slightly elevated at 12,500 cells/uL "
            "(normal: 4,500-11,000) and C-reactive protein is elevated at 8.2 mg/L "
            "(normal: <3.0 mg/L). These should be evaluated by your healthcare provider."
        ),
        "medical_flags": ["ABNORMAL_VALUES", "REQUIRES_FOLLOWUP"],
        "recommendations": [
            "Schedule a follow-up appointment with your healthcare provider",
            "Consider repeat testing as recommended",
        ],
    },
    {
        "confidence_score": 5,
        "interpretation_text": (
            "Medical document processed - some values may need professional interpretation."
        ),
        "detailed_interpretation": (
            "The document contains various test results. Because normal ranges vary "
            "between laboratories, some values require professional interpretation "
            "in the context of your health history."
        ),
        "medical_flags": ["INCOMPLETE_DATA"],
        "recommendations": [
            "Schedule an appointment with your healthcare provider to review results",
            "Bring the original document to your appointment",
        ],
    },
)


class FakeLLMClient(LLMClient):
    """Deterministic in-process LLM.

    The canned analysis is chosen by a hash of the file name and content, so
    the same upload always yields the same result. Test helpers:
    - analysis: force a specific raw analysis dict
    - fail_with: make every call raise LLMError of this class
    - calls: recorded (method, summary) tuples
    """

    model_id = "mock"

    def __init__(
        self,
        analysis: dict[str, Any] | None = None,
        fail_with: LLMErrorClass | None = None,
        answer_text: str | None = None,
    ):
        self.analysis = analysis
        self.fail_with = fail_with
        self.answer_text = answer_text
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def analyze(
        self, document: DocumentInput, context: dict[str, Any] | None = None
    ) -> DocumentAnalysis:
        self.calls.append(("analyze", {"file_name": document.file_name, "context": context}))
        if self.fail_with is not None:
            raise LLMError(self.fail_with, detail="fake_failure")

        raw = self.analysis
        if raw is None:
            digest = hashlib.sha256(document.file_name.encode("utf-8") + document.content)
            raw = MOCK_ANALYSES[int(digest.hexdigest(), 16) % len(MOCK_ANALYSES)]

        return normalize_analysis(
            raw,
            usage=LLMUsage(input_tokens=len(document.content) // 4, output_tokens=200),
            model_id=self.model_id,
        )

    def answer(
        self,
        question: str,
        context: dict[str, Any] | None = None,
        prior_context: list[dict[str, str]] | None = None,
    ) -> ChatAnswer:
        self.calls.append(
            ("answer", {"question_chars": len(question), "has_context": bool(context)})
        )
        if self.fail_with is not None:
            raise LLMError(self.fail_with, detail="fake_failure")

        if self.answer_text is not None:
            reply = self.answer_text
        else:
            summary = (context or {}).get("interpretation_text")
            message = (
                f"Based on your latest results: {summary} "
                "Your healthcare provider can explain what this means for you."
                if summary
                else "I don't have a recent analysis to refer to, but I'm happy to help "
                "explain general health topics."
            )
            reply = json.dumps(
                {
                    "message": message,
                    "follow_up_suggestions": [
                        "What do these values mean?",
                        "What questions should I ask my doctor?",
                    ],
                }
            )
        return normalize_chat_answer(
            reply,
            usage=LLMUsage(input_tokens=len(question) // 4, output_tokens=120),
            model_id=self.model_id,
        )
