"""LLM layer for document analysis and chat answers.

- Clients: BedrockClient (production) and FakeLLMClient (local/test/mock AI)
- Error classification into LLMErrorClass with user guidance
- A circuit breaker that fails Bedrock calls fast during an outage
- Prompt rendering
- Normalization of untrusted model replies

Usage:
    from serenya.services.llm import BedrockClient, DocumentInput

    client = BedrockClient(region_name="eu-west-1")
    analysis = client.analyze(DocumentInput(content=data, file_type="pdf", file_name="labs.pdf"))
"""

from serenya.services.llm.breaker import CircuitBreaker, CircuitState
from serenya.services.llm.client import (
    DEFAULT_MODEL_ID,
    BedrockClient,
    FakeLLMClient,
    LLMClient,
)
from serenya.services.llm.errors import (
    ERROR_GUIDANCE,
    LLMError,
    LLMErrorClass,
    classify_bedrock_error,
)
from serenya.services.llm.normalize import (
    STANDARD_DISCLAIMERS,
    normalize_analysis,
    normalize_chat_answer,
)
from serenya.services.llm.types import ChatAnswer, DocumentAnalysis, DocumentInput, LLMUsage

__all__ = [
    # Types
    "DocumentInput",
    "DocumentAnalysis",
    "ChatAnswer",
    "LLMUsage",
    # Clients
    "LLMClient",
    "BedrockClient",
    "FakeLLMClient",
    "DEFAULT_MODEL_ID",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitState",
    # Errors
    "LLMError",
    "LLMErrorClass",
    "ERROR_GUIDANCE",
    "classify_bedrock_error",
    # Normalization
    "normalize_analysis",
    "normalize_chat_answer",
    "STANDARD_DISCLAIMERS",
]
