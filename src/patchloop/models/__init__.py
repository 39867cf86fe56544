"""Convenience exports for patchloop language-model client implementations."""

from .llm_client import (
    CompletionRequest,
    CompletionResult,
    LLMClient,
    LLMClientError,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
    NativeToolCall,
    RetryPolicy,
    TokenUsage,
)
from .openai import ResponsesClient
from .scripted import ScriptedClient

__all__ = [
    "CompletionRequest",
    "CompletionResult",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "NativeToolCall",
    "ResponsesClient",
    "RetryPolicy",
    "ScriptedClient",
    "TokenUsage",
]
