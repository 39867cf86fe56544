"""Client base class shared by all language-model integrations."""

from __future__ import annotations

import ast
import json
import math
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, TypeVar

__all__ = [
    "CompletionRequest",
    "CompletionResult",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "NativeToolCall",
    "RetryPolicy",
    "StreamEvent",
    "TokenUsage",
    "estimate_tokens",
    "parse_json_payload",
    "split_json_objects",
    "strip_code_fence",
]


T = TypeVar("T")

_CHARS_PER_TOKEN = 4


class LLMClientError(RuntimeError):
    """Base error raised for language-model client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the backend returns a payload that cannot be interpreted."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries; surfaced to callers as ``api_error``."""


def estimate_tokens(text: str) -> int:
    """Rough token estimate used when the backend omits usage figures."""
    if not text:
        return 0
    return int(math.ceil(len(text) / _CHARS_PER_TOKEN))


@dataclass(frozen=True, slots=True)
class TokenUsage:
    """Token counts reported (or estimated) for a single completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated: bool = False

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def estimate(cls, prompt_text: str, completion_text: str) -> "TokenUsage":
        return cls(
            prompt_tokens=estimate_tokens(prompt_text),
            completion_tokens=estimate_tokens(completion_text),
            estimated=True,
        )


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with jitter applied to every model call site."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.25

    def delay(self, attempt: int, *, rng: Callable[[], float] = random.random) -> float:
        """Return the sleep before retrying after failed ``attempt`` (1-based)."""
        base = min(self.max_delay, self.base_delay * (2 ** max(attempt - 1, 0)))
        return base + base * self.jitter * rng()

    def run(
        self,
        operation: Callable[[], T],
        *,
        retry_on: tuple[type[BaseException], ...] = (LLMTransportError,),
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """Execute ``operation`` until it succeeds or attempts are exhausted."""
        attempts = max(self.max_attempts, 1)
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except retry_on as error:
                last_error = error
                if on_retry is not None:
                    on_retry(attempt, error)
                if attempt >= attempts:
                    break
                sleep(self.delay(attempt))
        raise LLMRetryError(f"Model call failed after {attempts} attempt(s): {last_error}") from last_error


@dataclass(frozen=True, slots=True)
class NativeToolCall:
    """Function call emitted by a backend that supports structured tool calling."""

    name: str
    arguments: Dict[str, Any]
    call_id: str = ""


@dataclass(slots=True)
class CompletionRequest:
    """Transport-agnostic request for a single completion."""

    prompt: str
    system_prompt: Optional[str] = None
    max_tokens: int = 4000
    tools: Sequence[Dict[str, Any]] = ()
    model: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def input_text(self) -> str:
        return "\n\n".join(part for part in (self.system_prompt or "", self.prompt) if part)


@dataclass(slots=True)
class CompletionResult:
    """Backend response: free text, optional native tool calls, and usage."""

    text: str = ""
    tool_calls: list[NativeToolCall] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw: Any = None


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """Incremental piece of a streamed completion."""

    delta: str = ""
    usage: Optional[TokenUsage] = None
    done: bool = False


class LLMClient:
    """High-level helper that applies one retry policy to every call shape."""

    def __init__(self, model: str, *, retry_policy: RetryPolicy | None = None) -> None:
        self._model = model
        self._retry_policy = retry_policy or RetryPolicy()

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def complete(
        self,
        request: CompletionRequest,
        *,
        logger: Optional[Callable[[CompletionRequest, Optional[CompletionResult], Optional[Exception], int], None]] = None,
    ) -> CompletionResult:
        """Run a plain or tool-augmented completion with retries."""
        attempt_counter = {"value": 0}

        def _call() -> CompletionResult:
            attempt_counter["value"] += 1
            try:
                result = self._raw_complete(request)
            except LLMClientError as error:
                if logger:
                    logger(request, None, error, attempt_counter["value"])
                raise
            if result.usage.total_tokens == 0 and not result.usage.estimated:
                result.usage = TokenUsage.estimate(request.input_text, result.text)
            if logger:
                logger(request, result, None, attempt_counter["value"])
            return result

        return self._retry_policy.run(_call)

    def stream(
        self,
        request: CompletionRequest,
        *,
        on_delta: Optional[Callable[[str], None]] = None,
    ) -> CompletionResult:
        """Stream a completion and return the fully accumulated text.

        A failure part-way through the stream restarts the whole request under
        the retry policy; partial text from a failed attempt is discarded.
        """

        def _call() -> CompletionResult:
            chunks: list[str] = []
            usage: Optional[TokenUsage] = None
            for event in self._raw_stream(request):
                if event.delta:
                    chunks.append(event.delta)
                    if on_delta:
                        on_delta(event.delta)
                if event.usage is not None:
                    usage = event.usage
                if event.done:
                    break
            text = "".join(chunks)
            if usage is None or usage.total_tokens == 0:
                usage = TokenUsage.estimate(request.input_text, text)
            return CompletionResult(text=text, usage=usage)

        return self._retry_policy.run(_call)

    def _raw_complete(self, request: CompletionRequest) -> CompletionResult:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_complete().")

    def _raw_stream(self, request: CompletionRequest) -> Iterator[StreamEvent]:
        """Default streaming falls back to a single non-streamed completion."""
        result = self._raw_complete(request)
        usage = result.usage if result.usage.total_tokens else None
        yield StreamEvent(delta=result.text, usage=usage, done=True)


def strip_code_fence(payload: str) -> str:
    """Remove Markdown-style code fences that wrap a payload."""
    text = payload.strip()
    if not text.startswith("```"):
        return text
    first_newline = text.find("\n")
    if first_newline == -1:
        return text
    fence_end = text.rfind("```")
    if fence_end <= first_newline:
        return text[first_newline + 1 :].strip()
    return text[first_newline + 1 : fence_end].strip()


def _normalise_json_string(payload: str) -> str:
    """Normalise common non-JSON characters emitted by models."""
    if not payload:
        return payload
    translation = {
        0x201C: '"',
        0x201D: '"',
        0x2018: "'",
        0x2019: "'",
        0xFF07: "'",
        0x00A0: " ",
        0xFEFF: "",
    }
    return payload.translate(str.maketrans(translation))


def _strip_trailing_commas(payload: str) -> str:
    """Remove trailing commas before closing braces/brackets."""
    if not payload:
        return payload
    return re.sub(r",(\s*[}\]])", r"\1", payload)


def _first_balanced_payload(text: str) -> str | None:
    """Return the first balanced ``{...}`` or ``[...]`` block inside ``text``."""
    opening_idx = None
    expected: list[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and expected:
            in_string = True
        elif char in "{[":
            if opening_idx is None:
                opening_idx = index
            expected.append("}" if char == "{" else "]")
        elif expected and char == expected[-1]:
            expected.pop()
            if not expected and opening_idx is not None:
                return _strip_trailing_commas(text[opening_idx : index + 1].strip())
    return None


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing when JSON decoding fails."""
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError, MemoryError, RecursionError):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    """Convert Python literals into JSON-compatible structures recursively."""
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


def split_json_objects(text: str) -> list[Any] | None:
    """Decode back-to-back JSON values (``{..}{..}`` or newline separated).

    Returns ``None`` unless the whole text is consumed by at least two values.
    """
    decoder = json.JSONDecoder()
    index = 0
    values: list[Any] = []
    length = len(text)
    while index < length:
        while index < length and text[index] in " \t\r\n,":
            index += 1
        if index >= length:
            break
        try:
            value, index = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            return None
        values.append(value)
    if len(values) < 2:
        return None
    return values


def parse_json_payload(raw: str, *, tolerant: bool = True) -> Any:
    """Parse a model payload as JSON, salvaging common formatting noise.

    Raises :class:`LLMResponseFormatError` when nothing usable is found.
    """
    text = _normalise_json_string(strip_code_fence(raw or ""))
    if not text:
        raise LLMResponseFormatError("Model returned an empty response.")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if not tolerant:
            raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}") from None

    concatenated = split_json_objects(text)
    if concatenated is not None:
        return concatenated

    candidates: list[str] = []
    trimmed = _strip_trailing_commas(text)
    if trimmed != text:
        candidates.append(trimmed)
    if text[:1] in "{[":
        balanced = _first_balanced_payload(text)
        if balanced and balanced not in candidates:
            candidates.append(balanced)
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pythonic = _coerce_python_literal(candidate)
            if pythonic is not None:
                return pythonic
    pythonic = _coerce_python_literal(text)
    if isinstance(pythonic, (dict, list)):
        return pythonic
    raise LLMResponseFormatError(f"Model returned invalid JSON: {text[:200]}")
