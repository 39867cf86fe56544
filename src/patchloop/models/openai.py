"""Production client that speaks the OpenAI JSON Responses API."""

from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from .llm_client import (
    CompletionRequest,
    CompletionResult,
    LLMClient,
    LLMResponseFormatError,
    LLMTransportError,
    NativeToolCall,
    RetryPolicy,
    StreamEvent,
    TokenUsage,
)

__all__ = ["ResponsesClient"]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]
StreamTransport = Callable[[Dict[str, Any]], Iterable[str]]

DEFAULT_BASE_URL = "https://api.openai.com/v1/responses"


class ResponsesClient(LLMClient):
    """Thin adapter around the Responses API supporting text, tools and streaming."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = "gpt-5",
        transport: Optional[Transport] = None,
        stream_transport: Optional[StreamTransport] = None,
        timeout: float = 120.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(model=model, retry_policy=retry_policy)
        self._api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._base_url = base_url
        timeout_override = os.getenv("PATCHLOOP_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
            except ValueError:
                LOGGER.warning("Ignoring non-numeric PATCHLOOP_TIMEOUT=%r", timeout_override)
            else:
                if parsed > 0:
                    timeout = parsed
        self._timeout = timeout
        self._transport = transport or self._http_transport
        self._stream_transport = stream_transport or self._http_stream_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    # ------------------------------------------------------------------ payloads
    def build_payload(self, request: CompletionRequest, *, stream: bool = False) -> Dict[str, Any]:
        messages: list[Dict[str, Any]] = []
        if request.system_prompt:
            messages.append(
                {"role": "system", "content": [{"type": "input_text", "text": request.system_prompt}]}
            )
        messages.append({"role": "user", "content": [{"type": "input_text", "text": request.prompt}]})
        payload: Dict[str, Any] = {
            "model": request.model or self.model,
            "input": messages,
            "max_output_tokens": request.max_tokens,
        }
        if request.tools:
            payload["tools"] = list(request.tools)
            payload["tool_choice"] = "auto"
        if stream:
            payload["stream"] = True
        return payload

    # ------------------------------------------------------------------ calls
    def _raw_complete(self, request: CompletionRequest) -> CompletionResult:
        payload = self.build_payload(request)
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except OSError as error:
            raise LLMTransportError(f"Transport rejected the request: {error}") from error
        return self._parse_response(raw_response)

    def _raw_stream(self, request: CompletionRequest) -> Iterator[StreamEvent]:
        payload = self.build_payload(request, stream=True)
        try:
            for line in self._stream_transport(payload):
                event = self._parse_stream_line(line)
                if event is None:
                    continue
                yield event
                if event.done:
                    return
        except LLMTransportError:
            raise
        except OSError as error:
            raise LLMTransportError(f"Stream interrupted: {error}") from error

    # ------------------------------------------------------------------ HTTP
    def _open(self, payload: Dict[str, Any]):
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(
            self._base_url,
            data=data,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self._api_key}",
                "X-OpenAI-Client": "patchloop/0.1",
            },
            method="POST",
        )
        try:
            return urllib.request.urlopen(request, timeout=self._timeout)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError("Model response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message}") from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach model endpoint: {error.reason}") from error

    def _http_transport(self, payload: Dict[str, Any]) -> str:  # pragma: no cover - network-dependent
        with self._open(payload) as response:
            try:
                raw = response.read()
            except TimeoutError as error:
                raise LLMTransportError("Model response timed out.") from error
            status = getattr(response, "status", 200)
        if status >= 400:
            raise LLMTransportError(f"Unexpected HTTP status {status}")
        return raw.decode("utf-8")

    def _http_stream_transport(self, payload: Dict[str, Any]) -> Iterator[str]:  # pragma: no cover
        with self._open(payload) as response:
            for raw_line in response:
                yield raw_line.decode("utf-8", errors="replace")

    # ------------------------------------------------------------------ parsing
    def _parse_response(self, raw_response: str) -> CompletionResult:
        if not raw_response:
            raise LLMResponseFormatError("Model returned an empty response.")
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError:
            return CompletionResult(text=raw_response, raw=raw_response)
        if not isinstance(data, dict):
            return CompletionResult(text=raw_response, raw=data)

        container = data.get("response") if isinstance(data.get("response"), dict) else data
        output = container.get("output") or container.get("outputs") or []
        if isinstance(output, dict):
            output = [output]
        text = _collect_text(output)
        if not text and isinstance(container.get("output_text"), str):
            text = container["output_text"]
        if not text:
            text = _collect_text(container.get("choices") or [])
        return CompletionResult(
            text=text,
            tool_calls=_collect_tool_calls(output),
            usage=_parse_usage(container.get("usage")),
            raw=data,
        )

    @staticmethod
    def _parse_stream_line(line: str) -> Optional[StreamEvent]:
        """Interpret one server-sent-event line of a streamed response."""
        stripped = line.strip()
        if not stripped.startswith("data:"):
            return None
        body = stripped[len("data:") :].strip()
        if body == "[DONE]":
            return StreamEvent(done=True)
        try:
            event = json.loads(body)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping malformed stream event: %s", body[:120])
            return None
        kind = event.get("type", "")
        if kind == "response.output_text.delta":
            return StreamEvent(delta=str(event.get("delta", "")))
        if kind == "response.completed":
            response = event.get("response") or {}
            return StreamEvent(usage=_parse_usage(response.get("usage")), done=True)
        if kind in {"response.failed", "error"}:
            message = (event.get("error") or {}).get("message") or body
            raise LLMTransportError(f"Stream reported failure: {message}")
        return None


def _collect_text(items: Iterable[Any]) -> str:
    chunks: list[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        contents = item.get("content")
        if isinstance(contents, list):
            for content_item in contents:
                if isinstance(content_item, dict):
                    text = content_item.get("text")
                    if isinstance(text, str):
                        chunks.append(text)
        elif isinstance(contents, str):
            chunks.append(contents)
        message = item.get("message") if isinstance(item.get("message"), dict) else None
        if message:
            text = message.get("content") or message.get("text")
            if isinstance(text, str):
                chunks.append(text)
    return "".join(chunks)


def _collect_tool_calls(items: Iterable[Any]) -> list[NativeToolCall]:
    calls: list[NativeToolCall] = []
    for item in items:
        if not isinstance(item, dict) or item.get("type") != "function_call":
            continue
        raw_arguments = item.get("arguments") or "{}"
        if isinstance(raw_arguments, str):
            try:
                arguments = json.loads(raw_arguments)
            except json.JSONDecodeError as error:
                raise LLMResponseFormatError(
                    f"Function call {item.get('name')!r} carried invalid JSON arguments."
                ) from error
        else:
            arguments = raw_arguments
        if not isinstance(arguments, dict):
            raise LLMResponseFormatError(f"Function call {item.get('name')!r} arguments must be an object.")
        calls.append(
            NativeToolCall(
                name=str(item.get("name", "")),
                arguments=arguments,
                call_id=str(item.get("call_id") or item.get("id") or ""),
            )
        )
    return calls


def _parse_usage(usage: Any) -> TokenUsage:
    if not isinstance(usage, dict):
        return TokenUsage()
    prompt = usage.get("input_tokens", usage.get("prompt_tokens", 0)) or 0
    completion = usage.get("output_tokens", usage.get("completion_tokens", 0)) or 0
    return TokenUsage(prompt_tokens=int(prompt), completion_tokens=int(completion))
