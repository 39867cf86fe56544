"""Deterministic in-memory client used for offline runs and tests."""

from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Iterable, Union

from .llm_client import CompletionRequest, CompletionResult, LLMClient, LLMTransportError, RetryPolicy

__all__ = ["ScriptedClient", "ScriptedReply"]

ScriptedReply = Union[str, CompletionResult, Exception]
Responder = Callable[[CompletionRequest], ScriptedReply]


class ScriptedClient(LLMClient):
    """Replay canned replies in order, or delegate to a responder callable.

    Replies may be plain strings, full :class:`CompletionResult` objects, or
    exceptions to raise. Once the queue is empty the ``default`` reply is
    returned. Every request is recorded in :attr:`requests`.
    """

    def __init__(
        self,
        replies: Iterable[ScriptedReply] = (),
        *,
        responder: Responder | None = None,
        default: ScriptedReply = "NO_CHANGES",
        model: str = "scripted",
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        super().__init__(
            model=model,
            retry_policy=retry_policy or RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=0.0),
        )
        self._replies: deque[ScriptedReply] = deque(replies)
        self._responder = responder
        self._default = default
        self._lock = threading.Lock()
        self.requests: list[CompletionRequest] = []

    def _raw_complete(self, request: CompletionRequest) -> CompletionResult:
        with self._lock:
            self.requests.append(request)
            if self._responder is not None:
                reply = self._responder(request)
            elif self._replies:
                reply = self._replies.popleft()
            else:
                reply = self._default
        if isinstance(reply, Exception):
            if isinstance(reply, LLMTransportError):
                raise reply
            raise LLMTransportError(str(reply)) from reply
        if isinstance(reply, CompletionResult):
            return reply
        return CompletionResult(text=str(reply))

    @property
    def remaining(self) -> int:
        with self._lock:
            return len(self._replies)
