"""Tool-calling state machine that drives one agent session to a terminal result.

A session alternates between awaiting the model and dispatching the tool
calls it asks for. It ends with a diff, ``NO_CHANGES``, a reviewer verdict
or a typed :class:`AgentError`; the iteration cap guarantees termination.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

from .budget import BudgetGuard
from .logs import ArtifactLogger, emit_event
from .memory.schema import utc_now
from .models.llm_client import (
    CompletionRequest,
    CompletionResult,
    LLMClient,
    LLMClientError,
    LLMResponseFormatError,
    TokenUsage,
    parse_json_payload,
)
from .prompts import (
    FINALIZE_ONLY_REQUEST,
    NO_CHANGES,
    limit_prompt_size,
    render_tool_catalogue,
    render_tool_result,
    system_prompt_for,
)
from .roles import DEFAULT_PERMISSIONS, Role, ToolPermissionSet
from .structured import ToolCallDecodeError, decode_tool_call, tool_name_of, tool_schemas
from .tools.dispatcher import ForbiddenToolError, ToolDispatcher, ToolSessionState
from .tools.patch import find_diff_start, looks_like_diff

LOGGER = logging.getLogger(__name__)

Transport = Literal["json", "native"]

DEFAULT_ITERATION_CAP = 20


class AgentTerminal(str, Enum):
    DIFF = "diff"
    NO_CHANGES = "no_changes"
    VERDICT = "verdict"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class AgentError:
    """Typed session failure; a value, never raised."""

    kind: str
    role: Role
    message: str
    timestamp: datetime = field(default_factory=utc_now)

    def render(self) -> str:
        return f"ERROR {self.kind} ({self.role.value}): {self.message}"


@dataclass(slots=True)
class AgentOutcome:
    terminal: AgentTerminal
    text: str = ""
    error: Optional[AgentError] = None
    payload: Any = None
    iterations: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def is_diff(self) -> bool:
        return self.terminal is AgentTerminal.DIFF

    @property
    def candidate_text(self) -> str:
        """Text handed to the arbiter: the diff, the no-op sentinel, or an error marker."""
        if self.terminal is AgentTerminal.ERROR and self.error is not None:
            return self.error.render()
        if self.terminal is AgentTerminal.NO_CHANGES:
            return NO_CHANGES
        return self.text


@dataclass(slots=True)
class AgentSession:
    """State owned by a single :meth:`AgentRuntime.run` invocation."""

    role: Role
    label: str
    context: List[str]
    tools: ToolSessionState = field(default_factory=ToolSessionState)
    iterations: int = 0
    tool_results: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    transcript: List[Dict[str, Any]] = field(default_factory=list)

    def prompt(self, max_chars: int) -> str:
        return limit_prompt_size("\n\n".join(part for part in self.context if part), max_chars)

    def add_usage(self, usage: TokenUsage) -> None:
        self.usage = TokenUsage(
            prompt_tokens=self.usage.prompt_tokens + usage.prompt_tokens,
            completion_tokens=self.usage.completion_tokens + usage.completion_tokens,
            estimated=self.usage.estimated or usage.estimated,
        )


class AgentRuntime:
    """Run agent sessions against one language-model client and tool dispatcher."""

    def __init__(
        self,
        client: LLMClient,
        budget: BudgetGuard,
        *,
        dispatcher: Optional[ToolDispatcher] = None,
        permissions: ToolPermissionSet = DEFAULT_PERMISSIONS,
        models: Optional[Mapping[Role, str]] = None,
        iteration_cap: int = DEFAULT_ITERATION_CAP,
        max_output_tokens: int = 4000,
        transport: Transport = "json",
        prompt_max_chars: int = 12000,
        artifacts: Optional[ArtifactLogger] = None,
    ) -> None:
        if iteration_cap < 1:
            raise ValueError("iteration_cap must be at least 1")
        self.client = client
        self.budget = budget
        self.dispatcher = dispatcher
        self.permissions = permissions
        self.models = dict(models or {})
        self.iteration_cap = iteration_cap
        self.max_output_tokens = max_output_tokens
        self.transport = transport
        self.prompt_max_chars = prompt_max_chars
        self.artifacts = artifacts or ArtifactLogger.disabled()

    # ------------------------------------------------------------------ sessions
    def run(
        self,
        role: Role,
        context: str,
        *,
        label: str = "session",
        dispatcher: Optional[ToolDispatcher] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> AgentOutcome:
        """Drive one session until it reaches a terminal state or the iteration cap."""
        role = Role(role)
        session = AgentSession(role=role, label=label, context=[context])
        dispatcher = dispatcher or self.dispatcher
        tools = self.permissions.tools_for(role) if dispatcher is not None else ()
        system_prompt = system_prompt_for(role)
        if tools and self.transport == "json":
            system_prompt = f"{system_prompt}\n\n{render_tool_catalogue(tools)}"
        schemas = tool_schemas(tools) if tools and self.transport == "native" else []

        outcome: Optional[AgentOutcome] = None
        while session.iterations < self.iteration_cap:
            if cancel_event is not None and cancel_event.is_set():
                outcome = self._error(session, "cancelled", "Session cancelled before completion.")
                break
            session.iterations += 1
            request = CompletionRequest(
                prompt=session.prompt(self.prompt_max_chars),
                system_prompt=system_prompt,
                max_tokens=self.max_output_tokens,
                tools=schemas,
                model=self.models.get(role),
                metadata={"role": role.value, "label": label, "iteration": session.iterations},
            )
            result, failure = self._call(session, request)
            if failure is not None:
                outcome = failure
                break
            assert result is not None
            outcome = self._handle_response(session, result, dispatcher, cancel_event)
            if outcome is not None:
                break
        if outcome is None:
            LOGGER.info("%s session %s hit the iteration cap (%d)", role.value, label, self.iteration_cap)
            outcome = AgentOutcome(AgentTerminal.NO_CHANGES, NO_CHANGES)
        return self._finish(session, outcome)

    def complete_once(self, role: Role, context: str, *, label: str = "single", system_prompt: Optional[str] = None) -> AgentOutcome:
        """Single tool-less call; the response is classified but never dispatched."""
        role = Role(role)
        session = AgentSession(role=role, label=label, context=[context])
        session.iterations = 1
        request = CompletionRequest(
            prompt=session.prompt(self.prompt_max_chars),
            system_prompt=system_prompt or system_prompt_for(role),
            max_tokens=self.max_output_tokens,
            model=self.models.get(role),
            metadata={"role": role.value, "label": label, "iteration": 1},
        )
        result, failure = self._call(session, request)
        if failure is not None:
            return self._finish(session, failure)
        assert result is not None
        return self._finish(session, self._classify_text(session, result.text, allow_tools=False))

    def finalize(self, role: Role, context: str, *, label: str = "finalize") -> AgentOutcome:
        """Ask for the diff with tools withdrawn; tool requests are treated as no answer."""
        return self.complete_once(role, f"{context}\n\n{FINALIZE_ONLY_REQUEST}", label=label)

    # ------------------------------------------------------------------ model calls
    def _call(self, session: AgentSession, request: CompletionRequest) -> tuple[Optional[CompletionResult], Optional[AgentOutcome]]:
        if self.budget.exceeded:
            return None, self._error(session, "budget_exceeded", self.budget.breach() or "Budget exhausted.")
        role = session.role.value

        def _log(req: CompletionRequest, result: Optional[CompletionResult], error: Optional[Exception], attempt: int) -> None:
            self.artifacts.log_request(role, session.label, req, attempt=attempt)
            self.artifacts.log_response(role, session.label, result, error, attempt=attempt)

        try:
            result = self.client.complete(request, logger=_log)
        except LLMClientError as error:
            LOGGER.warning("%s session %s model call failed: %s", role, session.label, error)
            return None, self._error(session, "api_error", str(error))
        session.add_usage(result.usage)
        self.budget.record(result.usage)
        session.transcript.append(
            {
                "iteration": session.iterations,
                "prompt_chars": len(request.prompt),
                "response": result.text,
                "tool_calls": [call.name for call in result.tool_calls],
            }
        )
        return result, None

    # ------------------------------------------------------------------ classification
    def _handle_response(
        self,
        session: AgentSession,
        result: CompletionResult,
        dispatcher: Optional[ToolDispatcher],
        cancel_event: Optional[threading.Event],
    ) -> Optional[AgentOutcome]:
        if result.tool_calls:
            items = [{**call.arguments, "tool": call.name} for call in result.tool_calls]
            return self._dispatch(session, items, dispatcher, cancel_event)
        outcome = self._classify_text(session, result.text, allow_tools=True)
        if isinstance(outcome, AgentOutcome):
            return outcome
        return self._dispatch(session, outcome, dispatcher, cancel_event)

    def _classify_text(self, session: AgentSession, text: str, *, allow_tools: bool) -> Any:
        """Return a terminal outcome, or (when ``allow_tools``) the raw tool-call items."""
        stripped = (text or "").strip()
        if stripped == NO_CHANGES:
            return AgentOutcome(AgentTerminal.NO_CHANGES, NO_CHANGES)
        if looks_like_diff(stripped):
            return AgentOutcome(AgentTerminal.DIFF, stripped + "\n")
        if not stripped:
            return self._error(session, "parse_error", "Model returned an empty response.")
        try:
            payload = parse_json_payload(stripped)
        except LLMResponseFormatError as error:
            return self._salvage(session, stripped, "parse_error", str(error))

        if session.role is Role.REVIEWER and isinstance(payload, dict) and "verdict" in payload and "tool" not in payload:
            return AgentOutcome(AgentTerminal.VERDICT, stripped, payload=payload)
        items = payload if isinstance(payload, list) else [payload]
        if not items:
            return self._salvage(session, stripped, "parse_error", "Tool call array is empty.")
        if not allow_tools:
            return self._salvage(session, stripped, "parse_error", "Tool calls are not available in this request.")
        return items

    def _salvage(self, session: AgentSession, text: str, kind: str, message: str) -> AgentOutcome:
        start = find_diff_start(text)
        if start is not None:
            return AgentOutcome(AgentTerminal.DIFF, text[start:].rstrip() + "\n")
        if text.splitlines()[-1].strip() == NO_CHANGES:
            return AgentOutcome(AgentTerminal.NO_CHANGES, NO_CHANGES)
        return self._error(session, kind, message)

    def _dispatch(
        self,
        session: AgentSession,
        items: Sequence[Any],
        dispatcher: Optional[ToolDispatcher],
        cancel_event: Optional[threading.Event],
    ) -> Optional[AgentOutcome]:
        # Every call in the response is checked before any of them runs.
        try:
            names = [tool_name_of(item) for item in items]
        except ToolCallDecodeError as error:
            return self._error(session, error.kind, str(error))
        for name in names:
            if dispatcher is None or not self.permissions.allows(session.role, name):
                return self._error(session, "forbidden_tool", f"Role {session.role.value} may not call {name}.")
        try:
            calls = [decode_tool_call(item) for item in items]
        except ToolCallDecodeError as error:
            return self._error(session, error.kind, str(error))

        assert dispatcher is not None
        results: list[Dict[str, Any]] = []
        for call in calls:
            if cancel_event is not None and cancel_event.is_set():
                return self._error(session, "cancelled", "Session cancelled during tool dispatch.")
            try:
                result = dispatcher.dispatch(session.role, call, session.tools)
            except ForbiddenToolError as error:
                return self._error(session, "forbidden_tool", str(error))
            session.tool_results += 1
            session.context.append(render_tool_result(session.tool_results, result.tool, result.output))
            results.append({"tool": result.tool, "ok": result.ok, "limited": result.limited})
        if session.transcript:
            session.transcript[-1]["results"] = results
        return None

    # ------------------------------------------------------------------ terminals
    def _error(self, session: AgentSession, kind: str, message: str) -> AgentOutcome:
        error = AgentError(kind=kind, role=session.role, message=message)
        return AgentOutcome(AgentTerminal.ERROR, error=error)

    def _finish(self, session: AgentSession, outcome: AgentOutcome) -> AgentOutcome:
        outcome.iterations = session.iterations
        outcome.usage = session.usage
        error_kind = outcome.error.kind if outcome.error else None
        if outcome.error is not None:
            LOGGER.info("%s session %s ended with %s: %s", session.role.value, session.label, error_kind, outcome.error.message)
        emit_event(
            "agent.session",
            role=session.role.value,
            label=session.label,
            terminal=outcome.terminal.value,
            iterations=session.iterations,
            error=error_kind,
            tokens=session.usage.total_tokens,
        )
        self.artifacts.write_transcript(
            session.role.value,
            session.label,
            {
                "role": session.role.value,
                "label": session.label,
                "terminal": outcome.terminal.value,
                "error": outcome.error,
                "iterations": session.iterations,
                "counters": dict(session.tools.counters),
                "written": session.tools.written,
                "turns": session.transcript,
                "result": outcome.text,
            },
        )
        return outcome


__all__ = [
    "AgentError",
    "AgentOutcome",
    "AgentRuntime",
    "AgentSession",
    "AgentTerminal",
    "DEFAULT_ITERATION_CAP",
]
