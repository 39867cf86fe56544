"""Judge, review and gate candidate patches down to at most one diff."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from pydantic import ValidationError

from .logs import emit_event
from .pool import CandidatePatch
from .prompts import render_candidates, render_issues
from .roles import Role
from .runtime import AgentOutcome, AgentRuntime, AgentTerminal
from .structured import ReviewVerdict, Verdict
from .tools.patch import normalize_diff

LOGGER = logging.getLogger(__name__)

# Each arbitration stage is retried at most once.
STAGE_RETRIES = 1


class RunAborted(RuntimeError):
    """Raised when the interactive gate rejects a patch and the run must stop."""


class GateDecision(str, Enum):
    APPROVE = "approve"
    SKIP = "skip"
    REJECT = "reject"


Gate = Callable[[str], GateDecision]


class ArbitrationStatus(str, Enum):
    SELECTED = "selected"
    NO_CANDIDATES = "no_candidates"
    REVIEW_REJECTED = "review_rejected"
    SKIPPED = "skipped"


@dataclass(slots=True)
class ArbitrationResult:
    status: ArbitrationStatus
    diff: Optional[str] = None
    chosen_slot: Optional[int] = None
    verdict: Optional[Verdict] = None
    issues: List[str] = field(default_factory=list)
    refined: bool = False
    judge_calls: int = 0
    review_calls: int = 0

    @property
    def selected(self) -> bool:
        return self.status is ArbitrationStatus.SELECTED and bool(self.diff)


class PatchArbiter:
    """Three-stage selection: judge, reviewer (with one refinement), gate."""

    def __init__(self, runtime: AgentRuntime, *, gate: Optional[Gate] = None) -> None:
        self.runtime = runtime
        self.gate = gate

    def arbitrate(self, candidates: Sequence[CandidatePatch], base_context: str) -> ArbitrationResult:
        valid = [candidate for candidate in candidates if candidate.is_diff]
        if not valid:
            return ArbitrationResult(ArbitrationStatus.NO_CANDIDATES)

        result = ArbitrationResult(ArbitrationStatus.SELECTED)
        diff, slot = self._judge(valid, result)
        result.chosen_slot = slot

        diff = self._review(diff, base_context, result)
        if result.status is ArbitrationStatus.REVIEW_REJECTED:
            emit_event("arbiter.result", status=result.status, issues=result.issues)
            return result

        result.diff = diff
        if self.gate is not None:
            decision = GateDecision(self.gate(diff))
            if decision is GateDecision.REJECT:
                raise RunAborted("Patch rejected at the interactive gate.")
            if decision is GateDecision.SKIP:
                result.status = ArbitrationStatus.SKIPPED
                result.diff = None
        emit_event(
            "arbiter.result",
            status=result.status,
            slot=result.chosen_slot,
            verdict=result.verdict,
            refined=result.refined,
            judge_calls=result.judge_calls,
        )
        return result

    # ------------------------------------------------------------------ judge
    def _judge(self, valid: Sequence[CandidatePatch], result: ArbitrationResult) -> tuple[str, Optional[int]]:
        if len(valid) == 1:
            return normalize_diff(valid[0].text), valid[0].slot
        prompt = render_candidates([candidate.text for candidate in valid])
        for attempt in range(1 + STAGE_RETRIES):
            result.judge_calls += 1
            outcome = self.runtime.complete_once(Role.JUDGE, prompt, label=f"judge-{attempt + 1}")
            chosen = normalize_diff(outcome.text) if outcome.is_diff else ""
            if chosen:
                return chosen, _matching_slot(chosen, valid)
            LOGGER.info("Judge returned no diff (attempt %d)", attempt + 1)
        LOGGER.warning("Judge did not choose; falling back to the first valid candidate")
        return normalize_diff(valid[0].text), valid[0].slot

    # ------------------------------------------------------------------ reviewer
    def _review(self, diff: str, base_context: str, result: ArbitrationResult) -> str:
        prompt = f"## Proposed Diff\n{diff}"
        outcome: Optional[AgentOutcome] = None
        for attempt in range(1 + STAGE_RETRIES):
            result.review_calls += 1
            outcome = self.runtime.run(Role.REVIEWER, prompt, label=f"reviewer-{attempt + 1}")
            if outcome.terminal is not AgentTerminal.ERROR:
                break
            if outcome.error is not None and outcome.error.kind == "budget_exceeded":
                break
        if outcome is None or outcome.terminal is not AgentTerminal.VERDICT:
            if outcome is not None and outcome.is_diff and normalize_diff(outcome.text):
                result.verdict = Verdict.ACCEPT
                return normalize_diff(outcome.text)
            # No usable verdict counts as acceptance.
            result.verdict = Verdict.ACCEPT
            return diff

        try:
            verdict = ReviewVerdict.model_validate(outcome.payload)
        except ValidationError as error:
            LOGGER.info("Reviewer verdict did not validate (%s); accepting", error.error_count())
            result.verdict = Verdict.ACCEPT
            return diff
        result.verdict = verdict.verdict
        result.issues = list(verdict.issues)
        if verdict.verdict is Verdict.REJECT:
            result.status = ArbitrationStatus.REVIEW_REJECTED
            return diff
        if verdict.diff and normalize_diff(verdict.diff):
            diff = normalize_diff(verdict.diff)
        if verdict.verdict is Verdict.REFINE and verdict.issues:
            return self._refine(diff, base_context, verdict.issues, result)
        return diff

    def _refine(self, diff: str, base_context: str, issues: Sequence[str], result: ArbitrationResult) -> str:
        context = f"{base_context}\n\n{render_issues(issues)}\n\n## Proposed Diff\n{diff}"
        outcome = self.runtime.run(Role.BUILDER, context, label="builder-refine")
        refined = normalize_diff(outcome.text) if outcome.is_diff else ""
        if not refined:
            LOGGER.info("Refinement produced no diff; keeping the reviewed diff")
            return diff
        result.refined = True
        return refined


def _matching_slot(diff: str, candidates: Sequence[CandidatePatch]) -> Optional[int]:
    target = diff.strip()
    for candidate in candidates:
        if normalize_diff(candidate.text).strip() == target:
            return candidate.slot
    return None


__all__ = [
    "ArbitrationResult",
    "ArbitrationStatus",
    "Gate",
    "GateDecision",
    "PatchArbiter",
    "RunAborted",
    "STAGE_RETRIES",
]
