"""Run one builder session per hypothesis concurrently and collect every slot."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .logs import emit_event
from .prompts import NO_CHANGES, render_hypothesis
from .roles import Role
from .runtime import AgentOutcome, AgentRuntime, AgentTerminal
from .tools.dispatcher import ToolDispatcher
from .tools.patch import normalize_diff
from .tools.vcs import GitError
from .tools.worktree import Worktree, WorktreeManager

LOGGER = logging.getLogger(__name__)

DEFAULT_WORKER_TIMEOUT = 300.0


@dataclass(slots=True)
class CandidatePatch:
    """Raw builder output for one pool slot."""

    slot: int
    hypothesis: str
    text: str
    outcome: Optional[AgentOutcome] = None
    timed_out: bool = False
    duration: float = 0.0

    @property
    def is_diff(self) -> bool:
        return bool(normalize_diff(self.text))

    @property
    def error_kind(self) -> Optional[str]:
        if self.outcome is not None and self.outcome.error is not None:
            return self.outcome.error.kind
        return None

    @property
    def status(self) -> str:
        if self.timed_out:
            return "timeout"
        if self.error_kind:
            return self.error_kind
        return "diff" if self.is_diff else "no_changes"


@dataclass(slots=True)
class _Slot:
    index: int
    hypothesis: str
    context: str
    cancel: threading.Event
    worktree: Optional[Worktree] = None
    started: float = 0.0


class WorkerPool:
    """Fan builder sessions out over threads, optionally in private worktrees.

    Every slot yields a :class:`CandidatePatch`: slots that time out are
    cancelled and contribute ``NO_CHANGES``, slots whose setup fails
    contribute an error marker. Worktrees are created and removed from the
    calling thread so cleanup runs even when a worker never returns.
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        dispatcher: Optional[ToolDispatcher] = None,
        *,
        timeout: float = DEFAULT_WORKER_TIMEOUT,
        worktrees: Optional[WorktreeManager] = None,
    ) -> None:
        self.runtime = runtime
        self.dispatcher = dispatcher or runtime.dispatcher
        self.timeout = timeout
        self.worktrees = worktrees

    def run(self, hypotheses: Sequence[str], base_context: str, *, iteration: int = 0) -> List[CandidatePatch]:
        """Run one builder per hypothesis and return candidates in slot order."""
        if not hypotheses:
            return []
        slots = [
            _Slot(
                index=index,
                hypothesis=hypothesis,
                context=f"{base_context}\n\n{render_hypothesis(hypothesis)}",
                cancel=threading.Event(),
            )
            for index, hypothesis in enumerate(hypotheses)
        ]
        candidates: dict[int, CandidatePatch] = {}
        runnable: list[_Slot] = []
        try:
            for slot in slots:
                if self.worktrees is not None:
                    try:
                        slot.worktree = self.worktrees.create(f"iter{iteration}-slot{slot.index}")
                    except GitError as error:
                        LOGGER.warning("Worktree setup failed for slot %d: %s", slot.index, error)
                        candidates[slot.index] = CandidatePatch(
                            slot.index, slot.hypothesis, f"ERROR worktree_failed (builder): {error}"
                        )
                        continue
                runnable.append(slot)
            candidates.update(self._execute(runnable))
        finally:
            if self.worktrees is not None:
                for slot in slots:
                    if slot.worktree is not None:
                        self.worktrees.cleanup(slot.worktree)
        ordered = [candidates[slot.index] for slot in slots]
        for candidate in ordered:
            emit_event(
                "pool.slot",
                iteration=iteration,
                slot=candidate.slot,
                hypothesis=candidate.hypothesis,
                status=candidate.status,
                duration=round(candidate.duration, 3),
            )
        return ordered

    def _execute(self, slots: Sequence[_Slot]) -> dict[int, CandidatePatch]:
        results: dict[int, CandidatePatch] = {}
        if not slots:
            return results
        executor = ThreadPoolExecutor(max_workers=len(slots), thread_name_prefix="patchloop-worker")
        futures: dict[Future[CandidatePatch], _Slot] = {}
        try:
            for slot in slots:
                slot.started = time.monotonic()
                futures[executor.submit(self._work, slot)] = slot
            done, pending = wait(futures, timeout=self.timeout)
            for future in done:
                slot = futures[future]
                try:
                    results[slot.index] = future.result()
                except Exception as error:  # a crashed worker must still fill its slot
                    LOGGER.exception("Worker %d crashed", slot.index)
                    results[slot.index] = CandidatePatch(
                        slot.index,
                        slot.hypothesis,
                        f"ERROR worker_crashed (builder): {error}",
                        duration=time.monotonic() - slot.started,
                    )
            for future in pending:
                slot = futures[future]
                slot.cancel.set()
                future.cancel()
                LOGGER.warning("Worker %d timed out after %.0fs; treating as %s", slot.index, self.timeout, NO_CHANGES)
                results[slot.index] = CandidatePatch(
                    slot.index,
                    slot.hypothesis,
                    NO_CHANGES,
                    timed_out=True,
                    duration=time.monotonic() - slot.started,
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return results

    def _work(self, slot: _Slot) -> CandidatePatch:
        dispatcher = self.dispatcher
        if dispatcher is not None:
            repo = slot.worktree.repo if slot.worktree is not None else dispatcher.repo
            dispatcher = dispatcher.bind(repo, cancel_event=slot.cancel)
        outcome = self.runtime.run(
            Role.BUILDER,
            slot.context,
            label=f"builder-slot{slot.index}",
            dispatcher=dispatcher,
            cancel_event=slot.cancel,
        )
        text = outcome.candidate_text
        if slot.worktree is not None and not slot.cancel.is_set() and outcome.terminal is not AgentTerminal.ERROR:
            try:
                collected = self.worktrees.collect_diff(slot.worktree) if self.worktrees else ""
            except GitError as error:
                LOGGER.warning("Could not collect worktree diff for slot %d: %s", slot.index, error)
                collected = ""
            if collected.strip():
                text = collected
        return CandidatePatch(
            slot.index,
            slot.hypothesis,
            text,
            outcome=outcome,
            duration=time.monotonic() - slot.started,
        )


__all__ = ["CandidatePatch", "DEFAULT_WORKER_TIMEOUT", "WorkerPool"]
