"""Iteration controller: the run-length loop around pool, arbiter and toolchain.

Each iteration walks the same fixed states::

    RESET_OR_KEEP -> GENERATE_HYPOTHESES -> DISPATCH_WORKERS -> ARBITRATE
    -> GATE -> NORMALIZE_AND_APPLY -> BUILD -> TEST -> CLASSIFY
    -> PERSIST_STATE -> BUDGET_CHECK

The loop ends on success, on a budget breach (fatal), when the interactive
gate rejects a patch, when the working tree stops changing, or after
``max_loops`` iterations.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from .analysis import PythonAnalyzer
from .arbiter import ArbitrationStatus, Gate, PatchArbiter, RunAborted
from .budget import BudgetExceededError, BudgetGuard
from .config import PatchloopConfig
from .hypotheses import HypothesisGenerator, HypothesisInputs
from .logs import ArtifactLogger, emit_event
from .memory import RunMemoryStore, RunState
from .models.llm_client import LLMClient
from .pool import CandidatePatch, WorkerPool
from .prompts import FINAL_DIFF_REQUEST
from .roles import DEFAULT_PERMISSIONS, Role
from .runtime import AgentRuntime
from .tools.dispatcher import Quotas, ToolDispatcher, WritePolicy
from .tools.patch import PatchError, apply_patch, extract_paths
from .tools.toolchain import CommandResult, TestReport, Toolchain, stack_trace_paths
from .tools.vcs import GitCheckpoint, GitError, GitRepository
from .tools.worktree import WorktreeManager

LOGGER = logging.getLogger(__name__)


class IterationOutcome(str, Enum):
    SUCCESS = "success"
    BUILD_FAILED = "build_failed"
    TEST_FAILED = "test_failed"
    INVALID_PATCH_FORMAT = "invalid_patch_format"
    APPLY_FAILED = "apply_failed"
    REVIEW_REJECTED = "review_rejected"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class ControllerState(str, Enum):
    RESET_OR_KEEP = "RESET_OR_KEEP"
    GENERATE_HYPOTHESES = "GENERATE_HYPOTHESES"
    DISPATCH_WORKERS = "DISPATCH_WORKERS"
    ARBITRATE = "ARBITRATE"
    GATE = "GATE"
    NORMALIZE_AND_APPLY = "NORMALIZE_AND_APPLY"
    BUILD = "BUILD"
    TEST = "TEST"
    CLASSIFY = "CLASSIFY"
    PERSIST_STATE = "PERSIST_STATE"
    BUDGET_CHECK = "BUDGET_CHECK"


class PassingTestSet:
    """Cumulative set of test ids known to pass.

    The set only grows; a regression triggers a workspace reset but never
    removes history.
    """

    def __init__(self, initial: Iterable[str] = ()) -> None:
        self._tests: Set[str] = set(initial)

    def update(self, passed: Iterable[str]) -> List[str]:
        """Add ``passed`` and return the ids that were not known before."""
        added = sorted(set(passed) - self._tests)
        self._tests.update(added)
        return added

    def regressions(self, failures: Iterable[str]) -> List[str]:
        return sorted(name for name in set(failures) if name in self._tests)

    def __contains__(self, name: object) -> bool:
        return name in self._tests

    def __len__(self) -> int:
        return len(self._tests)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._tests))


def should_reset(
    passing: PassingTestSet,
    failures: Iterable[str],
    previous_outcome: Optional[IterationOutcome] = None,
) -> bool:
    """True when the next iteration must start from the last committed state."""
    if previous_outcome is IterationOutcome.BUILD_FAILED:
        return True
    return bool(passing.regressions(failures))


def ensure_data_dir(config: PatchloopConfig, repo_root: Path) -> Path:
    """Create the data directory and keep it out of git status and tree hashes."""
    data_root = config.resolve_path(repo_root, config.paths.data)
    data_root.mkdir(parents=True, exist_ok=True)
    ignore = data_root / ".gitignore"
    if not ignore.exists():
        ignore.write_text("*\n", encoding="utf-8")
    return data_root


@dataclass(slots=True)
class ControllerSettings:
    max_loops: int = 10
    max_stagnant_iterations: int = 5
    bug_hunt_every: int = 5
    dry_run: bool = False
    commit_on_success: bool = True


@dataclass(slots=True)
class IterationRecord:
    """What happened in one iteration; persisted and reported."""

    iteration: int
    outcome: Optional[IterationOutcome] = None
    reset: bool = False
    hypotheses: List[str] = field(default_factory=list)
    candidates: List[str] = field(default_factory=list)
    forced_round: bool = False
    chosen_slot: Optional[int] = None
    patch_variant: Optional[str] = None
    partial_apply: bool = False
    diff_summary: str = ""
    touched_files: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    newly_passing: List[str] = field(default_factory=list)
    error: Optional[str] = None
    duration: float = 0.0


@dataclass(slots=True)
class RunResult:
    success: bool
    stop_reason: str
    iterations: List[IterationRecord] = field(default_factory=list)
    tokens_used: int = 0
    cost_gbp: float = 0.0
    tests_fixed: List[str] = field(default_factory=list)
    patch_summary: str = ""
    chosen_diff: Optional[str] = None
    commit: Optional[str] = None
    error: Optional[str] = None

    def to_ci_payload(self) -> Dict[str, Any]:
        """Compact machine-readable result written to stdout in CI mode."""
        return {
            "success": self.success,
            "iterations": len(self.iterations),
            "tokensUsed": self.tokens_used,
            "costGBP": round(self.cost_gbp, 4),
            "testsFixed": len(self.tests_fixed),
            "patchSummary": self.patch_summary,
        }


@dataclass(slots=True)
class _Verification:
    build: CommandResult
    report: Optional[TestReport] = None

    @property
    def success(self) -> bool:
        return self.build.ok and self.report is not None and self.report.ok and not self.report.failures

    @property
    def failures(self) -> List[str]:
        return self.report.failed_names if self.report is not None else []


class IterationController:
    """Own the run-length state and drive iterations until a stop condition."""

    def __init__(
        self,
        repo: GitRepository,
        toolchain: Toolchain,
        runtime: AgentRuntime,
        pool: WorkerPool,
        arbiter: PatchArbiter,
        memory: RunMemoryStore,
        budget: BudgetGuard,
        *,
        hypotheses: Optional[HypothesisGenerator] = None,
        settings: Optional[ControllerSettings] = None,
    ) -> None:
        self.repo = repo
        self.toolchain = toolchain
        self.runtime = runtime
        self.pool = pool
        self.arbiter = arbiter
        self.memory = memory
        self.budget = budget
        self.hypotheses = hypotheses or HypothesisGenerator()
        self.settings = settings or ControllerSettings()
        self.passing = PassingTestSet()
        self._checkpoint: Optional[GitCheckpoint] = None
        self._baseline: Optional[_Verification] = None
        self._attempted: List[str] = []
        self._last: Optional[_Verification] = None
        self._dry_run_diff: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        config: PatchloopConfig,
        repo: GitRepository,
        client: LLMClient,
        *,
        gate: Optional[Gate] = None,
        debug: bool = False,
        dry_run: bool = False,
        use_worktrees: Optional[bool] = None,
        max_loops: Optional[int] = None,
    ) -> "IterationController":
        """Wire every collaborator for ``repo`` from one validated configuration."""
        root = repo.root
        data_root = ensure_data_dir(config, root)
        toolchain = Toolchain.detect(
            root,
            config.toolchain,
            build_timeout=config.loop.build_timeout,
            test_timeout=config.loop.test_timeout,
        )
        permissions = DEFAULT_PERMISSIONS.with_overrides(config.permissions)
        dispatcher = ToolDispatcher(
            repo,
            toolchain,
            permissions=permissions,
            quotas=Quotas.from_config(config.agent.quotas),
            write_policy=WritePolicy.from_config(config.write_policy),
            analyzer=PythonAnalyzer(),
            search_max_hits=config.agent.search_max_hits,
            file_read_max_lines=config.agent.file_read_max_lines,
        )
        budget = BudgetGuard.from_config(config.budget)
        artifacts = ArtifactLogger(data_root, config.resolve_path(root, config.paths.logs), enabled=debug)
        runtime = AgentRuntime(
            client,
            budget,
            dispatcher=dispatcher,
            permissions=permissions,
            models={role: config.models.for_role(role.value) for role in Role},
            iteration_cap=config.agent.iteration_cap,
            max_output_tokens=config.agent.max_output_tokens,
            transport=config.agent.transport,
            prompt_max_chars=config.agent.prompt_max_chars,
            artifacts=artifacts,
        )
        worktrees_enabled = config.pool.use_worktrees if use_worktrees is None else use_worktrees
        pool = WorkerPool(
            runtime,
            dispatcher,
            timeout=config.pool.worker_timeout,
            worktrees=WorktreeManager(repo) if worktrees_enabled else None,
        )
        return cls(
            repo,
            toolchain,
            runtime,
            pool,
            PatchArbiter(runtime, gate=gate),
            RunMemoryStore.from_config(config, root),
            budget,
            hypotheses=HypothesisGenerator(
                config.pool.hypotheses,
                bug_hunt_every=config.loop.bug_hunt_every,
                stability_every=config.loop.stability_every,
            ),
            settings=ControllerSettings(
                max_loops=max_loops or config.loop.max_loops,
                max_stagnant_iterations=config.loop.max_stagnant_iterations,
                bug_hunt_every=config.loop.bug_hunt_every,
                dry_run=dry_run,
            ),
        )

    # ------------------------------------------------------------------ run
    def run(self) -> RunResult:
        """Run the loop; budget breaches, gate rejections and git or OS errors end it with a failed result."""
        records: List[IterationRecord] = []
        baseline_failures: List[str] = []
        try:
            previous = self.memory.read_run_state()
            if previous is not None:
                self._attempted = list(previous.hypotheses_attempted)

            baseline = self._verify()
            baseline_failures = baseline.failures
            if baseline.report is not None:
                self.passing.update(baseline.report.passed)
            LOGGER.info(
                "Baseline: build %s, %d passing, %d failing",
                "ok" if baseline.build.ok else "failed",
                len(self.passing),
                len(baseline_failures),
            )
            if baseline.success:
                return self._result(True, "already_passing", records, baseline_failures)

            self._checkpoint = self.repo.create_checkpoint("patchloop-baseline")
            self._baseline = baseline
            last = baseline
            previous_outcome: Optional[IterationOutcome] = None
            last_hash = self.repo.tree_hash()
            stagnant = 0
            for iteration in range(1, self.settings.max_loops + 1):
                record, last = self._iteration(iteration, last, previous_outcome, records)
                if record.outcome is None:
                    return self._result(False, "dry_run", records, baseline_failures)
                if record.outcome is IterationOutcome.SUCCESS:
                    return self._result(True, "success", records, baseline_failures, commit=self._commit(iteration))
                previous_outcome = record.outcome
                self._budget_check(iteration)

                current_hash = self.repo.tree_hash()
                stagnant = stagnant + 1 if current_hash == last_hash else 0
                last_hash = current_hash
                if self.settings.max_stagnant_iterations and stagnant >= self.settings.max_stagnant_iterations:
                    LOGGER.warning("Working tree unchanged for %d iterations; stopping", stagnant)
                    return self._result(False, "stagnated", records, baseline_failures)
        except BudgetExceededError as error:
            return self._result(False, "budget_exceeded", records, baseline_failures, error=str(error))
        except RunAborted as error:
            return self._result(False, "aborted", records, baseline_failures, error=str(error))
        except (GitError, OSError) as error:
            LOGGER.error("Run stopped: %s", error)
            return self._result(False, "error", records, baseline_failures, error=str(error))
        return self._result(False, "max_loops", records, baseline_failures)

    # ------------------------------------------------------------------ one iteration
    def _iteration(
        self,
        iteration: int,
        last: _Verification,
        previous_outcome: Optional[IterationOutcome],
        records: List[IterationRecord],
    ) -> tuple[IterationRecord, _Verification]:
        started = time.monotonic()
        record = IterationRecord(iteration=iteration)
        self._last = last
        try:
            self._run_states(record, last, previous_outcome)
        except RunAborted:
            records.append(record)
            raise
        finally:
            record.duration = time.monotonic() - started
        records.append(record)
        assert self._last is not None
        return record, self._last

    def _run_states(
        self,
        record: IterationRecord,
        last: _Verification,
        previous_outcome: Optional[IterationOutcome],
    ) -> IterationRecord:
        iteration = record.iteration

        self._enter(ControllerState.RESET_OR_KEEP, iteration)
        if iteration > 1 and should_reset(self.passing, last.failures, previous_outcome):
            LOGGER.info("Resetting workspace before iteration %d", iteration)
            assert self._checkpoint is not None
            self.repo.restore_checkpoint(self._checkpoint)
            record.reset = True
            # the restored tree is the baseline tree; the reverted patch's report no longer applies
            assert self._baseline is not None
            last = self._baseline
            self._last = last

        self._enter(ControllerState.GENERATE_HYPOTHESES, iteration)
        failing_files = stack_trace_paths(last.report, self.repo.root) if last.report is not None else []
        record.hypotheses = self.hypotheses.generate(
            HypothesisInputs(
                iteration=iteration,
                failing_tests=last.failures,
                build_error=None if last.build.ok else last.build.output,
                suggestion=self.memory.get_suggested_fix(last.failures, failing_files),
                coverage_gaps=self._coverage_gaps(iteration, last),
                attempted=self._attempted,
            )
        )
        self._attempted.extend(item for item in record.hypotheses if item not in self._attempted)
        context = self._base_context(last, failing_files)

        self._enter(ControllerState.DISPATCH_WORKERS, iteration)
        candidates = self.pool.run(record.hypotheses, context, iteration=iteration)
        if not any(candidate.is_diff for candidate in candidates):
            record.forced_round = True
            forced = self._forced_round(context, len(candidates))
            if forced is not None:
                candidates.append(forced)
        record.candidates = [candidate.status for candidate in candidates]

        self._enter(ControllerState.ARBITRATE, iteration)
        try:
            arbitration = self.arbiter.arbitrate(candidates, context)
        except RunAborted as error:
            self._enter(ControllerState.GATE, iteration)
            record.error = str(error)
            self._persist(record, IterationOutcome.ABORTED, last)
            raise
        record.chosen_slot = arbitration.chosen_slot
        self._enter(ControllerState.GATE, iteration)
        if arbitration.status is ArbitrationStatus.NO_CANDIDATES:
            return self._persist(record, IterationOutcome.INVALID_PATCH_FORMAT, last)
        if arbitration.status is ArbitrationStatus.REVIEW_REJECTED:
            record.error = "; ".join(arbitration.issues) or None
            return self._persist(record, IterationOutcome.REVIEW_REJECTED, last)
        if arbitration.status is ArbitrationStatus.SKIPPED:
            return self._persist(record, IterationOutcome.SKIPPED, last)
        diff = arbitration.diff or ""
        if self.settings.dry_run:
            self._dry_run_diff = diff
            record.diff_summary = self._diffstat(diff, strip=1)
            return record

        self._enter(ControllerState.NORMALIZE_AND_APPLY, iteration)
        try:
            applied = apply_patch(self.repo, diff)
        except PatchError as error:
            record.error = str(error)
            outcome = (
                IterationOutcome.INVALID_PATCH_FORMAT
                if error.kind == "invalid_patch_format"
                else IterationOutcome.APPLY_FAILED
            )
            LOGGER.warning("Iteration %d: %s (%s)", iteration, outcome.value, error)
            return self._persist(record, outcome, last)
        record.patch_variant = applied.variant
        record.partial_apply = applied.partial
        record.touched_files = [path.as_posix() for path in applied.paths]
        record.diff_summary = self._diffstat(applied.patch, strip=applied.strip)

        self._enter(ControllerState.BUILD, iteration)
        build = self.toolchain.run_build()
        if not build.ok:
            verification = _Verification(build=build)
            self._enter(ControllerState.CLASSIFY, iteration)
            self.memory.update_heuristics(record.touched_files, [])
            return self._persist(record, IterationOutcome.BUILD_FAILED, verification)

        self._enter(ControllerState.TEST, iteration)
        verification = _Verification(build=build, report=self.toolchain.run_tests())

        self._enter(ControllerState.CLASSIFY, iteration)
        assert verification.report is not None
        record.newly_passing = self.passing.update(verification.report.passed)
        if verification.success:
            return self._persist(record, IterationOutcome.SUCCESS, verification)
        failed_files = list(
            dict.fromkeys(stack_trace_paths(verification.report, self.repo.root) + record.touched_files)
        )
        self.memory.update_heuristics(failed_files, verification.failures)
        return self._persist(record, IterationOutcome.TEST_FAILED, verification)

    def _persist(self, record: IterationRecord, outcome: IterationOutcome, verification: _Verification) -> IterationRecord:
        record.outcome = outcome
        record.failures = verification.failures
        self._last = verification
        self._enter(ControllerState.PERSIST_STATE, record.iteration, outcome=outcome.value)
        self.memory.save_run_state(
            RunState(
                iteration=record.iteration,
                failures=record.failures,
                recent_files=record.touched_files,
                diff_summary=record.diff_summary,
                build_ok=verification.build.ok,
                test_ok=verification.success,
                outcome=outcome.value,
                hypotheses_attempted=self._attempted,
            )
        )
        LOGGER.info("Iteration %d finished: %s", record.iteration, outcome.value)
        return record

    def _budget_check(self, iteration: int) -> None:
        self._enter(ControllerState.BUDGET_CHECK, iteration)
        state = self.budget.check()
        emit_event("budget.check", iteration=iteration, tokens=state.total_tokens, cost_gbp=state.cost_gbp)

    # ------------------------------------------------------------------ helpers
    def _forced_round(self, context: str, slot: int) -> Optional[CandidatePatch]:
        """Explicit final-diff request, then a tool-less finalize request."""
        LOGGER.info("No candidate diff; requesting an explicit final diff")
        outcome = self.runtime.run(Role.BUILDER, f"{context}\n\n{FINAL_DIFF_REQUEST}", label="builder-final")
        if not outcome.is_diff:
            LOGGER.info("Still no diff; issuing a finalize-only request")
            outcome = self.runtime.finalize(Role.BUILDER, context, label="builder-finalize")
        if not outcome.is_diff:
            return None
        return CandidatePatch(slot=slot, hypothesis="final diff request", text=outcome.text, outcome=outcome)

    def _verify(self) -> _Verification:
        build = self.toolchain.run_build()
        if not build.ok:
            return _Verification(build=build)
        return _Verification(build=build, report=self.toolchain.run_tests())

    def _coverage_gaps(self, iteration: int, last: _Verification) -> List[str]:
        period = self.settings.bug_hunt_every
        if not period or iteration % period or not last.build.ok:
            return []
        report = self.toolchain.run_coverage()
        if report.error:
            LOGGER.debug("Coverage unavailable: %s", report.error)
            return []
        return [item.path for item in sorted(report.gaps(), key=lambda entry: entry.percent)]

    def _base_context(self, last: _Verification, failing_files: Sequence[str]) -> str:
        sections = [f"## Repository\n{self.repo.root.name} ({self.toolchain.kind} project)"]
        if not last.build.ok:
            sections.append(f"## Build Failed\n{last.build.output[-4000:]}")
        if last.report is not None:
            sections.append(f"## Test Report\n{last.report.render()}")
        if failing_files:
            sections.append("## Files In Failure Traces\n" + "\n".join(f"- {path}" for path in failing_files))
        sections.append(self.memory.get_memory_summary(list(last.failures) + list(failing_files)))
        return "\n\n".join(sections)

    def _diffstat(self, patch: str, *, strip: int = 1) -> str:
        if not patch.strip():
            return ""
        summary = self.repo.diffstat(patch, strip=strip)
        if summary:
            return summary
        paths = sorted(path.as_posix() for path in extract_paths(patch))
        return f"{len(paths)} file(s) changed: " + ", ".join(paths)

    def _commit(self, iteration: int) -> Optional[str]:
        if not self.settings.commit_on_success:
            return None
        try:
            return self.repo.commit_all(f"patchloop: tests pass after {iteration} iteration(s)")
        except GitError as error:
            LOGGER.error("Unable to commit the successful patch: %s", error)
            return None

    def _enter(self, state: ControllerState, iteration: int, **fields: Any) -> None:
        LOGGER.debug("Iteration %d -> %s", iteration, state.value)
        emit_event("controller.state", iteration=iteration, state=state.value, **fields)

    def _result(
        self,
        success: bool,
        reason: str,
        records: List[IterationRecord],
        baseline_failures: Sequence[str],
        *,
        commit: Optional[str] = None,
        error: Optional[str] = None,
    ) -> RunResult:
        budget = self.budget.state()
        summary = ""
        if reason == "dry_run" and records:
            summary = records[-1].diff_summary
        elif success and commit:
            summary = self._committed_summary(commit)
        else:
            try:
                summary = self._diffstat(self.repo.diff(include_untracked=True))
            except GitError as diff_error:
                LOGGER.warning("Unable to summarise the working tree: %s", diff_error)
        result = RunResult(
            success=success,
            stop_reason=reason,
            iterations=records,
            tokens_used=budget.total_tokens,
            cost_gbp=budget.cost_gbp,
            tests_fixed=[name for name in baseline_failures if name in self.passing],
            patch_summary=summary,
            chosen_diff=self._dry_run_diff,
            commit=commit,
            error=error,
        )
        emit_event("run.finish", **result.to_ci_payload(), stop_reason=reason)
        LOGGER.info("Run finished: %s (%s)", "success" if success else "failure", reason)
        return result

    def _committed_summary(self, commit: str) -> str:
        baseline = self._checkpoint.head if self._checkpoint is not None else None
        if not baseline:
            return ""
        process = self.repo.git("diff", "--stat", baseline, commit, check=False)
        return process.stdout.strip()


__all__ = [
    "ControllerSettings",
    "ControllerState",
    "IterationController",
    "IterationOutcome",
    "IterationRecord",
    "PassingTestSet",
    "RunAborted",
    "RunResult",
    "ensure_data_dir",
    "should_reset",
]
