from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Iterator, List

import pytest
from conftest import CALCULATOR_PATH, FIX_DIFF, TinyRepo

from patchloop.arbiter import GateDecision
from patchloop.config import PatchloopConfig
from patchloop.controller import (
    IterationController,
    IterationOutcome,
    PassingTestSet,
    RunResult,
    ensure_data_dir,
    should_reset,
)
from patchloop.memory import RunMemoryStore
from patchloop.models import CompletionRequest, ScriptedClient
from patchloop.prompts import NO_CHANGES
from patchloop.tools.vcs import GitError

ACCEPT = json.dumps({"verdict": "accept", "issues": []})
FAILING_TEST = "tests/test_calculator.py::test_add_returns_sum"
MULTIPLY_TEST = "tests/test_calculator.py::test_multiply_returns_product"
BREAK_MULTIPLY_DIFF = "\n".join(
    [
        f"diff --git a/{CALCULATOR_PATH} b/{CALCULATOR_PATH}",
        f"--- a/{CALCULATOR_PATH}",
        f"+++ b/{CALCULATOR_PATH}",
        "@@ -5,5 +5,5 @@",
        "     return left - right",
        " ",
        " ",
        " def multiply(left: int, right: int) -> int:",
        "-    return left * right",
        "+    return left + right",
        "",
    ]
)


def _client(replies: Dict[str, str]) -> ScriptedClient:
    def responder(request: CompletionRequest) -> str:
        return replies.get(request.metadata["role"], NO_CHANGES)

    return ScriptedClient(responder=responder)


def _config(**sections: Dict[str, object]) -> PatchloopConfig:
    data: Dict[str, object] = {"pool": {"hypotheses": 1}}
    data.update(sections)
    return PatchloopConfig.model_validate(data)


@pytest.fixture()
def controllers() -> Iterator[List[IterationController]]:
    built: List[IterationController] = []
    yield built
    for controller in built:
        controller.memory.close()


def _controller(
    built: List[IterationController],
    tiny: TinyRepo,
    client: ScriptedClient,
    config: PatchloopConfig | None = None,
    **options: object,
) -> IterationController:
    controller = IterationController.from_config(config or _config(), tiny.repo, client, **options)
    built.append(controller)
    return controller


def test_already_passing_repository_needs_no_model(tiny_repo: TinyRepo, controllers) -> None:
    client = ScriptedClient()

    result = _controller(controllers, tiny_repo, client).run()

    assert result.success
    assert result.stop_reason == "already_passing"
    assert result.iterations == []
    assert result.tests_fixed == []
    assert client.requests == []


def test_fix_is_applied_verified_and_committed(broken_repo: TinyRepo, controllers) -> None:
    head_before = broken_repo.repo.current_head()
    client = _client({"builder": FIX_DIFF, "reviewer": ACCEPT})
    controller = _controller(controllers, broken_repo, client)

    result = controller.run()

    assert result.success
    assert result.stop_reason == "success"
    assert len(result.iterations) == 1
    record = result.iterations[0]
    assert record.outcome is IterationOutcome.SUCCESS
    assert record.touched_files == ["src/tiny_app/calculator.py"]
    assert FAILING_TEST in record.newly_passing
    assert result.tests_fixed == [FAILING_TEST]
    assert "return left + right" in broken_repo.calculator.read_text(encoding="utf-8")
    assert result.commit is not None and result.commit != head_before
    assert broken_repo.repo.current_head() == result.commit
    assert "calculator.py" in result.patch_summary

    state = controller.memory.read_run_state()
    assert state is not None
    assert state.outcome == "success"
    assert state.test_ok

    payload = result.to_ci_payload()
    assert list(payload) == ["success", "iterations", "tokensUsed", "costGBP", "testsFixed", "patchSummary"]
    assert payload["success"] is True
    assert payload["iterations"] == 1
    assert payload["testsFixed"] == 1
    assert payload["tokensUsed"] > 0


def test_no_changes_exhausts_max_loops(broken_repo: TinyRepo, controllers) -> None:
    client = ScriptedClient(default=NO_CHANGES)
    controller = _controller(controllers, broken_repo, client, _config(loop={"max_loops": 2}))

    result = controller.run()

    assert not result.success
    assert result.stop_reason == "max_loops"
    assert [record.outcome for record in result.iterations] == [IterationOutcome.INVALID_PATCH_FORMAT] * 2
    assert all(record.forced_round for record in result.iterations)
    assert result.iterations[0].failures == [FAILING_TEST]
    assert result.to_ci_payload()["success"] is False
    assert [state.iteration for state in controller.memory.list_run_states()] == [2, 1]


def test_unchanged_tree_stops_as_stagnated(broken_repo: TinyRepo, controllers) -> None:
    config = _config(loop={"max_loops": 5, "max_stagnant_iterations": 1})

    result = _controller(controllers, broken_repo, ScriptedClient(default=NO_CHANGES), config).run()

    assert result.stop_reason == "stagnated"
    assert len(result.iterations) == 1


def test_dry_run_reports_the_chosen_diff_without_applying(broken_repo: TinyRepo, controllers) -> None:
    original = broken_repo.calculator.read_text(encoding="utf-8")
    client = _client({"builder": FIX_DIFF, "reviewer": ACCEPT})

    result = _controller(controllers, broken_repo, client, dry_run=True).run()

    assert not result.success
    assert result.stop_reason == "dry_run"
    assert result.chosen_diff == FIX_DIFF
    assert result.iterations[0].outcome is None
    assert "calculator.py" in result.patch_summary
    assert broken_repo.calculator.read_text(encoding="utf-8") == original


def test_budget_breach_keeps_the_iteration_record(broken_repo: TinyRepo, controllers) -> None:
    config = _config(budget={"max_total_tokens": 1, "max_cost_gbp": None})
    controller = _controller(controllers, broken_repo, ScriptedClient(default=NO_CHANGES), config)

    result = controller.run()

    assert not result.success
    assert result.stop_reason == "budget_exceeded"
    assert result.error is not None and "token budget exceeded" in result.error
    assert len(result.iterations) == 1
    assert result.iterations[0].outcome is IterationOutcome.INVALID_PATCH_FORMAT
    state = controller.memory.read_run_state()
    assert state is not None and state.iteration == 1


def test_gate_rejection_aborts_the_run(broken_repo: TinyRepo, controllers) -> None:
    original = broken_repo.calculator.read_text(encoding="utf-8")
    client = _client({"builder": FIX_DIFF, "reviewer": ACCEPT})
    controller = _controller(controllers, broken_repo, client, gate=lambda diff: GateDecision.REJECT)

    result = controller.run()

    assert not result.success
    assert result.stop_reason == "aborted"
    assert result.error is not None and "rejected" in result.error
    assert broken_repo.calculator.read_text(encoding="utf-8") == original
    assert len(result.iterations) == 1
    assert result.iterations[0].outcome is IterationOutcome.ABORTED
    assert result.iterations[0].failures == [FAILING_TEST]
    state = controller.memory.read_run_state()
    assert state is not None
    assert state.iteration == 1
    assert state.outcome == "aborted"


def test_gate_skip_records_skipped_iteration(broken_repo: TinyRepo, controllers) -> None:
    client = _client({"builder": FIX_DIFF, "reviewer": ACCEPT})
    config = _config(loop={"max_loops": 1})

    result = _controller(controllers, broken_repo, client, config, gate=lambda diff: GateDecision.SKIP).run()

    assert result.stop_reason == "max_loops"
    assert result.iterations[0].outcome is IterationOutcome.SKIPPED


def test_zero_stagnation_limit_never_stops_early(broken_repo: TinyRepo, controllers) -> None:
    config = _config(loop={"max_loops": 3, "max_stagnant_iterations": 0})

    result = _controller(controllers, broken_repo, ScriptedClient(default=NO_CHANGES), config).run()

    assert result.stop_reason == "max_loops"
    assert len(result.iterations) == 3


def _labels(client: ScriptedClient) -> List[str]:
    return [request.metadata["label"] for request in client.requests]


def _test_report_section(prompt: str) -> str:
    return prompt.split("## Test Report\n", 1)[1].split("\n\n", 1)[0]


def test_regression_resets_to_the_baseline_report(broken_repo: TinyRepo, controllers) -> None:
    builder_prompts: List[str] = []

    def responder(request: CompletionRequest) -> str:
        if request.metadata["role"] == "reviewer":
            return ACCEPT
        if request.metadata["label"] == "builder-slot0":
            builder_prompts.append(request.prompt)
            if len(builder_prompts) == 1:
                return BREAK_MULTIPLY_DIFF
        return NO_CHANGES

    client = ScriptedClient(responder=responder)
    controller = _controller(controllers, broken_repo, client, _config(loop={"max_loops": 2}))

    result = controller.run()

    assert result.stop_reason == "max_loops"
    first, second = result.iterations
    assert first.outcome is IterationOutcome.TEST_FAILED
    assert sorted(first.failures) == [FAILING_TEST, MULTIPLY_TEST]
    assert not first.reset
    assert second.reset
    assert second.failures == [FAILING_TEST]
    assert "return left * right" in broken_repo.calculator.read_text(encoding="utf-8")

    report = _test_report_section(builder_prompts[1])
    assert "failed: 1" in report
    assert FAILING_TEST in report
    assert MULTIPLY_TEST not in report
    assert list(controller.passing) == [MULTIPLY_TEST]


def test_passing_set_grows_with_the_fix(broken_repo: TinyRepo, controllers) -> None:
    client = _client({"builder": FIX_DIFF, "reviewer": ACCEPT})
    controller = _controller(controllers, broken_repo, client)

    result = controller.run()

    assert result.success
    assert result.iterations[0].newly_passing == [FAILING_TEST]
    assert sorted(controller.passing) == [FAILING_TEST, MULTIPLY_TEST]


def test_forced_round_asks_for_final_then_finalize(broken_repo: TinyRepo, controllers) -> None:
    original = broken_repo.calculator.read_text(encoding="utf-8")
    client = ScriptedClient(default=NO_CHANGES)
    controller = _controller(controllers, broken_repo, client, _config(loop={"max_loops": 1}))

    result = controller.run()

    assert _labels(client) == ["builder-slot0", "builder-final", "builder-finalize"]
    record = result.iterations[0]
    assert record.forced_round
    assert record.outcome is IterationOutcome.INVALID_PATCH_FORMAT
    assert record.touched_files == []
    assert broken_repo.calculator.read_text(encoding="utf-8") == original


def test_finalize_diff_is_arbitrated_and_applied(broken_repo: TinyRepo, controllers) -> None:
    def responder(request: CompletionRequest) -> str:
        if request.metadata["role"] == "reviewer":
            return ACCEPT
        if request.metadata["label"] == "builder-finalize":
            return FIX_DIFF
        return NO_CHANGES

    client = ScriptedClient(responder=responder)

    result = _controller(controllers, broken_repo, client).run()

    assert result.success
    labels = _labels(client)
    assert labels.index("builder-final") < labels.index("builder-finalize")
    record = result.iterations[0]
    assert record.forced_round
    assert record.chosen_slot == 1
    assert record.touched_files == [CALCULATOR_PATH]


@pytest.mark.parametrize("error", [GitError("index.lock exists"), OSError("disk full")])
def test_environment_errors_end_the_run_with_a_result(
    broken_repo: TinyRepo, controllers, monkeypatch: pytest.MonkeyPatch, error: Exception
) -> None:
    controller = _controller(controllers, broken_repo, ScriptedClient(default=NO_CHANGES))

    def fail(label: str | None = None) -> None:
        raise error

    monkeypatch.setattr(controller.repo, "create_checkpoint", fail)

    result = controller.run()

    assert not result.success
    assert result.stop_reason == "error"
    assert result.error == str(error)
    assert result.iterations == []
    assert result.to_ci_payload()["success"] is False


def test_attempted_hypotheses_carry_across_runs(broken_repo: TinyRepo, controllers) -> None:
    config = _config(loop={"max_loops": 1})
    first = _controller(controllers, broken_repo, ScriptedClient(default=NO_CHANGES), config)
    first.run()
    attempted = first.memory.read_run_state().hypotheses_attempted
    first.memory.close()

    with RunMemoryStore.from_config(config, broken_repo.root) as store:
        state = store.read_run_state()

    assert attempted
    assert state is not None
    assert state.hypotheses_attempted == attempted


def test_passing_test_set_only_grows() -> None:
    passing = PassingTestSet(["a"])

    assert passing.update(["a", "b"]) == ["b"]
    assert passing.update([]) == []
    assert list(passing) == ["a", "b"]
    assert "b" in passing
    assert passing.regressions(["b", "c"]) == ["b"]


def test_should_reset_on_regression_or_failed_build() -> None:
    passing = PassingTestSet(["a"])

    assert not should_reset(passing, ["c"])
    assert should_reset(passing, ["a"])
    assert should_reset(passing, [], IterationOutcome.BUILD_FAILED)
    assert not should_reset(passing, [], IterationOutcome.TEST_FAILED)


def test_ensure_data_dir_hides_itself_from_git(tiny_repo: TinyRepo) -> None:
    data_root = ensure_data_dir(PatchloopConfig(), tiny_repo.root)

    assert data_root == tiny_repo.root / ".patchloop"
    assert (data_root / ".gitignore").read_text(encoding="utf-8") == "*\n"
    (data_root / "scratch.txt").write_text("x", encoding="utf-8")
    assert tiny_repo.repo.git("status", "--porcelain").stdout.strip() == ""


def test_ci_payload_rounds_cost() -> None:
    result = RunResult(success=False, stop_reason="max_loops", cost_gbp=0.123456, tests_fixed=["a", "b"])

    assert result.to_ci_payload() == {
        "success": False,
        "iterations": 0,
        "tokensUsed": 0,
        "costGBP": 0.1235,
        "testsFixed": 2,
        "patchSummary": "",
    }
