from __future__ import annotations

import json
from typing import Callable, Dict, List

import pytest
from conftest import FIX_DIFF

from patchloop.arbiter import ArbitrationStatus, GateDecision, PatchArbiter, RunAborted
from patchloop.budget import BudgetGuard
from patchloop.models import CompletionRequest, ScriptedClient
from patchloop.pool import CandidatePatch
from patchloop.prompts import NO_CHANGES
from patchloop.runtime import AgentRuntime
from patchloop.structured import Verdict

OTHER_DIFF = FIX_DIFF.replace("+    return left + right", "+    return right + left")
ACCEPT = json.dumps({"verdict": "accept", "issues": []})


def _client(replies: Dict[str, List[str]]) -> ScriptedClient:
    """Route replies by role; each role's queue falls back to its last entry."""
    queues = {role: list(items) for role, items in replies.items()}

    def responder(request: CompletionRequest) -> str:
        queue = queues.get(request.metadata["role"], [NO_CHANGES])
        return queue.pop(0) if len(queue) > 1 else queue[0]

    return ScriptedClient(responder=responder)


def _arbiter(client: ScriptedClient, gate: Callable[[str], GateDecision] | None = None) -> PatchArbiter:
    return PatchArbiter(AgentRuntime(client, BudgetGuard()), gate=gate)


def _candidates(*texts: str) -> List[CandidatePatch]:
    return [CandidatePatch(slot=index, hypothesis=f"h{index}", text=text) for index, text in enumerate(texts)]


def _roles(client: ScriptedClient) -> List[str]:
    return [request.metadata["role"] for request in client.requests]


def test_no_valid_candidates() -> None:
    client = _client({})

    result = _arbiter(client).arbitrate(_candidates(NO_CHANGES, "ERROR api_error (builder): down"), "ctx")

    assert result.status is ArbitrationStatus.NO_CANDIDATES
    assert not result.selected
    assert client.requests == []


def test_single_candidate_skips_judge() -> None:
    client = _client({"reviewer": [ACCEPT]})

    result = _arbiter(client).arbitrate(_candidates(NO_CHANGES, FIX_DIFF), "ctx")

    assert result.selected
    assert result.diff == FIX_DIFF
    assert result.chosen_slot == 1
    assert result.judge_calls == 0
    assert result.verdict is Verdict.ACCEPT
    assert _roles(client) == ["reviewer"]


def test_judge_picks_among_several_candidates() -> None:
    client = _client({"judge": [OTHER_DIFF], "reviewer": [ACCEPT]})

    result = _arbiter(client).arbitrate(_candidates(FIX_DIFF, OTHER_DIFF), "ctx")

    assert result.diff == OTHER_DIFF
    assert result.chosen_slot == 1
    assert result.judge_calls == 1
    judge_prompt = client.requests[0].prompt
    assert "CANDIDATE 1" in judge_prompt and "CANDIDATE 2" in judge_prompt


def test_judge_is_retried_once_then_falls_back_to_first_candidate() -> None:
    client = _client({"judge": ["I cannot decide."], "reviewer": [ACCEPT]})

    result = _arbiter(client).arbitrate(_candidates(FIX_DIFF, OTHER_DIFF), "ctx")

    assert result.judge_calls == 2
    assert result.diff == FIX_DIFF
    assert result.chosen_slot == 0
    assert _roles(client) == ["judge", "judge", "reviewer"]


def test_reviewer_reject_stops_the_patch() -> None:
    client = _client({"reviewer": [json.dumps({"verdict": "reject", "issues": ["breaks API"]})]})

    result = _arbiter(client).arbitrate(_candidates(FIX_DIFF), "ctx")

    assert result.status is ArbitrationStatus.REVIEW_REJECTED
    assert result.issues == ["breaks API"]
    assert not result.selected


def test_reviewer_refine_runs_one_builder_refinement() -> None:
    client = _client(
        {
            "reviewer": [json.dumps({"verdict": "refine", "issues": ["also cover negatives"]})],
            "builder": [OTHER_DIFF],
        }
    )

    result = _arbiter(client).arbitrate(_candidates(FIX_DIFF), "## Test Report")

    assert result.refined
    assert result.diff == OTHER_DIFF
    assert _roles(client) == ["reviewer", "builder"]
    refine_prompt = client.requests[1].prompt
    assert "also cover negatives" in refine_prompt
    assert "## Test Report" in refine_prompt


def test_refinement_without_diff_keeps_reviewed_diff() -> None:
    client = _client(
        {
            "reviewer": [json.dumps({"verdict": "refine", "issues": ["rename variable"]})],
            "builder": [NO_CHANGES],
        }
    )

    result = _arbiter(client).arbitrate(_candidates(FIX_DIFF), "ctx")

    assert not result.refined
    assert result.diff == FIX_DIFF


def test_reviewer_returning_diff_replaces_candidate() -> None:
    client = _client({"reviewer": [OTHER_DIFF]})

    result = _arbiter(client).arbitrate(_candidates(FIX_DIFF), "ctx")

    assert result.diff == OTHER_DIFF
    assert result.verdict is Verdict.ACCEPT


def test_unusable_review_is_retried_then_accepted() -> None:
    client = _client({"reviewer": [""]})

    result = _arbiter(client).arbitrate(_candidates(FIX_DIFF), "ctx")

    assert result.review_calls == 2
    assert result.selected
    assert result.diff == FIX_DIFF


def test_gate_reject_aborts_run() -> None:
    client = _client({"reviewer": [ACCEPT]})

    with pytest.raises(RunAborted):
        _arbiter(client, gate=lambda diff: GateDecision.REJECT).arbitrate(_candidates(FIX_DIFF), "ctx")


def test_gate_skip_and_approve() -> None:
    shown: list[str] = []

    def approve(diff: str) -> GateDecision:
        shown.append(diff)
        return GateDecision.APPROVE

    skipped = _arbiter(_client({"reviewer": [ACCEPT]}), gate=lambda diff: GateDecision.SKIP).arbitrate(
        _candidates(FIX_DIFF), "ctx"
    )
    approved = _arbiter(_client({"reviewer": [ACCEPT]}), gate=approve).arbitrate(_candidates(FIX_DIFF), "ctx")

    assert skipped.status is ArbitrationStatus.SKIPPED
    assert skipped.diff is None
    assert approved.selected
    assert shown == [FIX_DIFF]
