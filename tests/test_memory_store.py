from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from patchloop.config import PatchloopConfig
from patchloop.memory import HeuristicKind, RunMemoryStore, RunState


def test_run_state_round_trip(tmp_path: Path) -> None:
    with RunMemoryStore(tmp_path / "memory.sqlite") as store:
        assert store.read_run_state() is None
        store.save_run_state(RunState(iteration=1, failures=["t1"], outcome="test_failed", test_ok=False))
        store.save_run_state(
            RunState(
                iteration=2,
                failures=[],
                recent_files=["src/app.py"],
                diff_summary=" src/app.py | 2 +-",
                outcome="success",
                hypotheses_attempted=["focus a"],
            )
        )

        latest = store.read_run_state()
        history = store.list_run_states()

    assert latest is not None
    assert latest.iteration == 2
    assert latest.outcome == "success"
    assert latest.recent_files == ["src/app.py"]
    assert latest.hypotheses_attempted == ["focus a"]
    assert latest.created_at.tzinfo is not None
    assert [state.iteration for state in history] == [2, 1]
    assert history[1].test_ok is False


def test_state_survives_reopening(tmp_path: Path) -> None:
    db_path = tmp_path / "memory.sqlite"
    with RunMemoryStore(db_path) as store:
        store.save_run_state(RunState(iteration=4, hypotheses_attempted=["x"]))
        store.update_heuristics(["src/app.py"], ["t1"])

    with RunMemoryStore(db_path) as reopened:
        state = reopened.read_run_state()
        records = reopened.heuristics(HeuristicKind.TEST)

    assert state is not None and state.iteration == 4
    assert [(record.key, record.failure_count) for record in records] == [("t1", 1)]


def test_update_heuristics_counts_each_key_once_per_call(tmp_path: Path) -> None:
    with RunMemoryStore(tmp_path / "memory.sqlite") as store:
        store.update_heuristics(["a.py", "a.py", "b.py"], ["t1"])
        store.update_heuristics(["a.py"], ["t1", "t2"])

        files = {record.key: record.failure_count for record in store.heuristics(HeuristicKind.FILE)}
        tests = store.heuristics(HeuristicKind.TEST)

    assert files == {"a.py": 2, "b.py": 1}
    assert tests[0].key == "t1"
    assert tests[0].failure_count == 2


def test_suggested_fix_names_recurring_failures(tmp_path: Path) -> None:
    with RunMemoryStore(tmp_path / "memory.sqlite") as store:
        assert store.get_suggested_fix(["t1"], ["a.py"]) is None
        store.update_heuristics(["a.py"], ["t1"])
        assert store.get_suggested_fix(["t1"], ["a.py"]) is None
        store.update_heuristics(["a.py"], ["t1"])

        suggestion = store.get_suggested_fix(["t1", "t9"], ["a.py"])

    assert suggestion is not None
    assert suggestion.startswith("Memory: recurring failures in t1 (2x)")
    assert "inspect hotspot files a.py (2x)" in suggestion
    assert "t9" not in suggestion


def test_memory_summary(tmp_path: Path) -> None:
    with RunMemoryStore(tmp_path / "memory.sqlite") as store:
        assert store.get_memory_summary() == "No run memory recorded yet."
        store.save_run_state(RunState(iteration=3, failures=["t1"], build_ok=True, test_ok=False, outcome="test_failed"))
        store.update_heuristics(["a.py", "b.py"], ["t1"])
        store.update_heuristics(["b.py"], [])

        summary = store.get_memory_summary(focus=["a.py"])

    assert summary.startswith("Repository memory:\n")
    assert "Last iteration 3: build ok, tests failing (outcome: test_failed)" in summary
    assert "Frequently failing tests: t1 (1x)" in summary
    assert "Hotspot files: a.py (1x), b.py (2x)" in summary


def test_closed_store_refuses_queries(tmp_path: Path) -> None:
    store = RunMemoryStore(tmp_path / "memory.sqlite")
    store.close()
    store.close()

    with pytest.raises(sqlite3.ProgrammingError):
        store.read_run_state()


def test_from_config_resolves_db_path_under_repo(tmp_path: Path) -> None:
    config = PatchloopConfig.model_validate({"paths": {"db_path": "state/memory.sqlite"}})

    with RunMemoryStore.from_config(config, tmp_path) as store:
        assert store.db_path == (tmp_path / "state" / "memory.sqlite").resolve()

    assert (tmp_path / "state" / "memory.sqlite").exists()
