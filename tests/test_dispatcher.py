from __future__ import annotations

import json
import threading

import pytest
from conftest import TinyRepo

from patchloop.analysis import PythonAnalyzer
from patchloop.roles import Role
from patchloop.structured import decode_tool_call
from patchloop.tools.dispatcher import (
    LIMIT_REACHED,
    ForbiddenToolError,
    Quotas,
    ToolDispatcher,
    ToolSessionState,
    WritePolicy,
)
from patchloop.tools.toolchain import Toolchain


def _dispatcher(tiny_repo: TinyRepo, **kwargs: object) -> ToolDispatcher:
    return ToolDispatcher(tiny_repo.repo, Toolchain.detect(tiny_repo.root), analyzer=PythonAnalyzer(), **kwargs)


def _call(dispatcher: ToolDispatcher, payload: dict, *, role: Role = Role.BUILDER, state: ToolSessionState | None = None):
    return dispatcher.dispatch(role, decode_tool_call(payload), state or ToolSessionState())


def test_search_files_reports_path_and_line(tiny_repo: TinyRepo) -> None:
    result = _call(_dispatcher(tiny_repo), {"tool": "search_files", "pattern": r"def add"})

    assert result.ok
    assert "src/tiny_app/calculator.py:4:" in result.output


def test_open_file_returns_numbered_window(tiny_repo: TinyRepo) -> None:
    result = _call(
        _dispatcher(tiny_repo),
        {"tool": "open_file", "path": "src/tiny_app/calculator.py", "start_line": 4, "max_lines": 2},
    )

    assert "    4  def add(left: int, right: int) -> int:" in result.output
    assert "[lines 4-5 of" in result.output


def test_open_file_refuses_paths_outside_repo(tiny_repo: TinyRepo) -> None:
    result = _call(_dispatcher(tiny_repo), {"tool": "open_file", "path": "../outside.txt"})

    assert not result.ok
    assert "escapes" in result.output


def test_missing_file_is_reported_not_raised(tiny_repo: TinyRepo) -> None:
    result = _call(_dispatcher(tiny_repo), {"tool": "open_file", "path": "nope.py"})

    assert not result.ok
    assert "not found" in result.output


def test_write_file_honours_write_policy(tiny_repo: TinyRepo) -> None:
    dispatcher = _dispatcher(tiny_repo)
    state = ToolSessionState()

    allowed = _call(dispatcher, {"tool": "write_file", "path": "tests/test_extra.py", "content": "X = 1\n"}, state=state)
    denied = _call(dispatcher, {"tool": "write_file", "path": "src/tiny_app/calculator.py", "content": ""}, state=state)

    assert allowed.ok
    assert (tiny_repo.root / "tests" / "test_extra.py").read_text(encoding="utf-8") == "X = 1\n"
    assert not denied.ok
    assert "write policy" in denied.output
    assert state.written == ["tests/test_extra.py"]
    assert "return left + right" in tiny_repo.calculator.read_text(encoding="utf-8")


def test_write_policy_matching() -> None:
    policy = WritePolicy(allowed_globs=("tests/**",), allowed_suffixes=(".py",))

    assert policy.allows("tests/unit/test_a.py")
    assert not policy.allows("tests/data.json")
    assert not policy.allows("src/app.py")


def test_quota_exhaustion_returns_limit_sentinel(tiny_repo: TinyRepo) -> None:
    dispatcher = _dispatcher(tiny_repo, quotas=Quotas(file_opens=1))
    state = ToolSessionState()
    payload = {"tool": "open_file", "path": "src/tiny_app/calculator.py"}

    first = _call(dispatcher, payload, state=state)
    second = _call(dispatcher, payload, state=state)

    assert first.ok
    assert second.limited
    assert second.output.startswith(LIMIT_REACHED)
    assert state.counters["file_opens"] == 1


def test_quotas_are_per_session(tiny_repo: TinyRepo) -> None:
    dispatcher = _dispatcher(tiny_repo, quotas=Quotas(searches=1))
    payload = {"tool": "search_files", "pattern": "add"}

    assert _call(dispatcher, payload).ok
    assert _call(dispatcher, payload).ok


def test_forbidden_tool_raises(tiny_repo: TinyRepo) -> None:
    with pytest.raises(ForbiddenToolError):
        _call(_dispatcher(tiny_repo), {"tool": "write_file", "path": "tests/x.py", "content": ""}, role=Role.REVIEWER)


def test_view_diff_shows_working_tree_changes(tiny_repo: TinyRepo) -> None:
    dispatcher = _dispatcher(tiny_repo)
    assert _call(dispatcher, {"tool": "view_diff"}, role=Role.REVIEWER).output == "(no working-tree changes)"

    tiny_repo.calculator.write_text("VALUE = 1\n", encoding="utf-8")

    assert "+VALUE = 1" in _call(dispatcher, {"tool": "view_diff"}, role=Role.REVIEWER).output


def test_static_analysis_tools(tiny_repo: TinyRepo) -> None:
    (tiny_repo.root / "src" / "tiny_app" / "service.py").write_text(
        "class Service:\n    def __init__(self, name: str) -> None:\n        self.name = name\n\n"
        "    def run(self, times: int = 1) -> str:\n        return self.name * times\n\n"
        "    def _hidden(self) -> None:\n        pass\n",
        encoding="utf-8",
    )
    dispatcher = _dispatcher(tiny_repo)

    symbols = json.loads(_call(dispatcher, {"tool": "get_symbols", "path": "src/tiny_app/service.py"}).output)
    interface = json.loads(_call(dispatcher, {"tool": "get_interface", "name": "Service"}).output)
    deps = _call(dispatcher, {"tool": "get_dependencies"}).output

    assert symbols["classes"][0]["name"] == "Service"
    assert all("_hidden" not in method for method in interface["methods"])
    assert any(method.startswith("run(") for method in interface["methods"])
    assert "requests" in deps


def test_explain_error_and_semantic_search_fallback(tiny_repo: TinyRepo) -> None:
    dispatcher = _dispatcher(tiny_repo)

    explained = _call(dispatcher, {"tool": "explain_error", "message": "SyntaxError: invalid syntax"})
    semantic = _call(dispatcher, {"tool": "semantic_search", "query": "adding numbers"})

    assert "category: syntax" in explained.output
    assert semantic.output == "semantic search unavailable"


def test_run_tests_and_read_report(tiny_repo: TinyRepo) -> None:
    dispatcher = _dispatcher(tiny_repo)

    assert _call(dispatcher, {"tool": "read_test_report"}).output == "no test report yet"
    ran = _call(dispatcher, {"tool": "run_tests"})

    assert "status: passed" in ran.output
    assert "passed: 2" in _call(dispatcher, {"tool": "read_test_report"}).output


def test_cancelled_dispatcher_refuses_writes(tiny_repo: TinyRepo) -> None:
    cancel = threading.Event()
    dispatcher = _dispatcher(tiny_repo).bind(tiny_repo.repo, cancel_event=cancel)
    cancel.set()

    result = _call(dispatcher, {"tool": "write_file", "path": "tests/test_late.py", "content": "x = 1\n"})

    assert not result.ok
    assert not (tiny_repo.root / "tests" / "test_late.py").exists()


def test_bound_dispatcher_reads_the_controller_report(tiny_repo: TinyRepo) -> None:
    dispatcher = _dispatcher(tiny_repo)
    dispatcher.toolchain.run_tests()

    worker = dispatcher.bind(tiny_repo.repo)
    output = _call(worker, {"tool": "read_test_report"}).output

    assert output != "no test report yet"
    assert "passed: 2" in output
