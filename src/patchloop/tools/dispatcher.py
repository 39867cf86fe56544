"""Execute typed tool calls on behalf of an agent session."""

from __future__ import annotations

import fnmatch
import json
import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Sequence

from ..analysis import StaticAnalyzer
from ..logs import json_safe
from ..roles import DEFAULT_PERMISSIONS, Role, ToolPermissionSet
from ..structured import (
    ExplainError,
    GetCoverage,
    GetDependencies,
    GetInterface,
    GetSymbols,
    ListTests,
    OpenFile,
    ReadTestReport,
    RunTests,
    SearchFiles,
    SemanticSearch as SemanticSearchCall,
    ViewDiff,
    WriteFile,
)
from .explainer import explain_error
from .search import RepositorySearch, SemanticSearch
from .toolchain import Toolchain
from .vcs import GitError, GitRepository

if TYPE_CHECKING:
    from ..config import QuotaConfig, WritePolicyConfig

LOGGER = logging.getLogger(__name__)

LIMIT_REACHED = "LIMIT_REACHED"

QUOTA_BY_TOOL: Dict[str, str] = {
    "search_files": "searches",
    "semantic_search": "searches",
    "open_file": "file_opens",
    "write_file": "writes",
    "run_tests": "test_runs",
    "get_coverage": "coverage_runs",
}


class ForbiddenToolError(PermissionError):
    """Raised when a role attempts a tool outside its permission set."""

    def __init__(self, role: Role, tool: str) -> None:
        super().__init__(f"Role {Role(role).value} may not call {tool}")
        self.role = Role(role)
        self.tool = tool


@dataclass(frozen=True, slots=True)
class Quotas:
    searches: int = 10
    file_opens: int = 20
    writes: int = 10
    test_runs: int = 3
    coverage_runs: int = 2

    @classmethod
    def from_config(cls, config: "QuotaConfig") -> "Quotas":
        return cls(**config.model_dump())

    def limit(self, name: str) -> int:
        return int(getattr(self, name))


@dataclass(frozen=True, slots=True)
class WritePolicy:
    """Which repository-relative paths the write tool may touch."""

    allowed_globs: tuple[str, ...] = ("tests/**", "test/**", "**/tests/**")
    allowed_suffixes: tuple[str, ...] = (".py",)

    @classmethod
    def from_config(cls, config: "WritePolicyConfig") -> "WritePolicy":
        return cls(tuple(config.allowed_globs), tuple(config.allowed_suffixes))

    def allows(self, relative: str) -> bool:
        if self.allowed_suffixes and not relative.endswith(tuple(self.allowed_suffixes)):
            return False
        if not self.allowed_globs:
            return True
        return any(fnmatch.fnmatch(relative, pattern) for pattern in self.allowed_globs)


@dataclass(slots=True)
class ToolSessionState:
    """Per-session counters and bookkeeping kept by the dispatcher."""

    counters: Counter = field(default_factory=Counter)
    relevance: Counter = field(default_factory=Counter)
    written: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ToolResult:
    tool: str
    output: str
    ok: bool = True
    limited: bool = False


class ToolDispatcher:
    """Permission-checked, quota-bounded execution of the tool catalogue."""

    def __init__(
        self,
        repo: GitRepository,
        toolchain: Toolchain,
        *,
        permissions: ToolPermissionSet = DEFAULT_PERMISSIONS,
        quotas: Quotas = Quotas(),
        write_policy: WritePolicy = WritePolicy(),
        analyzer: Optional[StaticAnalyzer] = None,
        semantic: Optional[SemanticSearch] = None,
        search_max_hits: int = 50,
        file_read_max_lines: int = 200,
        write_lock: Optional[threading.Lock] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.repo = repo
        self.toolchain = toolchain
        self.permissions = permissions
        self.quotas = quotas
        self.write_policy = write_policy
        self.analyzer = analyzer
        self.semantic = semantic
        self.search = RepositorySearch(repo, max_hits=search_max_hits, max_lines=file_read_max_lines)
        self._write_lock = write_lock or threading.Lock()
        self.cancel_event = cancel_event or threading.Event()
        self._handlers: Dict[type, Callable[[Any, ToolSessionState], str]] = {
            SearchFiles: self._search_files,
            OpenFile: self._open_file,
            ViewDiff: self._view_diff,
            WriteFile: self._write_file,
            RunTests: self._run_tests,
            ReadTestReport: self._read_test_report,
            GetCoverage: self._get_coverage,
            ListTests: self._list_tests,
            GetSymbols: self._get_symbols,
            GetInterface: self._get_interface,
            GetDependencies: self._get_dependencies,
            SemanticSearchCall: self._semantic_search,
            ExplainError: self._explain_error,
        }

    def bind(
        self,
        repo: GitRepository,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> "ToolDispatcher":
        """Return a dispatcher with the same policy acting on another checkout."""
        return ToolDispatcher(
            repo,
            self.toolchain.for_root(repo.root),
            permissions=self.permissions,
            quotas=self.quotas,
            write_policy=self.write_policy,
            analyzer=self.analyzer,
            semantic=self.semantic,
            search_max_hits=self.search.max_hits,
            file_read_max_lines=self.search.max_lines,
            write_lock=self._write_lock if repo.root == self.repo.root else None,
            cancel_event=cancel_event,
        )

    def check_permission(self, role: Role, tool: str) -> None:
        if not self.permissions.allows(role, tool):
            raise ForbiddenToolError(role, tool)

    def dispatch(self, role: Role, call: Any, state: ToolSessionState) -> ToolResult:
        """Run one typed tool call; quota exhaustion yields the limit sentinel."""
        tool = call.tool
        self.check_permission(role, tool)
        quota_name = QUOTA_BY_TOOL.get(tool)
        if quota_name is not None:
            limit = self.quotas.limit(quota_name)
            if state.counters[quota_name] >= limit:
                LOGGER.debug("Quota %s exhausted (%d) for %s", quota_name, limit, tool)
                return ToolResult(
                    tool=tool,
                    output=f"{LIMIT_REACHED}: {quota_name} quota of {limit} used up; finish with a diff or NO_CHANGES.",
                    ok=False,
                    limited=True,
                )
            state.counters[quota_name] += 1
        handler = self._handlers[type(call)]
        try:
            output = handler(call, state)
        except (FileNotFoundError, IsADirectoryError) as error:
            return ToolResult(tool=tool, output=f"error: file not found: {error}", ok=False)
        except (ValueError, GitError, OSError) as error:
            return ToolResult(tool=tool, output=f"error: {error}", ok=False)
        return ToolResult(tool=tool, output=output)

    # ------------------------------------------------------------ handlers
    def _search_files(self, call: SearchFiles, state: ToolSessionState) -> str:
        hits = self.search.search(call.pattern, glob=call.glob)
        if not hits:
            return "no matches"
        for hit in hits:
            state.relevance[hit.path] += 1
        return "\n".join(hit.render() for hit in hits)

    def _open_file(self, call: OpenFile, state: ToolSessionState) -> str:
        text = self.search.read(call.path, start_line=call.start_line, max_lines=call.max_lines)
        state.relevance[Path(call.path).as_posix()] += 3
        return text

    def _view_diff(self, call: ViewDiff, state: ToolSessionState) -> str:
        paths: Sequence[str] = (call.path,) if call.path else ()
        diff = self.repo.diff(*paths)
        return diff or "(no working-tree changes)"

    def _write_file(self, call: WriteFile, state: ToolSessionState) -> str:
        target = self.search.resolve(call.path)
        relative = target.relative_to(self.repo.root).as_posix()
        if not self.write_policy.allows(relative):
            raise ValueError(f"write policy forbids {relative}")
        with self._write_lock:
            if self.cancel_event.is_set():
                raise ValueError("worker was cancelled; writes are disabled")
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(call.content, encoding="utf-8")
        state.written.append(relative)
        return f"wrote {relative} ({len(call.content)} chars)"

    def _run_tests(self, call: RunTests, state: ToolSessionState) -> str:
        return self.toolchain.run_tests(call.filter).render()

    def _read_test_report(self, call: ReadTestReport, state: ToolSessionState) -> str:
        report = self.toolchain.last_report
        return report.render() if report is not None else "no test report yet"

    def _get_coverage(self, call: GetCoverage, state: ToolSessionState) -> str:
        return self.toolchain.run_coverage(call.filter).render()

    def _list_tests(self, call: ListTests, state: ToolSessionState) -> str:
        names = self.toolchain.discover_tests()
        return "\n".join(names) if names else "no tests found"

    def _get_symbols(self, call: GetSymbols, state: ToolSessionState) -> str:
        if self.analyzer is None:
            return "static analysis unavailable"
        target = self.search.resolve(call.path)
        if not target.is_file():
            raise FileNotFoundError(call.path)
        return json.dumps(json_safe(self.analyzer.symbols(target, self.repo.root)), indent=1)

    def _get_interface(self, call: GetInterface, state: ToolSessionState) -> str:
        if self.analyzer is None:
            return "static analysis unavailable"
        result = self.analyzer.interface(call.name, self.repo.root)
        if result is None:
            return f"no type named {call.name}"
        return json.dumps(json_safe(result), indent=1)

    def _get_dependencies(self, call: GetDependencies, state: ToolSessionState) -> str:
        if self.analyzer is None:
            return "static analysis unavailable"
        registrations = self.analyzer.dependencies(self.repo.root)
        return json.dumps(json_safe(registrations), indent=1) if registrations else "no declared dependencies"

    def _semantic_search(self, call: SemanticSearchCall, state: ToolSessionState) -> str:
        if self.semantic is None:
            return "semantic search unavailable"
        hits = list(self.semantic.search(call.query, call.limit))
        return "\n".join(hits) if hits else "no matches"

    def _explain_error(self, call: ExplainError, state: ToolSessionState) -> str:
        return explain_error(call.message).render()


__all__ = [
    "ForbiddenToolError",
    "LIMIT_REACHED",
    "QUOTA_BY_TOOL",
    "Quotas",
    "ToolDispatcher",
    "ToolResult",
    "ToolSessionState",
    "WritePolicy",
]
