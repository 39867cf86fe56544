"""Project-type detection plus build, test and coverage subprocess helpers."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shlex
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Iterable, List, Literal, Mapping, Optional, Sequence

if TYPE_CHECKING:
    from ..config import ToolchainConfig

LOGGER = logging.getLogger(__name__)

ProjectKind = Literal["python", "dotnet", "node", "powershell", "unknown"]
TestStatus = Literal["passed", "failed", "error", "no-tests", "timeout"]

Command = tuple[str, ...]

_TIMEOUT_EXIT_CODE = 124
_MISSING_EXIT_CODE = 127
_COVERAGE_REPORT = Path(".patchloop") / "coverage.json"
_PYCACHE_ROOT = Path(tempfile.gettempdir()) / "patchloop" / "pycache"


@dataclass(slots=True)
class CommandResult:
    """Exit code and captured output of one subprocess."""

    command: Command
    cwd: Path
    exit_code: int
    stdout: str
    stderr: str
    duration: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass(slots=True)
class TestFailure:
    """A failing test with its message and stack trace."""

    __test__ = False

    name: str
    message: str = ""
    stack_trace: str = ""


@dataclass(slots=True)
class TestReport:
    """Structured summary of a test run."""

    __test__ = False

    status: TestStatus
    passed: List[str] = field(default_factory=list)
    failures: List[TestFailure] = field(default_factory=list)
    result: Optional[CommandResult] = None

    @property
    def ok(self) -> bool:
        return self.status in {"passed", "no-tests"}

    @property
    def failed_names(self) -> List[str]:
        return [failure.name for failure in self.failures]

    def render(self, *, max_chars: int = 6000) -> str:
        """Human and model readable summary used as tool output and context."""
        lines = [f"status: {self.status}", f"passed: {len(self.passed)}", f"failed: {len(self.failures)}"]
        for failure in self.failures:
            lines.append(f"- {failure.name}: {failure.message}".rstrip(": "))
            if failure.stack_trace:
                lines.extend("    " + row for row in failure.stack_trace.strip().splitlines()[-15:])
        if not self.failures and self.result is not None and not self.ok:
            lines.append(self.result.output[-2000:])
        text = "\n".join(lines)
        return text if len(text) <= max_chars else text[:max_chars] + "\n[truncated]"


@dataclass(slots=True)
class FileCoverage:
    path: str
    percent: float
    missing: List[tuple[int, int]] = field(default_factory=list)


@dataclass(slots=True)
class CoverageReport:
    """Per-file coverage with uncovered line ranges."""

    files: List[FileCoverage] = field(default_factory=list)
    total_percent: Optional[float] = None
    error: Optional[str] = None

    def render(self, *, limit: int = 40) -> str:
        if self.error:
            return f"coverage unavailable: {self.error}"
        lines = []
        if self.total_percent is not None:
            lines.append(f"total: {self.total_percent:.1f}%")
        for item in sorted(self.files, key=lambda entry: entry.percent)[:limit]:
            ranges = ", ".join(f"{start}-{end}" if start != end else str(start) for start, end in item.missing)
            lines.append(f"{item.path}: {item.percent:.1f}% uncovered [{ranges}]")
        return "\n".join(lines) or "no coverage data"

    def gaps(self, *, threshold: float = 80.0) -> List[FileCoverage]:
        return [item for item in self.files if item.percent < threshold and item.missing]


def _merge_env(root: Path, extra: Mapping[str, str] | None = None) -> Dict[str, str]:
    """Merge provided environment overrides and expose ``src`` on PYTHONPATH."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    src_dir = root / "src"
    if src_dir.is_dir():
        src_entry = str(src_dir)
        current = env.get("PYTHONPATH")
        if current:
            parts = current.split(os.pathsep)
            if src_entry not in parts:
                env["PYTHONPATH"] = os.pathsep.join([src_entry, current])
        else:
            env["PYTHONPATH"] = src_entry
    return env


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def run_command(
    command: Sequence[str],
    *,
    cwd: Path,
    timeout: float,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``command`` with a hard timeout; timeouts and missing binaries are reported, not raised."""
    invocation = tuple(command)
    started = time.monotonic()
    try:
        process = subprocess.run(
            invocation,
            cwd=cwd,
            env=_merge_env(cwd, env),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as error:
        LOGGER.warning("Command timed out after %.0fs: %s", timeout, " ".join(invocation))
        return CommandResult(
            command=invocation,
            cwd=cwd,
            exit_code=_TIMEOUT_EXIT_CODE,
            stdout=_decode(error.stdout),
            stderr=_decode(error.stderr) + f"\nTimed out after {timeout:.0f}s",
            duration=time.monotonic() - started,
            timed_out=True,
        )
    except FileNotFoundError as error:
        return CommandResult(
            command=invocation,
            cwd=cwd,
            exit_code=_MISSING_EXIT_CODE,
            stdout="",
            stderr=f"Command not found: {error.filename or invocation[0]}",
            duration=time.monotonic() - started,
        )
    return CommandResult(
        command=invocation,
        cwd=cwd,
        exit_code=process.returncode,
        stdout=process.stdout,
        stderr=process.stderr,
        duration=time.monotonic() - started,
    )


# ------------------------------------------------------------------ detection
def detect_project_kind(root: Path) -> ProjectKind:
    """Inspect ``root`` once to pick the toolchain family."""
    if any(root.glob("*.sln")) or any(root.glob("*.csproj")) or any(root.glob("*/*.csproj")):
        return "dotnet"
    if any((root / name).exists() for name in ("pyproject.toml", "setup.py", "setup.cfg", "pytest.ini")):
        return "python"
    if (root / "package.json").is_file():
        return "node"
    if (root / "tests").is_dir() and any((root / "tests").rglob("*.py")):
        return "python"
    if any(root.glob("*.ps1")) or any(root.glob("*/*.ps1")):
        return "powershell"
    return "unknown"


# ------------------------------------------------------------------ parsing
_PYTEST_SUMMARY_RE = re.compile(r"^(PASSED|FAILED|ERROR|XPASS)\s+(\S+)(?:\s+-\s+(.*))?$")
_PYTEST_SECTION_RE = re.compile(r"^_{3,}\s+(.+?)\s+_{3,}$")
_PYTEST_BANNER_RE = re.compile(r"^={3,}.*={3,}$")
_DOTNET_RESULT_RE = re.compile(r"^\s*(Passed|Failed)\s+(\S+)")
_PESTER_RESULT_RE = re.compile(r"^\s*\[(\+|-)\]\s+(.+?)(?:\s+\d+m?s.*)?$")
_STACK_PATH_RE = re.compile(r"([A-Za-z0-9_./\\-]+\.(?:py|cs|js|ts|ps1))(?::|\", line |:line )(\d+)")


def _status_from_exit_code(exit_code: int) -> TestStatus:
    """Translate pytest-style exit codes into the consolidated status."""
    if exit_code == 0:
        return "passed"
    if exit_code == 5:
        return "no-tests"
    if exit_code == 1:
        return "failed"
    return "error"


def parse_pytest_output(result: CommandResult) -> TestReport:
    text = result.output
    passed: list[str] = []
    failures: dict[str, TestFailure] = {}
    for line in text.splitlines():
        match = _PYTEST_SUMMARY_RE.match(line.strip())
        if not match:
            continue
        outcome, nodeid, message = match.groups()
        if outcome in {"PASSED", "XPASS"}:
            passed.append(nodeid)
        else:
            failures.setdefault(nodeid, TestFailure(name=nodeid, message=(message or outcome.lower()).strip()))

    traces = _pytest_sections(text)
    for title, body in traces.items():
        key = title.replace(".", "::")
        for nodeid, failure in failures.items():
            if nodeid.endswith("::" + key) or nodeid == title:
                failure.stack_trace = body
                break

    if result.timed_out:
        status: TestStatus = "timeout"
    elif failures:
        status = "failed"
    else:
        status = _status_from_exit_code(result.exit_code)
    return TestReport(status=status, passed=sorted(set(passed)), failures=list(failures.values()), result=result)


def _pytest_sections(text: str) -> dict[str, str]:
    sections: dict[str, str] = {}
    current: str | None = None
    body: list[str] = []
    for line in text.splitlines():
        header = _PYTEST_SECTION_RE.match(line.strip())
        if header or _PYTEST_BANNER_RE.match(line.strip()):
            if current is not None:
                sections[current] = "\n".join(body).strip()
            current = header.group(1) if header else None
            body = []
            continue
        if current is not None:
            body.append(line)
    if current is not None:
        sections[current] = "\n".join(body).strip()
    return sections


def parse_dotnet_output(result: CommandResult) -> TestReport:
    passed: list[str] = []
    failures: list[TestFailure] = []
    lines = result.output.splitlines()
    for index, line in enumerate(lines):
        match = _DOTNET_RESULT_RE.match(line)
        if not match:
            continue
        outcome, name = match.groups()
        if outcome == "Passed":
            passed.append(name)
            continue
        message: list[str] = []
        trace: list[str] = []
        bucket = None
        for follower in lines[index + 1 :]:
            stripped = follower.strip()
            if _DOTNET_RESULT_RE.match(follower):
                break
            if stripped.startswith("Error Message:"):
                bucket = message
                continue
            if stripped.startswith("Stack Trace:"):
                bucket = trace
                continue
            if bucket is not None and stripped:
                bucket.append(stripped)
        failures.append(TestFailure(name=name, message=" ".join(message), stack_trace="\n".join(trace)))
    return _report_from(result, passed, failures)


def parse_pester_output(result: CommandResult) -> TestReport:
    passed: list[str] = []
    failures: list[TestFailure] = []
    for line in result.output.splitlines():
        match = _PESTER_RESULT_RE.match(line)
        if not match:
            continue
        marker, name = match.groups()
        if marker == "+":
            passed.append(name.strip())
        else:
            failures.append(TestFailure(name=name.strip()))
    return _report_from(result, passed, failures)


def parse_generic_output(result: CommandResult) -> TestReport:
    failures = [] if result.ok else [TestFailure(name="test-suite", message=result.output[-500:].strip())]
    return _report_from(result, [], failures)


def _report_from(result: CommandResult, passed: list[str], failures: list[TestFailure]) -> TestReport:
    if result.timed_out:
        status: TestStatus = "timeout"
    elif failures:
        status = "failed"
    elif result.exit_code == 0:
        status = "passed"
    else:
        status = "error"
    return TestReport(status=status, passed=sorted(set(passed)), failures=failures, result=result)


_PARSERS = {
    "python": parse_pytest_output,
    "dotnet": parse_dotnet_output,
    "powershell": parse_pester_output,
}


def stack_trace_paths(report: TestReport, root: Path) -> List[str]:
    """Repository-relative source files mentioned in failure messages and traces."""
    found: list[str] = []
    root = root.resolve()
    for failure in report.failures:
        text = "\n".join((failure.name, failure.message, failure.stack_trace))
        for match in _STACK_PATH_RE.finditer(text):
            raw = Path(match.group(1).replace("\\", "/"))
            candidate = raw if raw.is_absolute() else root / raw
            try:
                relative = candidate.resolve().relative_to(root).as_posix()
            except (ValueError, OSError):
                continue
            if (root / relative).is_file() and relative not in found:
                found.append(relative)
    return found


def _line_ranges(lines: Iterable[int]) -> List[tuple[int, int]]:
    ranges: list[tuple[int, int]] = []
    for number in sorted(set(lines)):
        if ranges and number == ranges[-1][1] + 1:
            ranges[-1] = (ranges[-1][0], number)
        else:
            ranges.append((number, number))
    return ranges


def parse_coverage_json(payload: Mapping[str, object], *, path_filter: str | None = None) -> CoverageReport:
    """Read a coverage.py JSON report."""
    files: list[FileCoverage] = []
    raw_files = payload.get("files") or {}
    if isinstance(raw_files, Mapping):
        for path, data in raw_files.items():
            if path_filter and path_filter not in path:
                continue
            if not isinstance(data, Mapping):
                continue
            summary = data.get("summary") or {}
            percent = float(summary.get("percent_covered", 0.0)) if isinstance(summary, Mapping) else 0.0
            missing = data.get("missing_lines") or []
            files.append(FileCoverage(path=str(path), percent=percent, missing=_line_ranges(int(n) for n in missing)))
    totals = payload.get("totals")
    total = float(totals.get("percent_covered")) if isinstance(totals, Mapping) and "percent_covered" in totals else None
    return CoverageReport(files=files, total_percent=total)


# ------------------------------------------------------------------ toolchain
@dataclass(slots=True)
class Toolchain:
    """Build/test/coverage/list commands for one project root."""

    kind: ProjectKind
    root: Path
    build: Optional[Command] = None
    test: Optional[Command] = None
    coverage: tuple[Command, ...] = ()
    list_tests: Optional[Command] = None
    coverage_report: Path = _COVERAGE_REPORT
    build_timeout: float = 600.0
    test_timeout: float = 900.0
    last_report: Optional[TestReport] = None

    @classmethod
    def detect(
        cls,
        root: Path,
        overrides: "ToolchainConfig | None" = None,
        *,
        build_timeout: float = 600.0,
        test_timeout: float = 900.0,
    ) -> "Toolchain":
        root = Path(root).resolve()
        kind: ProjectKind = (overrides.kind if overrides and overrides.kind else None) or detect_project_kind(root)
        chain = cls._defaults(kind, root)
        chain.build_timeout = build_timeout
        chain.test_timeout = test_timeout
        if overrides is not None:
            if overrides.build:
                chain.build = tuple(shlex.split(overrides.build))
            if overrides.test:
                chain.test = tuple(shlex.split(overrides.test))
            if overrides.coverage:
                chain.coverage = tuple(tuple(shlex.split(part)) for part in overrides.coverage.split("&&") if part.strip())
            if overrides.list_tests:
                chain.list_tests = tuple(shlex.split(overrides.list_tests))
        LOGGER.info("Detected %s toolchain at %s", chain.kind, root)
        return chain

    @classmethod
    def _defaults(cls, kind: ProjectKind, root: Path) -> "Toolchain":
        python = sys.executable or "python"
        if kind == "python":
            targets = [name for name in ("src", "tests") if (root / name).is_dir()] or ["."]
            report = _COVERAGE_REPORT.as_posix()
            return cls(
                kind=kind,
                root=root,
                build=(python, "-m", "compileall", "-q", "-f", "--invalidation-mode", "checked-hash", *targets),
                test=(python, "-B", "-m", "pytest", "-q", "-rA", "-p", "no:cacheprovider"),
                coverage=(
                    (python, "-B", "-m", "coverage", "run", "-m", "pytest", "-q", "-p", "no:cacheprovider"),
                    (python, "-B", "-m", "coverage", "json", "-q", "-o", report),
                ),
                list_tests=(python, "-B", "-m", "pytest", "--collect-only", "-q", "-p", "no:cacheprovider"),
            )
        if kind == "dotnet":
            return cls(
                kind=kind,
                root=root,
                build=("dotnet", "build", "--nologo"),
                test=("dotnet", "test", "--nologo", "--no-build", "--logger", "console;verbosity=normal"),
                list_tests=("dotnet", "test", "--nologo", "--no-build", "--list-tests"),
            )
        if kind == "node":
            return cls(
                kind=kind,
                root=root,
                build=("npm", "run", "build", "--if-present"),
                test=("npm", "test", "--silent"),
            )
        if kind == "powershell":
            return cls(
                kind=kind,
                root=root,
                test=("pwsh", "-NoProfile", "-Command", "Invoke-Pester -Output Detailed"),
            )
        return cls(kind="unknown", root=root)

    def for_root(self, root: Path) -> "Toolchain":
        """Same commands bound to another checkout (e.g. a worktree).

        The latest report carries over: worktrees mirror the shared tree the
        report was produced from.
        """
        return replace(self, root=Path(root).resolve())

    def _env(self) -> Optional[Dict[str, str]]:
        """Keep bytecode out of the checkout; hash-checked pycs never go stale."""
        if self.kind != "python":
            return None
        digest = hashlib.sha1(str(self.root).encode("utf-8")).hexdigest()[:12]
        return {"PYTHONPYCACHEPREFIX": str(_PYCACHE_ROOT / digest)}

    def run_build(self) -> CommandResult:
        if not self.build:
            return CommandResult(command=(), cwd=self.root, exit_code=0, stdout="no build step", stderr="")
        return run_command(self.build, cwd=self.root, timeout=self.build_timeout, env=self._env())

    def _with_filter(self, command: Command, test_filter: str | None) -> Command:
        if not test_filter:
            return command
        if self.kind == "python":
            return (*command, "-k", test_filter)
        if self.kind == "dotnet":
            return (*command, "--filter", test_filter)
        if self.kind == "node":
            return (*command, "--", test_filter)
        return command

    def run_tests(self, test_filter: str | None = None) -> TestReport:
        if not self.test:
            report = TestReport(status="no-tests")
        else:
            result = run_command(
                self._with_filter(self.test, test_filter),
                cwd=self.root,
                timeout=self.test_timeout,
                env=self._env(),
            )
            report = _PARSERS.get(self.kind, parse_generic_output)(result)
        self.last_report = report
        return report

    def run_coverage(self, path_filter: str | None = None) -> CoverageReport:
        if not self.coverage:
            return CoverageReport(error=f"no coverage command for {self.kind} projects")
        report_path = self.root / self.coverage_report
        report_path.parent.mkdir(parents=True, exist_ok=True)
        for command in self.coverage:
            result = run_command(command, cwd=self.root, timeout=self.test_timeout, env=self._env())
            if result.timed_out or result.exit_code == _MISSING_EXIT_CODE:
                return CoverageReport(error=result.stderr.strip()[-500:])
        try:
            payload = json.loads(report_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            return CoverageReport(error=f"unable to read {self.coverage_report.as_posix()}: {error}")
        return parse_coverage_json(payload, path_filter=path_filter)

    def discover_tests(self) -> List[str]:
        if not self.list_tests:
            return []
        result = run_command(self.list_tests, cwd=self.root, timeout=self.test_timeout, env=self._env())
        names: list[str] = []
        for line in result.stdout.splitlines():
            stripped = line.strip()
            if self.kind == "python" and "::" in stripped:
                names.append(stripped)
            elif self.kind == "dotnet" and line.startswith("    ") and stripped:
                names.append(stripped)
        return names


__all__ = [
    "CommandResult",
    "CoverageReport",
    "FileCoverage",
    "ProjectKind",
    "TestFailure",
    "TestReport",
    "Toolchain",
    "detect_project_kind",
    "parse_coverage_json",
    "parse_dotnet_output",
    "parse_pester_output",
    "parse_pytest_output",
    "run_command",
    "stack_trace_paths",
]
