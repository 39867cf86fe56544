"""Unified diff normalisation, repair and application with guard rails.

Model-authored diffs are unreliable.  :func:`repair_patch` normalises the
text and then tries an ordered, cumulative list of transforms until one of
them passes ``git apply --check``.  :func:`apply_patch` applies the winning
variant and, when nothing checks cleanly, falls back to a best-effort
``git apply --reject`` that keeps whichever hunks succeed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Set, Tuple

from ..logs import emit_event
from .vcs import GitRepository

LOGGER = logging.getLogger(__name__)

_DIFF_GIT_RE = re.compile(r"^diff --git ", re.MULTILINE)
_DIFF_HEADER = re.compile(r"^diff --git (\S+) (\S+)$", re.MULTILINE)
_FILE_HEADER = re.compile(r"^(?:---|\+\+\+) (\S+)", re.MULTILINE)
_FENCE_LINE = re.compile(r"^\s*```[\w+-]*\s*$")
_PATCH_FAILED_RE = re.compile(r"error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_PATCH_DOES_NOT_APPLY_RE = re.compile(r"error: (?P<path>.+?): patch does not apply")
_HUNK_FAILED_RE = re.compile(r"error: (?P<path>.+?): hunk #(?P<hunk>\d+) failed at (?P<line>-?\d+)")
_REJECTED_RE = re.compile(r"Rejected hunk #(?P<hunk>\d+)")


class PatchError(RuntimeError):
    """Raised when a patch fails validation or application."""

    def __init__(self, message: str, *, kind: str = "apply_failed", details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class RepairResult:
    """Outcome of repairing (and optionally applying) a diff."""

    patch: str
    strip: int
    variant: str
    paths: Tuple[Path, ...] = ()
    applied: bool = False
    partial: bool = False
    rejected: Tuple[str, ...] = ()
    reject_hunks: dict[str, str] = field(default_factory=dict)
    failing_hunks: Tuple[Mapping[str, Any], ...] = ()
    attempts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "variant": self.variant,
            "strip": self.strip,
            "paths": [path.as_posix() for path in self.paths],
            "applied": self.applied,
            "partial": self.partial,
            "rejected": list(self.rejected),
            "failing_hunks": [dict(item) for item in self.failing_hunks],
            "attempts": list(self.attempts),
        }


# ---------------------------------------------------------------- detection
def find_diff_start(text: str) -> int | None:
    """Return the offset of the first diff marker in ``text``, if any.

    A marker is a ``diff --git`` line, or a ``--- `` line immediately
    followed by a ``+++ `` line.
    """
    if not text:
        return None
    match = _DIFF_GIT_RE.search(text)
    best = match.start() if match else None
    offset = 0
    lines = text.splitlines(keepends=True)
    for index, line in enumerate(lines):
        if best is not None and offset >= best:
            break
        if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
            best = offset
            break
        offset += len(line)
    return best


def looks_like_diff(text: str) -> bool:
    """True when the trimmed text starts with a diff marker."""
    stripped = (text or "").strip()
    return bool(stripped) and find_diff_start(stripped) == 0


def contains_diff(text: str) -> bool:
    return find_diff_start(text or "") is not None


def normalize_diff(text: str) -> str:
    """Strip code fences and slice from the first diff marker onward."""
    candidate = (text or "").strip()
    if candidate.startswith("```"):
        first_newline = candidate.find("\n")
        candidate = candidate[first_newline + 1 :] if first_newline != -1 else ""
        fence_end = candidate.rfind("```")
        if fence_end != -1 and candidate[fence_end:].strip() == "```":
            candidate = candidate[:fence_end]
    start = find_diff_start(candidate)
    if start is None:
        return ""
    lines = candidate[start:].splitlines(keepends=True)
    for index, line in enumerate(lines):
        if _FENCE_LINE.match(line):
            # Prose after a closing fence is not part of the diff.
            lines = lines[:index]
            break
    while lines and not lines[-1].strip():
        lines.pop()
    if not lines:
        return ""
    result = "".join(lines)
    return result if result.endswith("\n") else result + "\n"


# ---------------------------------------------------------------- transforms
def _strip_path_prefixes(patch: str) -> str:
    """Drop ``a/``/``b/`` prefixes from diff and file header lines."""
    out: list[str] = []
    for line in patch.splitlines(keepends=True):
        if line.startswith("diff --git "):
            match = _DIFF_HEADER.match(line.rstrip("\r\n"))
            if match:
                ending = line[len(line.rstrip("\r\n")) :]
                left, right = (_drop_prefix(part) for part in match.groups())
                line = f"diff --git {left} {right}{ending}"
        elif line.startswith(("--- ", "+++ ")):
            head, _, rest = line.partition(" ")
            body = rest.rstrip("\r\n")
            ending = rest[len(body) :]
            path, sep, tail = body.partition("\t")
            line = f"{head} {_drop_prefix(path)}{sep}{tail}{ending}"
        out.append(line)
    return "".join(out)


def _drop_prefix(entry: str) -> str:
    if entry.startswith(("a/", "b/")):
        return entry[2:]
    return entry


def _normalise_line_endings(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _strip_fence_lines(patch: str) -> str:
    kept = [line for line in patch.splitlines() if not _FENCE_LINE.match(line)]
    result = "\n".join(kept)
    return result + "\n" if result else ""


_REPAIR_STEPS = (
    ("strip_prefixes", _strip_path_prefixes),
    ("line_endings", _normalise_line_endings),
    ("strip_fences", _strip_fence_lines),
)


# ---------------------------------------------------------------- paths
def _normalise_diff_path(entry: str) -> Path | None:
    """Translate diff header operands into repository-relative paths."""
    if entry == "/dev/null":
        return None
    entry = _drop_prefix(entry.strip())
    if not entry:
        return None
    return Path(entry)


def extract_paths(patch: str) -> Set[Path]:
    """Collect all file paths referenced by a unified diff."""
    paths: Set[Path] = set()
    for match in _DIFF_HEADER.finditer(patch):
        for raw in match.groups():
            candidate = _normalise_diff_path(raw)
            if candidate is not None:
                paths.add(candidate)
    for match in _FILE_HEADER.finditer(patch):
        candidate = _normalise_diff_path(match.group(1))
        if candidate is not None:
            paths.add(candidate)
    return paths


def _validate_paths(paths: Iterable[Path]) -> None:
    """Enforce path safety rules for diff entries."""
    for path in paths:
        if path.is_absolute():
            raise PatchError(f"Absolute paths are not permitted in patches: {path}", kind="unsafe_path")
        parts = list(path.parts)
        if any(part == ".." for part in parts):
            raise PatchError(f"Path escaping detected in patch: {path}", kind="unsafe_path")
        if parts and parts[0] == ".git":
            raise PatchError("Patches may not target the .git directory.", kind="unsafe_path")


def _parse_git_apply_failures(output: str) -> Tuple[Mapping[str, Any], ...]:
    """Parse git apply stderr for failing hunk metadata."""
    entries: list[dict[str, Any]] = []
    for raw_line in (output or "").splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _HUNK_FAILED_RE.match(line)
        if match:
            entries.append(
                {
                    "path": match.group("path"),
                    "hunk": int(match.group("hunk")),
                    "line": int(match.group("line")),
                    "reason": "hunk_failed",
                }
            )
            continue
        match = _PATCH_FAILED_RE.match(line)
        if match:
            line_text = match.group("line")
            entries.append(
                {
                    "path": match.group("path"),
                    "line": int(line_text) if line_text is not None else None,
                    "reason": "patch_failed",
                }
            )
            continue
        match = _PATCH_DOES_NOT_APPLY_RE.match(line)
        if match:
            entries.append({"path": match.group("path"), "reason": "does_not_apply"})
    return tuple(entries)


# ---------------------------------------------------------------- pipeline
def repair_patch(repo: GitRepository, text: str) -> RepairResult:
    """Return the first variant of ``text`` that passes ``git apply --check``.

    Raises :class:`PatchError` with ``kind="invalid_patch_format"`` when the
    text holds no diff, ``kind="unsafe_path"`` for paths outside the
    repository, and ``kind="apply_failed"`` when no variant checks cleanly;
    in the latter case ``details["candidate"]`` holds the fully transformed
    text for a best-effort apply.
    """
    normalised = normalize_diff(text)
    if not normalised:
        raise PatchError("Text does not contain a unified diff.", kind="invalid_patch_format")
    if "GIT binary patch" in normalised:
        raise PatchError("Binary patches are not supported.", kind="invalid_patch_format")

    paths = extract_paths(normalised)
    if not paths:
        raise PatchError("Patch does not describe any file changes.", kind="invalid_patch_format")
    _validate_paths(paths)

    attempts: list[str] = []
    check = repo.apply_check(normalised, strip=1)
    attempts.append("as_is")
    if check.returncode == 0:
        emit_event("patch.check", variant="as_is", ok=True, paths=sorted(paths, key=str))
        return RepairResult(
            patch=normalised, strip=1, variant="as_is", paths=_sorted(paths), attempts=attempts
        )
    last_stderr = check.stderr

    candidate = normalised
    for name, transform in _REPAIR_STEPS:
        candidate = transform(candidate)
        attempts.append(name)
        check = repo.apply_check(candidate, strip=0)
        if check.returncode == 0:
            LOGGER.info("Patch applies after repair step %s", name)
            emit_event("patch.check", variant=name, ok=True, paths=sorted(paths, key=str))
            return RepairResult(
                patch=candidate, strip=0, variant=name, paths=_sorted(paths), attempts=attempts
            )
        last_stderr = check.stderr

    failures = _parse_git_apply_failures(last_stderr)
    emit_event("patch.check", variant=None, ok=False, failing_hunks=failures)
    raise PatchError(
        "Patch does not apply cleanly after repair.",
        kind="apply_failed",
        details={"candidate": candidate, "stderr": last_stderr, "failing_hunks": failures, "attempts": attempts},
    )


def apply_patch(repo: GitRepository, text: str, *, allow_partial: bool = True) -> RepairResult:
    """Repair ``text`` and apply it to ``repo``'s working tree.

    When no variant checks cleanly and ``allow_partial`` is set, the fully
    transformed text is applied with ``--reject``; hunks that fail are
    recorded in ``rejected`` (with their contents in ``reject_hunks``) and the
    ``.rej`` files this apply wrote are removed.  A patch that changes nothing
    raises :class:`PatchError`.
    """
    try:
        result = repair_patch(repo, text)
    except PatchError as error:
        if error.kind != "apply_failed" or not allow_partial:
            raise
        return _apply_with_reject(repo, error)

    existing = _reject_files(repo)
    process = repo.apply(result.patch, strip=result.strip, reject=True)
    if process.returncode != 0:
        LOGGER.warning("Patch checked cleanly but failed to apply: %s", process.stderr.strip())
        _collect_reject_files(repo, existing)
        raise PatchError(
            "git apply failed after a clean check.",
            details={"stderr": process.stderr, "failing_hunks": _parse_git_apply_failures(process.stderr)},
        )
    result.applied = True
    emit_event("patch.apply", **result.to_dict())
    return result


def _apply_with_reject(repo: GitRepository, error: PatchError) -> RepairResult:
    candidate = str(error.details.get("candidate") or "")
    paths = extract_paths(candidate)
    existing = _reject_files(repo)
    before = repo.tree_hash()
    process = repo.apply(candidate, strip=0, reject=True)
    reject_hunks = _collect_reject_files(repo, existing)
    rejected = list(reject_hunks)
    failures = _parse_git_apply_failures(process.stderr)
    if repo.tree_hash() == before:
        emit_event("patch.apply", variant="reject", applied=False, rejected=rejected)
        raise PatchError(
            "Best-effort apply changed nothing.",
            details={"stderr": process.stderr, "failing_hunks": failures, "rejected": rejected},
        )
    result = RepairResult(
        patch=candidate,
        strip=0,
        variant="reject",
        paths=_sorted(paths),
        applied=True,
        partial=process.returncode != 0 or bool(rejected),
        rejected=tuple(rejected),
        reject_hunks=reject_hunks,
        failing_hunks=failures,
        attempts=list(error.details.get("attempts", [])) + ["reject"],
    )
    LOGGER.warning("Applied patch partially; rejected hunks in %s", ", ".join(rejected) or "none")
    emit_event("patch.apply", **result.to_dict())
    return result


def _reject_files(repo: GitRepository) -> Set[Path]:
    return {path for path in repo.untracked_files() if path.suffix == ".rej"}


def _collect_reject_files(repo: GitRepository, existing: Set[Path]) -> dict[str, str]:
    """Read and delete the ``.rej`` files this apply wrote; earlier ones stay."""
    collected: dict[str, str] = {}
    for path in sorted(_reject_files(repo) - existing, key=lambda item: item.as_posix()):
        target = repo.root / path
        collected[path.with_suffix("").as_posix()] = target.read_text(encoding="utf-8", errors="replace")
        target.unlink(missing_ok=True)
    return collected


def _sorted(paths: Iterable[Path]) -> Tuple[Path, ...]:
    return tuple(sorted(paths, key=lambda item: item.as_posix()))


__all__ = [
    "PatchError",
    "RepairResult",
    "apply_patch",
    "contains_diff",
    "extract_paths",
    "find_diff_start",
    "looks_like_diff",
    "normalize_diff",
    "repair_patch",
]
