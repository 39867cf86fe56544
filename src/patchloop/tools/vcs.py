"""Git helpers.

The helpers below wrap just enough of ``git`` to check out a target
repository, snapshot and roll back the working tree, apply externally
authored diffs, and manage the throw-away worktrees used for isolated
workers.
"""

from __future__ import annotations

import hashlib
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Set


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


@dataclass(slots=True)
class GitCheckpoint:
    """Snapshot of the working tree at a point in time.

    The checkpoint records the current ``HEAD`` (if any) and the set of
    pre-existing untracked paths.  Rolling back restores tracked files to the
    recorded commit and removes only the untracked files that appeared after
    the checkpoint was taken.
    """

    repo: "GitRepository"
    label: str
    head: str | None
    baseline_untracked: tuple[str, ...]
    created_at: float


def _run(args: Sequence[str], cwd: Path, *, check: bool = True, input_text: str | None = None) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    process = subprocess.run(
        command,
        cwd=cwd,
        capture_output=True,
        input=input_text.encode("utf-8") if input_text is not None else None,
        text=False,
        check=False,
    )
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def clone(cls, source: str, destination: Path | str, *, branch: str | None = None) -> "GitRepository":
        """Clone ``source`` (path or URL) into ``destination``."""

        target = Path(destination).resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        args: List[str] = ["clone", "--quiet"]
        if branch:
            args.extend(["--branch", branch])
        args.extend([source, str(target)])
        _run(args, target.parent)
        return cls(target)

    # ------------------------------------------------------------------ git IO
    def _run_git(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return _run(args, self.root, check=check, input_text=input_text)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    def list_tracked_paths(self, *patterns: str, include_untracked: bool = False) -> List[Path]:
        """Return tracked paths that match the supplied git pathspec patterns.

        With ``include_untracked`` the list also covers new files that are not
        ignored.  Paths are reported relative to the repository root.
        """

        args: List[str] = ["ls-files", "-z", "--cached"]
        if include_untracked:
            args.extend(["--others", "--exclude-standard"])
        if patterns:
            args.extend(["--", *patterns])
        result = self._run_git(args)
        entries = sorted({entry for entry in result.stdout.split("\0") if entry})
        return [Path(entry) for entry in entries]

    # -------------------------------------------------------------- branches
    def checkout_branch(self, name: str, *, create: bool = True) -> None:
        """Switch to ``name``, creating it from ``HEAD`` when missing."""

        exists = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        if exists.returncode == 0:
            self._run_git(["checkout", "--quiet", name])
        elif create:
            self._run_git(["checkout", "--quiet", "-b", name])
        else:
            raise GitError(f"Branch does not exist: {name}")

    def delete_branch(self, name: str) -> bool:
        """Force-delete ``name``; returns ``False`` when it was already gone."""

        result = self._run_git(["branch", "-D", name], check=False)
        if result.returncode == 0:
            return True
        combined = f"{result.stdout}\n{result.stderr}".lower()
        if "not found" in combined:
            return False
        raise GitError(f"git branch -D {name} failed: {combined.strip()}")

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain", "--untracked-files=all"], check=True)
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip().strip('"'))))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def untracked_files(self) -> List[Path]:
        """Return the list of untracked files."""

        return [path for status, path in self._status_entries() if status == "??"]

    def is_clean(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when the working tree has no pending changes."""

        return not self.working_tree_changes(include_untracked=include_untracked)

    def tree_hash(self) -> str:
        """Return a sha1 over the paths and on-disk contents of all non-ignored files."""

        digest = hashlib.sha1()
        for relative in self.list_tracked_paths(include_untracked=True):
            target = self.root / relative
            try:
                content = target.read_bytes()
            except (FileNotFoundError, IsADirectoryError):
                continue
            digest.update(relative.as_posix().encode("utf-8", errors="replace"))
            digest.update(b"\0")
            digest.update(content)
            digest.update(b"\0")
        return digest.hexdigest()

    # ------------------------------------------------------------- checkpoints
    def current_head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    def create_checkpoint(self, label: str | None = None) -> GitCheckpoint:
        """Record the current ``HEAD`` and untracked files."""

        head = self.current_head()
        baseline_untracked = tuple(sorted(path.as_posix() for path in self.untracked_files()))
        return GitCheckpoint(
            repo=self,
            label=label or head or "working-tree",
            head=head,
            baseline_untracked=baseline_untracked,
            created_at=time.time(),
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Restore the repository to the state captured by ``checkpoint``."""

        if checkpoint.repo is not self:
            raise GitError("Checkpoint does not belong to this repository.")

        if checkpoint.head:
            self._run_git(["reset", "--quiet", "--hard", checkpoint.head])
        else:
            self._run_git(["restore", "--worktree", "--staged", "--", "."], check=False)

        baseline = {Path(entry) for entry in checkpoint.baseline_untracked}
        extra = sorted(
            (path for path in self.untracked_files() if path not in baseline),
            key=lambda item: len(item.parts),
            reverse=True,
        )
        for relative in extra:
            target = self.root / relative
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            elif target.exists() or target.is_symlink():
                target.unlink(missing_ok=True)

    # ----------------------------------------------------------- diff helpers
    def diff(self, *paths: str, include_untracked: bool = False) -> str:
        """Return the unified diff for ``paths`` (defaults to the whole repo).

        ``include_untracked`` records new files as intent-to-add first so
        they show up as additions.
        """

        if include_untracked:
            untracked = [path.as_posix() for path in self.untracked_files()]
            if untracked:
                self._run_git(["add", "--intent-to-add", "--", *untracked])
        args: List[str] = ["diff", "--no-color", "--no-ext-diff", "HEAD"] if self.current_head() else ["diff"]
        if paths:
            args.extend(["--", *paths])
        return self._run_git(args).stdout

    def diffstat(self, patch_text: str, *, strip: int = 1) -> str:
        """Summarise ``patch_text`` as ``git apply --stat`` would."""

        if not patch_text.strip():
            return ""
        result = self._run_git(["apply", "--stat", f"-p{strip}", "-"], check=False, input_text=patch_text)
        if result.returncode != 0:
            return ""
        return result.stdout.strip()

    # --------------------------------------------------------------- apply
    def apply_check(self, patch_text: str, *, strip: int = 1) -> subprocess.CompletedProcess[str]:
        """Dry-run ``git apply``; inspect ``returncode`` for the verdict."""

        return self._run_git(
            ["apply", "--check", "--whitespace=nowarn", f"-p{strip}", "-"],
            check=False,
            input_text=patch_text,
        )

    def apply(self, patch_text: str, *, strip: int = 1, reject: bool = False) -> subprocess.CompletedProcess[str]:
        """Apply ``patch_text`` to the working tree.

        With ``reject`` git applies what it can and writes ``.rej`` files for
        the remaining hunks; the caller inspects the returned process.
        """

        args = ["apply", "--whitespace=nowarn", f"-p{strip}"]
        if reject:
            args.append("--reject")
        args.append("-")
        return self._run_git(args, check=not reject, input_text=patch_text)

    # -------------------------------------------------------------- commits
    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Add all changes to the index and create a commit.

        Returns the new commit SHA when a commit was created.  Returns ``None`` when
        there were no changes to commit (and ``allow_empty`` is ``False``).
        """

        self._run_git(["add", "--all"], check=True)

        commit_args: List[str] = ["commit", "--quiet", "--no-verify", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")

        commit = self._run_git(commit_args, check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower() or "nothing added to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")

        return self.current_head()

    # ------------------------------------------------------------ worktrees
    def worktree_add(self, path: Path, branch: str, *, base: str = "HEAD") -> Path:
        """Create a worktree at ``path`` on a new private ``branch``."""

        path.parent.mkdir(parents=True, exist_ok=True)
        self._run_git(["worktree", "add", "--quiet", "-b", branch, str(path), base])
        return path

    def worktree_remove(self, path: Path) -> bool:
        """Remove the worktree at ``path``; returns ``False`` when it was already gone."""

        existed = path.exists()
        result = self._run_git(["worktree", "remove", "--force", str(path)], check=False)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        self._run_git(["worktree", "prune"], check=False)
        return existed or result.returncode == 0


__all__ = ["GitCheckpoint", "GitError", "GitRepository"]
