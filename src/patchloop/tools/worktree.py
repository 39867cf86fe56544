"""Disposable git worktrees that give each worker a private checkout."""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from ..logs import emit_event, slug
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Worktree:
    """One isolated checkout on its own branch."""

    path: Path
    branch: str
    base_dir: Path
    repo: GitRepository
    baseline: str | None = None
    removed: bool = False


class WorktreeManager:
    """Create, mirror and remove worktrees for one shared repository.

    ``created`` and ``removed`` count successful creations and first-time
    removals; once every worker has been cleaned up the two are equal.
    """

    def __init__(self, repo: GitRepository, *, prefix: str = "patchloop") -> None:
        self.repo = repo
        self._prefix = slug(prefix, fallback="patchloop")
        self._lock = threading.Lock()
        self.created = 0
        self.removed = 0

    @property
    def balanced(self) -> bool:
        with self._lock:
            return self.created == self.removed

    def create(self, label: str) -> Worktree:
        """Add a worktree on a fresh branch and mirror the shared dirty state into it."""
        token = uuid.uuid4().hex[:8]
        branch = f"{self._prefix}/{slug(label, fallback='worker', max_length=40)}-{token}"
        base_dir = Path(tempfile.mkdtemp(prefix=f"{self._prefix}-wt-"))
        path = base_dir / "worktree"
        try:
            self.repo.worktree_add(path, branch)
        except GitError:
            shutil.rmtree(base_dir, ignore_errors=True)
            raise
        worktree = Worktree(path=path, branch=branch, base_dir=base_dir, repo=GitRepository(path))
        with self._lock:
            self.created += 1
        try:
            worktree.baseline = self._mirror_shared_state(worktree)
        except GitError:
            self.cleanup(worktree)
            raise
        emit_event("worktree.create", branch=branch, path=path)
        return worktree

    def _mirror_shared_state(self, worktree: Worktree) -> str | None:
        """Copy uncommitted shared changes into ``worktree`` as a baseline commit."""
        tracked_diff = self.repo.git("diff", "--binary", "HEAD").stdout
        if tracked_diff.strip():
            worktree.repo.apply(tracked_diff, strip=1)
        for relative in self.repo.untracked_files():
            source = self.repo.root / relative
            if not source.is_file():
                continue
            target = worktree.path / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, target)
        worktree.repo.git("config", "--local", "user.name", "patchloop", check=False)
        worktree.repo.git("config", "--local", "user.email", "patchloop@example.com", check=False)
        if not worktree.repo.is_clean():
            worktree.repo.commit_all("patchloop: mirror shared workspace")
        return worktree.repo.current_head()

    def collect_diff(self, worktree: Worktree) -> str:
        """Return the worker's changes relative to its baseline commit."""
        worktree.repo.git("add", "--all")
        diff = worktree.repo.git("diff", "--cached", "--unified=3").stdout
        diff = diff.replace("\r\n", "\n")
        if diff and not diff.endswith("\n"):
            diff += "\n"
        return diff

    def cleanup(self, worktree: Worktree) -> None:
        """Remove the worktree and its branch; safe to call more than once."""
        first = False
        with self._lock:
            if not worktree.removed:
                worktree.removed = True
                first = True
        try:
            self.repo.worktree_remove(worktree.path)
        except GitError as error:
            LOGGER.warning("Failed to remove worktree %s: %s", worktree.path, error)
        try:
            self.repo.delete_branch(worktree.branch)
        except GitError as error:
            LOGGER.warning("Failed to delete worktree branch %s: %s", worktree.branch, error)
        shutil.rmtree(worktree.base_dir, ignore_errors=True)
        if first:
            with self._lock:
                self.removed += 1
            emit_event("worktree.remove", branch=worktree.branch)

    @contextmanager
    def isolated(self, label: str) -> Iterator[Worktree]:
        worktree = self.create(label)
        try:
            yield worktree
        finally:
            self.cleanup(worktree)


__all__ = ["Worktree", "WorktreeManager"]
