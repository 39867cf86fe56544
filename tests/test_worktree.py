from __future__ import annotations

from conftest import CALCULATOR_PATH, FIX_DIFF, TinyRepo

from patchloop.tools.patch import apply_patch
from patchloop.tools.worktree import WorktreeManager


def test_worktree_changes_are_collected_and_isolated(broken_repo: TinyRepo) -> None:
    manager = WorktreeManager(broken_repo.repo)
    shared_before = broken_repo.repo.tree_hash()

    with manager.isolated("slot-0") as worktree:
        assert worktree.path.is_dir()
        apply_patch(worktree.repo, FIX_DIFF)
        diff = manager.collect_diff(worktree)

    assert f"diff --git a/{CALCULATOR_PATH} b/{CALCULATOR_PATH}" in diff
    assert "+    return left + right" in diff
    assert broken_repo.repo.tree_hash() == shared_before
    assert not worktree.path.exists()
    assert manager.created == manager.removed == 1
    assert manager.balanced


def test_worktree_mirrors_uncommitted_shared_state(broken_repo: TinyRepo) -> None:
    manager = WorktreeManager(broken_repo.repo)
    apply_patch(broken_repo.repo, FIX_DIFF)
    (broken_repo.root / "NOTES.txt").write_text("scratch\n", encoding="utf-8")

    worktree = manager.create("mirror")
    try:
        mirrored = (worktree.path / CALCULATOR_PATH).read_text(encoding="utf-8")
        assert "return left + right" in mirrored
        assert (worktree.path / "NOTES.txt").read_text(encoding="utf-8") == "scratch\n"
        assert manager.collect_diff(worktree) == ""
    finally:
        manager.cleanup(worktree)


def test_cleanup_is_idempotent(tiny_repo: TinyRepo) -> None:
    manager = WorktreeManager(tiny_repo.repo)
    worktree = manager.create("twice")

    manager.cleanup(worktree)
    manager.cleanup(worktree)

    assert manager.created == 1
    assert manager.removed == 1
    branches = tiny_repo.repo.git("branch", "--list", worktree.branch).stdout
    assert branches.strip() == ""
