"""Tool integrations exposed to the agent runtime and the iteration controller."""

from .dispatcher import LIMIT_REACHED, ForbiddenToolError, Quotas, ToolDispatcher, ToolResult, ToolSessionState, WritePolicy
from .explainer import ErrorExplanation, explain_error
from .patch import PatchError, RepairResult, apply_patch, normalize_diff, repair_patch
from .search import RepositorySearch, SemanticSearch
from .toolchain import CommandResult, CoverageReport, TestReport, Toolchain
from .vcs import GitCheckpoint, GitError, GitRepository
from .worktree import Worktree, WorktreeManager

__all__ = [
    "CommandResult",
    "CoverageReport",
    "ErrorExplanation",
    "ForbiddenToolError",
    "GitCheckpoint",
    "GitError",
    "GitRepository",
    "LIMIT_REACHED",
    "PatchError",
    "Quotas",
    "RepairResult",
    "RepositorySearch",
    "SemanticSearch",
    "TestReport",
    "ToolDispatcher",
    "ToolResult",
    "ToolSessionState",
    "Toolchain",
    "WritePolicy",
    "Worktree",
    "WorktreeManager",
    "apply_patch",
    "explain_error",
    "normalize_diff",
    "repair_patch",
]
