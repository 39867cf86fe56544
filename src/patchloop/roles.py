"""Agent roles and the tool permission sets attached to them."""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping

TOOL_CATALOGUE: tuple[str, ...] = (
    "search_files",
    "open_file",
    "view_diff",
    "write_file",
    "run_tests",
    "read_test_report",
    "get_coverage",
    "list_tests",
    "get_symbols",
    "get_interface",
    "get_dependencies",
    "semantic_search",
    "explain_error",
)


class Role(str, Enum):
    """Agent personas; the role decides which tools a session may call."""

    BUILDER = "builder"
    REVIEWER = "reviewer"
    JUDGE = "judge"


class ToolPermissionSet:
    """Immutable mapping from :class:`Role` to an ordered tuple of tool names."""

    def __init__(self, grants: Mapping[Role, Iterable[str]]) -> None:
        resolved: dict[Role, tuple[str, ...]] = {}
        for role in Role:
            names = tuple(dict.fromkeys(grants.get(role, ())))
            unknown = [name for name in names if name not in TOOL_CATALOGUE]
            if unknown:
                raise ValueError(f"Unknown tool(s) granted to {role.value}: {', '.join(unknown)}")
            resolved[role] = names
        self._grants = MappingProxyType(resolved)

    def tools_for(self, role: Role) -> tuple[str, ...]:
        return self._grants[Role(role)]

    def allows(self, role: Role, tool: str) -> bool:
        return tool in self._grants[Role(role)]

    def uses_tools(self, role: Role) -> bool:
        return bool(self._grants[Role(role)])

    def with_overrides(self, overrides: Mapping[str, Iterable[str]]) -> "ToolPermissionSet":
        """Return a new set where the named roles are replaced wholesale."""
        grants: dict[Role, Iterable[str]] = dict(self._grants)
        for name, tools in overrides.items():
            grants[Role(name)] = tuple(tools)
        return ToolPermissionSet(grants)

    def __getitem__(self, role: Role) -> tuple[str, ...]:
        return self.tools_for(role)

    def __repr__(self) -> str:
        body = ", ".join(f"{role.value}={list(tools)}" for role, tools in self._grants.items())
        return f"ToolPermissionSet({body})"


DEFAULT_PERMISSIONS = ToolPermissionSet(
    {
        Role.BUILDER: TOOL_CATALOGUE,
        Role.REVIEWER: ("view_diff", "get_symbols", "get_interface"),
        Role.JUDGE: (),
    }
)


__all__ = ["DEFAULT_PERMISSIONS", "Role", "TOOL_CATALOGUE", "ToolPermissionSet"]
