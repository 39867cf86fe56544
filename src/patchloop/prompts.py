"""Prompt templates and helpers shared across agent roles."""

from __future__ import annotations

import json
from typing import Iterable, Sequence

from .roles import Role
from .structured import tool_schemas

NO_CHANGES = "NO_CHANGES"
CANDIDATE_SEPARATOR = "\n\n===== CANDIDATE {index} =====\n"

DIFF_INSTRUCTION = (
    "When you are done, reply with a single unified diff (starting with `diff --git` or `--- `) "
    f"against the repository root, or exactly `{NO_CHANGES}` if no change is needed. "
    "Do not wrap the diff in prose."
)

BUILDER_SYSTEM_PROMPT = (
    "You are the Builder. You repair a software repository so that its build succeeds and its tests pass. "
    "Inspect the repository with the tools available to you, keep changes minimal and focused, "
    "and never touch files unrelated to the failure. " + DIFF_INSTRUCTION
)

JUDGE_SYSTEM_PROMPT = (
    "You are the Judge. Several candidate patches are listed below, separated by CANDIDATE markers. "
    "Pick the single candidate most likely to fix the failures without breaking passing tests. "
    "Reply with that candidate's unified diff exactly as written and nothing else. You have no tools."
)

REVIEWER_SYSTEM_PROMPT = (
    "You are the Reviewer. Validate the proposed unified diff. Either reply with a corrected unified diff, "
    'or reply with JSON {"verdict": "accept" | "refine" | "reject", "issues": ["..."]}. '
    "Use `refine` only for concrete, fixable problems and list them in `issues`."
)

FINAL_DIFF_REQUEST = (
    "## Final Answer Required\n"
    "Your previous attempts did not produce a patch. Using what you have already learned, "
    "reply now with the complete unified diff that fixes the failures. " + DIFF_INSTRUCTION
)

FINALIZE_ONLY_REQUEST = (
    "## Finalize Only\n"
    "Tool calls are no longer available and will be ignored. Do not request any tool. "
    "Reply with the unified diff only, or exactly " + NO_CHANGES + "."
)

_TRUNCATION_MARKER = "\n\n[Prompt truncated to {kept} of {total} chars]\n"


def system_prompt_for(role: Role) -> str:
    return {
        Role.BUILDER: BUILDER_SYSTEM_PROMPT,
        Role.JUDGE: JUDGE_SYSTEM_PROMPT,
        Role.REVIEWER: REVIEWER_SYSTEM_PROMPT,
    }[Role(role)]


def render_tool_catalogue(tools: Sequence[str]) -> str:
    """Describe the JSON tool-call protocol for the text transport."""
    if not tools:
        return ""
    lines = [
        "## Tools",
        "To call a tool, reply with only a JSON object such as "
        '{"tool": "open_file", "path": "src/app.py"} or a JSON array of such objects. '
        "Tool results are appended to the conversation before your next turn.",
    ]
    for schema in tool_schemas(tools):
        arguments = json.dumps(schema["parameters"].get("properties", {}), sort_keys=True)
        lines.append(f"- `{schema['name']}`: {schema['description']} Arguments: {arguments}")
    return "\n".join(lines)


def render_hypothesis(hypothesis: str) -> str:
    return f"## Focus\n{hypothesis.strip()}"


def render_issues(issues: Iterable[str]) -> str:
    body = "\n".join(f"- {issue.strip()}" for issue in issues if issue.strip())
    if not body:
        return ""
    return f"## Reviewer Issues\nAddress every issue below and return a revised diff.\n{body}"


def render_candidates(candidates: Sequence[str]) -> str:
    """Concatenate candidate diffs with numbered separators for the judge."""
    return "".join(
        CANDIDATE_SEPARATOR.format(index=index) + text.strip() + "\n"
        for index, text in enumerate(candidates, start=1)
    ).lstrip()


def render_tool_result(index: int, tool: str, output: str) -> str:
    return f"## Tool Result {index}: {tool}\n{output.rstrip()}"


def limit_prompt_size(text: str, max_chars: int) -> str:
    """Truncate ``text`` to ``max_chars`` keeping the head and the tail.

    Three quarters of the budget go to the head, the rest (minus room for the
    marker) to the tail.
    """
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    head_len = (max_chars * 3) // 4
    tail_len = max(max_chars - head_len - 80, 0)
    head = text[:head_len]
    tail = text[-tail_len:] if tail_len else ""
    return head + _TRUNCATION_MARKER.format(kept=max_chars, total=len(text)) + tail


__all__ = [
    "BUILDER_SYSTEM_PROMPT",
    "CANDIDATE_SEPARATOR",
    "FINALIZE_ONLY_REQUEST",
    "FINAL_DIFF_REQUEST",
    "JUDGE_SYSTEM_PROMPT",
    "NO_CHANGES",
    "REVIEWER_SYSTEM_PROMPT",
    "limit_prompt_size",
    "render_candidates",
    "render_hypothesis",
    "render_issues",
    "render_tool_catalogue",
    "render_tool_result",
    "system_prompt_for",
]
