from __future__ import annotations

import pytest

from patchloop.prompts import render_tool_catalogue
from patchloop.roles import DEFAULT_PERMISSIONS, TOOL_CATALOGUE, Role, ToolPermissionSet
from patchloop.structured import (
    OpenFile,
    ReviewVerdict,
    ToolCallDecodeError,
    Verdict,
    WriteFile,
    decode_tool_call,
    decode_tool_calls,
    tool_name_of,
    tool_schemas,
)


def test_decode_tool_call_returns_typed_variant() -> None:
    call = decode_tool_call({"tool": "open_file", "path": "src/app.py", "start_line": 10})

    assert isinstance(call, OpenFile)
    assert call.path == "src/app.py"
    assert call.start_line == 10


def test_decode_tool_calls_accepts_arrays() -> None:
    calls = decode_tool_calls(
        [
            {"tool": "open_file", "path": "a.py"},
            {"tool": "write_file", "path": "tests/test_a.py", "content": "x = 1\n"},
        ]
    )

    assert [type(call) for call in calls] == [OpenFile, WriteFile]


@pytest.mark.parametrize(
    ("payload", "kind"),
    [
        ({"path": "a.py"}, "no_tool"),
        ({"tool": ""}, "no_tool"),
        ({"tool": "rm_rf"}, "unknown_tool"),
        ({"tool": "open_file"}, "parse_error"),
        ({"tool": "open_file", "path": "a.py", "start_line": 0}, "parse_error"),
        ("open_file", "parse_error"),
    ],
)
def test_decode_errors_carry_their_kind(payload: object, kind: str) -> None:
    with pytest.raises(ToolCallDecodeError) as excinfo:
        decode_tool_call(payload)
    assert excinfo.value.kind == kind


def test_empty_array_is_a_parse_error() -> None:
    with pytest.raises(ToolCallDecodeError) as excinfo:
        decode_tool_calls([])
    assert excinfo.value.kind == "parse_error"


def test_tool_name_of_checks_names_without_validating_arguments() -> None:
    assert tool_name_of({"tool": "write_file"}) == "write_file"


def test_tool_schemas_drop_discriminator() -> None:
    (schema,) = tool_schemas(["open_file"])

    assert schema["name"] == "open_file"
    assert schema["type"] == "function"
    assert "tool" not in schema["parameters"]["properties"]
    assert schema["parameters"]["required"] == ["path"]


def test_every_catalogue_tool_has_a_schema() -> None:
    names = [schema["name"] for schema in tool_schemas(TOOL_CATALOGUE)]

    assert names == list(TOOL_CATALOGUE)


def test_tool_catalogue_prompt_lists_granted_tools_only() -> None:
    text = render_tool_catalogue(DEFAULT_PERMISSIONS.tools_for(Role.REVIEWER))

    assert "`view_diff`" in text
    assert "`write_file`" not in text
    assert render_tool_catalogue(()) == ""


def test_default_permissions_per_role() -> None:
    assert DEFAULT_PERMISSIONS.allows(Role.BUILDER, "write_file")
    assert not DEFAULT_PERMISSIONS.allows(Role.REVIEWER, "write_file")
    assert DEFAULT_PERMISSIONS.tools_for(Role.JUDGE) == ()
    assert not DEFAULT_PERMISSIONS.uses_tools(Role.JUDGE)


def test_permission_overrides_replace_role_grants() -> None:
    custom = DEFAULT_PERMISSIONS.with_overrides({"reviewer": ["view_diff", "run_tests"]})

    assert custom.allows(Role.REVIEWER, "run_tests")
    assert DEFAULT_PERMISSIONS.allows(Role.REVIEWER, "get_symbols")
    assert not custom.allows(Role.REVIEWER, "get_symbols")


def test_unknown_tool_grants_are_rejected() -> None:
    with pytest.raises(ValueError):
        ToolPermissionSet({Role.BUILDER: ["format_disk"]})


def test_review_verdict_defaults() -> None:
    verdict = ReviewVerdict.model_validate({"verdict": "refine", "issues": ["handle None"]})

    assert verdict.verdict is Verdict.REFINE
    assert verdict.issues == ["handle None"]
    assert verdict.diff is None
