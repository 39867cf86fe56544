"""Typed tool-call payloads and reviewer verdicts exchanged with agents."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.type_adapter import TypeAdapter


class _ToolCallBase(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class SearchFiles(_ToolCallBase):
    """Regex search across tracked text files."""

    tool: Literal["search_files"] = "search_files"
    pattern: str = Field(min_length=1, description="Regular expression to look for.")
    glob: Optional[str] = Field(default=None, description="Optional path glob restricting the search.")


class OpenFile(_ToolCallBase):
    """Read a bounded window of a file."""

    tool: Literal["open_file"] = "open_file"
    path: str = Field(min_length=1, description="Repository-relative file path.")
    start_line: int = Field(default=1, ge=1, description="First line to return (1-based).")
    max_lines: Optional[int] = Field(default=None, ge=1, description="Maximum number of lines to return.")


class ViewDiff(_ToolCallBase):
    """Show the working-tree diff."""

    tool: Literal["view_diff"] = "view_diff"
    path: Optional[str] = Field(default=None, description="Restrict the diff to one path.")


class WriteFile(_ToolCallBase):
    """Overwrite a file allowed by the write policy."""

    tool: Literal["write_file"] = "write_file"
    path: str = Field(min_length=1, description="Repository-relative file path.")
    content: str = Field(description="Complete new file content.")


class RunTests(_ToolCallBase):
    """Run the project's test command."""

    tool: Literal["run_tests"] = "run_tests"
    filter: Optional[str] = Field(default=None, description="Optional test selection expression.")


class ReadTestReport(_ToolCallBase):
    """Return the most recent structured test report."""

    tool: Literal["read_test_report"] = "read_test_report"


class GetCoverage(_ToolCallBase):
    """Run coverage and report uncovered line ranges."""

    tool: Literal["get_coverage"] = "get_coverage"
    filter: Optional[str] = Field(default=None, description="Only report files whose path contains this text.")


class ListTests(_ToolCallBase):
    """List test identifiers known to the project's runner."""

    tool: Literal["list_tests"] = "list_tests"


class GetSymbols(_ToolCallBase):
    """Return classes and members declared in one source file."""

    tool: Literal["get_symbols"] = "get_symbols"
    path: str = Field(min_length=1, description="Repository-relative source file path.")


class GetInterface(_ToolCallBase):
    """Return the public method signatures of a named type."""

    tool: Literal["get_interface"] = "get_interface"
    name: str = Field(min_length=1, description="Class or interface name.")


class GetDependencies(_ToolCallBase):
    """List declared dependency registrations."""

    tool: Literal["get_dependencies"] = "get_dependencies"


class SemanticSearch(_ToolCallBase):
    """Embedding-based code search."""

    tool: Literal["semantic_search"] = "semantic_search"
    query: str = Field(min_length=1, description="Natural-language query.")
    limit: int = Field(default=5, ge=1, le=50, description="Maximum number of hits.")


class ExplainError(_ToolCallBase):
    """Classify a failure message and suggest a fix."""

    tool: Literal["explain_error"] = "explain_error"
    message: str = Field(min_length=1, description="Error text or stack trace.")


ToolCall = Annotated[
    Union[
        SearchFiles,
        OpenFile,
        ViewDiff,
        WriteFile,
        RunTests,
        ReadTestReport,
        GetCoverage,
        ListTests,
        GetSymbols,
        GetInterface,
        GetDependencies,
        SemanticSearch,
        ExplainError,
    ],
    Field(discriminator="tool"),
]

_TOOL_CALL_ADAPTER: TypeAdapter[Any] = TypeAdapter(ToolCall)

TOOL_MODELS: Dict[str, type[_ToolCallBase]] = {
    model.model_fields["tool"].default: model
    for model in (
        SearchFiles,
        OpenFile,
        ViewDiff,
        WriteFile,
        RunTests,
        ReadTestReport,
        GetCoverage,
        ListTests,
        GetSymbols,
        GetInterface,
        GetDependencies,
        SemanticSearch,
        ExplainError,
    )
}


class ToolCallDecodeError(ValueError):
    """Raised when a payload cannot be turned into tool calls."""

    def __init__(self, kind: Literal["parse_error", "no_tool", "unknown_tool"], message: str, *, tool: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.tool = tool


def tool_name_of(item: Any) -> str:
    """Return the declared tool name of a raw payload, raising on absence or unknown names."""
    if not isinstance(item, dict):
        raise ToolCallDecodeError("parse_error", f"Tool call must be an object, got {type(item).__name__}.")
    name = item.get("tool")
    if name is None or (isinstance(name, str) and not name.strip()):
        raise ToolCallDecodeError("no_tool", "Tool call object is missing the 'tool' field.")
    if not isinstance(name, str) or name not in TOOL_MODELS:
        raise ToolCallDecodeError("unknown_tool", f"Unknown tool {name!r}.", tool=str(name))
    return name


def decode_tool_call(item: Any) -> Any:
    """Validate one raw tool-call object into its typed variant."""
    name = tool_name_of(item)
    try:
        return _TOOL_CALL_ADAPTER.validate_python(item)
    except ValidationError as error:
        raise ToolCallDecodeError(
            "parse_error", f"Invalid arguments for {name}: {error.errors(include_url=False)}", tool=name
        ) from error


def decode_tool_calls(payload: Any) -> List[Any]:
    """Decode an object or array of objects into typed tool calls."""
    items = payload if isinstance(payload, list) else [payload]
    if not items:
        raise ToolCallDecodeError("parse_error", "Tool call array is empty.")
    return [decode_tool_call(item) for item in items]


def tool_schemas(names: Iterable[str]) -> List[Dict[str, Any]]:
    """Render Responses API function-tool definitions for ``names``."""
    schemas: List[Dict[str, Any]] = []
    for name in names:
        model = TOOL_MODELS[name]
        schema = model.model_json_schema()
        properties = dict(schema.get("properties", {}))
        properties.pop("tool", None)
        for prop in properties.values():
            prop.pop("title", None)
        parameters: Dict[str, Any] = {"type": "object", "properties": properties}
        required = [field for field in schema.get("required", []) if field != "tool"]
        if required:
            parameters["required"] = required
        schemas.append(
            {
                "type": "function",
                "name": name,
                "description": (model.__doc__ or name).strip(),
                "parameters": parameters,
            }
        )
    return schemas


class Verdict(str, Enum):
    ACCEPT = "accept"
    REFINE = "refine"
    REJECT = "reject"


class ReviewVerdict(BaseModel):
    """Structured reviewer decision on the judge's chosen diff."""

    model_config = ConfigDict(extra="ignore")

    verdict: Verdict
    issues: List[str] = Field(default_factory=list)
    diff: Optional[str] = None


__all__ = [
    "ExplainError",
    "GetCoverage",
    "GetDependencies",
    "GetInterface",
    "GetSymbols",
    "ListTests",
    "OpenFile",
    "ReadTestReport",
    "ReviewVerdict",
    "RunTests",
    "SearchFiles",
    "SemanticSearch",
    "TOOL_MODELS",
    "ToolCall",
    "ToolCallDecodeError",
    "Verdict",
    "ViewDiff",
    "WriteFile",
    "decode_tool_call",
    "decode_tool_calls",
    "tool_schemas",
    "tool_name_of",
]
