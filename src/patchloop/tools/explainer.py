"""Map failure text onto a small error taxonomy with a suggested fix."""

from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class ErrorExplanation:
    category: str
    explanation: str
    suggested_fix: str

    def render(self) -> str:
        return f"category: {self.category}\nexplanation: {self.explanation}\nsuggested_fix: {self.suggested_fix}"


# First match wins.
_RULES: tuple[tuple[re.Pattern[str], ErrorExplanation], ...] = (
    (
        re.compile(r"\bCS(0246|0234)\b"),
        ErrorExplanation(
            "dependency",
            "A type or namespace could not be found.",
            "Add the missing using directive or package/project reference.",
        ),
    ),
    (
        re.compile(r"\bCS(0103|0117|1061)\b"),
        ErrorExplanation(
            "name",
            "A member or identifier does not exist in the current context.",
            "Check the spelling and that the member is declared and accessible.",
        ),
    ),
    (
        re.compile(r"\bCS(0029|0266|1503)\b"),
        ErrorExplanation(
            "type_mismatch",
            "A value cannot be converted to the expected type.",
            "Add an explicit conversion or change the declared type.",
        ),
    ),
    (
        re.compile(r"\bCS\d{4}\b"),
        ErrorExplanation(
            "compile",
            "The C# compiler rejected the code.",
            "Read the compiler message at the reported line and fix the syntax or declaration.",
        ),
    ),
    (
        re.compile(r"SyntaxError|IndentationError|TabError|Unexpected token|ParseError"),
        ErrorExplanation(
            "syntax",
            "The source file does not parse.",
            "Fix the syntax at the reported line; check brackets, colons and indentation.",
        ),
    ),
    (
        re.compile(r"ModuleNotFoundError|ImportError|Cannot find module|No module named"),
        ErrorExplanation(
            "import",
            "A module or dependency could not be imported.",
            "Fix the import path or declare the missing dependency.",
        ),
    ),
    (
        re.compile(r"NullReferenceException|NoneType' object has no attribute|Cannot read propert(y|ies) of (null|undefined)"),
        ErrorExplanation(
            "null_reference",
            "A null/None value was dereferenced.",
            "Guard the value or make sure it is initialised before use.",
        ),
    ),
    (
        re.compile(r"AttributeError|NameError|is not defined|has no attribute"),
        ErrorExplanation(
            "name",
            "A name or attribute is missing.",
            "Check the spelling, the import, and that the attribute exists on the object.",
        ),
    ),
    (
        re.compile(r"TypeError|InvalidCastException|is not assignable to"),
        ErrorExplanation(
            "type_mismatch",
            "A value has the wrong type or a call has the wrong signature.",
            "Align the argument types and the function signature.",
        ),
    ),
    (
        re.compile(r"AssertionError|Assert\.\w+\(\) Failure|Expected:.*\n?.*Actual:|expect\(.*\)\.to"),
        ErrorExplanation(
            "assertion",
            "A test assertion failed: the code returned an unexpected value.",
            "Compare expected and actual values and fix the code under test, not the test.",
        ),
    ),
    (
        re.compile(r"KeyError|IndexError|ArgumentOutOfRangeException|KeyNotFoundException|out of range"),
        ErrorExplanation(
            "key_index",
            "A lookup used a missing key or an out-of-range index.",
            "Check bounds and key presence before indexing.",
        ),
    ),
    (
        re.compile(r"Timed out|TimeoutError|TimeoutException|timeout", re.IGNORECASE),
        ErrorExplanation(
            "timeout",
            "An operation did not finish in time.",
            "Look for infinite loops, blocking calls or missing awaits.",
        ),
    ),
)

_UNKNOWN = ErrorExplanation(
    "unknown",
    "The failure did not match a known pattern.",
    "Read the full stack trace and inspect the innermost frame in project code.",
)


def explain_error(message: str) -> ErrorExplanation:
    for pattern, explanation in _RULES:
        if pattern.search(message or ""):
            return explanation
    return _UNKNOWN


__all__ = ["ErrorExplanation", "explain_error"]
