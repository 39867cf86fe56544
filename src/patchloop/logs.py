"""Logging helpers: structured telemetry events and debug artifacts."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import sys
import uuid
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from .models.llm_client import CompletionRequest, CompletionResult

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("patchloop.telemetry")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(*, debug: bool = False) -> None:
    """Route all human-readable logging to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    TELEMETRY_LOGGER.setLevel(logging.DEBUG if debug else logging.WARNING)


def emit_event(event: str, **fields: Any) -> None:
    """Emit one compact JSON telemetry record."""
    if not TELEMETRY_LOGGER.isEnabledFor(logging.INFO):
        return
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    payload.update({key: json_safe(value) for key, value in fields.items()})
    TELEMETRY_LOGGER.info(json.dumps(payload, sort_keys=True))


def json_safe(value: Any) -> Any:
    """Coerce complex objects into JSON-serialisable representations."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return json_safe(asdict(value))
    if hasattr(value, "model_dump"):
        return json_safe(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        return {str(key): json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(item) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    return str(value)


def slug(value: str, *, fallback: str = "item", max_length: int = 80) -> str:
    """Normalise identifiers for use in log filenames."""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", value or "").strip("-")
    result = cleaned or fallback
    if len(result) <= max_length:
        return result
    digest = hashlib.sha256(result.encode("utf-8")).hexdigest()[:8]
    prefix_length = max(max_length - len(digest) - 1, 1)
    prefix = result[:prefix_length].rstrip("-") or result[:prefix_length]
    return f"{prefix}-{digest}"


class ArtifactLogger:
    """Persist raw model traffic and session transcripts when debugging.

    A disabled logger accepts every call and writes nothing, so callers never
    need to branch on the debug flag.
    """

    def __init__(self, data_root: Path, logs_root: Path, *, enabled: bool = False) -> None:
        self.inputs_root = data_root / "llm_inputs"
        self.sessions_root = logs_root / "sessions"
        self.enabled = enabled

    @classmethod
    def disabled(cls) -> "ArtifactLogger":
        return cls(Path("."), Path("."), enabled=False)

    def _file_name(self, kind: str, role: str, label: str, attempt: int, suffix: str) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        parts = [kind, slug(role, fallback="role"), slug(label, fallback="call")]
        if attempt:
            parts.append(f"attempt-{attempt}")
        parts.extend([timestamp, uuid.uuid4().hex[:8]])
        return "__".join(parts) + suffix

    def _write(self, directory: Path, name: str, text: str) -> Optional[Path]:
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / name
            path.write_text(text, encoding="utf-8")
        except OSError as error:
            LOGGER.warning("Unable to write debug artifact %s: %s", name, error)
            return None
        return path

    def log_request(self, role: str, label: str, request: CompletionRequest, *, attempt: int = 1) -> Optional[Path]:
        """Persist the prompt text for one model invocation attempt."""
        if not self.enabled:
            return None
        lines = [
            f"Timestamp: {datetime.now(timezone.utc).isoformat()}",
            f"Role: {role}",
            f"Label: {label}",
            f"Attempt: {attempt}",
            f"Max Tokens: {request.max_tokens}",
            f"Tools: {len(request.tools)}",
            "",
            "System Prompt:",
            request.system_prompt or "",
            "",
            "User Prompt:",
            request.prompt,
        ]
        name = self._file_name("input", role, label, attempt, ".txt")
        return self._write(self.inputs_root, name, "\n".join(lines) + "\n")

    def log_response(
        self,
        role: str,
        label: str,
        result: CompletionResult | None,
        error: Exception | None = None,
        *,
        attempt: int = 1,
    ) -> Optional[Path]:
        """Persist the raw model response (or failure) for one attempt."""
        if not self.enabled:
            return None
        lines = [
            f"Timestamp: {datetime.now(timezone.utc).isoformat()}",
            f"Role: {role}",
            f"Label: {label}",
            f"Attempt: {attempt}",
        ]
        if result is not None:
            lines.append(
                f"Usage: prompt={result.usage.prompt_tokens} completion={result.usage.completion_tokens}"
                f" estimated={result.usage.estimated}"
            )
            if result.tool_calls:
                lines.append("Tool Calls: " + json.dumps(json_safe(result.tool_calls)))
            lines.extend(["", "Raw Response:", result.text])
        if error is not None:
            lines.extend(["", f"Error: {error}"])
        name = self._file_name("output", role, label, attempt, ".txt")
        return self._write(self.inputs_root, name, "\n".join(lines) + "\n")

    def write_transcript(self, role: str, label: str, transcript: Mapping[str, Any]) -> Optional[Path]:
        """Persist a JSON transcript of one finished agent session."""
        if not self.enabled:
            return None
        name = self._file_name("session", role, label, 0, ".json")
        return self._write(self.sessions_root, name, json.dumps(json_safe(transcript), indent=2))


__all__ = [
    "ArtifactLogger",
    "TELEMETRY_LOGGER",
    "configure_logging",
    "emit_event",
    "json_safe",
    "slug",
]
