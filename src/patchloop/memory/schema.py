"""Typed records persisted by the run memory store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class HeuristicKind(str, Enum):
    """What a failure heuristic counts."""

    FILE = "file"
    TEST = "test"


class RunState(RecordModel):
    """Snapshot written at the end of every iteration."""

    iteration: int = 0
    failures: List[str] = Field(default_factory=list)
    recent_files: List[str] = Field(default_factory=list)
    diff_summary: str = ""
    build_ok: bool = True
    test_ok: bool = True
    outcome: Optional[str] = None
    hypotheses_attempted: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class HeuristicRecord(RecordModel):
    """Failure counter for one file or test."""

    kind: HeuristicKind
    key: str
    failure_count: int = 0
    last_seen: datetime = Field(default_factory=utc_now)


__all__ = ["HeuristicKind", "HeuristicRecord", "RecordModel", "RunState", "utc_now"]
