"""Persistent run memory."""

from .schema import HeuristicKind, HeuristicRecord, RunState
from .store import RunMemoryStore

__all__ = ["HeuristicKind", "HeuristicRecord", "RunMemoryStore", "RunState"]
