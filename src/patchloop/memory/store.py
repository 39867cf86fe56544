"""SQLite persistence for run state and failure heuristics."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import sqlite3
import tempfile
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator, List, Optional, Sequence

from .schema import HeuristicKind, HeuristicRecord, RunState, utc_now

if TYPE_CHECKING:
    from ..config import PatchloopConfig

DEFAULT_DB_PATH = Path(".patchloop/memory.sqlite")
LOGGER = logging.getLogger(__name__)

# A test or file becomes a recurring hotspot once it has failed this often.
RECURRING_THRESHOLD = 2


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    if data is None:
        serialisable = default
    elif isinstance(data, (set, tuple)):
        serialisable = list(data)
    else:
        serialisable = data
    return json.dumps(serialisable)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class RunMemoryStore:
    """Run state and failure heuristics kept between iterations and runs."""

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "patchloop" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists():
            if resolved.exists() and os.access(resolved, os.R_OK):
                try:
                    shutil.copy2(resolved, fallback)
                except OSError:
                    fallback.touch(exist_ok=True)
            else:
                fallback.touch(exist_ok=True)
        if not cls._is_writable(fallback):
            raise OSError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.resolve():
            LOGGER.warning(
                "Database path %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()

    @classmethod
    def from_config(cls, config: "PatchloopConfig", repo_root: Path) -> "RunMemoryStore":
        return cls(config.resolve_path(repo_root, config.paths.db_path))

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "RunMemoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.db_path))
        connection.row_factory = sqlite3.Row
        return connection

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("RunMemoryStore is closed")
        return self._conn

    def _bootstrap(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS run_state (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                iteration INTEGER NOT NULL,
                failures TEXT NOT NULL,
                recent_files TEXT NOT NULL,
                diff_summary TEXT NOT NULL,
                build_ok INTEGER NOT NULL,
                test_ok INTEGER NOT NULL,
                outcome TEXT,
                hypotheses TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS heuristics (
                kind TEXT NOT NULL,
                key TEXT NOT NULL,
                failure_count INTEGER NOT NULL DEFAULT 0,
                last_seen TEXT NOT NULL,
                PRIMARY KEY (kind, key)
            );
            CREATE INDEX IF NOT EXISTS idx_heuristics_count
                ON heuristics(kind, failure_count DESC);
            """
        )
        self.conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self.conn
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

    # Run state -----------------------------------------------------------------------
    def save_run_state(self, state: RunState) -> None:
        with self._transaction():
            self.conn.execute(
                """
                INSERT INTO run_state (
                    iteration, failures, recent_files, diff_summary,
                    build_ok, test_ok, outcome, hypotheses, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    state.iteration,
                    _dump_json(state.failures, default=[]),
                    _dump_json(state.recent_files, default=[]),
                    state.diff_summary,
                    int(state.build_ok),
                    int(state.test_ok),
                    state.outcome,
                    _dump_json(state.hypotheses_attempted, default=[]),
                    _as_iso(state.created_at),
                ),
            )

    def read_run_state(self) -> Optional[RunState]:
        """Return the most recently saved run state, if any."""
        row = self.conn.execute("SELECT * FROM run_state ORDER BY id DESC LIMIT 1").fetchone()
        if not row:
            return None
        return self._row_to_state(row)

    def list_run_states(self, limit: Optional[int] = None) -> List[RunState]:
        query = "SELECT * FROM run_state ORDER BY id DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        return [self._row_to_state(row) for row in self.conn.execute(query, params).fetchall()]

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> RunState:
        return RunState(
            iteration=row["iteration"],
            failures=_load_json(row["failures"], default=[]),
            recent_files=_load_json(row["recent_files"], default=[]),
            diff_summary=row["diff_summary"],
            build_ok=bool(row["build_ok"]),
            test_ok=bool(row["test_ok"]),
            outcome=row["outcome"],
            hypotheses_attempted=_load_json(row["hypotheses"], default=[]),
            created_at=_from_iso(row["created_at"]),
        )

    # Heuristics ----------------------------------------------------------------------
    def update_heuristics(self, failed_files: Sequence[str], failed_tests: Sequence[str]) -> None:
        """Bump the failure counters of every listed file and test."""
        now = _as_iso(utc_now())
        entries = [(HeuristicKind.FILE.value, key) for key in dict.fromkeys(failed_files) if key]
        entries += [(HeuristicKind.TEST.value, key) for key in dict.fromkeys(failed_tests) if key]
        if not entries:
            return
        with self._transaction():
            self.conn.executemany(
                """
                INSERT INTO heuristics (kind, key, failure_count, last_seen)
                VALUES (?, ?, 1, ?)
                ON CONFLICT(kind, key) DO UPDATE SET
                    failure_count = heuristics.failure_count + 1,
                    last_seen = excluded.last_seen
                """,
                [(kind, key, now) for kind, key in entries],
            )

    def heuristics(self, kind: HeuristicKind, limit: int = 10) -> List[HeuristicRecord]:
        rows = self.conn.execute(
            """
            SELECT * FROM heuristics WHERE kind = ?
            ORDER BY failure_count DESC, last_seen DESC, key ASC
            LIMIT ?
            """,
            (HeuristicKind(kind).value, limit),
        ).fetchall()
        return [
            HeuristicRecord(
                kind=row["kind"],
                key=row["key"],
                failure_count=row["failure_count"],
                last_seen=_from_iso(row["last_seen"]),
            )
            for row in rows
        ]

    def _counts(self, kind: HeuristicKind, keys: Sequence[str]) -> dict[str, int]:
        if not keys:
            return {}
        placeholders = ", ".join("?" for _ in keys)
        rows = self.conn.execute(
            f"SELECT key, failure_count FROM heuristics WHERE kind = ? AND key IN ({placeholders})",
            (kind.value, *keys),
        ).fetchall()
        return {row["key"]: row["failure_count"] for row in rows}

    def get_suggested_fix(self, failed_tests: Sequence[str], failed_files: Sequence[str]) -> Optional[str]:
        """Name recurring failing tests and hotspot files, or ``None`` when nothing recurs."""
        tests = self._counts(HeuristicKind.TEST, list(dict.fromkeys(failed_tests)))
        files = self._counts(HeuristicKind.FILE, list(dict.fromkeys(failed_files)))
        recurring_tests = sorted(
            ((key, count) for key, count in tests.items() if count >= RECURRING_THRESHOLD),
            key=lambda item: (-item[1], item[0]),
        )
        hotspots = sorted(
            ((key, count) for key, count in files.items() if count >= RECURRING_THRESHOLD),
            key=lambda item: (-item[1], item[0]),
        )
        parts: list[str] = []
        if recurring_tests:
            names = ", ".join(f"{key} ({count}x)" for key, count in recurring_tests[:3])
            parts.append(f"recurring failures in {names}; try a different approach than earlier attempts")
        if hotspots:
            names = ", ".join(f"{key} ({count}x)" for key, count in hotspots[:3])
            parts.append(f"inspect hotspot files {names}")
        if not parts:
            return None
        return "Memory: " + "; ".join(parts)

    def get_memory_summary(self, focus: Sequence[str] = ()) -> str:
        """Render a short text block describing past failures for prompts and the CLI."""
        lines: list[str] = []
        state = self.read_run_state()
        if state is not None:
            status = "build ok" if state.build_ok else "build failed"
            status += ", tests ok" if state.test_ok else ", tests failing"
            lines.append(f"Last iteration {state.iteration}: {status} (outcome: {state.outcome or 'unknown'})")
            if state.failures:
                lines.append("Last failures: " + ", ".join(state.failures[:10]))
            if state.diff_summary:
                lines.append("Last diff: " + state.diff_summary.strip().splitlines()[-1])
        focus_set = {item for item in focus if item}
        for kind, title in ((HeuristicKind.TEST, "Frequently failing tests"), (HeuristicKind.FILE, "Hotspot files")):
            records = self.heuristics(kind, limit=20)
            if focus_set:
                preferred = [record for record in records if record.key in focus_set]
                records = preferred + [record for record in records if record.key not in focus_set]
            records = records[:5]
            if records:
                lines.append(title + ": " + ", ".join(f"{record.key} ({record.failure_count}x)" for record in records))
        if not lines:
            return "No run memory recorded yet."
        return "Repository memory:\n" + "\n".join(f"- {line}" for line in lines)


__all__ = ["DEFAULT_DB_PATH", "RECURRING_THRESHOLD", "RunMemoryStore"]
