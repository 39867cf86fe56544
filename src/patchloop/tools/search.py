"""Repository text search and bounded file reads used by agent tools."""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Protocol, Sequence

from .vcs import GitRepository

_MAX_FILE_BYTES = 1_000_000


class SemanticSearch(Protocol):
    """Embedding-backed code search supplied by an external collaborator."""

    def search(self, query: str, limit: int) -> Sequence[str]:  # pragma: no cover - protocol
        ...


@dataclass(frozen=True, slots=True)
class SearchHit:
    path: str
    line: int
    text: str

    def render(self) -> str:
        return f"{self.path}:{self.line}: {self.text}"


class RepositorySearch:
    """Regex search and windowed reads over a repository's tracked files."""

    def __init__(self, repo: GitRepository, *, max_hits: int = 50, max_lines: int = 200) -> None:
        self.repo = repo
        self.max_hits = max_hits
        self.max_lines = max_lines

    def _candidate_files(self, glob: str | None) -> List[Path]:
        paths = self.repo.list_tracked_paths(include_untracked=True)
        if glob:
            paths = [path for path in paths if fnmatch.fnmatch(path.as_posix(), glob)]
        return paths

    def search(self, pattern: str, *, glob: str | None = None) -> List[SearchHit]:
        """Return up to ``max_hits`` matching lines; invalid regexes fall back to literal search."""
        try:
            regex = re.compile(pattern)
        except re.error:
            regex = re.compile(re.escape(pattern))
        hits: list[SearchHit] = []
        for relative in self._candidate_files(glob):
            text = self._read_text(self.repo.root / relative)
            if text is None:
                continue
            for number, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    hits.append(SearchHit(path=relative.as_posix(), line=number, text=line.strip()[:200]))
                    if len(hits) >= self.max_hits:
                        return hits
        return hits

    def resolve(self, path: str) -> Path:
        """Resolve ``path`` inside the repository root or raise ``ValueError``."""
        root = self.repo.root
        candidate = (root / path).resolve()
        try:
            candidate.relative_to(root)
        except ValueError:
            raise ValueError(f"Path escapes the repository: {path}") from None
        if ".git" in candidate.relative_to(root).parts:
            raise ValueError(f"Path targets git metadata: {path}")
        return candidate

    def read(self, path: str, *, start_line: int = 1, max_lines: int | None = None) -> str:
        """Return a numbered window of ``path``."""
        target = self.resolve(path)
        if not target.is_file():
            raise FileNotFoundError(path)
        text = self._read_text(target)
        if text is None:
            raise ValueError(f"Not a readable text file: {path}")
        lines = text.splitlines()
        limit = min(max_lines or self.max_lines, self.max_lines)
        start = max(start_line, 1)
        window = lines[start - 1 : start - 1 + limit]
        body = "\n".join(f"{start + offset:>5}  {line}" for offset, line in enumerate(window))
        end = start + len(window) - 1
        footer = f"\n[lines {start}-{end} of {len(lines)}]" if window else f"\n[no lines from {start}; file has {len(lines)}]"
        return body + footer

    @staticmethod
    def _read_text(path: Path) -> str | None:
        try:
            if path.stat().st_size > _MAX_FILE_BYTES:
                return None
            data = path.read_bytes()
        except OSError:
            return None
        if b"\0" in data[:4096]:
            return None
        return data.decode("utf-8", errors="replace")


__all__ = ["RepositorySearch", "SearchHit", "SemanticSearch"]
