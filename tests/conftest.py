from __future__ import annotations

import os
import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from patchloop.tools.vcs import GitRepository  # noqa: E402

CALCULATOR_PATH = "src/tiny_app/calculator.py"

# Repairs the subtraction bug planted in the broken fixture.
FIX_DIFF = "\n".join(
    [
        f"diff --git a/{CALCULATOR_PATH} b/{CALCULATOR_PATH}",
        f"--- a/{CALCULATOR_PATH}",
        f"+++ b/{CALCULATOR_PATH}",
        "@@ -1,8 +1,8 @@",
        " from __future__ import annotations",
        " ",
        " ",
        " def add(left: int, right: int) -> int:",
        "-    return left - right",
        "+    return left + right",
        " ",
        " ",
        " def multiply(left: int, right: int) -> int:",
        "",
    ]
)


def _calculator_source(*, broken: bool) -> str:
    operator = "-" if broken else "+"
    return textwrap.dedent(
        f"""
        from __future__ import annotations


        def add(left: int, right: int) -> int:
            return left {operator} right


        def multiply(left: int, right: int) -> int:
            return left * right
        """
    ).lstrip()


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic repository under test."""

    root: Path
    repo: GitRepository

    @property
    def calculator(self) -> Path:
        return self.root / CALCULATOR_PATH

    def run_cli(self, *args: str, extra_env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
        """Invoke ``python -m patchloop.cli`` with the provided arguments."""

        env = os.environ.copy()
        pythonpath = str(SRC)
        if env.get("PYTHONPATH"):
            pythonpath = os.pathsep.join([pythonpath, env["PYTHONPATH"]])
        env["PYTHONPATH"] = pythonpath
        env.pop("OPENAI_API_KEY", None)
        if extra_env:
            env.update(extra_env)

        command = [sys.executable, "-m", "patchloop.cli", *args]
        return subprocess.run(  # noqa: S603 - command constructed from known values
            command,
            cwd=self.root,
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )


def _build_repo(repo_root: Path, *, broken: bool) -> TinyRepo:
    repo_root.mkdir(parents=True)

    def run_git(*cmd: str) -> None:
        subprocess.run(
            ["git", *cmd],
            cwd=repo_root,
            check=True,
            capture_output=True,
            text=True,
        )

    run_git("init")
    run_git("config", "user.email", "agent@example.com")
    run_git("config", "user.name", "Patchloop Tests")

    (repo_root / ".gitignore").write_text("__pycache__/\n*.pyc\n.pytest_cache/\n", encoding="utf-8")

    src_dir = repo_root / "src" / "tiny_app"
    src_dir.mkdir(parents=True)
    (src_dir / "__init__.py").write_text(
        textwrap.dedent(
            """
            \"\"\"Tiny app package used as a repair target.\"\"\"

            from .calculator import add, multiply

            __all__ = ["add", "multiply"]
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (src_dir / "calculator.py").write_text(_calculator_source(broken=broken), encoding="utf-8")

    tests_dir = repo_root / "tests"
    tests_dir.mkdir()
    (tests_dir / "conftest.py").write_text(
        textwrap.dedent(
            """
            from __future__ import annotations

            import sys
            from pathlib import Path

            ROOT = Path(__file__).resolve().parents[1]
            SRC = ROOT / "src"

            if str(SRC) not in sys.path:
                sys.path.insert(0, str(SRC))
            """
        ).lstrip(),
        encoding="utf-8",
    )
    (tests_dir / "test_calculator.py").write_text(
        textwrap.dedent(
            """
            from tiny_app import add, multiply


            def test_add_returns_sum() -> None:
                assert add(2, 3) == 5


            def test_multiply_returns_product() -> None:
                assert multiply(2, 3) == 6
            """
        ).lstrip(),
        encoding="utf-8",
    )

    (repo_root / "pyproject.toml").write_text(
        textwrap.dedent(
            """
            [build-system]
            requires = ["setuptools"]
            build-backend = "setuptools.build_meta"

            [project]
            name = "tiny-app"
            version = "0.0.1"
            description = "Fixture package for patchloop tests."
            dependencies = ["requests>=2"]
            """
        ).lstrip(),
        encoding="utf-8",
    )

    run_git("add", ".")
    run_git("commit", "-m", "Initial tiny repo state")

    return TinyRepo(root=repo_root, repo=GitRepository(repo_root))


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """A tiny git repository whose test suite passes."""

    return _build_repo(tmp_path / "tiny-repo", broken=False)


@pytest.fixture()
def broken_repo(tmp_path: Path) -> TinyRepo:
    """The same repository with ``add`` subtracting, so one test fails."""

    return _build_repo(tmp_path / "broken-repo", broken=True)
