"""CLI commands for running the patchloop repair loop against a repository."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

import typer

from .arbiter import Gate, GateDecision
from .config import DEFAULT_CONFIG_NAME, ConfigError, PatchloopConfig, load_config, write_config
from .controller import IterationController, RunResult
from .logs import configure_logging
from .memory.store import RunMemoryStore
from .models import LLMClient, RetryPolicy, ResponsesClient, ScriptedClient
from .prompts import NO_CHANGES
from .tools.vcs import GitError, GitRepository

APP_HELP = "Autonomous test-repair loop: propose, arbitrate, apply and verify patches."

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SETUP_ERROR = 2

LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP)


def _status(message: str) -> None:
    typer.echo(message, err=True)


def _setup_error(message: str) -> typer.Exit:
    _status(f"Setup error: {message}")
    return typer.Exit(code=EXIT_SETUP_ERROR)


def _looks_remote(source: str) -> bool:
    return "://" in source or source.startswith("git@") or (source.endswith(".git") and not Path(source).is_dir())


def _open_repository(source: str, branch: Optional[str]) -> GitRepository:
    """Open a local checkout or clone ``source`` into a temporary directory."""
    if _looks_remote(source):
        destination = Path(tempfile.mkdtemp(prefix="patchloop-clone-")) / "repo"
        _status(f"Cloning {source} into {destination}.")
        repo = GitRepository.clone(source, destination)
    else:
        repo = GitRepository(Path(source))
    if branch:
        repo.checkout_branch(branch)
        _status(f"Working on branch {branch}.")
    return repo


def _resolve_config_path(config: Optional[str], repo_root: Path) -> Path:
    if config:
        return Path(config)
    return repo_root / DEFAULT_CONFIG_NAME


def _build_client(config: PatchloopConfig, *, offline: bool) -> LLMClient:
    if offline:
        _status(f"Using offline scripted client (every reply is {NO_CHANGES}).")
        return ScriptedClient(default=NO_CHANGES)
    if not os.getenv("OPENAI_API_KEY"):
        raise _setup_error("OPENAI_API_KEY is not set; export it or pass --offline.")
    retry = config.models.retry
    try:
        client = ResponsesClient(
            base_url=config.models.base_url,
            model=config.models.default,
            timeout=config.models.timeout,
            retry_policy=RetryPolicy(
                max_attempts=retry.max_attempts,
                base_delay=retry.base_delay,
                max_delay=retry.max_delay,
                jitter=retry.jitter,
            ),
        )
    except ValueError as error:
        raise _setup_error(f"Failed to initialise model client: {error}") from error
    _status(f"Using Responses API client ({config.models.default}).")
    return client


def _interactive_gate(diff: str) -> GateDecision:
    _status("Proposed patch:")
    _status(diff)
    choice = typer.prompt(
        "Apply this patch? [a]pprove / [s]kip / [r]eject",
        default="a",
        err=True,
    )
    normalized = choice.strip().lower()[:1]
    if normalized == "r":
        return GateDecision.REJECT
    if normalized == "s":
        return GateDecision.SKIP
    return GateDecision.APPROVE


def _render_result(result: RunResult) -> None:
    _status(f"Outcome: {'success' if result.success else 'failure'} ({result.stop_reason})")
    _status(f"Iterations: {len(result.iterations)}")
    for record in result.iterations:
        outcome = record.outcome.value if record.outcome is not None else "dry_run"
        line = f"- #{record.iteration}: {outcome}"
        if record.chosen_slot is not None:
            line += f" (slot {record.chosen_slot})"
        if record.error:
            line += f" :: {record.error.splitlines()[0][:160]}"
        _status(line)
    _status(f"Tokens used: {result.tokens_used} (cost £{result.cost_gbp:.4f})")
    _status(f"Tests fixed: {len(result.tests_fixed)}")
    if result.commit:
        _status(f"Commit: {result.commit[:7]}")
    if result.patch_summary:
        _status("Patch summary:")
        _status(result.patch_summary)
    if result.error:
        _status(f"Stopped: {result.error}")


@app.command()
def run(
    repo: str = typer.Option(".", "--repo", "-r", help="Repository path or clone URL."),
    branch: Optional[str] = typer.Option(None, "--branch", "-b", help="Branch to check out (created when missing)."),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        min=1,
        help="Maximum loop iterations (defaults to loop.max_loops).",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help=f"Path to the configuration file (defaults to <repo>/{DEFAULT_CONFIG_NAME}).",
    ),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging and model request/response artifacts."),
    interactive: bool = typer.Option(False, "--interactive", help="Ask before applying each selected patch."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Stop after arbitration and print the chosen diff."),
    ci: bool = typer.Option(False, "--ci", help="Write a single JSON result object to stdout."),
    worktrees: Optional[bool] = typer.Option(
        None,
        "--worktrees/--no-worktrees",
        help="Isolate each worker in its own git worktree (defaults to pool.use_worktrees).",
    ),
    offline: bool = typer.Option(False, "--offline", help="Use a scripted client that never proposes changes."),
) -> None:
    """Iterate until the repository's tests pass or a stop condition is reached."""
    configure_logging(debug=debug)

    try:
        repository = _open_repository(repo, branch)
    except GitError as error:
        raise _setup_error(str(error)) from error

    config_path = _resolve_config_path(config, repository.root)
    try:
        settings = load_config(config_path)
    except ConfigError as error:
        raise _setup_error(str(error)) from error

    client = _build_client(settings, offline=offline)

    gate: Optional[Gate] = None
    if interactive and ci:
        _status("Ignoring --interactive in CI mode.")
    elif interactive:
        gate = _interactive_gate

    try:
        controller = IterationController.from_config(
            settings,
            repository,
            client,
            gate=gate,
            debug=debug,
            dry_run=dry_run,
            use_worktrees=worktrees,
            max_loops=max_iterations,
        )
    except (GitError, OSError) as error:
        raise _setup_error(f"Failed to prepare the run: {error}") from error

    try:
        result = controller.run()
    finally:
        controller.memory.close()

    _render_result(result)
    if dry_run and result.chosen_diff:
        if ci:
            _status(result.chosen_diff)
        else:
            typer.echo(result.chosen_diff)
    elif dry_run:
        _status("Dry run: no candidate diff was selected.")
    if ci:
        typer.echo(json.dumps(result.to_ci_payload(), sort_keys=False))

    raise typer.Exit(code=EXIT_SUCCESS if result.success else EXIT_FAILURE)


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file to create.",
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing configuration file."),
) -> None:
    """Write the default configuration template."""
    config_path = Path(config)
    if config_path.exists() and not force:
        _status(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=EXIT_FAILURE)
    write_config(config_path)
    _status(f"Created configuration at {config_path}.")


@app.command()
def memory(
    repo: str = typer.Option(".", "--repo", "-r", help="Repository path."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the configuration file."),
    focus: Optional[List[str]] = typer.Option(
        None,
        "--focus",
        help="Test or file names to list first (repeatable).",
    ),
) -> None:
    """Print the run-memory summary recorded for a repository."""
    root = Path(repo).resolve()
    try:
        settings = load_config(_resolve_config_path(config, root))
    except ConfigError as error:
        raise _setup_error(str(error)) from error
    db_path = settings.resolve_path(root, settings.paths.db_path)
    if not db_path.exists():
        _status("No run memory recorded yet.")
        return
    with RunMemoryStore(db_path) as store:
        _status(store.get_memory_summary(focus or ()))


if __name__ == "__main__":  # pragma: no cover
    app()
