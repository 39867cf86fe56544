"""Typed configuration for patchloop runs, loaded from ``patchloop.yaml``."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

DEFAULT_CONFIG_NAME = "patchloop.yaml"


class ConfigError(ValueError):
    """Raised when the configuration file cannot be read or validated."""


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ProjectConfig(_Section):
    name: str = ""


class RetryConfig(_Section):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    jitter: float = Field(default=0.25, ge=0)


class ModelsConfig(_Section):
    default: str = "gpt-5-mini"
    judge: Optional[str] = None
    reviewer: Optional[str] = None
    base_url: str = "https://api.openai.com/v1/responses"
    timeout: float = Field(default=120.0, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)

    def for_role(self, role: str) -> str:
        override = {"judge": self.judge, "reviewer": self.reviewer}.get(role)
        return override or self.default


class BudgetConfig(_Section):
    max_total_tokens: Optional[int] = Field(default=400_000, ge=0)
    max_cost_gbp: Optional[float] = Field(default=5.0, ge=0)
    prompt_price_per_1k: float = Field(default=0.0002, ge=0)
    completion_price_per_1k: float = Field(default=0.0016, ge=0)


class QuotaConfig(_Section):
    searches: int = Field(default=10, ge=0)
    file_opens: int = Field(default=20, ge=0)
    writes: int = Field(default=10, ge=0)
    test_runs: int = Field(default=3, ge=0)
    coverage_runs: int = Field(default=2, ge=0)


class AgentConfig(_Section):
    iteration_cap: int = Field(default=20, ge=1)
    max_output_tokens: int = Field(default=4000, ge=1)
    transport: Literal["json", "native"] = "json"
    prompt_max_chars: int = Field(default=12000, ge=200)
    file_read_max_lines: int = Field(default=200, ge=1)
    search_max_hits: int = Field(default=50, ge=1)
    quotas: QuotaConfig = Field(default_factory=QuotaConfig)


class PoolConfig(_Section):
    hypotheses: int = Field(default=3, ge=1)
    worker_timeout: float = Field(default=300.0, gt=0)
    use_worktrees: bool = False


class LoopConfig(_Section):
    max_loops: int = Field(default=10, ge=1)
    max_stagnant_iterations: int = Field(default=5, ge=0)  # 0 never stops on an unchanged tree
    bug_hunt_every: int = Field(default=5, ge=0)
    stability_every: int = Field(default=0, ge=0)
    build_timeout: float = Field(default=600.0, gt=0)
    test_timeout: float = Field(default=900.0, gt=0)


class WritePolicyConfig(_Section):
    allowed_globs: List[str] = Field(default_factory=lambda: ["tests/**", "test/**", "**/tests/**"])
    allowed_suffixes: List[str] = Field(default_factory=lambda: [".py", ".cs", ".js", ".ts", ".ps1"])


class ToolchainConfig(_Section):
    kind: Optional[Literal["python", "dotnet", "node", "powershell"]] = None
    build: Optional[str] = None
    test: Optional[str] = None
    coverage: Optional[str] = None
    list_tests: Optional[str] = None


class PathsConfig(_Section):
    data: str = ".patchloop"
    db_path: str = ".patchloop/memory.sqlite"
    logs: str = ".patchloop/logs"


class PatchloopConfig(_Section):
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    write_policy: WritePolicyConfig = Field(default_factory=WritePolicyConfig)
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    permissions: Dict[str, List[str]] = Field(default_factory=dict)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @field_validator("permissions")
    @classmethod
    def _known_roles(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        unknown = sorted(set(value) - {"builder", "reviewer", "judge"})
        if unknown:
            raise ValueError(f"unknown role(s) in permissions: {', '.join(unknown)}")
        return value

    def resolve_path(self, repo_root: Path, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = repo_root / path
        return path


DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = PatchloopConfig().model_dump(mode="json", exclude={"permissions"})


def default_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Dict[str, Any] | None = None) -> Path:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data or default_config_template(), handle, sort_keys=False)
    return config_path


def load_config(config_path: Path | None) -> PatchloopConfig:
    """Load YAML configuration; a missing file yields the defaults."""
    if config_path is None or not config_path.exists():
        return PatchloopConfig()

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    try:
        return PatchloopConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration in {config_path}:\n{error}") from error


__all__ = [
    "AgentConfig",
    "BudgetConfig",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "LoopConfig",
    "ModelsConfig",
    "PatchloopConfig",
    "PathsConfig",
    "PoolConfig",
    "QuotaConfig",
    "RetryConfig",
    "ToolchainConfig",
    "WritePolicyConfig",
    "default_config_template",
    "load_config",
    "write_config",
]
