from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from patchloop.config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    PatchloopConfig,
    default_config_template,
    load_config,
    write_config,
)


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / DEFAULT_CONFIG_NAME)

    assert config == PatchloopConfig()
    assert config.loop.max_loops == 10
    assert config.pool.hypotheses == 3
    assert config.agent.transport == "json"
    assert load_config(None) == PatchloopConfig()


def test_empty_file_yields_defaults(tmp_path: Path) -> None:
    path = tmp_path / DEFAULT_CONFIG_NAME
    path.write_text("", encoding="utf-8")

    assert load_config(path) == PatchloopConfig()


def test_partial_override_keeps_other_defaults(tmp_path: Path) -> None:
    path = tmp_path / DEFAULT_CONFIG_NAME
    path.write_text("loop:\n  max_loops: 3\nmodels:\n  judge: gpt-judge\n", encoding="utf-8")

    config = load_config(path)

    assert config.loop.max_loops == 3
    assert config.loop.max_stagnant_iterations == 5
    assert config.models.for_role("judge") == "gpt-judge"
    assert config.models.for_role("reviewer") == config.models.default
    assert config.models.for_role("builder") == config.models.default


def test_zero_stagnation_limit_is_accepted(tmp_path: Path) -> None:
    path = tmp_path / DEFAULT_CONFIG_NAME
    path.write_text("loop:\n  max_stagnant_iterations: 0\n", encoding="utf-8")

    assert load_config(path).loop.max_stagnant_iterations == 0


@pytest.mark.parametrize(
    "content, fragment",
    [
        ("- a\n- b\n", "mapping"),
        ("loop: [unclosed\n", "Failed to parse"),
        ("unknown_section: 1\n", "Invalid configuration"),
        ("loop:\n  max_loops: 0\n", "Invalid configuration"),
        ("agent:\n  transport: xml\n", "Invalid configuration"),
    ],
)
def test_invalid_files_raise_config_error(tmp_path: Path, content: str, fragment: str) -> None:
    path = tmp_path / DEFAULT_CONFIG_NAME
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError) as excinfo:
        load_config(path)

    assert fragment in str(excinfo.value)


def test_permissions_reject_unknown_roles(tmp_path: Path) -> None:
    path = tmp_path / DEFAULT_CONFIG_NAME
    path.write_text("permissions:\n  janitor: [read_file]\n", encoding="utf-8")

    with pytest.raises(ConfigError) as excinfo:
        load_config(path)

    assert "janitor" in str(excinfo.value)


def test_permissions_accept_known_roles() -> None:
    config = PatchloopConfig.model_validate({"permissions": {"builder": ["read_file"]}})

    assert config.permissions == {"builder": ["read_file"]}


def test_write_config_round_trips_defaults(tmp_path: Path) -> None:
    path = write_config(tmp_path / "nested" / DEFAULT_CONFIG_NAME)

    data = yaml.safe_load(path.read_text(encoding="utf-8"))

    assert list(data)[0] == "project"
    assert "permissions" not in data
    assert load_config(path) == PatchloopConfig()


def test_default_template_is_a_copy() -> None:
    template = default_config_template()
    template["loop"]["max_loops"] = 99

    assert default_config_template()["loop"]["max_loops"] == 10


def test_resolve_path_keeps_absolute_paths(tmp_path: Path) -> None:
    config = PatchloopConfig()

    assert config.resolve_path(tmp_path, ".patchloop/logs") == tmp_path / ".patchloop" / "logs"
    assert config.resolve_path(tmp_path, str(tmp_path / "abs")) == tmp_path / "abs"
