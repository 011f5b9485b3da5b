import tomllib
from pathlib import Path

import pytest

from conductor import __version__
from conductor.config import ConductorConfig, ConfigError, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "conductor.toml"
    config = ConductorConfig.default()
    config.engine.tasks_dir = "board"
    config.engine.iteration_timeout_seconds = 90.5
    config.workflow.stages = ["plan:planner", "scout:scout"]
    config.approval.max_rounds = 4
    config.team.roster = ["builder", "tester"]
    config.gates["security"].max_cycles = 5
    config.gates["ux"].blocking = False
    config.executors.default_command = "agent-run {role}"
    config.executors.commands = {"committer": "git-commit-role"}
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.engine.tasks_dir == "board"
    assert loaded.engine.iteration_timeout_seconds == 90.5
    assert loaded.workflow.stage_pairs() == [("plan", "planner"), ("scout", "scout")]
    assert loaded.approval.max_rounds == 4
    assert loaded.team.roster == ["builder", "tester"]
    assert loaded.gates["security"].max_cycles == 5
    assert loaded.gates["ux"].blocking is False
    assert loaded.gates["build"].blocking_severities == ["critical", "high", "medium"]
    assert loaded.executors.command_for("tester") == "agent-run {role}"
    assert loaded.executors.command_for("committer") == "git-commit-role"
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config.approval.max_rounds == 3
    assert config.gates["build"].max_cycles == 3
    assert config.gates["build"].reviewer == "tester"
    assert config.team.roster == ["builder", "tester", "security-auditor", "ux-reviewer"]


def test_toml_dump_contains_gate_tables() -> None:
    rendered = dumps_toml(ConductorConfig.default())

    assert "[engine]" in rendered
    assert "iteration_timeout_seconds" in rendered
    assert "[gates.build]" in rendered
    assert "[gates.performance]" in rendered
    assert "blocking_severities" in rendered
    assert "[executors.commands]" in rendered
    assert "[logging]" in rendered


def test_unknown_gate_kind_is_rejected() -> None:
    with pytest.raises(ConfigError, match="Unknown gate kind"):
        ConductorConfig.from_dict({"gates": {"style": {"reviewer": "linter"}}})


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ConfigError):
        ConductorConfig.from_dict({"approval": {"max_rounds": 0}})
    with pytest.raises(ConfigError):
        ConductorConfig.from_dict({"workflow": {"stages": ["plan"]}})
    with pytest.raises(ConfigError):
        ConductorConfig.from_dict({"engine": {"unknown_key": 1}})
    with pytest.raises(ConfigError):
        ConductorConfig.from_dict({"gates": {"build": {"blocking_severities": ["urgent"]}}})
    with pytest.raises(ConfigError, match="approval.max_rounds"):
        ConductorConfig.from_dict({"approval": {"max_rounds": "3"}})
    with pytest.raises(ConfigError, match="gates.build.max_cycles"):
        ConductorConfig.from_dict({"gates": {"build": {"max_cycles": "2"}}})
    with pytest.raises(ConfigError, match="must be a number"):
        ConductorConfig.from_dict({"engine": {"iteration_timeout_seconds": "fast"}})
    with pytest.raises(ConfigError, match="blocking"):
        ConductorConfig.from_dict({"gates": {"ux": {"blocking": "no"}}})
    with pytest.raises(ConfigError):
        ConductorConfig.from_dict({"gates": {"ux": "strict"}})


def test_security_gate_cannot_be_relaxed() -> None:
    with pytest.raises(ConfigError, match="gates.security"):
        ConductorConfig.from_dict({"gates": {"security": {"blocking": False}}})
    with pytest.raises(ConfigError, match="gates.security"):
        ConductorConfig.from_dict({"gates": {"security": {"blocking_severities": ["critical"]}}})

    config = ConductorConfig.from_dict(
        {"gates": {"security": {"blocking_severities": ["critical", "high", "medium"]}}}
    )
    assert config.gates["security"].blocking_severities == ["critical", "high", "medium"]


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
