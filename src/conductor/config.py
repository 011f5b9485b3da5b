from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.models import GATE_ORDER, SEVERITIES


class ConfigError(ValueError):
    """Raised when conductor.toml contains invalid values."""


@dataclass(slots=True)
class EngineConfig:
    tasks_dir: str = ".tasks"
    iteration_timeout_seconds: float = 1800.0
    executor_timeout_seconds: float = 600.0


@dataclass(slots=True)
class WorkflowConfig:
    stages: list[str] = field(
        default_factory=lambda: ["requirements:analyst", "plan:planner", "scout:scout"]
    )

    def stage_pairs(self) -> list[tuple[str, str]]:
        pairs: list[tuple[str, str]] = []
        for raw in self.stages:
            name, sep, role = str(raw).partition(":")
            if not sep or not name.strip() or not role.strip():
                raise ConfigError(f"Stage entries must look like 'name:role', got {raw!r}.")
            pairs.append((name.strip(), role.strip()))
        return pairs


@dataclass(slots=True)
class ApprovalConfig:
    stage: str = "plan"
    critic_role: str = "critic"
    lead_role: str = "lead"
    max_rounds: int = 3


@dataclass(slots=True)
class TeamConfig:
    roster: list[str] = field(
        default_factory=lambda: ["builder", "tester", "security-auditor", "ux-reviewer"]
    )
    builder_role: str = "builder"


@dataclass(slots=True)
class GateConfig:
    kind: str
    reviewer: str
    max_cycles: int = 2
    blocking: bool = True
    blocking_severities: list[str] = field(default_factory=lambda: ["critical", "high"])


def _default_gates() -> dict[str, GateConfig]:
    return {
        "build": GateConfig(
            kind="build",
            reviewer="tester",
            max_cycles=3,
            blocking_severities=["critical", "high", "medium"],
        ),
        "security": GateConfig(kind="security", reviewer="security-auditor", max_cycles=2),
        "ux": GateConfig(kind="ux", reviewer="ux-reviewer", max_cycles=2),
        "quality": GateConfig(kind="quality", reviewer="quality-reviewer", max_cycles=2),
        "performance": GateConfig(
            kind="performance", reviewer="performance-reviewer", max_cycles=2
        ),
    }


@dataclass(slots=True)
class FinisherConfig:
    visual_role: str = "visual-reviewer"
    commit_role: str = "committer"
    docs_role: str = "documenter"
    observer_role: str = "observer"


@dataclass(slots=True)
class ExecutorsConfig:
    default_command: str = ""
    commands: dict[str, str] = field(default_factory=dict)

    def command_for(self, role: str) -> str:
        return self.commands.get(role, self.default_command).strip()


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


def _require_str(name: str, value: Any) -> None:
    if not isinstance(value, str):
        raise ConfigError(f"{name} must be a string, got {value!r}.")


def _require_int(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}.")


def _require_number(name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{name} must be a number, got {value!r}.")
    if value <= 0:
        raise ConfigError(f"{name} must be positive.")


def _require_str_list(name: str, value: Any) -> None:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{name} must be a list of strings.")


@dataclass(slots=True)
class ConductorConfig:
    engine: EngineConfig = field(default_factory=EngineConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    approval: ApprovalConfig = field(default_factory=ApprovalConfig)
    team: TeamConfig = field(default_factory=TeamConfig)
    gates: dict[str, GateConfig] = field(default_factory=_default_gates)
    finisher: FinisherConfig = field(default_factory=FinisherConfig)
    executors: ExecutorsConfig = field(default_factory=ExecutorsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConductorConfig:
        try:
            gates = _default_gates()
            for kind, raw_gate in dict(data.get("gates", {})).items():
                if kind not in GATE_ORDER:
                    raise ConfigError(
                        f"Unknown gate kind '{kind}'. Expected one of: {', '.join(GATE_ORDER)}"
                    )
                merged = {
                    "kind": kind,
                    "reviewer": gates[kind].reviewer,
                    "max_cycles": gates[kind].max_cycles,
                    "blocking": gates[kind].blocking,
                    "blocking_severities": list(gates[kind].blocking_severities),
                }
                merged.update(raw_gate)
                merged["kind"] = kind
                gates[kind] = GateConfig(**merged)
            config = cls(
                engine=EngineConfig(**data.get("engine", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
                approval=ApprovalConfig(**data.get("approval", {})),
                team=TeamConfig(**data.get("team", {})),
                gates=gates,
                finisher=FinisherConfig(**data.get("finisher", {})),
                executors=ExecutorsConfig(**data.get("executors", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
            config.validate()
        except ConfigError:
            raise
        except (TypeError, ValueError, AttributeError) as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        return config

    def validate(self) -> None:
        _require_number("engine.iteration_timeout_seconds", self.engine.iteration_timeout_seconds)
        _require_number("engine.executor_timeout_seconds", self.engine.executor_timeout_seconds)
        _require_str("engine.tasks_dir", self.engine.tasks_dir)
        _require_str_list("workflow.stages", self.workflow.stages)
        self.workflow.stage_pairs()
        for name in ("stage", "critic_role", "lead_role"):
            _require_str(f"approval.{name}", getattr(self.approval, name))
        _require_int("approval.max_rounds", self.approval.max_rounds)
        if self.approval.max_rounds < 1:
            raise ConfigError("approval.max_rounds must be at least 1.")
        _require_str_list("team.roster", self.team.roster)
        _require_str("team.builder_role", self.team.builder_role)
        for gate in self.gates.values():
            prefix = f"gates.{gate.kind}"
            _require_str(f"{prefix}.reviewer", gate.reviewer)
            _require_int(f"{prefix}.max_cycles", gate.max_cycles)
            if gate.max_cycles < 0:
                raise ConfigError(f"{prefix}.max_cycles must not be negative.")
            if not isinstance(gate.blocking, bool):
                raise ConfigError(f"{prefix}.blocking must be true or false.")
            _require_str_list(f"{prefix}.blocking_severities", gate.blocking_severities)
            unknown = [item for item in gate.blocking_severities if item not in SEVERITIES]
            if unknown:
                raise ConfigError(
                    f"{prefix}.blocking_severities has unknown values: " + ", ".join(unknown)
                )
        security = self.gates.get("security")
        if security is not None and (
            not security.blocking
            or not {"critical", "high"} <= set(security.blocking_severities)
        ):
            raise ConfigError(
                "gates.security must stay blocking for critical and high findings."
            )
        for name in ("visual_role", "commit_role", "docs_role", "observer_role"):
            _require_str(f"finisher.{name}", getattr(self.finisher, name))
        _require_str("executors.default_command", self.executors.default_command)
        if not isinstance(self.executors.commands, dict) or not all(
            isinstance(value, str) for value in self.executors.commands.values()
        ):
            raise ConfigError("executors.commands must map role names to command strings.")
        _require_str("logging.level", self.logging.level)

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine": {
                "tasks_dir": self.engine.tasks_dir,
                "iteration_timeout_seconds": self.engine.iteration_timeout_seconds,
                "executor_timeout_seconds": self.engine.executor_timeout_seconds,
            },
            "workflow": {
                "stages": list(self.workflow.stages),
            },
            "approval": {
                "stage": self.approval.stage,
                "critic_role": self.approval.critic_role,
                "lead_role": self.approval.lead_role,
                "max_rounds": self.approval.max_rounds,
            },
            "team": {
                "roster": list(self.team.roster),
                "builder_role": self.team.builder_role,
            },
            "gates": {
                kind: {
                    "reviewer": gate.reviewer,
                    "max_cycles": gate.max_cycles,
                    "blocking": gate.blocking,
                    "blocking_severities": list(gate.blocking_severities),
                }
                for kind, gate in self.gates.items()
            },
            "finisher": {
                "visual_role": self.finisher.visual_role,
                "commit_role": self.finisher.commit_role,
                "docs_role": self.finisher.docs_role,
                "observer_role": self.finisher.observer_role,
            },
            "executors": {
                "default_command": self.executors.default_command,
                "commands": dict(self.executors.commands),
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key and all(char.isalnum() or char in "-_" for char in key):
        return key
    return json.dumps(key, ensure_ascii=False)


def _render_table(lines: list[str], header: str, table: dict[str, Any]) -> None:
    scalars = {key: value for key, value in table.items() if not isinstance(value, dict)}
    nested = {key: value for key, value in table.items() if isinstance(value, dict)}
    if scalars or not nested:
        lines.append(f"[{header}]")
        for key, value in scalars.items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    for key, value in nested.items():
        _render_table(lines, f"{header}.{_toml_key(key)}", value)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "engine",
        "workflow",
        "approval",
        "team",
        "gates",
        "finisher",
        "executors",
        "logging",
    ]
    for section in section_order:
        _render_table(lines, section, data[section])
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    try:
        raw = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Could not parse {path}: {exc}") from exc
    return ConductorConfig.from_dict(raw)


def save_config(path: Path, config: ConductorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
