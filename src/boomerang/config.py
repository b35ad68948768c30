from __future__ import annotations

import json
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from boomerang.errors import ConfigError
from boomerang.models import Phase

StoreBackendName = Literal["local", "memory"]

TEMPLATE_ROLE_FACTORY = "boomerang.roles.template:TemplateRole"
BARE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class StoreConfig:
    backend: StoreBackendName = "local"
    path: str = ".boomerang/state"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class DispatchConfig:
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    task_timeout_seconds: float = 600.0
    cancel_grace_seconds: float = 5.0
    default_max_concurrent: int = 1


@dataclass(slots=True)
class WorkflowConfig:
    phases: list[str] = field(default_factory=lambda: [phase.value for phase in Phase])
    max_remediation_cycles: int = 5
    store_retry_attempts: int = 3
    store_retry_backoff_seconds: float = 0.2


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass(slots=True)
class RoleConfig:
    factory: str = TEMPLATE_ROLE_FACTORY
    max_concurrent: int = 0
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PhaseConfig:
    tasks: list[dict[str, Any]] = field(default_factory=list)
    gates: list[dict[str, Any]] = field(default_factory=list)


def _default_roles() -> dict[str, RoleConfig]:
    return {
        "specifier": RoleConfig(),
        "architect": RoleConfig(),
        "coder": RoleConfig(max_concurrent=2, options={"fields": {"coverage": 85}}),
        "reviewer": RoleConfig(options={"fields": {"counts": {"BLOCKER": 0, "MAJOR": 0}}}),
    }


def _default_phases() -> dict[str, PhaseConfig]:
    return {
        "specification": PhaseConfig(
            tasks=[
                {
                    "role": "specifier",
                    "description": "Capture requirements and constraints for: {goal}",
                    "deliverables": ["spec/requirements"],
                    "inputs": [],
                },
                {
                    "role": "specifier",
                    "description": "Write acceptance criteria for: {goal}",
                    "deliverables": ["spec/acceptance"],
                    "inputs": [],
                },
            ],
            gates=[
                {
                    "name": "requirements-captured",
                    "criteria": [
                        {
                            "description": "requirements are written down",
                            "evaluator": "non_empty",
                            "evidence": ["spec/requirements"],
                        },
                        {
                            "description": "acceptance criteria exist",
                            "evaluator": "exists",
                            "evidence": ["spec/acceptance"],
                        },
                    ],
                }
            ],
        ),
        "pseudocode": PhaseConfig(
            tasks=[
                {
                    "role": "specifier",
                    "description": "Outline the solution in pseudocode for: {goal}",
                    "deliverables": ["pseudocode/outline"],
                    "inputs": ["spec/requirements"],
                }
            ],
            gates=[
                {
                    "name": "logic-outlined",
                    "criteria": [
                        {
                            "description": "pseudocode outline is present",
                            "evaluator": "non_empty",
                            "evidence": ["pseudocode/outline"],
                        }
                    ],
                }
            ],
        ),
        "architecture": PhaseConfig(
            tasks=[
                {
                    "role": "architect",
                    "description": "Design components and interfaces for: {goal}",
                    "deliverables": ["architecture/overview"],
                    "inputs": ["spec/requirements", "pseudocode/outline"],
                }
            ],
            gates=[
                {
                    "name": "design-approved",
                    "criteria": [
                        {
                            "description": "architecture overview is present",
                            "evaluator": "non_empty",
                            "evidence": ["architecture/overview"],
                        },
                        {
                            "description": "design decisions are logged",
                            "evaluator": "min_entries",
                            "domain": "decisionLog",
                            "params": {"min": 1},
                        },
                    ],
                }
            ],
        ),
        "refinement": PhaseConfig(
            tasks=[
                {
                    "role": "coder",
                    "description": "Implement and test the design for: {goal}",
                    "deliverables": ["refinement/tests"],
                    "inputs": ["architecture/overview"],
                }
            ],
            gates=[
                {
                    "name": "tests-green",
                    "criteria": [
                        {
                            "description": "coverage meets the bar",
                            "evaluator": "threshold",
                            "evidence": ["refinement/tests"],
                            "params": {"field": "coverage", "min": 80},
                            "remediation_role": "coder",
                        }
                    ],
                }
            ],
        ),
        "completion": PhaseConfig(
            tasks=[
                {
                    "role": "reviewer",
                    "description": "Review the finished work for: {goal}",
                    "deliverables": ["completion/review"],
                    "inputs": ["refinement/tests"],
                }
            ],
            gates=[
                {
                    "name": "release-ready",
                    "criteria": [
                        {
                            "description": "no blocking review findings",
                            "evaluator": "max_findings",
                            "evidence": ["completion/review"],
                            "params": {"severity": "BLOCKER", "max": 0},
                        }
                    ],
                }
            ],
        ),
    }


@dataclass(slots=True)
class BoomerangConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    roles: dict[str, RoleConfig] = field(default_factory=dict)
    phases: dict[str, PhaseConfig] = field(default_factory=dict)

    @classmethod
    def default(cls) -> BoomerangConfig:
        return cls(roles=_default_roles(), phases=_default_phases())

    @classmethod
    def from_dict(cls, data: dict) -> BoomerangConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                store=StoreConfig(**data.get("store", {})),
                dispatch=DispatchConfig(**data.get("dispatch", {})),
                workflow=WorkflowConfig(**data.get("workflow", {})),
                logging=LoggingConfig(**data.get("logging", {})),
                roles={
                    name: RoleConfig(**section)
                    for name, section in data.get("roles", {}).items()
                },
                phases={
                    name: PhaseConfig(**section)
                    for name, section in data.get("phases", {}).items()
                },
            )
        except TypeError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc
        if config.store.backend not in ("local", "memory"):
            raise ConfigError(f"Unknown store backend: {config.store.backend}")
        try:
            Phase.ordered(config.workflow.phases)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        return config

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
            },
            "store": {
                "backend": self.store.backend,
                "path": self.store.path,
                "lock_timeout_seconds": self.store.lock_timeout_seconds,
            },
            "dispatch": {
                "max_attempts": self.dispatch.max_attempts,
                "retry_backoff_seconds": self.dispatch.retry_backoff_seconds,
                "task_timeout_seconds": self.dispatch.task_timeout_seconds,
                "cancel_grace_seconds": self.dispatch.cancel_grace_seconds,
                "default_max_concurrent": self.dispatch.default_max_concurrent,
            },
            "workflow": {
                "phases": list(self.workflow.phases),
                "max_remediation_cycles": self.workflow.max_remediation_cycles,
                "store_retry_attempts": self.workflow.store_retry_attempts,
                "store_retry_backoff_seconds": self.workflow.store_retry_backoff_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
            "roles": {
                name: {
                    "factory": role.factory,
                    "max_concurrent": role.max_concurrent,
                    "options": dict(role.options),
                }
                for name, role in self.roles.items()
            },
            "phases": {
                name: {
                    "tasks": [dict(task) for task in phase.tasks],
                    "gates": [dict(gate) for gate in phase.gates],
                }
                for name, phase in self.phases.items()
            },
        }

    @property
    def phase_order(self) -> tuple[Phase, ...]:
        return Phase.ordered(self.workflow.phases)

    def resolve_path(self, base: Path) -> Path:
        path = Path(self.store.path)
        return path if path.is_absolute() else base / path


def _toml_key(key: str) -> str:
    return key if BARE_KEY.match(key) else json.dumps(key, ensure_ascii=False)


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = ", ".join(
            f"{_toml_key(str(key))} = {_toml_value(item)}"
            for key, item in value.items()
            if item is not None
        )
        return "{ " + items + " }"
    return json.dumps(str(value), ensure_ascii=False)


def _table_lines(payload: dict[str, Any], *, skip: tuple[str, ...] = ()) -> list[str]:
    return [
        f"{_toml_key(key)} = {_toml_value(value)}"
        for key, value in payload.items()
        if key not in skip and value is not None
    ]


def dumps_toml(config: BoomerangConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "store", "dispatch", "workflow", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        lines.extend(_table_lines(data[section]))
        lines.append("")

    for name, role in data["roles"].items():
        lines.append(f"[roles.{_toml_key(name)}]")
        lines.extend(_table_lines(role))
        lines.append("")

    for name, phase in data["phases"].items():
        prefix = f"phases.{_toml_key(name)}"
        lines.append(f"[{prefix}]")
        lines.append("")
        for task in phase["tasks"]:
            lines.append(f"[[{prefix}.tasks]]")
            lines.extend(_table_lines(task))
            lines.append("")
        for gate in phase["gates"]:
            lines.append(f"[[{prefix}.gates]]")
            lines.extend(_table_lines(gate, skip=("criteria",)))
            lines.append("")
            for criterion in gate.get("criteria", []):
                lines.append(f"[[{prefix}.gates.criteria]]")
                lines.extend(_table_lines(criterion))
                lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> BoomerangConfig:
    if not path.exists():
        return BoomerangConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Cannot parse {path}: {exc}") from exc
    return BoomerangConfig.from_dict(data)


def save_config(path: Path, config: BoomerangConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
