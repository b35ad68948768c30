from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


class Phase(str, Enum):
    SPECIFICATION = "specification"
    PSEUDOCODE = "pseudocode"
    ARCHITECTURE = "architecture"
    REFINEMENT = "refinement"
    COMPLETION = "completion"

    @property
    def position(self) -> int:
        return list(Phase).index(self)

    @classmethod
    def ordered(cls, names: list[str] | tuple[str, ...] | None = None) -> tuple[Phase, ...]:
        """Resolve phase names into methodology order, rejecting unknown or duplicate names."""
        if not names:
            return tuple(cls)
        phases = []
        for name in names:
            try:
                phase = cls(str(name).strip().lower())
            except ValueError as exc:
                raise ValueError(f"Unknown phase: {name}") from exc
            if phase in phases:
                raise ValueError(f"Duplicate phase: {name}")
            phases.append(phase)
        return tuple(sorted(phases, key=lambda item: item.position))


class PhaseStep(str, Enum):
    PLANNING = "planning"
    DELEGATING = "delegating"
    GATE_CHECKING = "gate_checking"
    ADVANCING = "advancing"
    REMEDIATING = "remediating"


class RunStatus(str, Enum):
    ACTIVE = "active"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {RunStatus.COMPLETED, RunStatus.FAILED}


class DelegationStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    RETURNED = "returned"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {
            DelegationStatus.RETURNED,
            DelegationStatus.FAILED,
            DelegationStatus.CANCELLED,
        }


@dataclass(frozen=True, slots=True)
class ContextRef:
    """Reference to a context entry; ``version=None`` means the latest version."""

    key: str
    version: int | None = None

    @classmethod
    def parse(cls, raw: str | ContextRef) -> ContextRef:
        if isinstance(raw, ContextRef):
            return raw
        text = str(raw).strip()
        if "@" in text:
            key, _, version = text.rpartition("@")
            if version.isdigit():
                return cls(key=key, version=int(version))
        return cls(key=text)

    def __str__(self) -> str:
        return self.key if self.version is None else f"{self.key}@{self.version}"


def run_scope(run_id: str) -> str:
    """Prefix shared by the ids of every task planned for ``run_id``."""
    return f"{run_id}:"


@dataclass(slots=True)
class TaskSpec:
    id: str
    run_id: str
    role: str
    description: str
    phase: str = ""
    inputs: list[ContextRef] = field(default_factory=list)
    deliverables: list[str] = field(default_factory=list)
    kind: str = "planned"
    targets: list[str] = field(default_factory=list)
    status: DelegationStatus = DelegationStatus.PENDING
    retry_count: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None
    failure_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "role": self.role,
            "description": self.description,
            "phase": self.phase,
            "inputs": [str(ref) for ref in self.inputs],
            "deliverables": list(self.deliverables),
            "kind": self.kind,
            "targets": list(self.targets),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "failure_reason": self.failure_reason,
        }


@dataclass(frozen=True, slots=True)
class NewEntry:
    key: str
    content: Any
    domain: str | None = None


@dataclass(frozen=True, slots=True)
class DelegationResult:
    """What a role hands back: deliverables plus any extra context it discovered."""

    task_id: str
    role: str
    success: bool = True
    deliverables: Mapping[str, Any] = field(default_factory=dict)
    entries: tuple[NewEntry, ...] = ()
    risks: tuple[str, ...] = ()
    followups: tuple[str, ...] = ()
    summary: str = ""
    created_at: str = field(default_factory=utcnow_iso)

    def __post_init__(self) -> None:
        object.__setattr__(self, "deliverables", MappingProxyType(dict(self.deliverables)))
        object.__setattr__(self, "entries", tuple(self.entries))
        object.__setattr__(self, "risks", tuple(str(item) for item in self.risks))
        object.__setattr__(self, "followups", tuple(str(item) for item in self.followups))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, task_id: str, role: str) -> DelegationResult:
        deliverables = payload.get("deliverables", {})
        if not isinstance(deliverables, Mapping):
            raise ValueError("'deliverables' must be an object keyed by context key.")
        entries: list[NewEntry] = []
        for item in payload.get("entries", []) or []:
            if not isinstance(item, Mapping) or "key" not in item:
                raise ValueError("Each entry must be an object with a 'key'.")
            entries.append(
                NewEntry(
                    key=str(item["key"]),
                    content=item.get("content"),
                    domain=item.get("domain"),
                )
            )
        return cls(
            task_id=task_id,
            role=role,
            success=bool(payload.get("success", True)),
            deliverables=dict(deliverables),
            entries=tuple(entries),
            risks=tuple(payload.get("risks", []) or []),
            followups=tuple(payload.get("followups", []) or []),
            summary=str(payload.get("summary", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "role": self.role,
            "success": self.success,
            "deliverables": dict(self.deliverables),
            "entries": [
                {"key": entry.key, "domain": entry.domain, "content": entry.content}
                for entry in self.entries
            ],
            "risks": list(self.risks),
            "followups": list(self.followups),
            "summary": self.summary,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class ProjectRun:
    id: str
    goal: str
    phases: tuple[Phase, ...] = tuple(Phase)
    phase: Phase = Phase.SPECIFICATION
    step: PhaseStep = PhaseStep.PLANNING
    status: RunStatus = RunStatus.ACTIVE
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    remediation_cycles: int = 0
    last_completed_phase: Phase | None = None
    blocked_reasons: list[str] = field(default_factory=list)
    error: str | None = None
    error_class: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "phases": [phase.value for phase in self.phases],
            "phase": self.phase.value,
            "step": self.step.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "remediation_cycles": self.remediation_cycles,
            "last_completed_phase": (
                self.last_completed_phase.value if self.last_completed_phase else None
            ),
            "blocked_reasons": list(self.blocked_reasons),
            "error": self.error,
            "error_class": self.error_class,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ProjectRun:
        last_completed = payload.get("last_completed_phase")
        return cls(
            id=str(payload["id"]),
            goal=str(payload.get("goal", "")),
            phases=Phase.ordered(list(payload.get("phases") or [])),
            phase=Phase(payload.get("phase", Phase.SPECIFICATION.value)),
            step=PhaseStep(payload.get("step", PhaseStep.PLANNING.value)),
            status=RunStatus(payload.get("status", RunStatus.ACTIVE.value)),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            remediation_cycles=int(payload.get("remediation_cycles", 0)),
            last_completed_phase=Phase(last_completed) if last_completed else None,
            blocked_reasons=[str(item) for item in payload.get("blocked_reasons", [])],
            error=payload.get("error"),
            error_class=payload.get("error_class"),
        )
