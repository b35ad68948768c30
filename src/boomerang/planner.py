from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from boomerang.errors import ConfigError
from boomerang.gates.validator import Criterion, CriterionResult, Gate
from boomerang.models import ContextRef, Phase, ProjectRun, TaskSpec, run_scope
from boomerang.state.context_store import RUNS_DOMAIN


def run_key(run_id: str) -> str:
    return f"{RUNS_DOMAIN}/{run_id}"


@dataclass(frozen=True, slots=True)
class TaskTemplate:
    role: str
    description: str
    deliverables: tuple[str, ...] = ()
    inputs: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> TaskTemplate:
        role = str(payload.get("role", "")).strip()
        if not role:
            raise ConfigError(f"Task template is missing a role: {dict(payload)!r}")
        return cls(
            role=role,
            description=str(payload.get("description", "")),
            deliverables=tuple(str(item) for item in payload.get("deliverables", [])),
            inputs=tuple(str(item) for item in payload.get("inputs", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "description": self.description,
            "deliverables": list(self.deliverables),
            "inputs": list(self.inputs),
        }


@dataclass(frozen=True, slots=True)
class PhasePlan:
    phase: Phase
    tasks: tuple[TaskTemplate, ...] = ()
    gates: tuple[Mapping[str, Any], ...] = ()

    def build_gates(self) -> list[Gate]:
        gates: list[Gate] = []
        for payload in self.gates:
            try:
                gates.append(Gate.from_dict(self.phase, payload))
            except (KeyError, TypeError, ValueError) as exc:
                raise ConfigError(f"Invalid gate in phase {self.phase.value}: {exc}") from exc
        return gates


class MethodologyPlanner:
    """Turns per-phase task templates into TaskSpecs, and failed gates into remediation work.

    Planned ids are ``<run>:<phase>:t<n>`` and remediation ids
    ``<run>:<phase>:r<cycle>.<n>``, so re-planning after a restart yields the
    same ids and the store can recognise resubmissions.
    """

    def __init__(self, plans: Mapping[Phase, PhasePlan] | None = None) -> None:
        self.plans: dict[Phase, PhasePlan] = dict(plans or {})

    @classmethod
    def from_config(cls, phases: Mapping[str, Any]) -> MethodologyPlanner:
        plans: dict[Phase, PhasePlan] = {}
        for name, phase_config in phases.items():
            try:
                phase = Phase(str(name).lower())
            except ValueError as exc:
                raise ConfigError(f"Unknown phase section: [phases.{name}]") from exc
            plans[phase] = PhasePlan(
                phase=phase,
                tasks=tuple(TaskTemplate.from_dict(item) for item in phase_config.tasks),
                gates=tuple(dict(item) for item in phase_config.gates),
            )
        return cls(plans)

    def plan_for(self, phase: Phase) -> PhasePlan:
        return self.plans.get(phase) or PhasePlan(phase=phase)

    def gates(self, phase: Phase) -> list[Gate]:
        return self.plan_for(phase).build_gates()

    def plan(self, run: ProjectRun, phase: Phase) -> list[TaskSpec]:
        tasks: list[TaskSpec] = []
        for index, template in enumerate(self.plan_for(phase).tasks, start=1):
            inputs = [ContextRef(run_key(run.id))]
            inputs.extend(ContextRef.parse(item) for item in template.inputs)
            tasks.append(
                TaskSpec(
                    id=f"{run_scope(run.id)}{phase.value}:t{index}",
                    run_id=run.id,
                    role=template.role,
                    description=template.description.replace("{goal}", run.goal),
                    phase=phase.value,
                    inputs=inputs,
                    deliverables=list(template.deliverables),
                )
            )
        return tasks

    def _owner_of(self, phase: Phase, key: str) -> str | None:
        for template in self.plan_for(phase).tasks:
            if key in template.deliverables:
                return template.role
        return None

    def _remediation_role(self, phase: Phase, criterion: Criterion | None, key: str | None) -> str:
        if criterion is not None and criterion.remediation_role:
            return criterion.remediation_role
        if key:
            owner = self._owner_of(phase, key)
            if owner:
                return owner
        templates = self.plan_for(phase).tasks
        if not templates:
            raise ConfigError(f"Phase {phase.value} has no role to route remediation work to.")
        return templates[0].role

    @staticmethod
    def _missing_key_for(reason: str, result: CriterionResult) -> str | None:
        for missing in result.missing:
            if reason == f"{missing} missing":
                return ContextRef.parse(missing).key
        return None

    def plan_remediation(
        self,
        run: ProjectRun,
        phase: Phase,
        gates: Iterable[Gate],
        cycle: int,
    ) -> list[TaskSpec]:
        """One remediation task per distinct failure reason across the phase's failed gates."""
        tasks: list[TaskSpec] = []
        seen: set[str] = set()
        for gate in gates:
            if gate.passed or not gate.history:
                continue
            evaluation = gate.history[-1]
            for result in evaluation.results:
                if result.passed:
                    continue
                criterion = (
                    gate.criteria[result.index] if result.index < len(gate.criteria) else None
                )
                for reason in result.reasons:
                    if reason in seen:
                        continue
                    seen.add(reason)
                    key = self._missing_key_for(reason, result)
                    if key:
                        deliverables = [key]
                    elif criterion is not None:
                        deliverables = [ref.key for ref in criterion.evidence_refs]
                    else:
                        deliverables = []
                    inputs = [ContextRef(run_key(run.id))]
                    if criterion is not None:
                        inputs.extend(
                            ContextRef(ref.key)
                            for ref in criterion.evidence_refs
                            if ref.key not in deliverables
                        )
                    tasks.append(
                        TaskSpec(
                            id=f"{run_scope(run.id)}{phase.value}:r{cycle}.{len(tasks) + 1}",
                            run_id=run.id,
                            role=self._remediation_role(phase, criterion, key),
                            description=f"Remediate {gate.id} ({result.description}): {reason}",
                            phase=phase.value,
                            inputs=inputs,
                            deliverables=deliverables,
                            kind="remediation",
                            targets=[gate.id, reason],
                        )
                    )
        return tasks
