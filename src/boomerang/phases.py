from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from boomerang.errors import PhaseTransitionError
from boomerang.gates.validator import CriterionResult, Gate, GateEvaluation
from boomerang.models import DelegationStatus, Phase, PhaseStep, RunStatus, utcnow_iso

logger = logging.getLogger(__name__)

GateFactory = Callable[[Phase], list[Gate]]

ALLOWED_TRANSITIONS: dict[PhaseStep, frozenset[PhaseStep]] = {
    PhaseStep.PLANNING: frozenset({PhaseStep.DELEGATING}),
    PhaseStep.DELEGATING: frozenset({PhaseStep.GATE_CHECKING}),
    PhaseStep.GATE_CHECKING: frozenset({PhaseStep.ADVANCING, PhaseStep.REMEDIATING}),
    PhaseStep.REMEDIATING: frozenset({PhaseStep.DELEGATING}),
    PhaseStep.ADVANCING: frozenset({PhaseStep.PLANNING}),
}


class GateCheckOutcome(str, Enum):
    ADVANCE = "advance"
    REMEDIATE = "remediate"
    BLOCKED = "blocked"


@dataclass(frozen=True, slots=True)
class GateCheck:
    outcome: GateCheckOutcome
    evaluations: tuple[GateEvaluation, ...]
    unmet: tuple[str, ...] = ()
    cycle: int = 0

    @property
    def failed_results(self) -> tuple[tuple[str, CriterionResult], ...]:
        """(gate id, criterion result) for every criterion that did not pass."""
        return tuple(
            (evaluation.gate_id, result)
            for evaluation in self.evaluations
            for result in evaluation.results
            if not result.passed
        )


@dataclass(slots=True)
class PhaseInstance:
    phase: Phase
    gates: dict[str, Gate]
    step: PhaseStep = PhaseStep.PLANNING
    task_ids: list[str] = field(default_factory=list)
    remediation_cycles: int = 0
    advanced: bool = False

    def pending_gates(self) -> list[Gate]:
        return [gate for gate in self.gates.values() if not gate.passed]


class PhaseStateMachine:
    """Walks a run through its ordered phases and their per-phase steps.

    Gate failures are business as usual here: they come back as a GateCheck
    outcome and never as an exception. Remediation is bounded; one cycle past
    ``max_remediation_cycles`` blocks the run.
    """

    def __init__(
        self,
        phases: tuple[Phase, ...],
        gate_factory: GateFactory,
        *,
        max_remediation_cycles: int = 5,
    ) -> None:
        if not phases:
            raise PhaseTransitionError("A run needs at least one phase.")
        self.phases = tuple(phases)
        self.gate_factory = gate_factory
        self.max_remediation_cycles = max(0, int(max_remediation_cycles))
        self.status = RunStatus.ACTIVE
        self.transitions: list[dict[str, str]] = []
        self.current = self._enter(self.phases[0])

    def _enter(self, phase: Phase) -> PhaseInstance:
        gates = {gate.name: gate for gate in self.gate_factory(phase)}
        return PhaseInstance(phase=phase, gates=gates)

    def _ensure_active(self) -> None:
        if self.status is not RunStatus.ACTIVE:
            raise PhaseTransitionError(f"Run is {self.status.value}; automatic progression halted.")

    def _move(self, target: PhaseStep) -> None:
        source = self.current.step
        if target not in ALLOWED_TRANSITIONS[source]:
            raise PhaseTransitionError(
                f"{self.current.phase.value}: illegal transition {source.value} -> {target.value}"
            )
        self.current.step = target
        self.transitions.append(
            {
                "phase": self.current.phase.value,
                "from": source.value,
                "to": target.value,
                "at": utcnow_iso(),
            }
        )
        logger.debug("%s: %s -> %s", self.current.phase.value, source.value, target.value)

    @property
    def phase(self) -> Phase:
        return self.current.phase

    @property
    def step(self) -> PhaseStep:
        return self.current.step

    def next_phase(self) -> Phase | None:
        position = self.phases.index(self.current.phase)
        if position + 1 < len(self.phases):
            return self.phases[position + 1]
        return None

    def begin_delegation(self, task_ids: list[str]) -> None:
        self._ensure_active()
        if not task_ids:
            raise PhaseTransitionError(
                f"{self.current.phase.value}: cannot delegate an empty task set"
            )
        self._move(PhaseStep.DELEGATING)
        self.current.task_ids = list(task_ids)

    def delegation_settled(self, statuses: Mapping[str, DelegationStatus]) -> None:
        self._ensure_active()
        unsettled = [
            task_id
            for task_id in self.current.task_ids
            if task_id not in statuses or not statuses[task_id].terminal
        ]
        if unsettled:
            raise PhaseTransitionError(
                f"{self.current.phase.value}: tasks still outstanding: {', '.join(unsettled)}"
            )
        self._move(PhaseStep.GATE_CHECKING)

    def conclude_gate_check(self) -> GateCheck:
        """Decide the phase's fate from the current status of its gates."""
        self._ensure_active()
        if self.current.step is not PhaseStep.GATE_CHECKING:
            raise PhaseTransitionError(
                f"{self.current.phase.value}: gate check concluded outside gate_checking"
            )
        gates = list(self.current.gates.values())
        evaluations = tuple(gate.history[-1] for gate in gates if gate.history)
        if len(evaluations) != len(gates):
            missing = [gate.name for gate in gates if not gate.history]
            raise PhaseTransitionError(
                f"{self.current.phase.value}: gates never evaluated: {', '.join(missing)}"
            )

        if all(gate.passed for gate in gates):
            self._move(PhaseStep.ADVANCING)
            return GateCheck(GateCheckOutcome.ADVANCE, evaluations)

        unmet: list[str] = []
        for evaluation in evaluations:
            for reason in evaluation.unmet:
                if reason not in unmet:
                    unmet.append(reason)
        cycle = self.current.remediation_cycles + 1
        if cycle > self.max_remediation_cycles:
            self.status = RunStatus.BLOCKED
            logger.error(
                "%s: gates still failing after %d remediation cycle(s); blocking run",
                self.current.phase.value,
                self.current.remediation_cycles,
            )
            return GateCheck(
                GateCheckOutcome.BLOCKED,
                evaluations,
                tuple(unmet),
                self.current.remediation_cycles,
            )
        self.current.remediation_cycles = cycle
        self._move(PhaseStep.REMEDIATING)
        return GateCheck(GateCheckOutcome.REMEDIATE, evaluations, tuple(unmet), cycle)

    def advance(self) -> Phase | None:
        """Move past the current phase exactly once. Returns the new phase, or None when done."""
        self._ensure_active()
        if self.current.step is not PhaseStep.ADVANCING or self.current.advanced:
            raise PhaseTransitionError(
                f"{self.current.phase.value}: advance requested without a fresh gate pass"
            )
        if any(not gate.passed for gate in self.current.gates.values()):
            raise PhaseTransitionError(
                f"{self.current.phase.value}: cannot complete with unpassed gates"
            )
        self.current.advanced = True
        upcoming = self.next_phase()
        if upcoming is None:
            self.status = RunStatus.COMPLETED
            return None
        self.transitions.append(
            {
                "phase": upcoming.value,
                "from": PhaseStep.ADVANCING.value,
                "to": PhaseStep.PLANNING.value,
                "at": utcnow_iso(),
            }
        )
        self.current = self._enter(upcoming)
        return upcoming

    def fail(self) -> None:
        self.status = RunStatus.FAILED

    def restore(
        self,
        phase: Phase,
        step: PhaseStep,
        *,
        remediation_cycles: int = 0,
        task_ids: list[str] | None = None,
        gate_history: Mapping[str, list[GateEvaluation]] | None = None,
        status: RunStatus = RunStatus.ACTIVE,
    ) -> None:
        """Rebuild in-memory state from persisted records after a restart."""
        if phase not in self.phases:
            raise PhaseTransitionError(f"Phase {phase.value} is not part of this run.")
        self.current = self._enter(phase)
        self.current.step = step
        self.current.remediation_cycles = remediation_cycles
        self.current.task_ids = list(task_ids or [])
        for name, evaluations in (gate_history or {}).items():
            gate = self.current.gates.get(name)
            if gate is None:
                continue
            for evaluation in evaluations:
                gate.record(evaluation)
                if gate.passed:
                    break
        self.status = status
