from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar
from uuid import uuid4

from boomerang.dispatcher import DispatchEventHook, DispatchPolicy, Dispatcher, progress_key
from boomerang.errors import (
    BoomerangError,
    DelegationCancelled,
    DelegationFailed,
    RunAborted,
    RunNotFound,
    StorageUnavailable,
)
from boomerang.gates.validator import GateEvaluation, GateValidator
from boomerang.models import (
    DelegationResult,
    DelegationStatus,
    Phase,
    PhaseStep,
    ProjectRun,
    RunStatus,
    TaskSpec,
    run_scope,
    utcnow_iso,
)
from boomerang.phases import GateCheckOutcome, PhaseStateMachine
from boomerang.planner import MethodologyPlanner, run_key
from boomerang.roles.base import RoleRegistry
from boomerang.state.context_store import (
    CONTROL_DOMAIN,
    FOLLOWUPS_DOMAIN,
    GATES_DOMAIN,
    PROGRESS_DOMAIN,
    RESERVED_DOMAINS,
    RUNS_DOMAIN,
    ContextStore,
    default_domain,
)
from boomerang.state.storage import build_storage

if TYPE_CHECKING:
    from boomerang.config import BoomerangConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONTROLLER_AUTHOR = "controller"
ABORT_ERROR_CLASS = "RunAborted"


def new_run_id() -> str:
    return f"run-{uuid4().hex[:12]}"


def control_key(run_id: str) -> str:
    return f"{CONTROL_DOMAIN}/{run_id}/abort"


def gate_key(run_id: str, phase: Phase, gate_name: str) -> str:
    return f"{GATES_DOMAIN}/{run_id}/{phase.value}/{gate_name}"


def followup_key(run_id: str, task_id: str) -> str:
    return f"{FOLLOWUPS_DOMAIN}/{run_id}/{task_id}"


@dataclass(slots=True)
class RunView:
    """Operator-facing status of a run, rebuilt from persisted records."""

    id: str
    goal: str
    status: RunStatus
    phase: Phase
    step: PhaseStep
    remediation_cycles: int = 0
    last_completed_phase: Phase | None = None
    blocked_reasons: list[str] = field(default_factory=list)
    error: str | None = None
    error_class: str | None = None
    tasks: list[dict[str, Any]] = field(default_factory=list)
    gates: dict[str, str] = field(default_factory=dict)
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "status": self.status.value,
            "phase": self.phase.value,
            "step": self.step.value,
            "remediation_cycles": self.remediation_cycles,
            "last_completed_phase": (
                self.last_completed_phase.value if self.last_completed_phase else None
            ),
            "blocked_reasons": list(self.blocked_reasons),
            "error": self.error,
            "error_class": self.error_class,
            "tasks": [dict(task) for task in self.tasks],
            "gates": dict(self.gates),
            "updated_at": self.updated_at,
        }


class Orchestrator:
    """Top-level driver: plans each phase, delegates, persists results, checks gates.

    The phase loop is single-threaded: every context store write for a run is
    issued from here (or from the dispatcher's progress audit), one at a time.
    """

    def __init__(
        self,
        store: ContextStore,
        registry: RoleRegistry,
        planner: MethodologyPlanner,
        *,
        phases: Iterable[Phase] | None = None,
        dispatch_policy: DispatchPolicy | None = None,
        max_remediation_cycles: int = 5,
        store_retry_attempts: int = 3,
        store_retry_backoff_seconds: float = 0.2,
        event_hook: DispatchEventHook | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.planner = planner
        self.phases = tuple(phases) if phases else tuple(Phase)
        self.max_remediation_cycles = max_remediation_cycles
        self.store_retry_attempts = max(1, int(store_retry_attempts))
        self.store_retry_backoff_seconds = store_retry_backoff_seconds
        self.dispatcher = Dispatcher(registry, store, dispatch_policy, event_hook=event_hook)
        self.validator = GateValidator(store)
        self._runs: dict[str, ProjectRun] = {}
        self._consumed: set[str] = set()

    @classmethod
    def from_config(
        cls,
        config: BoomerangConfig,
        *,
        root: Path,
        store: ContextStore | None = None,
        registry: RoleRegistry | None = None,
        event_hook: DispatchEventHook | None = None,
    ) -> Orchestrator:
        if store is None:
            storage = build_storage(
                config.store.backend,
                config.resolve_path(root),
                lock_timeout_seconds=config.store.lock_timeout_seconds,
            )
            store = ContextStore(storage)
        if registry is None:
            registry = RoleRegistry.from_config(
                config.roles, default_max_concurrent=config.dispatch.default_max_concurrent
            )
        policy = DispatchPolicy(
            max_attempts=config.dispatch.max_attempts,
            retry_backoff_seconds=config.dispatch.retry_backoff_seconds,
            task_timeout_seconds=config.dispatch.task_timeout_seconds or None,
            cancel_grace_seconds=config.dispatch.cancel_grace_seconds,
        )
        return cls(
            store,
            registry,
            MethodologyPlanner.from_config(config.phases),
            phases=config.phase_order,
            dispatch_policy=policy,
            max_remediation_cycles=config.workflow.max_remediation_cycles,
            store_retry_attempts=config.workflow.store_retry_attempts,
            store_retry_backoff_seconds=config.workflow.store_retry_backoff_seconds,
            event_hook=event_hook,
        )

    async def _with_store_retry(self, operation: Callable[[], T], *, what: str) -> T:
        attempt = 1
        while True:
            try:
                return operation()
            except StorageUnavailable as exc:
                if attempt >= self.store_retry_attempts:
                    raise
                delay = self.store_retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Store unavailable while %s (attempt %d/%d): %s; retrying in %.2fs",
                    what,
                    attempt,
                    self.store_retry_attempts,
                    exc,
                    delay,
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                attempt += 1

    # Run records

    def load_run(self, run_id: str) -> ProjectRun:
        entry = self.store.find(run_key(run_id))
        if entry is None:
            self.store.refresh()
            entry = self.store.find(run_key(run_id))
        if entry is None:
            raise RunNotFound(run_id)
        return ProjectRun.from_dict(entry.content)

    def _latest_run(self, run_id: str) -> ProjectRun:
        cached = self._runs.get(run_id)
        try:
            self.store.refresh()
            stored = self.load_run(run_id)
        except (StorageUnavailable, RunNotFound):
            if cached is None:
                raise
            return cached
        if cached is not None and cached.updated_at > stored.updated_at:
            return cached
        return stored

    async def _write_run(self, run: ProjectRun) -> None:
        run.updated_at = utcnow_iso()
        self._runs[run.id] = run
        await self._with_store_retry(
            partial(
                self.store.append,
                run_key(run.id),
                RUNS_DOMAIN,
                run.to_dict(),
                CONTROLLER_AUTHOR,
            ),
            what=f"recording run {run.id}",
        )

    async def _check_abort(self, run_id: str) -> None:
        await self._with_store_retry(self.store.refresh, what="refreshing the context store")
        entry = self.store.find(control_key(run_id))
        if entry is not None:
            reason = entry.content.get("reason", "") if isinstance(entry.content, dict) else ""
            raise RunAborted(run_id, reason)

    async def _sync_run(self, run: ProjectRun, machine: PhaseStateMachine) -> None:
        await self._check_abort(run.id)
        run.phase = machine.phase
        run.step = machine.step
        run.status = machine.status
        run.remediation_cycles = machine.current.remediation_cycles
        await self._write_run(run)
        await self._check_abort(run.id)

    async def _log_progress(self, run_id: str, event: str, **detail: Any) -> None:
        payload = {"event": event, "at": utcnow_iso(), **detail}
        await self._with_store_retry(
            partial(
                self.store.append,
                f"{PROGRESS_DOMAIN}/{run_id}/controller",
                PROGRESS_DOMAIN,
                payload,
                CONTROLLER_AUTHOR,
            ),
            what=f"logging {event} for {run_id}",
        )

    async def _escalate(self, run: ProjectRun, status: RunStatus, exc: BaseException) -> None:
        run.status = status
        run.error = str(exc)
        run.error_class = type(exc).__name__
        if status is RunStatus.BLOCKED:
            run.blocked_reasons = [f"{type(exc).__name__}: {exc}"]
        logger.error("Run %s is now %s: %s", run.id, status.value, exc)
        await self.dispatcher.cancel_run(run.id)
        try:
            await self._write_run(run)
        except StorageUnavailable as write_exc:
            logger.error(
                "Could not persist %s state for run %s: %s", status.value, run.id, write_exc
            )
        try:
            await self._log_progress(
                run.id, f"run_{status.value}", error=str(exc), error_class=run.error_class
            )
        except StorageUnavailable as log_exc:
            logger.error("Could not log %s for run %s: %s", status.value, run.id, log_exc)

    async def _settle_abort(self, run_id: str, exc: RunAborted) -> ProjectRun:
        """Leave the stored record of an aborted run failed, whoever wrote last."""
        self._runs.pop(run_id, None)
        run = self.load_run(run_id)
        if run.status is RunStatus.FAILED and run.error_class == ABORT_ERROR_CLASS:
            return run
        run.status = RunStatus.FAILED
        run.error = exc.reason or str(exc)
        run.error_class = ABORT_ERROR_CLASS
        try:
            await self._write_run(run)
        except StorageUnavailable as write_exc:
            logger.error("Could not persist abort of run %s: %s", run_id, write_exc)
        return run

    # Phase loop

    def _machine_for(self, run: ProjectRun) -> PhaseStateMachine:
        machine = PhaseStateMachine(
            run.phases,
            self.planner.gates,
            max_remediation_cycles=self.max_remediation_cycles,
        )
        machine.restore(
            run.phase,
            run.step,
            remediation_cycles=run.remediation_cycles,
            gate_history=self._gate_histories(run.id, run.phase),
        )
        return machine

    def _gate_histories(self, run_id: str, phase: Phase) -> dict[str, list[GateEvaluation]]:
        prefix = f"{GATES_DOMAIN}/{run_id}/{phase.value}/"
        return {
            key[len(prefix) :]: [
                GateEvaluation.from_dict(entry.content) for entry in self.store.history(key)
            ]
            for key in self.store.keys(prefix)
        }

    def _current_batch(self, run: ProjectRun, machine: PhaseStateMachine) -> list[TaskSpec]:
        cycle = machine.current.remediation_cycles
        if cycle == 0:
            return self.planner.plan(run, machine.phase)
        return self.planner.plan_remediation(
            run, machine.phase, machine.current.gates.values(), cycle
        )

    async def start_run(self, goal: str) -> ProjectRun:
        run = ProjectRun(id=new_run_id(), goal=goal, phases=self.phases, phase=self.phases[0])
        await self._write_run(run)
        logger.info("Started run %s: %s", run.id, goal)
        return run

    async def execute(self, goal: str) -> ProjectRun:
        run = await self.start_run(goal)
        return await self.drive(run.id)

    async def resume(self, run_id: str) -> ProjectRun:
        """Continue a run from its persisted state.

        A run blocked by a storage outage is reactivated; a run blocked by
        failing gates stays blocked until someone changes its inputs.
        """
        run = self.load_run(run_id)
        if run.status is RunStatus.BLOCKED and run.error_class == StorageUnavailable.__name__:
            run.status = RunStatus.ACTIVE
            run.error = None
            run.error_class = None
            run.blocked_reasons = []
            await self._write_run(run)
            logger.info("Reactivated run %s after storage recovery", run_id)
        return await self.drive(run_id)

    async def drive(self, run_id: str) -> ProjectRun:
        run = self.load_run(run_id)
        if run.status is not RunStatus.ACTIVE:
            return run
        self._runs[run.id] = run
        batch: list[TaskSpec] | None = None
        try:
            machine = self._machine_for(run)
            while machine.status is RunStatus.ACTIVE:
                await self._check_abort(run.id)
                step = machine.step
                if step in (PhaseStep.PLANNING, PhaseStep.REMEDIATING):
                    batch = self._current_batch(run, machine)
                    machine.begin_delegation([task.id for task in batch])
                    logger.info(
                        "Run %s %s: delegating %d task(s)",
                        run.id,
                        machine.phase.value,
                        len(batch),
                    )
                    await self._sync_run(run, machine)
                elif step is PhaseStep.DELEGATING:
                    if batch is None:
                        batch = self._current_batch(run, machine)
                        machine.current.task_ids = [task.id for task in batch]
                    statuses = await self._delegate(run, batch)
                    batch = None
                    await self._check_abort(run.id)
                    machine.delegation_settled(statuses)
                    await self._sync_run(run, machine)
                elif step is PhaseStep.GATE_CHECKING:
                    await self._check_gates(run, machine)
                    check = machine.conclude_gate_check()
                    if check.outcome is GateCheckOutcome.BLOCKED:
                        run.blocked_reasons = list(check.unmet)
                        await self._log_progress(
                            run.id,
                            "run_blocked",
                            phase=machine.phase.value,
                            unmet=list(check.unmet),
                            remediation_cycles=check.cycle,
                        )
                    elif check.outcome is GateCheckOutcome.REMEDIATE:
                        logger.info(
                            "Run %s %s: remediation cycle %d for %d unmet criterion reason(s)",
                            run.id,
                            machine.phase.value,
                            check.cycle,
                            len(check.unmet),
                        )
                    await self._sync_run(run, machine)
                elif step is PhaseStep.ADVANCING:
                    completed = machine.phase
                    upcoming = machine.advance()
                    run.last_completed_phase = completed
                    run.blocked_reasons = []
                    logger.info(
                        "Run %s completed phase %s%s",
                        run.id,
                        completed.value,
                        f"; entering {upcoming.value}" if upcoming else "",
                    )
                    await self._sync_run(run, machine)
        except RunAborted as exc:
            logger.warning("%s", exc)
            await self.dispatcher.cancel_run(run.id)
            return await self._settle_abort(run.id, exc)
        except StorageUnavailable as exc:
            await self._escalate(run, RunStatus.BLOCKED, exc)
        except BoomerangError as exc:
            await self._escalate(run, RunStatus.FAILED, exc)
        return run

    def _already_consumed(self, run_id: str, task_id: str) -> bool:
        if task_id in self._consumed:
            return True
        entry = self.store.find(progress_key(run_id, task_id))
        if entry is None or not isinstance(entry.content, dict):
            return False
        return entry.content.get("status") == DelegationStatus.RETURNED.value and bool(
            entry.content.get("consumed")
        )

    async def _delegate(
        self, run: ProjectRun, batch: list[TaskSpec]
    ) -> dict[str, DelegationStatus]:
        statuses: dict[str, DelegationStatus] = {}
        handles = []
        try:
            for task in batch:
                if self._already_consumed(run.id, task.id):
                    logger.info("Skipping %s; its result is already recorded", task.id)
                    statuses[task.id] = DelegationStatus.RETURNED
                    continue
                handles.append(self.dispatcher.submit(task))
        except BoomerangError:
            await self.dispatcher.cancel_run(run.id)
            await self.dispatcher.gather(handles)
            raise

        for handle, outcome in await self.dispatcher.gather(handles):
            statuses[handle.id] = handle.status
            if isinstance(outcome, DelegationResult):
                await self._consume(run, handle.task, outcome)
            elif isinstance(outcome, (DelegationFailed, DelegationCancelled)):
                logger.warning(
                    "Delegation %s ended %s: %s", handle.id, handle.status.value, outcome
                )
            else:
                raise outcome
        return statuses

    def _persist_entry(
        self, task: TaskSpec, key: str, domain: str | None, content: Any
    ) -> str | None:
        domain = domain or default_domain(key)
        if domain in RESERVED_DOMAINS or default_domain(key) in RESERVED_DOMAINS:
            logger.warning("Role %s tried to write reserved key %s; ignored", task.role, key)
            return None
        try:
            entry = self.store.append(key, domain, content, task.role, task_id=task.id)
        except ValueError as exc:
            logger.warning("Role %s returned an unusable key %r: %s", task.role, key, exc)
            return None
        return entry.id

    async def _consume(self, run: ProjectRun, task: TaskSpec, result: DelegationResult) -> None:
        """Persist a returned result. Each result is consumed once."""
        if task.id in self._consumed:
            return
        if not result.success:
            logger.info("Role %s reported an unsuccessful result for %s", task.role, task.id)

        def _persist() -> None:
            written: list[str] = []
            for key, content in result.deliverables.items():
                entry_id = self._persist_entry(task, key, None, content)
                if entry_id:
                    written.append(entry_id)
            for new_entry in result.entries:
                entry_id = self._persist_entry(
                    task, new_entry.key, new_entry.domain, new_entry.content
                )
                if entry_id:
                    written.append(entry_id)
            if result.risks or result.followups:
                self.store.append(
                    followup_key(run.id, task.id),
                    FOLLOWUPS_DOMAIN,
                    {"risks": list(result.risks), "followups": list(result.followups)},
                    task.role,
                    task_id=task.id,
                )
            self.store.append(
                progress_key(run.id, task.id),
                PROGRESS_DOMAIN,
                {
                    "task": task.to_dict(),
                    "status": DelegationStatus.RETURNED.value,
                    "consumed": True,
                    "success": result.success,
                    "entries": written,
                    "summary": result.summary,
                    "at": utcnow_iso(),
                },
                CONTROLLER_AUTHOR,
                task_id=task.id,
            )

        await self._with_store_retry(_persist, what=f"persisting the result of {task.id}")
        self._consumed.add(task.id)

    async def _check_gates(self, run: ProjectRun, machine: PhaseStateMachine) -> None:
        for gate in machine.current.gates.values():
            if gate.passed:
                continue
            evaluation = self.validator.evaluate(gate, scope=run_scope(run.id))
            await self._with_store_retry(
                partial(
                    self.store.append,
                    gate_key(run.id, machine.phase, gate.name),
                    GATES_DOMAIN,
                    evaluation.to_dict(),
                    "gate-validator",
                ),
                what=f"recording gate {gate.id}",
            )
            for result in evaluation.evaluator_errors:
                logger.warning(
                    "Gate %s has a broken criterion: %s", gate.id, "; ".join(result.reasons)
                )

    # Administrative surface

    async def abort_run(self, run_id: str, reason: str = "aborted by operator") -> ProjectRun:
        run = self._latest_run(run_id)
        if run.status.terminal:
            return run
        await self._with_store_retry(
            partial(
                self.store.append,
                control_key(run_id),
                CONTROL_DOMAIN,
                {"reason": reason, "at": utcnow_iso()},
                "operator",
            ),
            what=f"requesting abort of {run_id}",
        )
        run.status = RunStatus.FAILED
        run.error = reason
        run.error_class = ABORT_ERROR_CLASS
        await self._write_run(run)
        cancelled = await self.dispatcher.cancel_run(run_id)
        logger.warning("Aborted run %s (%d delegation(s) cancelled)", run_id, len(cancelled))
        return run

    def get_run_status(self, run_id: str) -> RunView:
        run = self._latest_run(run_id)
        tasks: list[dict[str, Any]] = []
        for key in self.store.keys(f"{PROGRESS_DOMAIN}/{run_id}/"):
            content = self.store.get(key).content
            if not isinstance(content, dict) or not isinstance(content.get("task"), dict):
                continue
            task = content["task"]
            tasks.append(
                {
                    "id": task.get("id"),
                    "role": task.get("role"),
                    "phase": task.get("phase"),
                    "kind": task.get("kind"),
                    "status": content.get("status"),
                    "retry_count": task.get("retry_count", 0),
                    "failure_reason": task.get("failure_reason"),
                    "created_at": task.get("created_at", ""),
                }
            )
        tasks.sort(key=lambda item: (str(item["created_at"]), str(item["id"])))

        gates: dict[str, str] = {}
        for key in self.store.keys(f"{GATES_DOMAIN}/{run_id}/"):
            evaluation = GateEvaluation.from_dict(self.store.get(key).content)
            gates[evaluation.gate_id] = "passed" if evaluation.passed else "failed"

        return RunView(
            id=run.id,
            goal=run.goal,
            status=run.status,
            phase=run.phase,
            step=run.step,
            remediation_cycles=run.remediation_cycles,
            last_completed_phase=run.last_completed_phase,
            blocked_reasons=list(run.blocked_reasons),
            error=run.error,
            error_class=run.error_class,
            tasks=tasks,
            gates=gates,
            updated_at=run.updated_at,
        )

    def get_gate_history(self, run_id: str, phase: Phase | str) -> list[GateEvaluation]:
        """Every evaluation recorded for the phase's gates, oldest first."""
        phase = Phase(phase) if not isinstance(phase, Phase) else phase
        self.store.refresh()
        entries = [
            entry
            for key in self.store.keys(f"{GATES_DOMAIN}/{run_id}/{phase.value}/")
            for entry in self.store.history(key)
        ]
        entries.sort(key=lambda entry: entry.created_at)
        return [GateEvaluation.from_dict(entry.content) for entry in entries]
