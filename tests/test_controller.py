import asyncio
from pathlib import Path

import pytest

from boomerang.config import BoomerangConfig
from boomerang.controller import Orchestrator, control_key
from boomerang.dispatcher import DispatchPolicy, progress_key
from boomerang.errors import RunNotFound, StorageUnavailable
from boomerang.models import DelegationResult, Phase, PhaseStep, RunStatus
from boomerang.planner import MethodologyPlanner, PhasePlan, TaskTemplate
from boomerang.roles import CallableRole, RoleExecutionError, RoleRegistry, RoleRequest
from boomerang.state import ContextStore, MemoryStorage

FAST = DispatchPolicy(
    max_attempts=2,
    retry_backoff_seconds=0.0,
    task_timeout_seconds=5.0,
    cancel_grace_seconds=0.05,
)

SPEC_GATE = {
    "name": "spec-written",
    "criteria": [{"description": "spec document", "evidence": ["spec/doc"]}],
}


class FlakyStorage(MemoryStorage):
    """Memory storage that refuses the next ``failures`` appends."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 0

    def append(self, record: dict) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise StorageUnavailable("disk went away")
        super().append(record)


def _planner(*templates: TaskTemplate, gates=(SPEC_GATE,)) -> MethodologyPlanner:
    return MethodologyPlanner(
        {
            Phase.SPECIFICATION: PhasePlan(
                phase=Phase.SPECIFICATION,
                tasks=templates
                or (TaskTemplate(role="specifier", description="Write the spec for {goal}"),),
                gates=tuple(gates),
            )
        }
    )


def _orchestrator(
    role_func,
    *,
    planner: MethodologyPlanner | None = None,
    store: ContextStore | None = None,
    max_remediation_cycles: int = 2,
    store_retry_attempts: int = 1,
    cls: type[Orchestrator] = Orchestrator,
) -> Orchestrator:
    registry = RoleRegistry()
    registry.register("specifier", CallableRole("specifier", role_func), max_concurrent=1)
    return cls(
        store or ContextStore(),
        registry,
        planner or _planner(),
        phases=(Phase.SPECIFICATION,),
        dispatch_policy=FAST,
        max_remediation_cycles=max_remediation_cycles,
        store_retry_attempts=store_retry_attempts,
        store_retry_backoff_seconds=0.0,
    )


def _writes_spec(request: RoleRequest) -> DelegationResult:
    return DelegationResult(
        task_id=request.task.id,
        role="specifier",
        deliverables={"spec/doc": "Users log in with OAuth"},
    )


def test_single_phase_run_completes_when_gate_passes() -> None:
    orchestrator = _orchestrator(_writes_spec)

    run = asyncio.run(orchestrator.execute("login page"))

    assert run.status is RunStatus.COMPLETED
    assert run.last_completed_phase is Phase.SPECIFICATION
    assert orchestrator.store.get("spec/doc").content == "Users log in with OAuth"
    assert orchestrator.store.get("spec/doc").author == "specifier"

    view = orchestrator.get_run_status(run.id)
    assert view.status is RunStatus.COMPLETED
    assert view.gates == {"specification/spec-written": "passed"}
    assert [(task["id"], task["status"]) for task in view.tasks] == [
        (f"{run.id}:specification:t1", "returned")
    ]

    history = orchestrator.get_gate_history(run.id, Phase.SPECIFICATION)
    assert [evaluation.passed for evaluation in history] == [True]


def test_failed_gate_triggers_targeted_remediation() -> None:
    received = []

    def _role(request: RoleRequest) -> DelegationResult:
        received.append(request.task)
        if request.task.kind == "remediation":
            return _writes_spec(request)
        return DelegationResult(task_id=request.task.id, role="specifier", summary="forgot")

    orchestrator = _orchestrator(_role)
    run = asyncio.run(orchestrator.execute("login page"))

    assert run.status is RunStatus.COMPLETED
    assert [task.id for task in received] == [
        f"{run.id}:specification:t1",
        f"{run.id}:specification:r1.1",
    ]
    remediation = received[1]
    assert remediation.targets == ["specification/spec-written", "spec/doc missing"]
    assert remediation.deliverables == ["spec/doc"]

    history = orchestrator.get_gate_history(run.id, Phase.SPECIFICATION)
    assert [evaluation.passed for evaluation in history] == [False, True]
    assert history[0].unmet == ("spec/doc missing",)


def test_gate_that_never_passes_blocks_after_bounded_cycles() -> None:
    calls = []

    def _role(request: RoleRequest) -> DelegationResult:
        calls.append(request.task.id)
        return DelegationResult(task_id=request.task.id, role="specifier")

    orchestrator = _orchestrator(_role, max_remediation_cycles=2)
    run = asyncio.run(orchestrator.execute("login page"))

    assert run.status is RunStatus.BLOCKED
    assert run.remediation_cycles == 2
    assert run.blocked_reasons == ["spec/doc missing"]
    assert [task_id.rsplit(":", 1)[1] for task_id in calls] == ["t1", "r1.1", "r2.1"]
    assert len(orchestrator.get_gate_history(run.id, Phase.SPECIFICATION)) == 3

    persisted = orchestrator.load_run(run.id)
    assert persisted.status is RunStatus.BLOCKED

    resumed = asyncio.run(orchestrator.resume(run.id))
    assert resumed.status is RunStatus.BLOCKED
    assert len(calls) == 3


def test_failed_delegation_leaves_gate_failing_on_missing_evidence() -> None:
    def _role(request: RoleRequest) -> DelegationResult:
        raise RoleExecutionError("model overloaded")

    orchestrator = _orchestrator(_role, max_remediation_cycles=0)
    run = asyncio.run(orchestrator.execute("login page"))

    assert run.status is RunStatus.BLOCKED
    assert run.blocked_reasons == ["spec/doc missing"]
    task_id = f"{run.id}:specification:t1"
    progress = orchestrator.store.get(progress_key(run.id, task_id)).content
    assert progress["status"] == "failed"
    assert progress["task"]["retry_count"] == 1
    view = orchestrator.get_run_status(run.id)
    assert view.tasks[0]["failure_reason"] == "DelegationFailed"
    assert view.gates == {"specification/spec-written": "failed"}


def test_phase_without_tasks_fails_the_run() -> None:
    orchestrator = _orchestrator(
        _writes_spec,
        planner=MethodologyPlanner({Phase.SPECIFICATION: PhasePlan(phase=Phase.SPECIFICATION)}),
    )

    run = asyncio.run(orchestrator.execute("nothing to do"))

    assert run.status is RunStatus.FAILED
    assert run.error_class == "PhaseTransitionError"
    assert orchestrator.load_run(run.id).status is RunStatus.FAILED


def test_results_and_followups_are_persisted_once() -> None:
    def _role(request: RoleRequest) -> dict:
        return {
            "deliverables": {"spec/doc": "text"},
            "entries": [
                {"key": "decisionLog/auth", "content": "oauth"},
                {"key": "runs/forged", "content": "nope"},
            ],
            "risks": ["vendor lock-in"],
            "followups": ["check rate limits"],
        }

    orchestrator = _orchestrator(_role)
    run = asyncio.run(orchestrator.execute("login page"))
    task_id = f"{run.id}:specification:t1"

    assert run.status is RunStatus.COMPLETED
    assert orchestrator.store.get("decisionLog/auth").task_id == task_id
    assert orchestrator.store.find("runs/forged") is None
    followups = orchestrator.store.get(f"followups/{run.id}/{task_id}").content
    assert followups == {"risks": ["vendor lock-in"], "followups": ["check rate limits"]}
    progress = orchestrator.store.get(progress_key(run.id, task_id)).content
    assert progress["consumed"] is True
    assert progress["entries"] == ["spec/doc@1", "decisionLog/auth@1"]
    assert len(orchestrator.store.history("spec/doc")) == 1


def test_abort_cancels_in_flight_work_and_fails_run() -> None:
    async def _run():
        entered = asyncio.Event()

        async def _role(request: RoleRequest) -> DelegationResult:
            entered.set()
            await request.cancel_requested.wait()
            return DelegationResult(task_id=request.task.id, role="specifier")

        orchestrator = _orchestrator(_role)
        run = await orchestrator.start_run("login page")
        driver = asyncio.create_task(orchestrator.drive(run.id))
        await entered.wait()
        aborted = await orchestrator.abort_run(run.id, "wrong goal")
        final = await driver
        return orchestrator, run, aborted, final

    orchestrator, run, aborted, final = asyncio.run(_run())

    assert aborted.status is RunStatus.FAILED
    assert final.status is RunStatus.FAILED
    assert final.error_class == "RunAborted"
    assert final.error == "wrong goal"
    assert orchestrator.store.get(control_key(run.id)).content["reason"] == "wrong goal"
    progress = orchestrator.store.get(progress_key(run.id, f"{run.id}:specification:t1"))
    assert progress.content["status"] == "cancelled"
    assert orchestrator.get_run_status(run.id).status is RunStatus.FAILED


def test_abort_of_finished_run_is_a_no_op() -> None:
    orchestrator = _orchestrator(_writes_spec)
    run = asyncio.run(orchestrator.execute("login page"))

    after = asyncio.run(orchestrator.abort_run(run.id))

    assert after.status is RunStatus.COMPLETED
    assert orchestrator.store.find(control_key(run.id)) is None


def test_storage_outage_blocks_run_and_resume_skips_consumed_work() -> None:
    storage = FlakyStorage()
    store = ContextStore(storage)
    calls: list[str] = []

    def _role(request: RoleRequest) -> DelegationResult:
        calls.append(request.task.id)
        if request.task.id.endswith(":t2") and calls.count(request.task.id) == 1:
            storage.failures = 1
        return DelegationResult(
            task_id=request.task.id,
            role="specifier",
            deliverables={key: f"by {request.task.id}" for key in request.task.deliverables},
        )

    planner = _planner(
        TaskTemplate(role="specifier", description="Draft", deliverables=("spec/draft",)),
        TaskTemplate(role="specifier", description="Write", deliverables=("spec/doc",)),
    )
    orchestrator = _orchestrator(_role, planner=planner, store=store)
    run = asyncio.run(orchestrator.execute("login page"))

    assert run.status is RunStatus.BLOCKED
    assert run.error_class == "StorageUnavailable"
    persisted = orchestrator.load_run(run.id)
    assert persisted.status is RunStatus.BLOCKED
    assert persisted.step is PhaseStep.DELEGATING

    restarted = _orchestrator(_role, planner=planner, store=ContextStore(storage))
    resumed = asyncio.run(restarted.resume(run.id))

    assert resumed.status is RunStatus.COMPLETED
    assert resumed.error_class is None
    assert calls == [
        f"{run.id}:specification:t1",
        f"{run.id}:specification:t2",
        f"{run.id}:specification:t2",
    ]
    assert len(restarted.store.history("spec/draft")) == 1


def test_transient_storage_errors_are_retried() -> None:
    storage = FlakyStorage()
    orchestrator = _orchestrator(
        _writes_spec, store=ContextStore(storage), store_retry_attempts=3
    )

    async def _run():
        run = await orchestrator.start_run("login page")
        storage.failures = 2
        return await orchestrator.drive(run.id)

    run = asyncio.run(_run())

    assert run.status is RunStatus.COMPLETED


def test_unknown_run_raises() -> None:
    orchestrator = _orchestrator(_writes_spec)

    with pytest.raises(RunNotFound):
        orchestrator.get_run_status("run-missing")
    with pytest.raises(RunNotFound):
        asyncio.run(orchestrator.resume("run-missing"))


def test_default_methodology_runs_every_phase(tmp_path: Path) -> None:
    config = BoomerangConfig.default()
    orchestrator = Orchestrator.from_config(config, root=tmp_path)

    run = asyncio.run(orchestrator.execute("todo app"))

    assert run.status is RunStatus.COMPLETED
    assert run.last_completed_phase is Phase.COMPLETION
    assert (tmp_path / ".boomerang" / "state" / "entries.jsonl").exists()
    assert orchestrator.store.get("refinement/tests").content["coverage"] == 85
    view = orchestrator.get_run_status(run.id)
    assert set(view.gates.values()) == {"passed"}
    assert len(view.gates) == 5


def test_later_run_does_not_pass_gates_on_earlier_run_evidence() -> None:
    store = ContextStore()
    first = asyncio.run(_orchestrator(_writes_spec, store=store).execute("login page"))

    def _role(request: RoleRequest) -> DelegationResult:
        raise RoleExecutionError("model overloaded")

    orchestrator = _orchestrator(_role, store=store, max_remediation_cycles=0)
    second = asyncio.run(orchestrator.execute("signup page"))

    assert first.status is RunStatus.COMPLETED
    assert second.status is RunStatus.BLOCKED
    assert second.blocked_reasons == ["spec/doc missing"]
    assert orchestrator.get_run_status(second.id).gates == {
        "specification/spec-written": "failed"
    }
    assert orchestrator.get_run_status(first.id).status is RunStatus.COMPLETED


class PendingWriteOutage(MemoryStorage):
    """Refuses progress records of the second planned task while ``down``."""

    def __init__(self) -> None:
        super().__init__()
        self.down = True

    def append(self, record: dict) -> None:
        key = record["key"]
        if self.down and key.startswith("progress/") and key.endswith(":t2"):
            raise StorageUnavailable("disk went away")
        super().append(record)


def test_outage_while_submitting_blocks_the_run() -> None:
    storage = PendingWriteOutage()
    calls: list[str] = []

    def _role(request: RoleRequest) -> DelegationResult:
        calls.append(request.task.id)
        return DelegationResult(
            task_id=request.task.id,
            role="specifier",
            deliverables={key: "text" for key in request.task.deliverables},
        )

    planner = _planner(
        TaskTemplate(role="specifier", description="Draft", deliverables=("spec/draft",)),
        TaskTemplate(role="specifier", description="Write", deliverables=("spec/doc",)),
    )
    orchestrator = _orchestrator(_role, planner=planner, store=ContextStore(storage))

    run = asyncio.run(orchestrator.execute("login page"))

    first_task = f"{run.id}:specification:t1"
    assert run.status is RunStatus.BLOCKED
    assert run.error_class == "StorageUnavailable"
    assert orchestrator.load_run(run.id).status is RunStatus.BLOCKED
    assert calls == []
    progress = orchestrator.store.get(progress_key(run.id, first_task)).content
    assert progress["status"] == "cancelled"
    assert orchestrator.dispatcher.handle(first_task) is None

    storage.down = False
    resumed = asyncio.run(orchestrator.resume(run.id))

    assert resumed.status is RunStatus.COMPLETED
    assert calls == [first_task, f"{run.id}:specification:t2"]


class AbortLandsBeforeWrite(Orchestrator):
    """Lets another process abort the run just before the next run record write."""

    armed = False

    async def _write_run(self, run) -> None:
        if self.armed:
            self.armed = False
            elsewhere = Orchestrator(self.store, self.registry, self.planner, phases=self.phases)
            await elsewhere.abort_run(run.id, "stopped elsewhere")
        await super()._write_run(run)


def test_abort_landing_between_check_and_write_still_fails_the_run() -> None:
    drivers: list[Orchestrator] = []

    def _role(request: RoleRequest) -> DelegationResult:
        drivers[0].armed = True
        return _writes_spec(request)

    orchestrator = _orchestrator(_role, cls=AbortLandsBeforeWrite)
    drivers.append(orchestrator)

    run = asyncio.run(orchestrator.execute("login page"))

    assert run.status is RunStatus.FAILED
    assert run.error_class == "RunAborted"
    assert run.error == "stopped elsewhere"
    stored = orchestrator.load_run(run.id)
    assert stored.status is RunStatus.FAILED
    assert stored.error_class == "RunAborted"
    assert orchestrator.get_gate_history(run.id, Phase.SPECIFICATION) == []
