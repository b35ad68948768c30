import asyncio
import threading
import time

import pytest

from boomerang.dispatcher import DispatchPolicy, Dispatcher, progress_key
from boomerang.errors import (
    CancellationTimeout,
    DelegationCancelled,
    DelegationFailed,
    StorageUnavailable,
    UnknownRole,
)
from boomerang.models import ContextRef, DelegationResult, DelegationStatus, TaskSpec
from boomerang.roles import CallableRole, RoleExecutionError, RoleRegistry, RoleRequest
from boomerang.state import ContextStore, MemoryStorage

FAST = DispatchPolicy(
    max_attempts=3,
    retry_backoff_seconds=0.0,
    task_timeout_seconds=5.0,
    cancel_grace_seconds=0.05,
)


def _task(task_id: str, role: str = "coder", run_id: str = "run-1") -> TaskSpec:
    return TaskSpec(id=task_id, run_id=run_id, role=role, description=f"do {task_id}")


def _dispatcher(
    role_func, *, max_concurrent: int = 1, policy: DispatchPolicy = FAST, events=None
) -> tuple[Dispatcher, ContextStore]:
    registry = RoleRegistry()
    registry.register("coder", CallableRole("coder", role_func), max_concurrent=max_concurrent)
    store = ContextStore()
    hook = events.append if events is not None else None
    return Dispatcher(registry, store, policy, event_hook=hook), store


def _progress_statuses(store: ContextStore, task: TaskSpec) -> list[str]:
    return [
        entry.content["status"] for entry in store.history(progress_key(task.run_id, task.id))
    ]


def test_tasks_start_in_fifo_order_under_role_limit() -> None:
    started: list[str] = []
    active = 0
    peak = 0

    async def _run() -> list[str]:
        release = asyncio.Event()

        async def _role(request: RoleRequest) -> DelegationResult:
            nonlocal active, peak
            started.append(request.task.id)
            active += 1
            peak = max(peak, active)
            await release.wait()
            active -= 1
            return DelegationResult(task_id=request.task.id, role="coder")

        dispatcher, _ = _dispatcher(_role, max_concurrent=2)
        handles = [dispatcher.submit(_task(f"t{index}")) for index in range(1, 6)]

        assert dispatcher.in_flight("coder") == 2
        assert dispatcher.queued("coder") == 3
        assert [handle.status for handle in handles[2:]] == [DelegationStatus.PENDING] * 3

        await asyncio.sleep(0)
        release.set()
        outcomes = await dispatcher.gather(handles)
        return [outcome.task_id for _, outcome in outcomes]

    assert asyncio.run(_run()) == ["t1", "t2", "t3", "t4", "t5"]
    assert started == ["t1", "t2", "t3", "t4", "t5"]
    assert peak == 2


def test_role_failures_are_retried_then_reported() -> None:
    attempts: list[int] = []
    events: list[dict] = []

    def _role(request: RoleRequest) -> DelegationResult:
        attempts.append(request.attempt)
        raise RoleExecutionError("tool crashed")

    async def _run():
        dispatcher, store = _dispatcher(_role, events=events)
        task = _task("run-1:refinement:t1")
        handle = dispatcher.submit(task)
        with pytest.raises(DelegationFailed) as exc_info:
            await dispatcher.await_result(handle)
        return handle, store, exc_info.value

    handle, store, error = asyncio.run(_run())

    assert attempts == [1, 2, 3]
    assert handle.status is DelegationStatus.FAILED
    assert handle.task.retry_count == 2
    assert error.attempts == 3
    assert error.task_id == "run-1:refinement:t1"
    assert "tool crashed" in str(error)
    assert _progress_statuses(store, handle.task) == ["pending", "in_flight", "failed"]
    assert [event["attempt"] for event in events if event["event"] == "delegation_retry"] == [2, 3]


def test_retry_recovers_after_transient_failure() -> None:
    calls = 0

    def _role(request: RoleRequest):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RoleExecutionError("flaky")
        return {"deliverables": {"code/main": "print('hi')"}}

    async def _run():
        dispatcher, _ = _dispatcher(_role)
        handle = dispatcher.submit(_task("t1"))
        return handle, await dispatcher.await_result(handle)

    handle, result = asyncio.run(_run())

    assert calls == 2
    assert handle.status is DelegationStatus.RETURNED
    assert result.deliverables["code/main"] == "print('hi')"
    assert result.task_id == "t1"


def test_unsuccessful_result_is_returned_not_retried() -> None:
    calls = 0

    def _role(request: RoleRequest) -> DelegationResult:
        nonlocal calls
        calls += 1
        return DelegationResult(task_id=request.task.id, role="coder", success=False)

    async def _run():
        dispatcher, store = _dispatcher(_role)
        handle = dispatcher.submit(_task("t1"))
        return handle, store, await dispatcher.await_result(handle)

    handle, store, result = asyncio.run(_run())

    assert calls == 1
    assert result.success is False
    assert handle.status is DelegationStatus.RETURNED
    assert _progress_statuses(store, handle.task) == ["pending", "in_flight", "returned"]


def test_timed_out_attempts_fail_the_delegation() -> None:
    policy = DispatchPolicy(
        max_attempts=2, retry_backoff_seconds=0.0, task_timeout_seconds=0.05
    )

    async def _role(request: RoleRequest) -> DelegationResult:
        await asyncio.sleep(5)
        return DelegationResult(task_id=request.task.id, role="coder")

    async def _run():
        dispatcher, _ = _dispatcher(_role, policy=policy)
        handle = dispatcher.submit(_task("t1"))
        with pytest.raises(DelegationFailed) as exc_info:
            await dispatcher.await_result(handle)
        return exc_info.value

    error = asyncio.run(_run())

    assert error.attempts == 2
    assert "timed out" in str(error)


def test_cancel_pending_task_never_runs_it() -> None:
    started: list[str] = []

    async def _run():
        release = asyncio.Event()

        async def _role(request: RoleRequest) -> DelegationResult:
            started.append(request.task.id)
            await release.wait()
            return DelegationResult(task_id=request.task.id, role="coder")

        dispatcher, store = _dispatcher(_role)
        first = dispatcher.submit(_task("t1"))
        second = dispatcher.submit(_task("t2"))

        status = await dispatcher.cancel(second)
        with pytest.raises(DelegationCancelled):
            await dispatcher.await_result(second)

        release.set()
        await dispatcher.await_result(first)
        return status, store, second

    status, store, second = asyncio.run(_run())

    assert status is DelegationStatus.CANCELLED
    assert started == ["t1"]
    assert _progress_statuses(store, second.task) == ["pending", "cancelled"]


def test_cancel_in_flight_task_that_acknowledges() -> None:
    async def _run():
        entered = asyncio.Event()

        async def _role(request: RoleRequest) -> DelegationResult:
            entered.set()
            await request.cancel_requested.wait()
            return DelegationResult(task_id=request.task.id, role="coder", summary="stopped")

        dispatcher, _ = _dispatcher(_role)
        handle = dispatcher.submit(_task("t1"))
        await entered.wait()
        status = await dispatcher.cancel(handle)
        with pytest.raises(DelegationCancelled):
            await dispatcher.await_result(handle)
        return status, dispatcher

    status, dispatcher = asyncio.run(_run())

    assert status is DelegationStatus.CANCELLED
    assert dispatcher.in_flight("coder") == 0


def test_cancel_unacknowledged_task_reports_cancellation_timeout() -> None:
    async def _run():
        entered = asyncio.Event()

        async def _role(request: RoleRequest) -> DelegationResult:
            entered.set()
            await asyncio.sleep(5)
            return DelegationResult(task_id=request.task.id, role="coder")

        dispatcher, _ = _dispatcher(_role)
        handle = dispatcher.submit(_task("t1"))
        await entered.wait()
        status = await dispatcher.cancel(handle)
        with pytest.raises(CancellationTimeout) as exc_info:
            await dispatcher.await_result(handle)
        if handle.driver is not None:
            handle.driver.cancel()
        return status, handle, exc_info.value

    status, handle, error = asyncio.run(_run())

    assert status is DelegationStatus.FAILED
    assert handle.task.failure_reason == "CancellationTimeout"
    assert error.reason == "CancellationTimeout"


def test_cancel_run_only_touches_that_run() -> None:
    async def _run():
        release = asyncio.Event()

        async def _role(request: RoleRequest) -> DelegationResult:
            while not request.cancelled and not release.is_set():
                await asyncio.sleep(0.005)
            return DelegationResult(task_id=request.task.id, role="coder")

        dispatcher, _ = _dispatcher(_role, max_concurrent=3)
        doomed = [dispatcher.submit(_task(f"a{index}", run_id="run-a")) for index in range(2)]
        survivor = dispatcher.submit(_task("b1", run_id="run-b"))
        await asyncio.sleep(0.01)

        cancelled = await dispatcher.cancel_run("run-a")
        release.set()
        result = await dispatcher.await_result(survivor)
        return cancelled, doomed, result

    cancelled, doomed, result = asyncio.run(_run())

    assert {handle.id for handle in cancelled} == {"a0", "a1"}
    assert [handle.status for handle in doomed] == [DelegationStatus.CANCELLED] * 2
    assert result.task_id == "b1"


def test_resubmitting_live_task_returns_same_handle() -> None:
    async def _run():
        release = asyncio.Event()

        async def _role(request: RoleRequest) -> DelegationResult:
            await release.wait()
            return DelegationResult(task_id=request.task.id, role="coder")

        dispatcher, _ = _dispatcher(_role)
        task = _task("t1")
        first = dispatcher.submit(task)
        second = dispatcher.submit(task)
        release.set()
        await dispatcher.await_result(first)
        return first, second

    first, second = asyncio.run(_run())

    assert first is second


def test_unknown_role_is_rejected_at_submit() -> None:
    async def _run():
        dispatcher, _ = _dispatcher(lambda request: {})
        dispatcher.submit(_task("t1", role="ghost"))

    with pytest.raises(UnknownRole):
        asyncio.run(_run())


def test_role_sees_snapshot_of_declared_inputs() -> None:
    seen: dict = {}

    def _role(request: RoleRequest) -> DelegationResult:
        seen.update({key: entry.content for key, entry in request.inputs.items()})
        return DelegationResult(task_id=request.task.id, role="coder")

    async def _run():
        dispatcher, store = _dispatcher(_role)
        store.put("spec/doc", "spec", "v1", author="specifier")
        store.put("spec/doc", "spec", "v2", author="specifier")
        task = _task("t1")
        task.inputs = [ContextRef("spec/doc", 1)]
        handle = dispatcher.submit(task)
        await dispatcher.await_result(handle)

    asyncio.run(_run())

    assert seen == {"spec/doc": "v1"}



def test_blocking_sync_role_is_bounded_by_timeout() -> None:
    policy = DispatchPolicy(max_attempts=1, retry_backoff_seconds=0.0, task_timeout_seconds=0.05)

    def _role(request: RoleRequest) -> DelegationResult:
        time.sleep(0.3)
        return DelegationResult(task_id=request.task.id, role="coder")

    async def _run():
        dispatcher, _ = _dispatcher(_role, policy=policy)
        handle = dispatcher.submit(_task("t1"))
        with pytest.raises(DelegationFailed) as exc_info:
            await dispatcher.await_result(handle)
        return handle, exc_info.value

    handle, error = asyncio.run(_run())

    assert handle.status is DelegationStatus.FAILED
    assert "timed out" in str(error)


def test_sync_roles_run_side_by_side_up_to_role_limit() -> None:
    barrier = threading.Barrier(2, timeout=2)

    def _role(request: RoleRequest) -> DelegationResult:
        barrier.wait()
        return DelegationResult(task_id=request.task.id, role="coder")

    async def _run():
        dispatcher, _ = _dispatcher(_role, max_concurrent=2)
        handles = [dispatcher.submit(_task("t1")), dispatcher.submit(_task("t2"))]
        return await dispatcher.gather(handles)

    outcomes = asyncio.run(_run())

    assert [handle.status for handle, _ in outcomes] == [DelegationStatus.RETURNED] * 2


class _RefusingStorage(MemoryStorage):
    def append(self, record: dict) -> None:
        if record["key"].startswith("progress/"):
            raise StorageUnavailable("disk went away")
        super().append(record)


def test_submit_without_pending_record_leaves_nothing_behind() -> None:
    calls: list[str] = []
    registry = RoleRegistry()
    registry.register("coder", CallableRole("coder", lambda request: calls.append("ran")))
    dispatcher = Dispatcher(registry, ContextStore(_RefusingStorage()), FAST)

    async def _run():
        with pytest.raises(StorageUnavailable):
            dispatcher.submit(_task("t1"))
        return await dispatcher.cancel_run("run-1")

    cancelled = asyncio.run(_run())

    assert cancelled == []
    assert dispatcher.handle("t1") is None
    assert dispatcher.in_flight("coder") == 0
    assert dispatcher.queued("coder") == 0
    assert calls == []


def test_finished_handles_are_forgotten() -> None:
    async def _run():
        dispatcher, _ = _dispatcher(lambda request: {"summary": "done"})
        first = dispatcher.submit(_task("t1"))
        tracked = dispatcher.handle("t1")
        await dispatcher.gather([first])
        return dispatcher, first, tracked

    dispatcher, first, tracked = asyncio.run(_run())

    assert tracked is first
    assert first.status is DelegationStatus.RETURNED
    assert dispatcher.handle("t1") is None
