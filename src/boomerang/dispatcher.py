from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from boomerang.errors import (
    BoomerangError,
    CancellationTimeout,
    DelegationCancelled,
    DelegationFailed,
    StorageUnavailable,
)
from boomerang.models import (
    DelegationResult,
    DelegationStatus,
    TaskSpec,
    run_scope,
    utcnow_iso,
)
from boomerang.roles.base import RoleBinding, RoleRegistry, RoleRequest
from boomerang.state.context_store import PROGRESS_DOMAIN, ContextStore

logger = logging.getLogger(__name__)

DispatchEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class DispatchPolicy:
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    task_timeout_seconds: float | None = 600.0
    cancel_grace_seconds: float = 5.0


def progress_key(run_id: str, task_id: str) -> str:
    return f"{PROGRESS_DOMAIN}/{run_id}/{task_id}"


class DelegationHandle:
    """Caller-side view of one submitted task."""

    def __init__(self, task: TaskSpec, future: asyncio.Future[DelegationResult]) -> None:
        self.task = task
        self.future = future
        self.cancel_event = asyncio.Event()
        self.cancel_requested = False
        self.runner: asyncio.Future[DelegationResult] | None = None
        self.driver: asyncio.Task[None] | None = None
        self.holds_slot = False
        self.attempts = 0

    @property
    def id(self) -> str:
        return self.task.id

    @property
    def status(self) -> DelegationStatus:
        return self.task.status

    @property
    def done(self) -> bool:
        return self.future.done()

    def __repr__(self) -> str:
        return (
            f"DelegationHandle(id={self.id!r}, role={self.task.role!r}, "
            f"status={self.status.value})"
        )


class _RoleLane:
    def __init__(self, name: str, binding: RoleBinding) -> None:
        self.name = name
        self.binding = binding
        self.in_flight: set[str] = set()
        self.waiting: deque[DelegationHandle] = deque()

    @property
    def has_capacity(self) -> bool:
        return len(self.in_flight) < self.binding.max_concurrent


class Dispatcher:
    """Routes tasks to roles with per-role FIFO admission, retries and cooperative cancel."""

    def __init__(
        self,
        registry: RoleRegistry,
        store: ContextStore,
        policy: DispatchPolicy | None = None,
        *,
        event_hook: DispatchEventHook | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.policy = policy or DispatchPolicy()
        self.event_hook = event_hook
        self._lanes: dict[str, _RoleLane] = {}
        self._handles: dict[str, DelegationHandle] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _lane(self, role: str) -> _RoleLane:
        lane = self._lanes.get(role)
        if lane is None:
            lane = _RoleLane(role, self.registry.get(role))
            self._lanes[role] = lane
        return lane

    def _record(self, handle: DelegationHandle, status: DelegationStatus, **detail: Any) -> None:
        task = handle.task
        payload = {
            "task": task.to_dict(),
            "status": status.value,
            "attempt": handle.attempts,
            "at": utcnow_iso(),
            **detail,
        }
        self.store.append(
            progress_key(task.run_id, task.id),
            PROGRESS_DOMAIN,
            payload,
            author="dispatcher",
            task_id=task.id,
        )
        self._emit(
            {"event": f"delegation_{status.value}", "task_id": task.id, "role": task.role, **detail}
        )

    def _record_outcome(
        self, handle: DelegationHandle, status: DelegationStatus, **detail: Any
    ) -> None:
        try:
            self._record(handle, status, **detail)
        except StorageUnavailable as exc:
            logger.error("Could not record %s for %s: %s", status.value, handle.id, exc)

    def submit(self, task: TaskSpec) -> DelegationHandle:
        """Queue ``task`` for its role.

        Resubmitting a task id that is still live returns the existing handle.
        The handle is only tracked once its pending record is stored.
        """
        existing = self._handles.get(task.id)
        if existing is not None and not existing.done:
            return existing

        lane = self._lane(task.role)
        loop = asyncio.get_running_loop()
        handle = DelegationHandle(task, loop.create_future())
        task.status = DelegationStatus.PENDING
        task.completed_at = None
        task.failure_reason = None
        self._record(handle, DelegationStatus.PENDING, queue_position=len(lane.waiting))
        self._handles[task.id] = handle
        lane.waiting.append(handle)
        self._pump(lane)
        return handle

    def _pump(self, lane: _RoleLane) -> None:
        while lane.waiting and lane.has_capacity:
            handle = lane.waiting.popleft()
            if handle.cancel_requested:
                continue
            lane.in_flight.add(handle.id)
            handle.holds_slot = True
            handle.driver = asyncio.ensure_future(self._drive(handle, lane))

    def _release(self, handle: DelegationHandle) -> None:
        if not handle.holds_slot:
            return
        handle.holds_slot = False
        lane = self._lanes[handle.task.role]
        lane.in_flight.discard(handle.id)
        self._pump(lane)

    def _finish_returned(self, handle: DelegationHandle, result: DelegationResult) -> None:
        if handle.future.done():
            return
        task = handle.task
        task.status = DelegationStatus.RETURNED
        task.completed_at = utcnow_iso()
        self._record(handle, DelegationStatus.RETURNED, success=result.success)
        handle.future.set_result(result)

    def _finish_failed(self, handle: DelegationHandle, error: DelegationFailed) -> None:
        if handle.future.done():
            return
        task = handle.task
        task.status = DelegationStatus.FAILED
        task.completed_at = utcnow_iso()
        task.failure_reason = error.reason
        logger.warning("Delegation %s (%s) failed: %s", task.id, task.role, error)
        self._record_outcome(
            handle, DelegationStatus.FAILED, reason=error.reason, error=str(error)
        )
        handle.future.set_exception(error)

    def _finish_cancelled(self, handle: DelegationHandle) -> None:
        if handle.future.done():
            return
        task = handle.task
        task.status = DelegationStatus.CANCELLED
        task.completed_at = utcnow_iso()
        task.failure_reason = "cancelled"
        self._record_outcome(handle, DelegationStatus.CANCELLED)
        handle.future.set_exception(DelegationCancelled(task.id))

    def _request_for(self, handle: DelegationHandle, attempt: int) -> RoleRequest:
        task = handle.task
        detached = replace(task, inputs=list(task.inputs), deliverables=list(task.deliverables))
        return RoleRequest(
            task=detached,
            inputs=self.store.snapshot(task.inputs, prefer_scope=run_scope(task.run_id)),
            attempt=attempt,
            cancel_requested=handle.cancel_event,
        )

    async def _drive(self, handle: DelegationHandle, lane: _RoleLane) -> None:
        task = handle.task
        max_attempts = max(1, int(self.policy.max_attempts))
        timeout = self.policy.task_timeout_seconds
        try:
            task.status = DelegationStatus.IN_FLIGHT
            self._record(handle, DelegationStatus.IN_FLIGHT)
            errors: list[str] = []
            for attempt in range(1, max_attempts + 1):
                if handle.cancel_requested:
                    return
                if attempt > 1:
                    delay = self.policy.retry_backoff_seconds * (2 ** (attempt - 2))
                    self._emit(
                        {
                            "event": "delegation_retry",
                            "task_id": task.id,
                            "role": task.role,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    if delay > 0:
                        await asyncio.sleep(delay)
                    if handle.cancel_requested:
                        return
                handle.attempts = attempt
                task.retry_count = attempt - 1
                request = self._request_for(handle, attempt)
                runner = asyncio.ensure_future(lane.binding.role.execute(request))
                handle.runner = runner
                try:
                    if timeout:
                        result = await asyncio.wait_for(runner, timeout=timeout)
                    else:
                        result = await runner
                except TimeoutError:
                    if handle.cancel_requested:
                        return
                    errors.append(f"attempt {attempt}: timed out after {timeout:.1f}s")
                except asyncio.CancelledError:
                    if handle.cancel_requested:
                        return
                    current = asyncio.current_task()
                    if current is not None and current.cancelling():
                        raise
                    errors.append(f"attempt {attempt}: role execution was cancelled")
                except Exception as exc:
                    if handle.cancel_requested:
                        return
                    errors.append(f"attempt {attempt}: {type(exc).__name__}: {exc}")
                    self._emit(
                        {
                            "event": "delegation_attempt_failed",
                            "task_id": task.id,
                            "role": task.role,
                            "attempt": attempt,
                            "error": str(exc),
                        }
                    )
                else:
                    if handle.cancel_requested:
                        # Late result after cancellation is discarded.
                        return
                    if not isinstance(result, DelegationResult):
                        errors.append(
                            f"attempt {attempt}: role returned {type(result).__name__}"
                        )
                        continue
                    if result.task_id != task.id:
                        result = replace(result, task_id=task.id)
                    self._finish_returned(handle, result)
                    return

            summary = "; ".join(errors[-max_attempts:])
            self._finish_failed(
                handle,
                DelegationFailed(
                    f"Delegation {task.id} to '{task.role}' failed after "
                    f"{max_attempts} attempt(s): {summary}",
                    task_id=task.id,
                    role=task.role,
                    attempts=max_attempts,
                ),
            )
        except BoomerangError as exc:
            logger.error("Dispatcher could not complete %s: %s", task.id, exc)
            if not handle.future.done():
                handle.future.set_exception(exc)
        finally:
            handle.runner = None
            self._release(handle)

    async def await_result(self, handle: DelegationHandle) -> DelegationResult:
        """Suspend until the delegation returns. Raises DelegationFailed or DelegationCancelled."""
        return await asyncio.shield(handle.future)

    async def gather(
        self, handles: Iterable[DelegationHandle]
    ) -> list[tuple[DelegationHandle, DelegationResult | BaseException]]:
        """Join point: wait for every handle, pairing each with its result or error."""
        handles = list(handles)
        outcomes = await asyncio.gather(
            *(self.await_result(handle) for handle in handles), return_exceptions=True
        )
        self._forget(handles)
        return list(zip(handles, outcomes, strict=True))

    async def cancel(self, handle: DelegationHandle) -> DelegationStatus:
        if handle.done:
            return handle.status
        handle.cancel_requested = True
        handle.cancel_event.set()
        lane = self._lanes[handle.task.role]

        if handle in lane.waiting:
            lane.waiting.remove(handle)
            self._finish_cancelled(handle)
            return handle.status

        runner = handle.runner
        acknowledged = True
        if runner is not None and not runner.done():
            done, _ = await asyncio.wait({runner}, timeout=self.policy.cancel_grace_seconds)
            acknowledged = runner in done
        elif handle.driver is not None and not handle.driver.done():
            # Between attempts (backoff) or not started yet; nothing external to wait on.
            handle.driver.cancel()

        try:
            if acknowledged:
                self._finish_cancelled(handle)
            else:
                task = handle.task
                self._finish_failed(
                    handle,
                    CancellationTimeout(
                        f"Role '{task.role}' did not acknowledge cancellation of {task.id} "
                        f"within {self.policy.cancel_grace_seconds:.1f}s",
                        task_id=task.id,
                        role=task.role,
                        attempts=handle.attempts,
                        reason="CancellationTimeout",
                    ),
                )
        finally:
            self._release(handle)
        return handle.status

    async def cancel_run(self, run_id: str) -> list[DelegationHandle]:
        live = [
            handle
            for handle in self._handles.values()
            if handle.task.run_id == run_id and not handle.done
        ]
        # Pending ones first so freed slots are not refilled by work about to be cancelled.
        for handle in live:
            if handle.status is DelegationStatus.PENDING:
                handle.cancel_requested = True
        await asyncio.gather(*(self.cancel(handle) for handle in live))
        self._forget(live)
        return live

    def _forget(self, handles: Iterable[DelegationHandle]) -> None:
        for handle in handles:
            if handle.done and self._handles.get(handle.id) is handle:
                del self._handles[handle.id]

    def handle(self, task_id: str) -> DelegationHandle | None:
        return self._handles.get(task_id)

    def in_flight(self, role: str) -> int:
        lane = self._lanes.get(role)
        return len(lane.in_flight) if lane else 0

    def queued(self, role: str) -> int:
        lane = self._lanes.get(role)
        return len(lane.waiting) if lane else 0
