from __future__ import annotations

import asyncio
import importlib
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from boomerang.errors import ConfigError, UnknownRole
from boomerang.models import DelegationResult, TaskSpec
from boomerang.state.context_store import ContextEntry


class RoleExecutionError(RuntimeError):
    """Raised by a role when it could not produce a result. The dispatcher retries it."""


@dataclass(slots=True)
class RoleRequest:
    """What a role sees: its task, a read-only snapshot of its inputs, and a cancel signal."""

    task: TaskSpec
    inputs: Mapping[str, ContextEntry] = field(default_factory=dict)
    attempt: int = 1
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_requested.is_set()

    def input_content(self, key: str, default: Any = None) -> Any:
        entry = self.inputs.get(key)
        return default if entry is None else entry.content


class Role(ABC):
    name: str = "role"

    @abstractmethod
    async def execute(self, request: RoleRequest) -> DelegationResult:
        """Carry out the task and hand back a DelegationResult, or raise."""


RoleFunction = Callable[[RoleRequest], Awaitable[Any] | Any]


class CallableRole(Role):
    """Adapts a plain function (sync or async) to the Role interface.

    Sync functions run in a worker thread, so timeouts and other lanes keep
    working while they block.
    """

    def __init__(self, name: str, func: RoleFunction) -> None:
        self.name = name
        self.func = func

    async def execute(self, request: RoleRequest) -> DelegationResult:
        if inspect.iscoroutinefunction(self.func):
            outcome = await self.func(request)
        else:
            outcome = await asyncio.to_thread(self.func, request)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        if isinstance(outcome, DelegationResult):
            return outcome
        if isinstance(outcome, Mapping):
            return DelegationResult.from_dict(outcome, task_id=request.task.id, role=self.name)
        raise RoleExecutionError(
            f"Role '{self.name}' returned {type(outcome).__name__}, expected a DelegationResult."
        )


@dataclass(slots=True)
class RoleBinding:
    role: Role
    max_concurrent: int = 1


def load_factory(reference: str) -> Callable[..., Any]:
    module_name, _, attr = reference.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"Role factory must look like 'module:attr', got '{reference}'.")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import role factory module '{module_name}': {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"Role factory '{reference}' is not callable.")
    return factory


class RoleRegistry:
    """Maps role names to implementations and their concurrency limits."""

    def __init__(self) -> None:
        self._bindings: dict[str, RoleBinding] = {}

    def register(self, name: str, role: Role, *, max_concurrent: int = 1) -> None:
        if max_concurrent < 1:
            raise ConfigError(f"Role '{name}' needs max_concurrent >= 1.")
        self._bindings[name] = RoleBinding(role=role, max_concurrent=max_concurrent)

    def get(self, name: str) -> RoleBinding:
        binding = self._bindings.get(name)
        if binding is None:
            raise UnknownRole(f"No role registered for '{name}'.")
        return binding

    def names(self) -> list[str]:
        return sorted(self._bindings)

    def __contains__(self, name: object) -> bool:
        return name in self._bindings

    @classmethod
    def from_config(
        cls, roles: Mapping[str, Any], *, default_max_concurrent: int = 1
    ) -> RoleRegistry:
        registry = cls()
        for name, role_config in roles.items():
            factory = load_factory(role_config.factory)
            try:
                role = factory(name=name, **dict(role_config.options))
            except TypeError as exc:
                raise ConfigError(f"Role '{name}' factory rejected its options: {exc}") from exc
            if not isinstance(role, Role):
                raise ConfigError(f"Role factory '{role_config.factory}' did not return a Role.")
            max_concurrent = role_config.max_concurrent or default_max_concurrent
            registry.register(name, role, max_concurrent=max_concurrent)
        return registry
