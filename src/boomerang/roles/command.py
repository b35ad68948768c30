from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

from boomerang.errors import DelegationCancelled
from boomerang.models import DelegationResult
from boomerang.roles.base import Role, RoleExecutionError, RoleRequest


class CommandRole(Role):
    """Runs an external worker process.

    The request is written to stdin as one JSON document; the worker prints a
    DelegationResult object as JSON (the last JSON object line on stdout wins).
    """

    def __init__(
        self,
        name: str,
        command: list[str] | str,
        working_directory: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.name = name
        self.command = command.split() if isinstance(command, str) else list(command)
        if not self.command:
            raise ValueError(f"Role '{name}' needs a non-empty command.")
        self.working_directory = Path(working_directory) if working_directory else None
        self.env = env

    @staticmethod
    def build_payload(request: RoleRequest) -> dict[str, Any]:
        return {
            "task": request.task.to_dict(),
            "attempt": request.attempt,
            "inputs": {key: entry.to_record() for key, entry in request.inputs.items()},
        }

    @staticmethod
    def _parse_result(stdout: str) -> dict[str, Any]:
        for raw_line in reversed(stdout.splitlines()):
            line = raw_line.strip()
            if not (line.startswith("{") and line.endswith("}")):
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed
        try:
            parsed = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise RoleExecutionError("Worker output did not contain a JSON result.") from exc
        if not isinstance(parsed, dict):
            raise RoleExecutionError("Worker result must be a JSON object.")
        return parsed

    async def execute(self, request: RoleRequest) -> DelegationResult:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=self.env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise RoleExecutionError(f"Worker binary not found: {self.command[0]}") from exc

        payload = json.dumps(self.build_payload(request), ensure_ascii=False, default=str)
        communicate = asyncio.ensure_future(process.communicate(payload.encode("utf-8")))
        cancel_wait = asyncio.ensure_future(request.cancel_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
            )
            if communicate not in done:
                communicate.cancel()
                process.terminate()
                await process.wait()
                raise DelegationCancelled(request.task.id)
        except asyncio.CancelledError:
            communicate.cancel()
            if process.returncode is None:
                process.kill()
            raise
        finally:
            cancel_wait.cancel()

        stdout_bytes, stderr_bytes = communicate.result()
        if process.returncode != 0:
            stderr_tail = stderr_bytes.decode("utf-8", errors="replace").strip()[-1000:]
            raise RoleExecutionError(
                f"Worker '{self.name}' exited with code {process.returncode}: {stderr_tail}"
            )
        parsed = self._parse_result(stdout_bytes.decode("utf-8", errors="replace"))
        try:
            return DelegationResult.from_dict(parsed, task_id=request.task.id, role=self.name)
        except ValueError as exc:
            raise RoleExecutionError(
                f"Worker '{self.name}' returned a malformed result: {exc}"
            ) from exc
