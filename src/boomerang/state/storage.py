from __future__ import annotations

import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from boomerang.errors import StorageUnavailable, VersionConflict

logger = logging.getLogger(__name__)


def _check_sequence(versions: dict[str, int], record: dict[str, Any]) -> tuple[str, int] | None:
    key = record.get("key")
    version = record.get("version")
    if key is None or version is None:
        return None
    known = versions.get(str(key), 0)
    if int(version) != known + 1:
        raise VersionConflict(str(key), expected=int(version) - 1, actual=known)
    return str(key), int(version)


class StorageBackend(ABC):
    """Durable sink for context entries. Records are plain dicts, oldest first.

    Backends refuse a record whose version is not the next one for its key, so
    writers sharing a backend can never both land the same version.
    """

    @abstractmethod
    def load(self) -> list[dict[str, Any]]:
        """Return every persisted record in append order."""

    @abstractmethod
    def append(self, record: dict[str, Any]) -> None:
        """Persist one record. Raises StorageUnavailable or VersionConflict."""


class MemoryStorage(StorageBackend):
    def __init__(self) -> None:
        self._records: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._versions: dict[str, int] = {}

    def load(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(record) for record in self._records]

    def append(self, record: dict[str, Any]) -> None:
        with self._lock:
            sequence = _check_sequence(self._versions, record)
            self._records.append(dict(record))
            if sequence:
                self._versions[sequence[0]] = sequence[1]


class LocalFileStorage(StorageBackend):
    """Append-only JSON-lines log guarded by an exclusive lock file."""

    LOG_NAME = "entries.jsonl"

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.state_dir = state_dir.resolve()
        self.log_file = self.state_dir / self.LOG_NAME
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds
        self._offset = 0
        self._versions: dict[str, int] = {}
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(
                f"Cannot create state directory {self.state_dir}: {exc}"
            ) from exc

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StorageUnavailable("Timed out waiting for state lock.") from exc
                time.sleep(0.02)
            except OSError as exc:
                raise StorageUnavailable(f"Cannot acquire state lock: {exc}") from exc

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def load(self) -> list[dict[str, Any]]:
        if not self.log_file.exists():
            return []
        try:
            raw_lines = self.log_file.read_text(encoding="utf-8").splitlines()
        except OSError as exc:
            raise StorageUnavailable(f"Cannot read {self.log_file}: {exc}") from exc

        records: list[dict[str, Any]] = []
        for line_number, raw_line in enumerate(raw_lines, start=1):
            line = raw_line.strip()
            if not line:
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(
                    "Skipping malformed state record at %s:%d", self.log_file, line_number
                )
                continue
            if isinstance(parsed, dict):
                records.append(parsed)
        return records

    def _scan_tail(self) -> None:
        """Advance the per-key version index over lines other writers appended."""
        if not self.log_file.exists():
            return
        with self.log_file.open("rb") as handle:
            handle.seek(self._offset)
            data = handle.read()
        end = data.rfind(b"\n")
        if end < 0:
            return
        self._offset += end + 1
        for raw_line in data[: end + 1].splitlines():
            try:
                parsed = json.loads(raw_line)
                key, version = str(parsed["key"]), int(parsed["version"])
            except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError):
                continue
            if version > self._versions.get(key, 0):
                self._versions[key] = version

    def append(self, record: dict[str, Any]) -> None:
        serialized = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)
        with self._state_lock():
            try:
                self._scan_tail()
                sequence = _check_sequence(self._versions, record)
                with self.log_file.open("a", encoding="utf-8") as handle:
                    handle.write(serialized + "\n")
                    handle.flush()
                    os.fsync(handle.fileno())
                if sequence:
                    self._versions[sequence[0]] = sequence[1]
            except OSError as exc:
                raise StorageUnavailable(f"Cannot write {self.log_file}: {exc}") from exc


def build_storage(backend: str, path: Path, *, lock_timeout_seconds: float = 3.0) -> StorageBackend:
    if backend == "memory":
        return MemoryStorage()
    if backend == "local":
        return LocalFileStorage(path, lock_timeout_seconds=lock_timeout_seconds)
    raise StorageUnavailable(f"Unsupported store backend: {backend}")
