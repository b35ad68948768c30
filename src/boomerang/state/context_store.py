from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from typing import Any

from boomerang.errors import NotFound, VersionConflict
from boomerang.models import ContextRef, utcnow_iso
from boomerang.state.storage import MemoryStorage, StorageBackend

logger = logging.getLogger(__name__)

PROGRESS_DOMAIN = "progress"
RUNS_DOMAIN = "runs"
GATES_DOMAIN = "gates"
FOLLOWUPS_DOMAIN = "followups"
CONTROL_DOMAIN = "control"
RESERVED_DOMAINS = frozenset(
    {PROGRESS_DOMAIN, RUNS_DOMAIN, GATES_DOMAIN, FOLLOWUPS_DOMAIN, CONTROL_DOMAIN}
)


@dataclass(frozen=True, slots=True)
class ContextEntry:
    key: str
    domain: str
    content: Any
    author: str
    version: int
    created_at: str
    supersedes: str | None = None
    task_id: str | None = None
    replay: bool = False

    @property
    def id(self) -> str:
        return f"{self.key}@{self.version}"

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "domain": self.domain,
            "content": self.content,
            "author": self.author,
            "version": self.version,
            "created_at": self.created_at,
            "supersedes": self.supersedes,
            "task_id": self.task_id,
            "replay": self.replay,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ContextEntry:
        return cls(
            key=str(record["key"]),
            domain=str(record.get("domain", "")),
            content=record.get("content"),
            author=str(record.get("author", "")),
            version=int(record["version"]),
            created_at=str(record.get("created_at", "")),
            supersedes=record.get("supersedes"),
            task_id=record.get("task_id"),
            replay=bool(record.get("replay", False)),
        )


def default_domain(key: str) -> str:
    return key.split("/", maxsplit=1)[0]


class ContextStore:
    """Append-only, versioned memory bank.

    Entries live in a single arena list and are never mutated; a per-key index
    of arena positions is the only thing that moves forward. Writes to one key
    are serialized by a per-key lock, writes to different keys proceed in
    parallel, and reads never take the key locks. Readers get detached copies.
    """

    def __init__(self, storage: StorageBackend | None = None) -> None:
        self.storage = storage or MemoryStorage()
        self._arena: list[ContextEntry] = []
        self._index: dict[str, list[int]] = {}
        self._arena_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()
        self.refresh()

    @staticmethod
    def _validate_key(key: str) -> str:
        normalized = str(key).strip()
        if not normalized:
            raise ValueError("Context key must be non-empty.")
        if normalized.startswith("/") or normalized.endswith("/") or "//" in normalized:
            raise ValueError(f"Malformed context key: {key!r}")
        if "@" in normalized:
            raise ValueError(f"Context key must not contain '@': {key!r}")
        return normalized

    def _key_lock(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _ingest(self, entry: ContextEntry) -> None:
        with self._arena_lock:
            self._arena.append(entry)
            self._index.setdefault(entry.key, []).append(len(self._arena) - 1)

    def refresh(self) -> int:
        """Pull records persisted by other processes into the index. Returns how many were new."""
        ingested = 0
        for record in self.storage.load():
            try:
                entry = ContextEntry.from_record(record)
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring unreadable context record: %r", record)
                continue
            with self._key_lock(entry.key):
                if entry.version != self.latest_version(entry.key) + 1:
                    # Already known, or a duplicate produced by an out-of-band writer.
                    continue
                self._ingest(entry)
                ingested += 1
        return ingested

    def latest_version(self, key: str) -> int:
        return len(self._index.get(key, ()))

    def put(
        self,
        key: str,
        domain: str,
        content: Any,
        author: str,
        *,
        expected_version: int | None = None,
        task_id: str | None = None,
    ) -> ContextEntry:
        """Write a new version of ``key``. Never overwrites.

        With ``expected_version`` the write is optimistic: if another writer got
        there first, ``VersionConflict`` is raised and nothing is written.
        """
        key = self._validate_key(key)
        with self._key_lock(key):
            current = self.latest_version(key)
            if expected_version is not None and expected_version != current:
                raise VersionConflict(key, expected=expected_version, actual=current)
            previous = self._arena[self._index[key][-1]] if current else None
            entry = ContextEntry(
                key=key,
                domain=domain or default_domain(key),
                content=copy.deepcopy(content),
                author=author,
                version=current + 1,
                created_at=utcnow_iso(),
                supersedes=previous.id if previous else None,
                task_id=task_id,
                replay=bool(task_id and previous is not None and previous.task_id == task_id),
            )
            self.storage.append(entry.to_record())
            self._ingest(entry)
        return entry

    def append(
        self,
        key: str,
        domain: str,
        content: Any,
        author: str,
        *,
        task_id: str | None = None,
    ) -> ContextEntry:
        """Read-modify-write loop over ``put``; conflicts are retried against a fresh base.

        A conflict means another writer made progress on ``key``, so the loop
        always terminates and ``VersionConflict`` never reaches the caller.
        """
        key = self._validate_key(key)
        while True:
            base = self.latest_version(key)
            try:
                return self.put(
                    key, domain, content, author, expected_version=base, task_id=task_id
                )
            except VersionConflict:
                logger.debug("Version conflict on %s at base %d; retrying", key, base)
                self.refresh()

    @staticmethod
    def _detached(entry: ContextEntry) -> ContextEntry:
        return replace(entry, content=copy.deepcopy(entry.content))

    @staticmethod
    def in_scope(entry: ContextEntry, scope: str | None) -> bool:
        """True when ``scope`` is unset or the entry was written by a task id starting with it."""
        return scope is None or (entry.task_id or "").startswith(scope)

    def _latest(self, key: str, scope: str | None = None) -> ContextEntry | None:
        for position in reversed(tuple(self._index.get(key, ()))):
            entry = self._arena[position]
            if self.in_scope(entry, scope):
                return entry
        return None

    def get(self, key: str, *, scope: str | None = None) -> ContextEntry:
        entry = self._latest(key, scope)
        if entry is None:
            raise NotFound(key)
        return self._detached(entry)

    def get_version(self, key: str, version: int) -> ContextEntry:
        positions = self._index.get(key, [])
        if version < 1 or version > len(positions):
            raise NotFound(key, version)
        return self._detached(self._arena[positions[version - 1]])

    def find(self, key: str, *, scope: str | None = None) -> ContextEntry | None:
        try:
            return self.get(key, scope=scope)
        except NotFound:
            return None

    def resolve(self, ref: ContextRef | str, *, scope: str | None = None) -> ContextEntry:
        """Entry a reference points at. ``scope`` narrows unpinned refs; pins are exact."""
        ref = ContextRef.parse(ref)
        if ref.version is None:
            return self.get(ref.key, scope=scope)
        return self.get_version(ref.key, ref.version)

    def history(self, key: str) -> tuple[ContextEntry, ...]:
        positions = list(self._index.get(key, ()))
        return tuple(self._detached(self._arena[position]) for position in positions)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in list(self._index) if key.startswith(prefix))

    def query(
        self,
        domain: str,
        predicate: Callable[[ContextEntry], bool] | None = None,
        *,
        scope: str | None = None,
    ) -> list[ContextEntry]:
        """Latest in-scope version of every key in ``domain`` that satisfies ``predicate``."""
        matches: list[ContextEntry] = []
        for key in self.keys():
            latest = self._latest(key, scope)
            if latest is None or latest.domain != domain:
                continue
            entry = self._detached(latest)
            if predicate is not None and not predicate(entry):
                continue
            matches.append(entry)
        return matches

    def entries_for_task(self, task_id: str) -> list[ContextEntry]:
        with self._arena_lock:
            arena = list(self._arena)
        return [self._detached(entry) for entry in arena if entry.task_id == task_id]

    def snapshot(
        self, refs: Iterable[ContextRef | str], *, prefer_scope: str | None = None
    ) -> dict[str, ContextEntry]:
        """Detached copies of the referenced entries; unresolvable refs are omitted.

        With ``prefer_scope`` an unpinned ref reads the latest version written
        inside that scope, falling back to the latest version overall.
        """
        resolved: dict[str, ContextEntry] = {}
        for raw in refs:
            ref = ContextRef.parse(raw)
            entry = None
            if prefer_scope is not None and ref.version is None:
                entry = self.find(ref.key, scope=prefer_scope)
            if entry is None:
                try:
                    entry = self.resolve(ref)
                except NotFound:
                    continue
            resolved[ref.key] = entry
        return resolved
