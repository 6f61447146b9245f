"""
Durable, concurrency-safe storage of one record per identity.

Key patterns:
- Protocol-based storage backends (JSON files on disk, in-memory documents)
- One asyncio.Lock per identity: same-identity mutations are serialized,
  different identities never wait on each other
- Atomic writes: a record is written to a temporary file and swapped in with
  os.replace, so readers see either the old or the new document, never half
- A failed commit raises PersistenceError and nothing counts as written
"""

import asyncio
import hashlib
import inspect
import os
import tempfile
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Protocol

import pydantic
import structlog

from ember.config import StorageConfig
from ember.domain.errors import PersistenceError, ValidationError
from ember.domain.models import UserState

logger = structlog.get_logger(__name__)

Mutation = Callable[[UserState], UserState | Awaitable[UserState]]


class RecordStore(Protocol):
    """Key-addressable document storage. Writes must be atomic per key."""

    async def read(self, identity: str) -> str | None: ...

    async def write(self, identity: str, document: str) -> None: ...


class InMemoryRecordStore:
    """Keeps serialized documents in a dict. Stand-in for a networked key-value store."""

    def __init__(self) -> None:
        self._documents: dict[str, str] = {}

    async def read(self, identity: str) -> str | None:
        return self._documents.get(identity)

    async def write(self, identity: str, document: str) -> None:
        self._documents[identity] = document

    def __len__(self) -> int:
        return len(self._documents)


class JsonFileRecordStore:
    """One JSON document per identity under a data directory."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)

    def path_for(self, identity: str) -> Path:
        # Phone numbers and other identities are not safe file names as-is
        digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()
        return self.data_dir / f"{digest}.json"

    async def read(self, identity: str) -> str | None:
        return await asyncio.to_thread(self._read_sync, self.path_for(identity))

    async def write(self, identity: str, document: str) -> None:
        await asyncio.to_thread(self._write_sync, self.path_for(identity), document)

    @staticmethod
    def _read_sync(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    @staticmethod
    def _write_sync(path: Path, document: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(document)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class KeyedLock:
    """Per-key mutual exclusion. Locks are created on demand and dropped when idle."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def create_record_store(config: StorageConfig) -> RecordStore:
    if config.backend == "memory":
        return InMemoryRecordStore()
    return JsonFileRecordStore(config.data_dir)


class StateRepository:
    """
    Owns the per-identity UserState records.

    load() never requires a prior registration: unknown identities get a fresh
    default record, which is only persisted by a later mutate().
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self.locks = KeyedLock()
        self.logger = logger.bind(component="state_repository")

    @staticmethod
    def _check_identity(identity: str) -> None:
        if not identity or not identity.strip():
            raise ValidationError("identity required")

    async def _read(self, identity: str) -> UserState | None:
        try:
            document = await self.store.read(identity)
            if document is None:
                return None
            return UserState.model_validate_json(document)
        except (OSError, pydantic.ValidationError) as e:
            self.logger.error("record_read_failed", identity=identity, error=str(e))
            raise PersistenceError(identity, f"read failed: {e}") from e

    async def load(self, identity: str) -> UserState:
        self._check_identity(identity)
        return await self._read(identity) or UserState(identity=identity)

    async def mutate(self, identity: str, fn: Mutation) -> UserState:
        """
        Apply fn to the current record and commit the result atomically.

        fn may be a plain or async function. It runs while this identity's
        lock is held, so it may await external calls without another
        mutation for the same identity interleaving.
        """
        self._check_identity(identity)

        async with self.locks.hold(identity):
            current = await self._read(identity) or UserState(identity=identity)

            updated = fn(current)
            if inspect.isawaitable(updated):
                updated = await updated

            if updated.identity != identity:
                raise ValueError(f"mutation changed identity {identity!r} -> {updated.identity!r}")

            committed = updated.model_copy(update={"revision": current.revision + 1})
            try:
                await self.store.write(identity, committed.model_dump_json())
            except OSError as e:
                self.logger.error("record_write_failed", identity=identity, error=str(e))
                raise PersistenceError(identity, f"write failed: {e}") from e

            self.logger.debug("record_committed", identity=identity, revision=committed.revision)
            return committed
