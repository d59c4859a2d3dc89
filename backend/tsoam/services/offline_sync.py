"""
Offline Operation Queue & Sync Coordinator.
Lets the church dashboard keep recording members, welfare requests, appointments etc.
while the API is unreachable, and replays the queued mutations once it is back.
"""
import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from operator import attrgetter
from typing import Any, Callable, Dict, List, Optional

from .offline_store import DurableStore, Partition, StorageError
from .progress import ProgressBroadcaster, SyncProgress, SyncStep
from .remote_api import RemoteApi, RemoteRejected, UnknownModule

logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync"
SCHEMA_VERSION = 1


def epoch_ms() -> int:
    return int(time.time() * 1000)


class OperationType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class PendingOperation:
    """A queued mutation waiting to be replayed against the remote API."""
    id: str
    type: OperationType
    module: str
    data: Dict[str, Any]
    timestamp: int
    retry_count: int = 0
    last_error: Optional[str] = None

    @staticmethod
    def new_id(module: str, op_type: OperationType, timestamp: int) -> str:
        return f"{module}_{op_type.value}_{timestamp}_{uuid.uuid4().hex[:9]}"

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "module": self.module,
            "data": self.data,
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "PendingOperation":
        return cls(
            id=record["id"],
            type=OperationType(record["type"]),
            module=record["module"],
            data=record.get("data") or {},
            timestamp=int(record["timestamp"]),
            retry_count=int(record.get("retry_count") or 0),
            last_error=record.get("last_error"),
        )


@dataclass
class CachedRecord:
    """Locally persisted snapshot of server-owned data, used for offline reads."""
    key: str
    module: str
    data: Any
    last_modified: int
    version: int = SCHEMA_VERSION

    @staticmethod
    def make_key(module: str, key: Any) -> str:
        return f"{module}_{key}"

    def to_record(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "module": self.module,
            "data": self.data,
            "last_modified": self.last_modified,
            "version": self.version,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CachedRecord":
        return cls(
            key=record["key"],
            module=record["module"],
            data=record.get("data"),
            last_modified=int(record["last_modified"]),
            version=int(record.get("version") or SCHEMA_VERSION),
        )


@dataclass
class SyncMetadata:
    last_sync: int = 0


class LogicalClock:
    """Wall-clock milliseconds that never repeat or go backwards."""

    def __init__(self, source: Callable[[], int] = epoch_ms):
        self.source = source
        self._last = 0

    def now(self) -> int:
        return self.source()

    def tick(self) -> int:
        self._last = max(self.source(), self._last + 1)
        return self._last


class OfflineCache:
    """Read/write helpers for the ``offline_data`` partition."""

    def __init__(self, store: DurableStore, clock: LogicalClock):
        self.store = store
        self.clock = clock

    async def store_offline_data(self, module: str, key: Any, data: Any) -> CachedRecord:
        record = CachedRecord(
            key=CachedRecord.make_key(module, key),
            module=module,
            data=data,
            last_modified=self.clock.tick(),
        )
        await self.store.store(Partition.OFFLINE_DATA, record.to_record())
        return record

    async def get_offline_data(self, module: str, key: Any) -> Any:
        record = await self.store.retrieve(Partition.OFFLINE_DATA, CachedRecord.make_key(module, key))
        return record["data"] if record else None

    async def get_module_data(self, module: str) -> List[Any]:
        records = await self.store.retrieve_all(Partition.OFFLINE_DATA)
        return [r["data"] for r in records if r["module"] == module]

    async def remove_offline_data(self, module: str, key: Any) -> None:
        await self.store.delete(Partition.OFFLINE_DATA, CachedRecord.make_key(module, key))


class SyncCoordinator:
    """
    Drains the pending-operation log against the remote API.

    Operations are grouped by module (order of first appearance) and each group
    is replayed sequentially in enqueue order. A failing operation stops its own
    group for this cycle but never the other groups. At most one cycle runs at a
    time; triggers that arrive while a cycle is running are dropped.
    """

    def __init__(
        self,
        store: DurableStore,
        remote: RemoteApi,
        is_online: Callable[[], bool],
        broadcaster: Optional[ProgressBroadcaster] = None,
        clock: Optional[LogicalClock] = None,
        max_retries: int = 3,
        stale_after_ms: int = 24 * 60 * 60 * 1000,
        stale_retry_threshold: int = 2,
    ):
        self.store = store
        self.remote = remote
        self.is_online = is_online
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.clock = clock or LogicalClock()
        self.cache = OfflineCache(store, self.clock)
        self.max_retries = max_retries
        self.stale_after_ms = stale_after_ms
        self.stale_retry_threshold = stale_retry_threshold
        self._sync_in_progress = False
        # Held for a whole cycle and for wipes, so a wipe never interleaves with write-backs
        self._cycle_lock = asyncio.Lock()

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    async def sync_offline_data(self) -> Optional[SyncProgress]:
        """Run one sync cycle. Returns the final progress event, or None if skipped."""
        if self._sync_in_progress or not self.is_online():
            return None

        # Set before the first await so concurrent triggers see it
        self._sync_in_progress = True
        try:
            async with self._cycle_lock:
                return await self._run_cycle()
        finally:
            self._sync_in_progress = False

    async def clear_all(self) -> None:
        """Wipe every partition once no cycle is running."""
        async with self._cycle_lock:
            for partition in Partition:
                await self.store.clear(partition)

    async def _run_cycle(self) -> SyncProgress:
        errors: List[str] = []
        try:
            self._emit(SyncStep.STARTING, 0, "Initializing synchronization...")

            records = await self.store.retrieve_all(Partition.OFFLINE_OPERATIONS)
            operations = [PendingOperation.from_record(r) for r in records]
            if not operations:
                return self._emit(SyncStep.COMPLETE, 100, "No offline operations to sync")

            self._emit(
                SyncStep.SYNCING, 10,
                f"Processing {len(operations)} offline operations...",
            )

            groups: "OrderedDict[str, List[PendingOperation]]" = OrderedDict()
            for operation in operations:
                groups.setdefault(operation.module, []).append(operation)

            for index, (module, module_ops) in enumerate(groups.items(), start=1):
                try:
                    synced = await self._sync_module_operations(module, module_ops, errors)
                    message = f"Synced {module} module ({synced}/{len(module_ops)} operations)"
                except Exception as exc:
                    error_message = f"Failed to sync {module}: {exc}"
                    errors.append(error_message)
                    logger.exception(error_message)
                    message = error_message
                self._emit(SyncStep.SYNCING, 20 + (index / len(groups)) * 60, message, errors)

            await self._collect_stale_operations()

            self._emit(SyncStep.UPDATING_CACHE, 90, "Updating local cache...", errors)
            await self.store.store(
                Partition.SYNC_METADATA,
                {"key": LAST_SYNC_KEY, "timestamp": self.clock.now()},
            )

            if errors:
                logger.info("Sync completed with %d errors", len(errors))
                message = f"Sync completed with {len(errors)} errors"
            else:
                message = "Sync completed successfully"
            return self._emit(SyncStep.COMPLETE, 100, message, errors)
        except StorageError as exc:
            error_message = f"Sync failed: {exc}"
            errors.append(error_message)
            logger.error(error_message)
            return self._emit(SyncStep.ERROR, 0, error_message, errors)

    async def get_metadata(self) -> SyncMetadata:
        record = await self.store.retrieve(Partition.SYNC_METADATA, LAST_SYNC_KEY)
        return SyncMetadata(last_sync=int(record["timestamp"] or 0) if record else 0)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _sync_module_operations(
        self, module: str, operations: List[PendingOperation], errors: List[str]
    ) -> int:
        """Replay one module's operations in enqueue order; returns how many succeeded."""
        synced = 0
        for operation in sorted(operations, key=attrgetter("timestamp")):
            try:
                body = await self._replay(operation)
            except UnknownModule as exc:
                # No endpoint will ever accept it
                await self.store.delete(Partition.OFFLINE_OPERATIONS, operation.id)
                errors.append(f"Dropped operation {operation.id}: {exc}")
                logger.error("Dropping operation %s: %s", operation.id, exc)
                continue
            except RemoteRejected as exc:
                await self._record_failure(operation, exc, errors)
                # Later edits to the same entities must wait for this one
                return synced
            # The server has applied it; never send it again
            await self.store.delete(Partition.OFFLINE_OPERATIONS, operation.id)
            synced += 1
            try:
                await self._update_cache(operation, body)
            except StorageError as exc:
                logger.warning("Cached copy for %s not updated: %s", operation.id, exc)
        return synced

    async def _replay(self, operation: PendingOperation) -> Any:
        module = operation.module
        if operation.type is OperationType.DELETE:
            return await self.remote.delete(module, operation.data)
        if operation.type is OperationType.CREATE:
            return await self.remote.create(module, operation.data)
        return await self.remote.update(module, operation.data)

    async def _update_cache(self, operation: PendingOperation, body: Any) -> None:
        module = operation.module
        if operation.type is OperationType.DELETE:
            await self.cache.remove_offline_data(module, operation.data["id"])
        elif isinstance(body, dict) and body.get("id") is not None:
            await self.cache.store_offline_data(module, body["id"], body)
        else:
            logger.warning(
                "%s %s response carried no id; local cache not updated",
                module, operation.type.value,
            )

    async def _record_failure(
        self, operation: PendingOperation, exc: Exception, errors: List[str]
    ) -> None:
        operation.retry_count += 1
        operation.last_error = str(exc)

        if operation.retry_count >= self.max_retries:
            logger.error(
                "Operation %s failed after %d retries, removing: %s",
                operation.id, operation.retry_count, exc,
            )
            await self.store.delete(Partition.OFFLINE_OPERATIONS, operation.id)
            errors.append(
                f"Operation {operation.id} failed after {operation.retry_count} retries, removed: {exc}"
            )
        else:
            await self.store.store(Partition.OFFLINE_OPERATIONS, operation.to_record())
            errors.append(f"Failed to sync {operation.module}: {exc}")

    async def _collect_stale_operations(self) -> None:
        """Drop old operations that keep failing, so the queue cannot grow forever."""
        cutoff = self.clock.now() - self.stale_after_ms
        records = await self.store.retrieve_all(Partition.OFFLINE_OPERATIONS)
        for record in records:
            operation = PendingOperation.from_record(record)
            if operation.timestamp < cutoff and operation.retry_count >= self.stale_retry_threshold:
                logger.warning(
                    "Discarding stale operation %s (retries=%d, last error: %s)",
                    operation.id, operation.retry_count, operation.last_error,
                )
                await self.store.delete(Partition.OFFLINE_OPERATIONS, operation.id)

    def _emit(
        self, step: SyncStep, progress: float, message: str, errors: Optional[List[str]] = None
    ) -> SyncProgress:
        event = SyncProgress(step=step, progress=progress, message=message, errors=list(errors or []))
        self.broadcaster.publish(event)
        return event
