"""
Offline service: the externally callable surface of the offline queue.

Wires the durable store, the sync coordinator, connectivity and visibility
signals and the periodic timer together. One instance is built at application
startup and handed to whoever needs it.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from .cache_worker import CacheWorker, NullCacheWorker, refresh_module
from .connectivity import ConnectivityObserver
from .offline_store import DurableStore, Partition, StorageError
from .offline_sync import LogicalClock, OperationType, PendingOperation, SyncCoordinator
from .progress import ProgressBroadcaster, ProgressCallback, SyncProgress
from .remote_api import RemoteApi

logger = logging.getLogger(__name__)


class InvalidOperation(ValueError):
    """An operation cannot be queued as given."""


class OfflineError(Exception):
    """The requested action needs connectivity."""


@dataclass
class OfflineStatus:
    last_sync: int
    pending_operations: int
    is_online: bool
    sync_in_progress: bool
    storage_available: bool


class OfflineService:

    def __init__(
        self,
        store: DurableStore,
        remote: RemoteApi,
        connectivity: ConnectivityObserver,
        cache_worker: Optional[CacheWorker] = None,
        broadcaster: Optional[ProgressBroadcaster] = None,
        clock: Optional[LogicalClock] = None,
        sync_interval: float = 300.0,
        max_retries: int = 3,
        stale_after_hours: float = 24.0,
        stale_retry_threshold: int = 2,
        auth_token: Optional[str] = None,
    ):
        self.store = store
        self.remote = remote
        self.connectivity = connectivity
        self.cache_worker = cache_worker or NullCacheWorker()
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.sync_interval = sync_interval
        self._auth_token = auth_token
        self.remote.token_provider = lambda: self._auth_token
        self.coordinator = SyncCoordinator(
            store,
            remote,
            is_online=connectivity.is_online,
            broadcaster=self.broadcaster,
            clock=clock,
            max_retries=max_retries,
            stale_after_ms=int(stale_after_hours * 60 * 60 * 1000),
            stale_retry_threshold=stale_retry_threshold,
        )
        self.cache = self.coordinator.cache
        self.clock = self.coordinator.clock
        self.storage_available = False
        self._periodic_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe_connectivity: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        try:
            await self.store.init()
            self.storage_available = True
        except StorageError as exc:
            logger.warning("Offline service initialization failed, running in basic mode: %s", exc)

        # Subscribe first: the initial probe may already report the API as reachable
        self._unsubscribe_connectivity = self.connectivity.subscribe(self._on_connectivity_change)
        await self.connectivity.start()

        if self.storage_available:
            await self.cache_worker.register()
            self._periodic_task = asyncio.create_task(self._periodic_sync())
            logger.info("Offline service initialized successfully")
            # Replay whatever the previous run left queued
            if self.is_online() and not self._tasks:
                self._trigger_sync()

    async def stop(self) -> None:
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        await self.wait_until_idle()
        await self.cache_worker.unregister()
        await self.connectivity.stop()
        await self.remote.aclose()
        await self.store.close()

    async def wait_until_idle(self) -> None:
        """Wait for background sync cycles started by triggers."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def is_online(self) -> bool:
        return self.connectivity.is_online()

    def set_visibility(self, visible: bool) -> None:
        """Host reports that the dashboard became visible (or hidden) again."""
        if visible and self.is_online():
            self._trigger_sync()

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Connection restored - starting sync")
            self._trigger_sync()
        else:
            logger.info("Connection lost - switching to offline mode")

    def _trigger_sync(self) -> None:
        task = asyncio.get_running_loop().create_task(self.coordinator.sync_offline_data())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _periodic_sync(self) -> None:
        while True:
            await asyncio.sleep(self.sync_interval)
            if self.is_online() and not self.coordinator.sync_in_progress:
                await self.coordinator.sync_offline_data()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def queue_operation(self, module: str, op_type: Any, data: Dict[str, Any]) -> PendingOperation:
        """Record a mutation for replay; syncs right away when online."""
        try:
            op_type = OperationType(op_type)
        except ValueError:
            raise InvalidOperation(f"Unknown operation type: {op_type}")
        if not module:
            raise InvalidOperation("Operation module is required")
        data = data or {}
        if op_type is not OperationType.CREATE and data.get("id") is None:
            raise InvalidOperation(f"{op_type.value} operations need data.id")

        timestamp = self.clock.tick()
        operation = PendingOperation(
            id=PendingOperation.new_id(module, op_type, timestamp),
            type=op_type,
            module=module,
            data=data,
            timestamp=timestamp,
        )
        await self.store.store(Partition.OFFLINE_OPERATIONS, operation.to_record())

        if self.is_online():
            self._trigger_sync()
        return operation

    async def list_pending_operations(self) -> List[PendingOperation]:
        records = await self.store.retrieve_all(Partition.OFFLINE_OPERATIONS)
        operations = [PendingOperation.from_record(r) for r in records]
        operations.sort(key=lambda op: op.timestamp)
        return operations

    async def force_sync_all(self) -> Optional[SyncProgress]:
        if not self.is_online():
            raise OfflineError("Cannot sync while offline")
        return await self.coordinator.sync_offline_data()

    async def get_sync_status(self) -> OfflineStatus:
        try:
            metadata = await self.coordinator.get_metadata()
            pending = await self.store.retrieve_all(Partition.OFFLINE_OPERATIONS)
        except StorageError as exc:
            # Degraded mode was already reported once at startup
            log = logger.warning if self.storage_available else logger.debug
            log("Sync status unavailable: %s", exc)
            return OfflineStatus(
                last_sync=0,
                pending_operations=0,
                is_online=self.is_online(),
                sync_in_progress=self.coordinator.sync_in_progress,
                storage_available=False,
            )
        return OfflineStatus(
            last_sync=metadata.last_sync,
            pending_operations=len(pending),
            is_online=self.is_online(),
            sync_in_progress=self.coordinator.sync_in_progress,
            storage_available=True,
        )

    async def clear_offline_data(self) -> None:
        await self.coordinator.clear_all()

    async def store_offline_data(self, module: str, key: Any, data: Any) -> None:
        await self.cache.store_offline_data(module, key, data)

    async def get_offline_data(self, module: str, key: Any) -> Any:
        return await self.cache.get_offline_data(module, key)

    async def get_module_data(self, module: str) -> List[Any]:
        return await self.cache.get_module_data(module)

    async def refresh_module_cache(self, module: str) -> int:
        if not self.is_online():
            raise OfflineError("Cannot refresh cache while offline")
        return await refresh_module(self.remote, self.cache, module)

    def set_auth_token(self, token: Optional[str]) -> None:
        self._auth_token = token

    # ------------------------------------------------------------------
    # Progress subscription
    # ------------------------------------------------------------------

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        return self.broadcaster.subscribe(callback)

    def unsubscribe(self, callback: ProgressCallback) -> None:
        self.broadcaster.unsubscribe(callback)

    @property
    def latest_progress(self) -> Optional[SyncProgress]:
        return self.broadcaster.latest
