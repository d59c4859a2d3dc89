"""
Durable key-value store backing the offline queue.

Three partitions hold cached entity snapshots, the pending-operation log and
sync bookkeeping. Every call is asynchronous and independently atomic.
"""
import asyncio
import copy
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Type

from sqlalchemy.exc import SQLAlchemyError

from ..models.base import Base, make_engine, make_session_factory
from ..models.offline import OfflineDataRow, OfflineOperationRow, SyncMetadataRow

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """A store call failed or its transaction aborted."""


class StorageUnavailable(StorageError):
    """The storage engine could not be initialised."""


class Partition(str, Enum):
    OFFLINE_DATA = "offline_data"
    OFFLINE_OPERATIONS = "offline_operations"
    SYNC_METADATA = "sync_metadata"


# Primary key field of the records held in each partition
PRIMARY_KEYS: Dict[Partition, str] = {
    Partition.OFFLINE_DATA: "key",
    Partition.OFFLINE_OPERATIONS: "id",
    Partition.SYNC_METADATA: "key",
}


class DurableStore(Protocol):
    async def init(self) -> None: ...

    async def close(self) -> None: ...

    async def store(self, partition: Partition, record: Dict[str, Any]) -> None: ...

    async def retrieve(self, partition: Partition, key: str) -> Optional[Dict[str, Any]]: ...

    async def retrieve_all(self, partition: Partition) -> List[Dict[str, Any]]: ...

    async def delete(self, partition: Partition, key: str) -> None: ...

    async def clear(self, partition: Partition) -> None: ...


class MemoryStore:
    """Non-persistent store. Records are deep-copied in and out."""

    def __init__(self):
        self._partitions: Optional[Dict[Partition, Dict[str, Dict[str, Any]]]] = None

    async def init(self) -> None:
        if self._partitions is None:
            self._partitions = {partition: {} for partition in Partition}

    async def close(self) -> None:
        pass

    def _partition(self, partition: Partition) -> Dict[str, Dict[str, Any]]:
        if self._partitions is None:
            raise StorageUnavailable("Database not initialized")
        return self._partitions[Partition(partition)]

    async def store(self, partition: Partition, record: Dict[str, Any]) -> None:
        key = record[PRIMARY_KEYS[Partition(partition)]]
        self._partition(partition)[key] = copy.deepcopy(record)

    async def retrieve(self, partition: Partition, key: str) -> Optional[Dict[str, Any]]:
        record = self._partition(partition).get(key)
        return copy.deepcopy(record) if record is not None else None

    async def retrieve_all(self, partition: Partition) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._partition(partition).values()]

    async def delete(self, partition: Partition, key: str) -> None:
        self._partition(partition).pop(key, None)

    async def clear(self, partition: Partition) -> None:
        self._partition(partition).clear()


class SqlAlchemyStore:
    """SQLAlchemy-backed durable store.

    Each call opens its own session and commits (or rolls back) before
    returning. Blocking database work runs on a worker thread so the event
    loop keeps serving other tasks.
    """

    MODELS: Dict[Partition, Type[Base]] = {
        Partition.OFFLINE_DATA: OfflineDataRow,
        Partition.OFFLINE_OPERATIONS: OfflineOperationRow,
        Partition.SYNC_METADATA: SyncMetadataRow,
    }

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._engine = None
        self._session_factory = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        try:
            await asyncio.to_thread(self._init_sync)
        except (SQLAlchemyError, OSError) as exc:
            self._engine = None
            self._session_factory = None
            raise StorageUnavailable(f"Could not open offline store: {exc}") from exc

    def _init_sync(self) -> None:
        engine = make_engine(self.database_url)
        Base.metadata.create_all(bind=engine)
        self._engine = engine
        self._session_factory = make_session_factory(engine)
        logger.debug("Offline store ready at %s", self.database_url)

    async def close(self) -> None:
        if self._engine is not None:
            await asyncio.to_thread(self._engine.dispose)
        self._engine = None
        self._session_factory = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def store(self, partition: Partition, record: Dict[str, Any]) -> None:
        model = self.MODELS[Partition(partition)]

        def _store(session):
            session.merge(model.from_record(record))

        await self._run(_store, commit=True)

    async def retrieve(self, partition: Partition, key: str) -> Optional[Dict[str, Any]]:
        model = self.MODELS[Partition(partition)]

        def _retrieve(session):
            row = session.get(model, key)
            return row.to_record() if row is not None else None

        return await self._run(_retrieve)

    async def retrieve_all(self, partition: Partition) -> List[Dict[str, Any]]:
        model = self.MODELS[Partition(partition)]

        def _retrieve_all(session):
            return [row.to_record() for row in session.query(model).all()]

        return await self._run(_retrieve_all)

    async def delete(self, partition: Partition, key: str) -> None:
        model = self.MODELS[Partition(partition)]
        pk = getattr(model, PRIMARY_KEYS[Partition(partition)])

        def _delete(session):
            session.query(model).filter(pk == key).delete(synchronize_session=False)

        await self._run(_delete, commit=True)

    async def clear(self, partition: Partition) -> None:
        model = self.MODELS[Partition(partition)]

        def _clear(session):
            session.query(model).delete(synchronize_session=False)

        await self._run(_clear, commit=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run(self, fn: Callable, commit: bool = False):
        if self._session_factory is None:
            raise StorageUnavailable("Database not initialized")
        try:
            return await asyncio.to_thread(self._run_sync, fn, commit)
        except SQLAlchemyError as exc:
            raise StorageError(str(exc)) from exc

    def _run_sync(self, fn: Callable, commit: bool):
        session = self._session_factory()
        try:
            result = fn(session)
            if commit:
                session.commit()
            return result
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def build_store(backend: str, database_url: str) -> DurableStore:
    """Pick the store implementation named by ``OFFLINE_STORE_BACKEND``."""
    if backend == "memory":
        return MemoryStore()
    if backend == "sqlite":
        return SqlAlchemyStore(database_url)
    raise ValueError(f"Unknown offline store backend: {backend}")
