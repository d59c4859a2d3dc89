"""
Optional cache worker. Keeps module listings available for offline reads;
targets without a remote listing API use the no-op worker.
"""
import logging
from typing import Iterable, Protocol

from .offline_store import StorageError
from .offline_sync import OfflineCache
from .remote_api import RemoteApi, RemoteRejected, UnknownModule

logger = logging.getLogger(__name__)


class CacheWorker(Protocol):
    async def register(self) -> None: ...

    async def unregister(self) -> None: ...


class NullCacheWorker:
    async def register(self) -> None:
        logger.debug("Cache worker not configured")

    async def unregister(self) -> None:
        pass


class ModuleCacheWarmer:
    """Prefetches the listing of each configured module into the offline cache."""

    def __init__(self, remote: RemoteApi, cache: OfflineCache, modules: Iterable[str]):
        self.remote = remote
        self.cache = cache
        self.modules = list(modules)

    async def register(self) -> None:
        for module in self.modules:
            try:
                cached = await refresh_module(self.remote, self.cache, module)
                logger.info("Cached %d %s records for offline use", cached, module)
            except (RemoteRejected, UnknownModule, StorageError) as exc:
                logger.warning("Could not warm offline cache for %s: %s", module, exc)

    async def unregister(self) -> None:
        pass


async def refresh_module(remote: RemoteApi, cache: OfflineCache, module: str) -> int:
    """Store every listed item that carries an ``id``; returns how many were cached."""
    cached = 0
    for item in await remote.list(module):
        if isinstance(item, dict) and item.get("id") is not None:
            await cache.store_offline_data(module, item["id"], item)
            cached += 1
    return cached
