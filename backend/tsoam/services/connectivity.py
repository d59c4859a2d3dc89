"""
Connectivity observers: decide whether the remote API is reachable and tell
subscribers when that changes.
"""
import asyncio
import logging
from typing import Callable, List, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


class ConnectivityObserver(Protocol):
    def is_online(self) -> bool: ...

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class ManualConnectivity:
    """Connectivity driven explicitly by the host (or by tests).

    Subscribers hear about transitions only; setting the same state twice is silent.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._callbacks: List[ConnectivityCallback] = []

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: ConnectivityCallback) -> Callable[[], None]:
        self._callbacks.append(callback)
        return lambda: self._unsubscribe(callback)

    def _unsubscribe(self, callback: ConnectivityCallback) -> None:
        self._callbacks = [cb for cb in self._callbacks if cb != callback]

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for callback in list(self._callbacks):
            try:
                callback(online)
            except Exception:
                logger.exception("Connectivity subscriber %r raised", callback)

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass


class HttpProbeConnectivity(ManualConnectivity):
    """Polls the API with a GET every ``interval`` seconds.

    Any HTTP response counts as online (even 401/500: the server answered);
    a transport error or timeout counts as offline.
    """

    def __init__(
        self,
        base_url: str,
        probe_path: str = "health",
        interval: float = 30.0,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(online=False)
        self.probe_path = probe_path
        self.interval = interval
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout, transport=transport
        )
        self._task: Optional[asyncio.Task] = None

    async def probe(self) -> bool:
        try:
            await self._client.get(self.probe_path)
            online = True
        except httpx.HTTPError as exc:
            if self.is_online():
                logger.warning("Connectivity probe failed: %s", exc)
            online = False
        self.set_online(online)
        return online

    async def start(self) -> None:
        await self.probe()
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._client.aclose()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.probe()
