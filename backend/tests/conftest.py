"""Shared fixtures: a fake church API behind httpx.MockTransport, a controllable clock."""
import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from tsoam.core.config import DEFAULT_MODULE_ENDPOINTS
from tsoam.services.connectivity import ManualConnectivity
from tsoam.services.offline_store import MemoryStore, Partition
from tsoam.services.offline_sync import LogicalClock, SyncCoordinator
from tsoam.services.remote_api import RemoteApi

BASE_URL = "http://church.test/api"
HOUR_MS = 60 * 60 * 1000


class FakeClock:
    """Epoch-millisecond time source that only moves when told to."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeChurchApi:
    """In-process stand-in for the church REST API.

    POST assigns ids starting at 42 unless the payload carries one, PUT echoes
    the payload, DELETE answers 204. Paths under ``failing_prefixes`` answer 500.
    """

    def __init__(self):
        self.requests = []
        self.failing_prefixes = set()
        self.listings = {}
        self.next_id = 42

    @property
    def calls(self):
        return [(method, path) for method, path, _, _ in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body, request.headers.get("Authorization")))

        if any(path.startswith(prefix) for prefix in self.failing_prefixes):
            return httpx.Response(500, json={"error": "database locked"})

        if request.method == "POST":
            resource = dict(body)
            if resource.get("id") is None:
                resource["id"] = self.next_id
                self.next_id += 1
            return httpx.Response(201, json=resource)
        if request.method == "PUT":
            return httpx.Response(200, json=body)
        if request.method == "DELETE":
            return httpx.Response(204)
        return httpx.Response(200, json=self.listings.get(path, []))


class SwitchableConnectivity(ManualConnectivity):
    def go_online_quietly(self) -> None:
        """Flip to online without notifying subscribers (no sync trigger)."""
        self._online = True


async def put_operation(store, module, op_type, data, timestamp, retry_count=0, op_id=None):
    """Write a PendingOperation record straight into the store."""
    record = {
        "id": op_id or f"{module}_{op_type}_{timestamp}",
        "type": op_type,
        "module": module,
        "data": data,
        "timestamp": timestamp,
        "retry_count": retry_count,
        "last_error": None,
    }
    await store.store(Partition.OFFLINE_OPERATIONS, record)
    return record


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def church_api():
    return FakeChurchApi()


@pytest_asyncio.fixture
async def remote(church_api):
    api = RemoteApi(
        BASE_URL,
        DEFAULT_MODULE_ENDPOINTS,
        transport=httpx.MockTransport(church_api.handler),
    )
    yield api
    await api.aclose()


@pytest_asyncio.fixture
async def store():
    memory = MemoryStore()
    await memory.init()
    return memory


@pytest.fixture
def connectivity():
    return ManualConnectivity(online=True)


@pytest.fixture
def coordinator(store, remote, connectivity, clock):
    return SyncCoordinator(store, remote, is_online=connectivity.is_online, clock=LogicalClock(clock))


@pytest.fixture
def progress_events(coordinator):
    events = []
    coordinator.broadcaster.subscribe(events.append)
    return events
