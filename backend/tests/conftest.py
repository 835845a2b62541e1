import asyncio
import heapq
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from lovesync.core.config import Settings
from lovesync.core.errors import RemoteError, RemoteErrorCode
from lovesync.services.local_store import LocalStore
from lovesync.services.memory_remote import InMemoryRemoteClient
from lovesync.services.sync_coordinator import SyncCoordinator

START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


async def settle(rounds: int = 50) -> None:
    """Let every ready task and call_soon callback run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Virtual clock: sleeps only finish when the test advances time."""

    def __init__(self, start: datetime = START):
        self._now = start
        self._sleepers: List[Tuple[datetime, int, asyncio.Future]] = []
        self._seq = 0

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + timedelta(seconds=seconds), self._seq, future))
        self._seq += 1
        await future

    @property
    def sleepers(self) -> int:
        return sum(1 for _, _, f in self._sleepers if not f.done())

    async def advance(self, seconds: float) -> None:
        target = self._now + timedelta(seconds=seconds)
        await settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self._now = max(self._now, deadline)
            if not future.done():
                future.set_result(None)
            await settle()
        self._now = target
        await settle()


class FlakyRemote(InMemoryRemoteClient):
    """In-memory remote with injectable failures, call recording and gates."""

    def __init__(self, clock=None):
        super().__init__(clock)
        self.failures: Dict[str, List[RemoteErrorCode]] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[Tuple[str, str]] = []

    def fail(self, method: str, code: RemoteErrorCode = RemoteErrorCode.NETWORK, times: int = 1) -> None:
        self.failures.setdefault(method, []).extend([code] * times)

    def clear_failures(self) -> None:
        self.failures.clear()

    def hold(self, method: str) -> asyncio.Event:
        """Block calls to ``method`` until the returned event is set."""
        gate = asyncio.Event()
        self.gates[method] = gate
        return gate

    def count(self, method: str, collection: Optional[str] = None) -> int:
        return sum(1 for m, c in self.calls if m == method and (collection is None or c == collection))

    async def _enter(self, method: str, collection: str = "") -> None:
        self.calls.append((method, collection))
        gate = self.gates.get(method)
        if gate is not None:
            await gate.wait()
        queued = self.failures.get(method)
        if queued:
            raise RemoteError(queued.pop(0), f"injected {method} failure")

    async def ready(self):
        await self._enter("ready")
        await super().ready()

    async def fetch_all(self, collection):
        await self._enter("fetch_all", collection)
        return await super().fetch_all(collection)

    async def create(self, collection, data):
        await self._enter("create", collection)
        return await super().create(collection, data)

    async def update(self, collection, identity, data):
        await self._enter("update", collection)
        return await super().update(collection, identity, data)

    async def delete(self, collection, identity):
        await self._enter("delete", collection)
        return await super().delete(collection, identity)

    async def upload_asset(self, data, filename, mime_type):
        await self._enter("upload_asset")
        return await super().upload_asset(data, filename, mime_type)


def make_settings(**overrides) -> Settings:
    values = {"REMOTE_MOCK_MODE": True, "SEED_DEMO_DATA": False}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote(clock):
    return FlakyRemote(clock)


@pytest.fixture
def store_url(tmp_path):
    return f"sqlite:///{tmp_path / 'lovesite.db'}"


@pytest.fixture
def store(store_url):
    local_store = LocalStore(store_url)
    yield local_store
    local_store.close()


@pytest.fixture
def settings():
    return make_settings()


@pytest_asyncio.fixture
async def coordinator(remote, store, settings, clock):
    instance = SyncCoordinator(remote, store, settings, clock)
    yield instance
    await instance.close()


@pytest_asyncio.fixture
async def online(coordinator):
    """A coordinator that has loaded local data and completed its first sync."""
    assert await coordinator.initialize()
    await settle()
    return coordinator
