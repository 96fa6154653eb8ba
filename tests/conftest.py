"""
Shared fakes for the synchronization tests.

The network is replaced by an in-memory fetcher and a fake WebSocket
connector, so every scenario runs deterministically inside
``asyncio.run``.
"""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import Any, Callable, List, Optional

import aiohttp
import pytest

from statussync.errors import NotFoundError, TransportError
from statussync.models import Incident, IncidentStatus, Service, ServiceStatus, Snapshot, SyncSettings


def frame(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data})


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


class FakeSocket:
    """In-memory stand-in for ``aiohttp.ClientWebSocketResponse``."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self.close_code: Optional[int] = None
        self.closed = False

    def send(self, text: str) -> None:
        self._queue.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=text))

    def send_binary(self, data: bytes) -> None:
        self._queue.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.BINARY, data=data))

    def drop(self, code: int = 1006) -> None:
        """Simulate the server going away abnormally."""
        self.close_code = code
        self._queue.put_nowait(None)

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> Any:
        msg = await self._queue.get()
        if msg is None:
            raise StopAsyncIteration
        return msg

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
        self._queue.put_nowait(None)


class FakeConnector:
    """Connector handing out FakeSockets; can be told to refuse attempts."""

    def __init__(self) -> None:
        self.sockets: List[FakeSocket] = []
        self.urls: List[str] = []
        self.refuse = 0
        # Frames already waiting on the next socket when it opens
        self.preload: List[str] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.refuse:
            self.refuse -= 1
            raise aiohttp.ClientConnectionError("connection refused")
        ws = FakeSocket()
        for text in self.preload:
            ws.send(text)
        self.preload = []
        self.sockets.append(ws)
        return ws

    @property
    def current(self) -> FakeSocket:
        return self.sockets[-1]


class FakeFetcher:
    """Snapshot source backed by mutable lists, counting every call."""

    def __init__(self, services: Optional[List[Service]] = None, incidents: Optional[List[Incident]] = None) -> None:
        self.services = list(services or [])
        self.incidents = list(incidents or [])
        self.snapshot_calls = 0
        self.incident_calls = 0
        self.fail_incidents = 0
        self.not_found = False
        self.gate: Optional[asyncio.Event] = None
        self.log: List[str] = []

    async def fetch_snapshot(self, org_id: str) -> Snapshot:
        self.snapshot_calls += 1
        self.log.append("snapshot")
        if self.not_found:
            raise NotFoundError(org_id)
        return Snapshot(services=tuple(self.services), incidents=tuple(self.incidents))

    async def fetch_incidents(self, org_id: str) -> List[Incident]:
        self.incident_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_incidents:
            self.fail_incidents -= 1
            raise TransportError("incidents unavailable")
        return list(self.incidents)


def service(sid: str, status: ServiceStatus = ServiceStatus.OPERATIONAL, name: str = "") -> Service:
    return Service(id=sid, name=name or f"svc-{sid}", status=status)


def incident(iid: str, status: IncidentStatus = IncidentStatus.INVESTIGATING, title: str = "", services=()) -> Incident:
    return Incident(id=iid, title=title or f"incident-{iid}", status=status, affected_service_ids=tuple(services))


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(
        debounce_seconds=0.01,
        base_backoff=0.001,
        max_backoff=0.01,
        connect_timeout=1.0,
        max_refetch_failures=3,
        max_reconnect_failures=3,
    )


@pytest.fixture
def issues() -> list:
    return []
