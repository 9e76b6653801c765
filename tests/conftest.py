"""
Shared fixtures for Plaza tests.

Coordinator-level tests drive a real PlazaCoordinator through in-memory
connections; every send is followed by relay.flush() so the frames the
coordinator produced are visible on the fake connections.
"""

import asyncio
import json
from itertools import count

import pytest
import pytest_asyncio

from plaza.coordinator import PlazaCoordinator
from plaza.monitor import LivenessMonitor
from plaza.protocol.envelope import (
    PlazaMessage,
    create_register,
    create_task_announce,
)
from plaza.transport.relay import Connection, MessageRelay

START_MS = 1_700_000_000_000


class FakeConnection:
    """Records frames written to it; optionally fails sends or hangs on close."""

    def __init__(self, conn_id: str, fail: bool = False, hang_on_close: bool = False):
        self.conn_id = conn_id
        self.fail = fail
        self.hang_on_close = hang_on_close
        self.frames: list[dict] = []
        self.closed: tuple[int, str] | None = None

    async def send(self, data: str) -> None:
        if self.fail:
            raise ConnectionError("socket gone")
        self.frames.append(json.loads(data))

    async def close(self, code: int, reason: str) -> None:
        self.closed = (code, reason)
        if self.hang_on_close:
            # Peer never acknowledges
            await asyncio.Event().wait()

    def handle(self) -> Connection:
        return Connection(conn_id=self.conn_id, send=self.send, close=self.close)

    def of_type(self, message_type: str) -> list[dict]:
        return [f for f in self.frames if f["type"] == message_type]

    def payloads(self, message_type: str) -> list[dict]:
        return [f["payload"] for f in self.of_type(message_type)]

    def types(self) -> list[str]:
        return [f["type"] for f in self.frames]

    def clear(self) -> None:
        self.frames.clear()


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class PlazaHarness:
    """Drives a coordinator the way the WebSocket handler would."""

    def __init__(self, coordinator: PlazaCoordinator):
        self.coordinator = coordinator
        self._ids = count(1)

    async def connect(self, fail: bool = False, hang_on_close: bool = False) -> FakeConnection:
        conn = FakeConnection(
            f"conn-{next(self._ids)}", fail=fail, hang_on_close=hang_on_close
        )
        await self.coordinator.connect(conn.handle())
        return conn

    async def send(self, conn: FakeConnection, message: PlazaMessage | dict | str) -> None:
        if isinstance(message, PlazaMessage):
            data = message.to_json()
        elif isinstance(message, dict):
            data = json.dumps(message)
        else:
            data = message
        await self.coordinator.handle_frame(conn.conn_id, data)
        await self.coordinator.relay.flush()

    async def register(
        self,
        agent_id: str,
        name: str | None = None,
        capabilities: list[str] | None = None,
        specializations: list[str] | None = None,
        success_rate: float = 100.0,
        conn: FakeConnection | None = None,
    ) -> FakeConnection:
        conn = conn or await self.connect()
        await self.send(conn, create_register(
            agent_id=agent_id,
            name=name or agent_id.title(),
            wallet=f"wallet-{agent_id}",
            capabilities=capabilities or [],
            specializations=specializations or [],
            reputation={"tasks_completed": 3, "success_rate": success_rate, "avg_rating": 4.5},
        ))
        return conn

    async def announce(
        self,
        conn: FakeConnection,
        task_id: str,
        title: str = "Research competitors",
        requirements: list[str] | None = None,
        bounty_amount: int = 25_000_000,
    ) -> None:
        await self.send(conn, create_task_announce(
            title=title,
            requirements=requirements or ["research"],
            bounty_amount=bounty_amount,
            poster="poster-wallet",
            task_hash="QmHash",
            task_id=task_id,
        ))

    async def disconnect(self, conn: FakeConnection) -> None:
        await self.coordinator.disconnect(conn.conn_id)
        await self.coordinator.relay.flush()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def coordinator(clock):
    relay = MessageRelay(max_queue_size=50)
    coordinator = PlazaCoordinator(relay=relay, clock=clock)
    yield coordinator
    await relay.shutdown()


@pytest_asyncio.fixture
async def plaza(coordinator) -> PlazaHarness:
    return PlazaHarness(coordinator)


@pytest.fixture
def monitor(coordinator) -> LivenessMonitor:
    return LivenessMonitor(coordinator, timeout_seconds=60, interval_seconds=30)
