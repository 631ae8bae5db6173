from __future__ import annotations

import asyncio
import dataclasses
from typing import Any

import pytest

from chatsync.connection.frames import InboundFrame
from chatsync.connection.transport import SendAck
from chatsync.exceptions import TransportError
from chatsync.models import Chat, EntityDelta, EntityKind, Friend
from chatsync.store import InMemoryStore

Entity = Chat | Friend


class FakeRemoteApi:
    """Scriptable `RemoteApi`: set `lists`/`deltas`/`errors`, inspect `calls`."""

    def __init__(self) -> None:
        self.lists: dict[EntityKind, list[Entity]] = {k: [] for k in EntityKind}
        self.deltas: dict[EntityKind, list[EntityDelta]] = {k: [] for k in EntityKind}
        # op name ("fetch_all", "fetch_delta", "delete", "leave") -> exception to raise
        self.errors: dict[str, Exception] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.delay_s = 0.0
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    async def _enter(self, op: str, *args: Any) -> None:
        self.calls.append((op, *args))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_s:
                await asyncio.sleep(self.delay_s)
            if self.gate is not None:
                await self.gate.wait()
            err = self.errors.get(op)
            if err is not None:
                raise err
        finally:
            self.in_flight -= 1

    def ops(self, op: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == op]

    async def fetch_all(self, kind: EntityKind, token: str) -> list[Entity]:
        await self._enter("fetch_all", kind, token)
        return [dataclasses.replace(e) for e in self.lists[kind]]

    async def fetch_delta(
        self, kind: EntityKind, token: str, cursor: str | None = None
    ) -> EntityDelta:
        await self._enter("fetch_delta", kind, token, cursor)
        queue = self.deltas[kind]
        return queue.pop(0) if queue else EntityDelta()

    async def delete(self, kind: EntityKind, entity_id: str, token: str) -> None:
        await self._enter("delete", kind, entity_id)

    async def leave(self, kind: EntityKind, entity_id: str, token: str) -> None:
        await self._enter("leave", kind, entity_id)


class FakeTransport:
    """In-process `Transport`; feed inbound frames with `push()`."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.connects = 0
        self.connect_error: Exception | None = None
        self.send_error: Exception | None = None
        # client id -> server id, answered synchronously from send()
        self.ack_with: dict[str, str] = {}
        self._open = False
        self._inbox: asyncio.Queue[InboundFrame | Exception] = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self._open

    async def connect(self) -> None:
        self.connects += 1
        if self.connect_error is not None:
            raise self.connect_error
        self._open = True

    async def close(self) -> None:
        self._open = False

    async def send(self, frame: dict[str, Any]) -> SendAck | None:
        if not self._open:
            raise TransportError("not connected")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(frame)
        cid = frame.get("client_message_id")
        if cid in self.ack_with:
            return SendAck(server_message_id=self.ack_with[cid], client_message_id=cid)
        return None

    async def recv(self) -> InboundFrame:
        item = await self._inbox.get()
        if isinstance(item, Exception):
            self._open = False
            raise item
        return item

    def push(self, item: InboundFrame | Exception) -> None:
        self._inbox.put_nowait(item)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle(rounds: int = 5) -> None:
    """Let scheduled callbacks and short-lived tasks run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def api() -> FakeRemoteApi:
    return FakeRemoteApi()
