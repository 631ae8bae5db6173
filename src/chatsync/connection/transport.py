from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from .frames import InboundFrame


@dataclass(frozen=True, slots=True)
class SendAck:
    """Synchronous acknowledgement, for transports that return one from `send`."""

    server_message_id: str
    client_message_id: str | None = None
    timestamp: int | None = None


class Transport(Protocol):
    """
    Realtime channel to the server.

    `recv()` yields classified frames; raising `TransportError` from any method
    means the channel is gone. Transports that learn the server id only from a
    later status frame return `None` from `send`.
    """

    @property
    def is_open(self) -> bool: ...

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def send(self, frame: dict[str, Any]) -> SendAck | None: ...

    async def recv(self) -> InboundFrame: ...
