from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any

import websockets
from websockets.protocol import State

from ..exceptions import TransportError
from ..util import json as jsonutil
from .frames import InboundFrame, decode_frame
from .transport import SendAck


@dataclass(slots=True)
class WebSocketConfig:
    url: str
    token: str | None = None
    connect_timeout_s: float = 20.0
    # Heartbeats are application-level frames; leave WS pings to the server.
    ping_interval_s: float | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)


class WebSocketTransport:
    """`Transport` speaking JSON text frames over a websocket."""

    def __init__(self, cfg: WebSocketConfig) -> None:
        self.cfg = cfg
        self._ws: Any | None = None

    @property
    def is_open(self) -> bool:
        if not self._ws:
            return False
        # websockets>=15 uses `.state`; older versions had `.closed`.
        state = getattr(self._ws, "state", None)
        if state is not None:
            return bool(state == State.OPEN)
        closed = getattr(self._ws, "closed", None)
        if closed is not None:
            return not bool(closed)
        return True

    async def connect(self) -> None:
        if self._ws is not None:
            return
        headers = dict(self.cfg.extra_headers)
        if self.cfg.token:
            headers["Authorization"] = f"Bearer {self.cfg.token}"
        connect_kwargs: dict[str, Any] = {
            "open_timeout": self.cfg.connect_timeout_s,
            "ping_interval": self.cfg.ping_interval_s,
            "ping_timeout": None,
        }
        if headers:
            # websockets>=15 renamed `extra_headers` -> `additional_headers`.
            params = inspect.signature(websockets.connect).parameters
            if "additional_headers" in params:
                connect_kwargs["additional_headers"] = headers
            else:
                connect_kwargs["extra_headers"] = headers
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(self.cfg.url, **connect_kwargs),
                timeout=self.cfg.connect_timeout_s,
            )
        except Exception as e:
            raise TransportError(f"failed to connect websocket: {e}") from e

    async def close(self) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.close()
        finally:
            self._ws = None

    async def send(self, frame: dict[str, Any]) -> SendAck | None:
        if not self._ws:
            raise TransportError("websocket not connected")
        try:
            await self._ws.send(jsonutil.dumps(frame))
        except Exception as e:
            raise TransportError(f"websocket send failed: {e}") from e
        # Acks arrive later as message-status frames.
        return None

    async def recv(self) -> InboundFrame:
        if not self._ws:
            raise TransportError("websocket not connected")
        try:
            msg = await self._ws.recv()
        except Exception as e:
            raise TransportError(f"websocket recv failed: {e}") from e
        if not isinstance(msg, (str, bytes)):
            raise TransportError(f"unexpected websocket message type: {type(msg).__name__}")
        return decode_frame(msg)
