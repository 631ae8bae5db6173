from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from ..exceptions import TransportError
from ..models import ConnectionState
from ..sync_config import ConnectionConfig
from ..util.asyncio import cancel_suppress, ensure_task

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConnectionStatus:
    state: ConnectionState
    previous: ConnectionState | None
    reconnect_attempts: int
    last_heartbeat_at: float | None
    # Retries exhausted; nothing more is scheduled until `reconnect()`.
    persistent_failure: bool = False
    last_error: Exception | None = None

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED


StatusCallback = Callable[[ConnectionStatus], None]
Connector = Callable[[], Awaitable[None]]


def backoff_delay(attempt: int, *, base_s: float, max_s: float) -> float:
    """Exponential delay for the n-th reconnect attempt (1-based), capped at `max_s`."""

    if attempt <= 0:
        return 0.0
    return min(base_s * (2 ** (attempt - 1)), max_s)


class HeartbeatTimeout(TransportError):
    """No heartbeat observed within twice the heartbeat interval."""


class ConnectionStateTracker:
    """
    Lifecycle of the realtime channel.

    DISCONNECTED -connect()-> CONNECTING -on_open()-> CONNECTED
    -on_close()/on_error()/heartbeat timeout-> RECONNECTING -backoff-> CONNECTING.
    `disconnect()` forces DISCONNECTED from anywhere and cancels pending retries.

    Subscribers registered with `on_status_change` are called synchronously on
    every transition, in order.
    """

    def __init__(
        self,
        *,
        config: ConnectionConfig | None = None,
        connector: Connector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or ConnectionConfig()
        self._connector = connector
        self._clock = clock

        self._state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self.last_heartbeat_at: float | None = None
        self.persistent_failure = False
        self.last_error: Exception | None = None

        self._callbacks: list[StatusCallback] = []
        self._retry_task: asyncio.Task[None] | None = None
        self._watchdog_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_usable(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def set_connector(self, connector: Connector | None) -> None:
        self._connector = connector

    def status(self, previous: ConnectionState | None = None) -> ConnectionStatus:
        return ConnectionStatus(
            state=self._state,
            previous=previous,
            reconnect_attempts=self.reconnect_attempts,
            last_heartbeat_at=self.last_heartbeat_at,
            persistent_failure=self.persistent_failure,
            last_error=self.last_error,
        )

    def on_status_change(self, callback: StatusCallback) -> None:
        self._callbacks.append(callback)

    def off_status_change(self, callback: StatusCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    async def connect(self) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            logger.debug("connect() ignored, already %s", self._state.value)
            return
        self.persistent_failure = False
        self.last_error = None
        self._transition(ConnectionState.CONNECTING)
        await self._open()

    async def reconnect(self) -> None:
        """Retry right away, e.g. after a persistent failure was reported."""

        if self._state is ConnectionState.CONNECTED:
            return
        self._cancel(self._retry_task)
        self._retry_task = None
        self.persistent_failure = False
        self._transition(ConnectionState.CONNECTING)
        await self._open()

    async def disconnect(self) -> None:
        retry, self._retry_task = self._retry_task, None
        watchdog, self._watchdog_task = self._watchdog_task, None
        await cancel_suppress(retry)
        await cancel_suppress(watchdog)
        # An explicit disconnect ends the reconnect episode.
        self.reconnect_attempts = 0
        self.persistent_failure = False
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)

    def on_open(self) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            logger.debug("open event after disconnect() ignored")
            return
        if self._state is ConnectionState.CONNECTED:
            self.heartbeat()
            return
        self._cancel(self._retry_task)
        self._retry_task = None
        self.reconnect_attempts = 0
        self.persistent_failure = False
        self.last_error = None
        self.last_heartbeat_at = self._clock()
        self._transition(ConnectionState.CONNECTED)
        self._start_watchdog()

    def on_close(self, error: Exception | None = None) -> None:
        self._lost(error or TransportError("connection closed"))

    def on_error(self, error: Exception) -> None:
        self._lost(error)

    def on_heartbeat_timeout(self) -> None:
        self._lost(HeartbeatTimeout("heartbeat timeout reported by transport"))

    def heartbeat(self) -> None:
        self.last_heartbeat_at = self._clock()

    def check_heartbeat(self) -> bool:
        """Force RECONNECTING if the heartbeat is overdue. Returns True if it was."""

        if self._state is not ConnectionState.CONNECTED:
            return False
        last = self.last_heartbeat_at
        limit = self.config.heartbeat_interval_s * 2
        if last is not None and self._clock() - last <= limit:
            return False
        self._lost(HeartbeatTimeout(f"no heartbeat for more than {limit:.1f}s"))
        return True

    def _lost(self, error: Exception) -> None:
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.RECONNECTING):
            return
        self.last_error = error
        self._cancel(self._watchdog_task)
        self._watchdog_task = None

        self.reconnect_attempts += 1
        if self.reconnect_attempts > self.config.max_reconnect_attempts:
            logger.warning(
                "giving up after %d reconnect attempts: %s", self.reconnect_attempts - 1, error
            )
            self.persistent_failure = True
            self._transition(ConnectionState.RECONNECTING)
            return

        delay = backoff_delay(
            self.reconnect_attempts,
            base_s=self.config.backoff_base_s,
            max_s=self.config.backoff_max_s,
        )
        logger.info(
            "connection lost (%s), retry %d in %.1fs", error, self.reconnect_attempts, delay
        )
        self._transition(ConnectionState.RECONNECTING)
        self._retry_task = ensure_task(self._retry_after(delay), name="chatsync.reconnect")

    async def _retry_after(self, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        if self._state is not ConnectionState.RECONNECTING:
            return
        self._transition(ConnectionState.CONNECTING)
        await self._open()

    async def _open(self) -> None:
        if self._connector is None:
            # Caller drives the transport and reports on_open()/on_error().
            return
        try:
            await self._connector()
        except Exception as e:
            self.on_error(e)

    def _start_watchdog(self) -> None:
        self._cancel(self._watchdog_task)
        self._watchdog_task = ensure_task(self._watchdog(), name="chatsync.heartbeat")

    async def _watchdog(self) -> None:
        interval = self.config.heartbeat_interval_s
        while self._state is ConnectionState.CONNECTED:
            last = self.last_heartbeat_at
            remaining = interval * 2 if last is None else last + interval * 2 - self._clock()
            # Wake just past the deadline.
            await asyncio.sleep(max(remaining, 0.0) + interval / 10)
            if self.check_heartbeat():
                return

    def _transition(self, new: ConnectionState) -> None:
        previous = self._state
        self._state = new
        status = self.status(previous=previous)
        logger.debug("connection %s -> %s", previous.value, new.value)
        for cb in list(self._callbacks):
            try:
                cb(status)
            except Exception:
                logger.exception("connection status subscriber failed")

    @staticmethod
    def _cancel(task: asyncio.Task[None] | None) -> None:
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
