from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from ..connection.frames import NotificationFrame
from ..connection.state import ConnectionStateTracker, ConnectionStatus
from ..constants import EVENT_SYNC_PROBLEM
from ..exceptions import ChatsyncError
from ..models import ConnectionState, EntityKind
from ..sync_config import SyncConfig
from ..util.asyncio import Debouncer, cancel_suppress, ensure_task
from ..util.events import AsyncEventEmitter
from ..util.result import Err, Result
from .delta import DeltaSyncCoordinator, SyncError

logger = logging.getLogger(__name__)

SyncResult = Result[list, SyncError]


@dataclass(slots=True)
class _Flight:
    task: asyncio.Task[None] | None = None
    # Future for the next run that has not started yet; requests made while
    # a run is in progress all attach to it.
    next_run: asyncio.Future[SyncResult] | None = None
    next_full: bool = False


class SyncOrchestrator:
    """
    Schedules sync passes for each entity kind.

    At most one pass per kind is in flight. Requests arriving during a pass
    coalesce into a single follow-up pass. `request_sync` is debounced;
    `sync_now` bypasses the debounce and returns the result of the pass it
    joined.
    """

    def __init__(
        self,
        coordinators: Mapping[EntityKind, DeltaSyncCoordinator],
        *,
        connection: ConnectionStateTracker | None = None,
        events: AsyncEventEmitter | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        self.config = config or SyncConfig()
        self._coordinators = dict(coordinators)
        self._connection = connection
        self._events = events

        self._flights = {k: _Flight() for k in self._coordinators}
        self._debouncers = {
            k: Debouncer(
                self.config.debounce_s,
                functools.partial(self._debounced_run, k),
                name=f"chatsync.debounce.{k.value}",
            )
            for k in self._coordinators
        }
        self._periodic_task: asyncio.Task[None] | None = None
        self._closed = False
        self.last_results: dict[EntityKind, SyncResult] = {}

        if connection is not None:
            connection.on_status_change(self._on_connection_status)

    @property
    def kinds(self) -> list[EntityKind]:
        return list(self._coordinators)

    def is_syncing(self, kind: EntityKind) -> bool:
        task = self._flights[kind].task
        return task is not None and not task.done()

    def start(self) -> None:
        if self._periodic_task is None and self.config.periodic_sync_s:
            self._periodic_task = ensure_task(self._periodic(), name="chatsync.periodic_sync")

    def request_sync(self, kind: EntityKind | None = None) -> None:
        if self._closed:
            return
        for k in [kind] if kind is not None else self.kinds:
            self._debouncers[k].trigger()

    async def sync_now(self, kind: EntityKind, *, full: bool = False) -> SyncResult:
        fut = self._schedule(kind, full=full)
        # A cancelled caller must not cancel a pass other callers share.
        return await asyncio.shield(fut)

    async def full_sync(self) -> dict[EntityKind, SyncResult]:
        futures = {k: self._schedule(k, full=True) for k in self.kinds}
        return {k: await asyncio.shield(f) for k, f in futures.items()}

    def handle_notification(self, frame: NotificationFrame) -> None:
        if frame.kind not in self._coordinators:
            logger.debug("notification for unsynced kind %s", frame.kind.value)
            return
        logger.debug(
            "push notification for %s %s (%s)", frame.kind.value, frame.entity_id, frame.action
        )
        self.request_sync(frame.kind)

    async def close(self) -> None:
        self._closed = True
        if self._connection is not None:
            self._connection.off_status_change(self._on_connection_status)
        periodic, self._periodic_task = self._periodic_task, None
        await cancel_suppress(periodic)
        for d in self._debouncers.values():
            await d.cancel()
        for fl in self._flights.values():
            pending, fl.next_run = fl.next_run, None
            if pending is not None and not pending.done():
                pending.cancel()
            task, fl.task = fl.task, None
            await cancel_suppress(task)

    def _schedule(self, kind: EntityKind, *, full: bool) -> asyncio.Future[SyncResult]:
        if self._closed:
            raise ChatsyncError("sync orchestrator is closed")
        fl = self._flights[kind]
        if fl.next_run is None:
            fl.next_run = asyncio.get_running_loop().create_future()
        fl.next_full = fl.next_full or full
        if fl.task is None or fl.task.done():
            fl.task = ensure_task(self._drain(kind), name=f"chatsync.sync.{kind.value}")
        return fl.next_run

    async def _drain(self, kind: EntityKind) -> None:
        fl = self._flights[kind]
        coordinator = self._coordinators[kind]
        while fl.next_run is not None:
            fut, full = fl.next_run, fl.next_full
            fl.next_run, fl.next_full = None, False
            try:
                if full:
                    res = await coordinator.fetch_all_and_replace()
                else:
                    res = await coordinator.fetch_delta_and_merge()
                self.last_results[kind] = res
                await self._after_sync(kind, res)
            except asyncio.CancelledError:
                fut.cancel()
                raise
            except Exception as e:
                if not fut.done():
                    fut.set_exception(e)
                continue
            if not fut.done():
                fut.set_result(res)

    async def _after_sync(self, kind: EntityKind, res: SyncResult) -> None:
        if not isinstance(res, Err) or res.error is not SyncError.STUCK_DELETION:
            return
        if self._events is not None:
            await self._events.emit(EVENT_SYNC_PROBLEM, kind, res.detail)
        await self._coordinators[kind].retry_stuck_deletions()

    async def _debounced_run(self, kind: EntityKind) -> None:
        if self._closed:
            return
        try:
            await self.sync_now(kind)
        except Exception:
            logger.exception("background %s sync failed", kind.value)

    async def _periodic(self) -> None:
        interval = self.config.periodic_sync_s
        assert interval
        while not self._closed:
            await asyncio.sleep(interval)
            if self._connection is not None and not self._connection.is_usable:
                continue
            self.request_sync()

    def _on_connection_status(self, status: ConnectionStatus) -> None:
        if (
            status.state is ConnectionState.CONNECTED
            and status.previous is not ConnectionState.CONNECTED
        ):
            logger.debug("channel usable again, scheduling sync")
            self.request_sync()
