"""
Merging of authoritative chat/friend lists into the local cache.

Local deletes are applied optimistically: the id goes into the kind's
`TombstoneSet` before the remote delete is sent, so a fetch racing with the
delete cannot bring the entity back. What the user sees is always
`cache - tombstones`. Only a fetch that no longer returns the id clears its
tombstone.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from ..api import RemoteApi
from ..constants import EVENT_ENTITY_REMOVED, EVENT_ENTITY_UPSERTED
from ..exceptions import (
    InvalidArgumentError,
    PermissionDeniedError,
    RemoteApiError,
    TransportError,
)
from ..models import Entity, EntityDelta, EntityKind
from ..store import LocalStore
from ..sync_config import SyncConfig
from ..util.asyncio import promise_timeout
from ..util.events import AsyncEventEmitter
from ..util.result import Err, Ok, Result
from .tombstones import TombstoneSet

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], str | None] | Callable[[], Awaitable[str | None]]
T = TypeVar("T")


class SyncError(Enum):
    # Network failure or timeout; local state left untouched.
    OFFLINE = "offline"
    UNAUTHENTICATED = "unauthenticated"
    REMOTE = "remote"
    # A tombstone outlived the survival bound: the remote delete is stuck.
    STUCK_DELETION = "stuck_deletion"

    @property
    def is_integrity_violation(self) -> bool:
        return self is SyncError.STUCK_DELETION


class DeleteError(Enum):
    OFFLINE = "offline"
    UNAUTHENTICATED = "unauthenticated"
    PERMISSION_DENIED = "permission_denied"
    REMOTE = "remote"


class DeleteOutcome(Enum):
    DELETED = "deleted"
    # Delete was refused (403) and we left the chat instead.
    LEFT = "left"


@dataclass(slots=True)
class StuckDeletion:
    """`Err(STUCK_DELETION)` detail; `entities` is the already-committed result."""

    stuck_ids: list[str]
    entities: list[Entity] = field(default_factory=list)


class DeltaSyncCoordinator:
    def __init__(
        self,
        kind: EntityKind,
        api: RemoteApi,
        store: LocalStore,
        *,
        token: TokenProvider,
        tombstones: TombstoneSet | None = None,
        events: AsyncEventEmitter | None = None,
        config: SyncConfig | None = None,
        supports_leave: bool | None = None,
    ) -> None:
        self.kind = kind
        self.config = config or SyncConfig()
        self.tombstones = tombstones or TombstoneSet(
            kind, max_survivals=self.config.tombstone_max_survivals
        )
        if self.tombstones.kind is not kind:
            raise ValueError(f"tombstone set is for {self.tombstones.kind.value}, not {kind.value}")
        self.supports_leave = kind is EntityKind.CHAT if supports_leave is None else supports_leave

        self._api = api
        self._store = store
        self._token_provider = token
        self._events = events

        self.offline = False
        self.cursor: str | None = None
        self.last_synced_at: float | None = None

    async def visible_entities(self) -> list[Entity]:
        cached = await self._store.list_entities(self.kind)
        return [e for e in cached if e.id not in self.tombstones]

    async def fetch_all_and_replace(self) -> Result[list[Entity], SyncError]:
        token = await self._token()
        if not token:
            return Err(SyncError.UNAUTHENTICATED)
        try:
            fetched = await self._remote(self._api.fetch_all(self.kind, token))
        except TransportError as e:
            return self._went_offline(e)
        except RemoteApiError as e:
            logger.warning("%s full fetch failed: %s", self.kind.value, e)
            return Err(SyncError.REMOTE, e)

        # Shielded: a cancelled sync either commits the whole result or nothing.
        visible = await asyncio.shield(self._commit_full(fetched))
        return self._check_stuck(visible)

    async def fetch_delta_and_merge(self) -> Result[list[Entity], SyncError]:
        """
        Merge the changes since the last cursor.

        Returns the upserted entities that were applied (tombstoned ids are
        filtered out).
        """

        token = await self._token()
        if not token:
            return Err(SyncError.UNAUTHENTICATED)
        try:
            delta = await self._remote(self._api.fetch_delta(self.kind, token, self.cursor))
        except TransportError as e:
            return self._went_offline(e)
        except RemoteApiError as e:
            logger.warning("%s delta fetch failed: %s", self.kind.value, e)
            return Err(SyncError.REMOTE, e)

        merged = await asyncio.shield(self._commit_delta(delta))
        return self._check_stuck(merged)

    async def delete_entity(self, entity_id: str) -> Result[DeleteOutcome, DeleteError]:
        """
        Delete optimistically.

        The local copy is removed whatever the server says; the tombstone keeps
        the entity hidden until a later fetch confirms it is gone.
        """

        if not isinstance(entity_id, str) or not entity_id.strip():
            raise InvalidArgumentError(f"entity id must be a non-empty string, got {entity_id!r}")

        # Must happen before the remote call is issued.
        self.tombstones.add(entity_id)
        try:
            return await self._remote_delete(entity_id)
        finally:
            await self._local_cleanup(entity_id)

    async def retry_stuck_deletions(self) -> dict[str, Result[DeleteOutcome, DeleteError]]:
        results: dict[str, Result[DeleteOutcome, DeleteError]] = {}
        for entity_id in self.tombstones.stuck():
            logger.info("retrying stuck %s delete for %s", self.kind.value, entity_id)
            self.tombstones.reset_survivals([entity_id])
            results[entity_id] = await self._remote_delete(entity_id)
        return results

    async def _remote_delete(self, entity_id: str) -> Result[DeleteOutcome, DeleteError]:
        token = await self._token()
        if not token:
            return Err(DeleteError.UNAUTHENTICATED, entity_id)
        try:
            await self._remote(self._api.delete(self.kind, entity_id, token))
            return Ok(DeleteOutcome.DELETED)
        except PermissionDeniedError as e:
            if not self.supports_leave:
                logger.warning("%s delete of %s forbidden", self.kind.value, entity_id)
                return Err(DeleteError.PERMISSION_DENIED, e)
            logger.info("%s delete of %s forbidden, leaving instead", self.kind.value, entity_id)
        except TransportError as e:
            logger.warning("%s delete of %s deferred, offline: %s", self.kind.value, entity_id, e)
            return Err(DeleteError.OFFLINE, e)
        except RemoteApiError as e:
            logger.warning("%s delete of %s failed: %s", self.kind.value, entity_id, e)
            return Err(DeleteError.REMOTE, e)

        try:
            await self._remote(self._api.leave(self.kind, entity_id, token))
            return Ok(DeleteOutcome.LEFT)
        except TransportError as e:
            logger.warning("leave of %s deferred, offline: %s", entity_id, e)
            return Err(DeleteError.OFFLINE, e)
        except RemoteApiError as e:
            logger.warning("leave of %s failed: %s", entity_id, e)
            return Err(DeleteError.PERMISSION_DENIED, e)

    async def _local_cleanup(self, entity_id: str) -> None:
        removed = await self._store.remove_entity(self.kind, entity_id)
        if self.kind is EntityKind.CHAT:
            await self._store.clear_messages(entity_id)
        if removed:
            await self._emit(EVENT_ENTITY_REMOVED, self.kind, entity_id)

    async def _commit_full(self, fetched: list[Entity]) -> list[Entity]:
        server_ids = {e.id for e in fetched}
        previous = {e.id for e in await self._store.list_entities(self.kind)}

        visible = [e for e in fetched if e.id not in self.tombstones]
        await self._store.replace_entities(self.kind, visible)
        corroborated = self.tombstones.retain_present(server_ids)
        self._synced()

        if corroborated:
            logger.info("%s deletes confirmed by server: %s", self.kind.value, sorted(corroborated))
        visible_ids = {e.id for e in visible}
        for e in visible:
            await self._emit(EVENT_ENTITY_UPSERTED, e)
        for gone in sorted(previous - visible_ids):
            await self._emit(EVENT_ENTITY_REMOVED, self.kind, gone)
        return visible

    async def _commit_delta(self, delta: EntityDelta) -> list[Entity]:
        corroborated = self.tombstones.corroborate(delta.removed_ids)
        self.tombstones.observe_present(e.id for e in delta.upserted)

        merged: list[Entity] = []
        for e in delta.upserted:
            if e.id in self.tombstones:
                continue
            merged.append(await self._store.upsert_entity(e))

        removed: list[str] = []
        for entity_id in delta.removed_ids:
            if await self._store.remove_entity(self.kind, entity_id):
                removed.append(entity_id)
            if self.kind is EntityKind.CHAT:
                await self._store.clear_messages(entity_id)

        if delta.cursor is not None:
            self.cursor = delta.cursor
        self._synced()

        if corroborated:
            logger.info("%s deletes confirmed by server: %s", self.kind.value, sorted(corroborated))
        for e in merged:
            await self._emit(EVENT_ENTITY_UPSERTED, e)
        for entity_id in removed:
            await self._emit(EVENT_ENTITY_REMOVED, self.kind, entity_id)
        return merged

    def _check_stuck(self, entities: list[Entity]) -> Result[list[Entity], SyncError]:
        stuck = self.tombstones.stuck()
        if stuck:
            logger.error(
                "%s deletes still present on server after %d fetches: %s",
                self.kind.value,
                self.tombstones.max_survivals,
                stuck,
            )
            return Err(SyncError.STUCK_DELETION, StuckDeletion(stuck_ids=stuck, entities=entities))
        return Ok(entities)

    def _went_offline(self, e: Exception) -> Err[SyncError]:
        if not self.offline:
            logger.warning("%s sync offline: %s", self.kind.value, e)
        self.offline = True
        return Err(SyncError.OFFLINE, e)

    def _synced(self) -> None:
        self.offline = False
        self.last_synced_at = time.time()

    async def _remote(self, coro: Awaitable[T]) -> T:
        try:
            return await promise_timeout(self.config.request_timeout_s, coro)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"{self.kind.value} request timed out after {self.config.request_timeout_s}s"
            ) from e

    async def _token(self) -> str | None:
        res: Any = self._token_provider()
        if inspect.isawaitable(res):
            res = await res
        return res

    async def _emit(self, event: str, *args: Any) -> None:
        if self._events is not None:
            await self._events.emit(event, *args)
