"""
Delivery tracking for locally composed messages.

A message sent from this device is registered with a client-generated id before
the server has seen it. Once the server acknowledges it, the record is linked
to the server-assigned id and timestamp, and later receipts advance its
status. Status only moves forward (pending < sent < delivered < read); `failed`
is terminal and only reachable from pending or sent.

Acks that come without a client id are matched heuristically by
`link_by_fallback_match`: same chat, same sender, closest local timestamp
within a window. Two messages from the same sender created within the same
instant can be matched the wrong way round; the rule is deterministic
(smallest delta, then earliest local creation) so the outcome is at least
reproducible.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from ..constants import DEFAULT_FALLBACK_WINDOW_MS, EVENT_MESSAGE_STATUS_CHANGED
from ..exceptions import InvalidArgumentError
from ..models import MessageRecord, MessageStatus
from ..store import LocalStore
from ..util.asyncio import KeyedLocks
from ..util.events import AsyncEventEmitter
from ..util.result import Err, Ok, Result

logger = logging.getLogger(__name__)


class LinkError(Enum):
    NOT_FOUND = "not_found"
    # Record already carries a different server id.
    ALREADY_LINKED = "already_linked"
    # Record is in the terminal `failed` state.
    TERMINAL = "terminal"

    @property
    def is_integrity_violation(self) -> bool:
        return self is not LinkError.NOT_FOUND


class StatusError(Enum):
    NOT_FOUND = "not_found"
    INTEGRITY_VIOLATION = "integrity_violation"

    @property
    def is_integrity_violation(self) -> bool:
        return self is StatusError.INTEGRITY_VIOLATION


@dataclass(slots=True)
class BulkStatusResult:
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: dict[str, StatusError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require(**values: object) -> None:
    for name, value in values.items():
        if not isinstance(value, str) or not value.strip():
            raise InvalidArgumentError(f"{name} must be a non-empty string, got {value!r}")


class MessageLinkAndStatusTracker:
    def __init__(
        self,
        store: LocalStore,
        *,
        events: AsyncEventEmitter | None = None,
        clock_ms: Callable[[], int] | None = None,
        fallback_window_ms: int = DEFAULT_FALLBACK_WINDOW_MS,
    ) -> None:
        self._store = store
        self._events = events
        self._clock_ms = clock_ms or _now_ms
        self.fallback_window_ms = fallback_window_ms

        self._locks = KeyedLocks()
        self._seq = itertools.count(1)
        # Records not yet promoted (no server id yet, or still pending).
        self._pending: dict[str, MessageRecord] = {}

    def pending_messages(self, chat_id: str | None = None) -> list[MessageRecord]:
        msgs = [m for m in self._pending.values() if chat_id is None or m.chat_id == chat_id]
        return sorted(msgs, key=lambda m: m.sequence)

    async def register_pending(
        self, client_message_id: str, chat_id: str, sender_id: str, content: str
    ) -> MessageRecord:
        _require(client_message_id=client_message_id, chat_id=chat_id, sender_id=sender_id)
        if not isinstance(content, str):
            raise InvalidArgumentError(f"content must be a string, got {type(content).__name__}")

        async with self._locks.hold(client_message_id):
            existing = self._pending.get(client_message_id)
            if existing is None:
                existing = await self._store.get_message_by_client_id(client_message_id)
            if existing is not None:
                return existing

            rec = MessageRecord(
                client_message_id=client_message_id,
                chat_id=chat_id,
                sender_id=sender_id,
                content=content,
                created_at_local=self._clock_ms(),
                sequence=next(self._seq),
            )
            await self._store.insert_message(rec)
            self._pending[client_message_id] = rec
            logger.debug("registered pending message %s in chat %s", client_message_id, chat_id)
            return rec

    async def link_by_client_id(
        self,
        client_message_id: str,
        server_message_id: str,
        server_timestamp: int | None = None,
    ) -> Result[None, LinkError]:
        _require(client_message_id=client_message_id, server_message_id=server_message_id)

        async with self._locks.hold(client_message_id):
            rec = await self._store.get_message_by_client_id(client_message_id)
            if rec is None:
                # May have been sent from another device.
                logger.warning(
                    "no local message with client id %s to link with server id %s",
                    client_message_id,
                    server_message_id,
                )
                return Err(LinkError.NOT_FOUND, client_message_id)
            if rec.is_failed:
                logger.warning("refusing to link failed message %s", client_message_id)
                return Err(LinkError.TERMINAL, client_message_id)
            if rec.server_message_id is not None and rec.server_message_id != server_message_id:
                logger.error(
                    "message %s already linked to %s, refusing relink to %s",
                    client_message_id,
                    rec.server_message_id,
                    server_message_id,
                )
                return Err(LinkError.ALREADY_LINKED, (rec.server_message_id, server_message_id))

            rec.server_message_id = server_message_id
            if server_timestamp is not None and server_timestamp != rec.timestamp:
                rec.server_timestamp = server_timestamp
            status_changed = rec.status.rank < MessageStatus.SENT.rank
            if status_changed:
                rec.status = MessageStatus.SENT
            await self._store.update_message(rec)
            self._promote(rec)

        logger.debug("linked server id %s to client id %s", server_message_id, client_message_id)
        if status_changed:
            await self._emit(rec)
        return Ok(None)

    async def link_by_fallback_match(
        self,
        chat_id: str,
        sender_id: str,
        server_message_id: str,
        server_timestamp_ms: int,
        window_ms: int | None = None,
    ) -> Result[None, LinkError]:
        _require(chat_id=chat_id, sender_id=sender_id, server_message_id=server_message_id)
        window = self.fallback_window_ms if window_ms is None else window_ms
        if window <= 0:
            raise InvalidArgumentError(f"window_ms must be positive, got {window}")

        # Selection and link are one step per chat, so concurrent acks never
        # pick the same candidate.
        async with self._locks.hold(f"fallback:{chat_id}"):
            best = self.best_fallback_candidate(
                await self._store.list_messages(chat_id), sender_id, server_timestamp_ms, window
            )
            if best is None:
                logger.warning(
                    "no fallback match for server id %s (chat=%s sender=%s ts=%s)",
                    server_message_id,
                    chat_id,
                    sender_id,
                    server_timestamp_ms,
                )
                return Err(LinkError.NOT_FOUND, server_message_id)

            res = await self.link_by_client_id(
                best.client_message_id, server_message_id, server_timestamp_ms
            )
        if res.ok:
            logger.info(
                "linked server id %s to %s via timestamp fallback",
                server_message_id,
                best.client_message_id,
            )
        return res

    @staticmethod
    def best_fallback_candidate(
        messages: Iterable[MessageRecord],
        sender_id: str,
        server_timestamp_ms: int,
        window_ms: int,
    ) -> MessageRecord | None:
        candidates = [
            m
            for m in messages
            if m.sender_id == sender_id
            and not m.is_linked
            and not m.is_failed
            and abs(server_timestamp_ms - m.timestamp) < window_ms
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda m: (abs(server_timestamp_ms - m.timestamp), m.sequence))

    async def link_acknowledgement(
        self,
        server_message_id: str,
        *,
        client_message_id: str | None = None,
        chat_id: str | None = None,
        sender_id: str | None = None,
        server_timestamp: int | None = None,
    ) -> Result[None, LinkError]:
        """
        Link an ack, trying the client id first.

        The timestamp heuristic is only used when the ack carries no client id.
        """

        if client_message_id:
            return await self.link_by_client_id(
                client_message_id, server_message_id, server_timestamp
            )
        if chat_id and sender_id and server_timestamp is not None:
            return await self.link_by_fallback_match(
                chat_id, sender_id, server_message_id, server_timestamp
            )
        raise InvalidArgumentError(
            f"ack for {server_message_id!r} has neither a client id nor chat/sender/timestamp"
        )

    async def update_status(
        self, server_message_id: str, status: MessageStatus | str
    ) -> Result[bool, StatusError]:
        """
        Apply a receipt. `Ok(True)` if the status moved, `Ok(False)` for a
        stale or duplicate receipt.
        """

        _require(server_message_id=server_message_id)
        target = status if isinstance(status, MessageStatus) else MessageStatus.parse(status)

        found = await self._store.get_message_by_server_id(server_message_id)
        if found is None:
            logger.warning("status %s for unknown server id %s", target.value, server_message_id)
            return Err(StatusError.NOT_FOUND, server_message_id)
        return await self._transition(found.client_message_id, target)

    async def mark_failed(self, client_message_id: str) -> Result[bool, StatusError]:
        _require(client_message_id=client_message_id)
        return await self._transition(client_message_id, MessageStatus.FAILED)

    async def mark_many_read(self, server_message_ids: list[str]) -> BulkStatusResult:
        if isinstance(server_message_ids, str):
            raise InvalidArgumentError("server_message_ids must be a list of ids, not a string")
        for sid in server_message_ids:
            _require(server_message_id=sid)

        out = BulkStatusResult()
        for sid in server_message_ids:
            res = await self.update_status(sid, MessageStatus.READ)
            if isinstance(res, Err):
                out.failed[sid] = res.error
            elif res.value:
                out.updated.append(sid)
            else:
                out.unchanged.append(sid)
        if out.failed:
            logger.warning(
                "bulk read: %d of %d ids failed", len(out.failed), len(server_message_ids)
            )
        return out

    async def record_incoming(
        self,
        *,
        server_message_id: str,
        chat_id: str,
        sender_id: str,
        content: str,
        server_timestamp: int | None = None,
        client_message_id: str | None = None,
        sender_username: str | None = None,
    ) -> MessageRecord:
        """
        Store a message pushed by the server.

        An echo of one of our own pending messages is linked instead of stored
        twice.
        """

        _require(server_message_id=server_message_id, chat_id=chat_id, sender_id=sender_id)
        if client_message_id:
            mine = await self._store.get_message_by_client_id(client_message_id)
            if mine is not None:
                res = await self.link_by_client_id(
                    client_message_id, server_message_id, server_timestamp
                )
                if isinstance(res, Err) and res.is_integrity_violation:
                    logger.error(
                        "echo %s of own message %s conflicts with local state: %s",
                        server_message_id,
                        client_message_id,
                        res.error.value,
                    )
                return mine

        known = await self._store.get_message_by_server_id(server_message_id)
        if known is not None:
            return known

        ts = server_timestamp if server_timestamp is not None else self._clock_ms()
        rec = MessageRecord(
            client_message_id=client_message_id or server_message_id,
            chat_id=chat_id,
            sender_id=sender_id,
            content=content,
            created_at_local=ts,
            status=MessageStatus.DELIVERED,
            server_message_id=server_message_id,
            server_timestamp=server_timestamp,
            sender_username=sender_username,
            sequence=next(self._seq),
        )
        await self._store.insert_message(rec)
        return rec

    async def _transition(
        self, client_message_id: str, target: MessageStatus
    ) -> Result[bool, StatusError]:
        async with self._locks.hold(client_message_id):
            rec = await self._store.get_message_by_client_id(client_message_id)
            if rec is None:
                logger.warning(
                    "status %s for unknown client id %s", target.value, client_message_id
                )
                return Err(StatusError.NOT_FOUND, client_message_id)

            current = rec.status
            if current is MessageStatus.FAILED:
                if target is MessageStatus.FAILED:
                    return Ok(False)
                logger.error(
                    "message %s is failed, refusing transition to %s",
                    client_message_id,
                    target.value,
                )
                return Err(StatusError.INTEGRITY_VIOLATION, (client_message_id, current, target))

            if target is MessageStatus.FAILED:
                if current.rank > MessageStatus.SENT.rank:
                    logger.error(
                        "message %s is %s, cannot be marked failed",
                        client_message_id,
                        current.value,
                    )
                    return Err(
                        StatusError.INTEGRITY_VIOLATION, (client_message_id, current, target)
                    )
            elif target.rank <= current.rank:
                # Late or duplicate receipt.
                return Ok(False)

            rec.status = target
            await self._store.update_message(rec)
            self._promote(rec)

        await self._emit(rec)
        return Ok(True)

    def _promote(self, rec: MessageRecord) -> None:
        if rec.is_failed or (rec.is_linked and rec.is_sent):
            self._pending.pop(rec.client_message_id, None)

    async def _emit(self, rec: MessageRecord) -> None:
        if self._events is not None:
            await self._events.emit(EVENT_MESSAGE_STATUS_CHANGED, rec)
