from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from .api import HttpRemoteApi, RemoteApi
from .connection.frames import (
    ChatMessageFrame,
    ConnectionEventFrame,
    InboundFrame,
    NotificationFrame,
    StatusUpdateFrame,
    UnknownFrame,
)
from .connection.state import ConnectionStateTracker, ConnectionStatus
from .connection.transport import Transport
from .connection.websocket import WebSocketConfig, WebSocketTransport
from .constants import EVENT_CONNECTION_CHANGED, EVENT_MESSAGE_RECEIVED
from .exceptions import FrameDecodeError, InvalidArgumentError, SendRejectedError, TransportError
from .messages.linking import MessageLinkAndStatusTracker
from .models import ConnectionState, Entity, EntityKind, MessageRecord, MessageStatus
from .store import InMemoryStore, LocalStore
from .sync.delta import DeleteError, DeleteOutcome, DeltaSyncCoordinator, TokenProvider
from .sync.orchestrator import SyncOrchestrator
from .sync_config import EngineConfig
from .util.asyncio import cancel_suppress, ensure_task
from .util.events import AsyncEventEmitter, Listener
from .util.result import Result

logger = logging.getLogger(__name__)


class ChatSyncEngine:
    """
    High-level async facade.

    Owns the local cache and every component that is allowed to mutate it;
    the UI reads snapshots through the accessors here and subscribes to change
    events with `on()`.
    """

    def __init__(
        self,
        *,
        api: RemoteApi,
        token: TokenProvider,
        transport: Transport | None = None,
        store: LocalStore | None = None,
        config: EngineConfig | None = None,
        user_id: str | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.user_id = user_id
        self.events = AsyncEventEmitter()
        self.store: LocalStore = store or InMemoryStore()
        self.transport = transport

        self.connection = ConnectionStateTracker(
            config=self.config.connection,
            connector=self._open_transport if transport is not None else None,
        )
        self.messages = MessageLinkAndStatusTracker(
            self.store,
            events=self.events,
            fallback_window_ms=self.config.sync.fallback_window_ms,
        )
        self.chats = DeltaSyncCoordinator(
            EntityKind.CHAT,
            api,
            self.store,
            token=token,
            events=self.events,
            config=self.config.sync,
        )
        self.friends = DeltaSyncCoordinator(
            EntityKind.FRIEND,
            api,
            self.store,
            token=token,
            events=self.events,
            config=self.config.sync,
        )
        self.orchestrator = SyncOrchestrator(
            {EntityKind.CHAT: self.chats, EntityKind.FRIEND: self.friends},
            connection=self.connection,
            events=self.events,
            config=self.config.sync,
        )
        self.connection.on_status_change(self._on_connection_status)

        self._recv_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._closed = False

    @classmethod
    def over_http(
        cls,
        token: str,
        *,
        config: EngineConfig | None = None,
        store: LocalStore | None = None,
        user_id: str | None = None,
    ) -> ChatSyncEngine:
        """Engine wired to the REST API and websocket endpoints in `config`."""

        cfg = config or EngineConfig()
        api = HttpRemoteApi(cfg.api_url, timeout_s=cfg.sync.request_timeout_s, headers=cfg.headers)
        transport = WebSocketTransport(
            WebSocketConfig(url=cfg.ws_url, token=token, extra_headers=cfg.headers)
        )
        return cls(
            api=api,
            token=lambda: token,
            transport=transport,
            store=store,
            config=cfg,
            user_id=user_id,
        )

    def on(self, event: str, listener: Listener) -> None:
        self.events.on(event, listener)

    def off(self, event: str, listener: Listener) -> None:
        self.events.off(event, listener)

    async def start(self) -> None:
        self._closed = False
        self.orchestrator.start()
        if self.transport is not None:
            await self.connection.connect()

    async def close(self) -> None:
        self._closed = True
        await self.orchestrator.close()
        await self.connection.disconnect()
        recv, self._recv_task = self._recv_task, None
        await cancel_suppress(recv)
        for t in list(self._background):
            await cancel_suppress(t)
        if self.transport is not None:
            await self.transport.close()

    # Snapshots

    async def visible_chats(self) -> list[Entity]:
        return await self.chats.visible_entities()

    async def visible_friends(self) -> list[Entity]:
        return await self.friends.visible_entities()

    async def messages_for(self, chat_id: str) -> list[MessageRecord]:
        return await self.store.list_messages(chat_id)

    # Optimistic actions

    async def send_message(
        self,
        chat_id: str,
        content: str,
        *,
        sender_id: str | None = None,
        client_message_id: str | None = None,
    ) -> MessageRecord:
        """
        Record the message locally and push it if the channel is usable.

        Offline messages stay pending and are pushed again after reconnect.
        """

        sender = sender_id or self.user_id
        if not sender:
            raise InvalidArgumentError("sender_id is required when the engine has no user_id")
        cid = client_message_id or str(uuid.uuid4())
        rec = await self.messages.register_pending(cid, chat_id, sender, content)
        if rec.status is MessageStatus.PENDING and not rec.is_linked:
            await self._push(rec)
        return rec

    async def resend_pending(self) -> int:
        pushed = 0
        for rec in self.messages.pending_messages():
            if rec.status is MessageStatus.PENDING and await self._push(rec):
                pushed += 1
        return pushed

    async def delete_chat(self, chat_id: str) -> Result[DeleteOutcome, DeleteError]:
        return await self.chats.delete_entity(chat_id)

    async def delete_friend(self, friend_id: str) -> Result[DeleteOutcome, DeleteError]:
        return await self.friends.delete_entity(friend_id)

    # Inbound

    async def handle_frame(self, frame: InboundFrame) -> None:
        if isinstance(frame, ChatMessageFrame):
            rec = await self.messages.record_incoming(
                server_message_id=frame.message_id,
                chat_id=frame.chat_id,
                sender_id=frame.sender_id,
                content=frame.content,
                server_timestamp=frame.timestamp,
                client_message_id=frame.client_message_id,
                sender_username=frame.sender_username,
            )
            await self.events.emit(EVENT_MESSAGE_RECEIVED, rec)
        elif isinstance(frame, StatusUpdateFrame):
            await self._apply_status_frame(frame)
        elif isinstance(frame, ConnectionEventFrame):
            self._apply_connection_event(frame)
        elif isinstance(frame, NotificationFrame):
            self.orchestrator.handle_notification(frame)
        elif isinstance(frame, UnknownFrame):
            logger.debug("ignoring %s frame: %r", frame.type, frame.payload)

    async def _apply_status_frame(self, frame: StatusUpdateFrame) -> None:
        if frame.message_ids:
            if frame.status is MessageStatus.READ:
                await self.messages.mark_many_read(list(frame.message_ids))
            else:
                for sid in frame.message_ids:
                    await self.messages.update_status(sid, frame.status)

        sid = frame.message_id
        if not sid:
            return
        if await self.store.get_message_by_server_id(sid) is None:
            can_link = frame.client_message_id or (
                frame.chat_id and frame.sender_id and frame.timestamp is not None
            )
            if not can_link:
                logger.warning("cannot link %s ack for %s: no correlation data", frame.status, sid)
                return
            res = await self.messages.link_acknowledgement(
                sid,
                client_message_id=frame.client_message_id,
                chat_id=frame.chat_id,
                sender_id=frame.sender_id,
                server_timestamp=frame.timestamp,
            )
            if not res.ok:
                return
        await self.messages.update_status(sid, frame.status)

    def _apply_connection_event(self, frame: ConnectionEventFrame) -> None:
        if frame.event == "open":
            self.connection.on_open()
        elif frame.event == "heartbeat":
            self.connection.heartbeat()
        elif frame.event == "heartbeat_timeout":
            self.connection.on_heartbeat_timeout()
        elif frame.event == "close":
            self.connection.on_close()
        else:
            self.connection.on_error(TransportError(frame.detail or "transport reported an error"))

    async def _push(self, rec: MessageRecord) -> bool:
        if self.transport is None or not self.connection.is_usable:
            return False
        frame = {
            "type": "chat-message",
            "chat_id": rec.chat_id,
            "content": rec.content,
            "client_message_id": rec.client_message_id,
            "timestamp": rec.created_at_local,
        }
        try:
            ack = await self.transport.send(frame)
        except SendRejectedError as e:
            logger.warning("message %s rejected: %s", rec.client_message_id, e.code)
            await self.messages.mark_failed(rec.client_message_id)
            return False
        except TransportError as e:
            logger.info("message %s stays pending: %s", rec.client_message_id, e)
            return False
        if ack is not None:
            await self.messages.link_by_client_id(
                ack.client_message_id or rec.client_message_id,
                ack.server_message_id,
                ack.timestamp,
            )
        return True

    async def _open_transport(self) -> None:
        assert self.transport is not None
        # A lost channel may still hold its old socket and reader.
        stale, self._recv_task = self._recv_task, None
        await cancel_suppress(stale)
        await self._drop_transport()
        await self.transport.connect()
        self.connection.on_open()
        self._recv_task = ensure_task(self._recv_loop(), name="chatsync.recv_loop")

    async def _recv_loop(self) -> None:
        assert self.transport is not None
        while not self._closed:
            try:
                frame = await self.transport.recv()
            except FrameDecodeError as e:
                logger.warning("dropping malformed frame: %s", e)
                continue
            except TransportError as e:
                await self._drop_transport()
                self.connection.on_error(e)
                return
            if self.connection.is_usable:
                self.connection.heartbeat()
            try:
                await self.handle_frame(frame)
            except Exception:
                logger.exception("failed to handle %s", type(frame).__name__)

    async def _drop_transport(self) -> None:
        assert self.transport is not None
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug("closing dead transport failed: %s", e)

    def _on_connection_status(self, status: ConnectionStatus) -> None:
        self._spawn(self.events.emit(EVENT_CONNECTION_CHANGED, status))
        if (
            status.state is ConnectionState.CONNECTED
            and status.previous is not ConnectionState.CONNECTED
            and not self._closed
        ):
            self._spawn(self.resend_pending())

    def _spawn(self, coro: Any) -> None:
        try:
            task = ensure_task(coro, name="chatsync.background")
        except RuntimeError:
            # No running loop (status change outside asyncio); nothing to notify.
            coro.close()
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)
