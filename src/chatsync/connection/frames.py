"""
Inbound realtime frames.

The wire envelope is JSON: `{"type": <kind>, "message": {...}}`. Each frame is
validated here and turned into one of the tagged dataclasses below, so the
rest of the engine never handles raw dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from ..exceptions import FrameDecodeError
from ..models import EntityKind, MessageStatus
from ..util import json as jsonutil

ConnectionEvent = Literal["open", "close", "error", "heartbeat", "heartbeat_timeout"]

# Aliases used by the server for connection events.
_CONNECTION_EVENTS: dict[str, ConnectionEvent] = {
    "open": "open",
    "connected": "open",
    "close": "close",
    "closed": "close",
    "disconnected": "close",
    "error": "error",
    "heartbeat": "heartbeat",
    "ping": "heartbeat",
    "pong": "heartbeat",
    "heartbeat_timeout": "heartbeat_timeout",
}


@dataclass(frozen=True, slots=True)
class ChatMessageFrame:
    message_id: str
    chat_id: str
    sender_id: str
    content: str
    timestamp: int | None = None
    client_message_id: str | None = None
    sender_username: str | None = None


@dataclass(frozen=True, slots=True)
class StatusUpdateFrame:
    status: MessageStatus
    message_id: str | None = None
    client_message_id: str | None = None
    chat_id: str | None = None
    sender_id: str | None = None
    timestamp: int | None = None
    # Bulk receipts (read) name several server ids at once.
    message_ids: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class ConnectionEventFrame:
    event: ConnectionEvent
    timestamp: int | None = None
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class NotificationFrame:
    kind: EntityKind
    entity_id: str | None = None
    action: str | None = None


@dataclass(frozen=True, slots=True)
class UnknownFrame:
    type: str
    payload: Any = None


InboundFrame = (
    ChatMessageFrame | StatusUpdateFrame | ConnectionEventFrame | NotificationFrame | UnknownFrame
)


def decode_frame(data: str | bytes | dict[str, Any]) -> InboundFrame:
    if isinstance(data, dict):
        wrapper = data
    else:
        try:
            wrapper = jsonutil.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            raise FrameDecodeError(f"frame is not valid JSON: {e}") from e
    if not isinstance(wrapper, dict):
        raise FrameDecodeError(f"frame must be an object, got {type(wrapper).__name__}")

    typ = wrapper.get("type")
    if not isinstance(typ, str) or not typ:
        raise FrameDecodeError("frame without a type")
    body = wrapper.get("message")

    if typ in ("chat", "chat-message"):
        return _chat_message(_obj(body, typ))
    if typ in ("message-status", "status"):
        return _status_update(_obj(body, typ))
    if typ in ("connection-status", "connection"):
        return _connection_event(_obj(body, typ))
    if typ == "notification":
        return _notification(_obj(body, typ))
    return UnknownFrame(type=typ, payload=body)


def _chat_message(m: dict[str, Any]) -> ChatMessageFrame:
    message_id = _opt_str(m.get("message_id"))
    chat_id = _opt_str(m.get("chat_id"))
    sender_id = _opt_str(m.get("sender_id"))
    content = m.get("content")
    if not message_id or not chat_id or not sender_id or not isinstance(content, str):
        raise FrameDecodeError(f"chat message missing message_id/chat_id/sender_id/content: {m!r}")
    return ChatMessageFrame(
        message_id=message_id,
        chat_id=chat_id,
        sender_id=sender_id,
        content=content,
        timestamp=_timestamp_ms(m.get("timestamp") or m.get("sent_at")),
        client_message_id=_opt_str(m.get("client_message_id")),
        sender_username=_opt_str(m.get("sender_username")),
    )


def _status_update(m: dict[str, Any]) -> StatusUpdateFrame:
    raw_status = m.get("status")
    try:
        status = MessageStatus.parse(str(raw_status))
    except ValueError as e:
        raise FrameDecodeError(f"unknown message status {raw_status!r}") from e
    if status not in (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ):
        raise FrameDecodeError(f"status {status.value!r} cannot arrive from the server")

    ids = m.get("message_ids") or []
    if not isinstance(ids, list):
        raise FrameDecodeError(f"message_ids must be a list: {ids!r}")
    message_ids = tuple(s for s in (_opt_str(i) for i in ids) if s)
    message_id = _opt_str(m.get("message_id"))
    if not message_id and not message_ids:
        raise FrameDecodeError(f"status update names no message: {m!r}")

    return StatusUpdateFrame(
        status=status,
        message_id=message_id,
        client_message_id=_opt_str(m.get("client_message_id")),
        chat_id=_opt_str(m.get("chat_id")),
        sender_id=_opt_str(m.get("sender_id")),
        timestamp=_timestamp_ms(m.get("timestamp")),
        message_ids=message_ids,
    )


def _connection_event(m: dict[str, Any]) -> ConnectionEventFrame:
    raw = str(m.get("status") or m.get("event") or "").lower()
    event = _CONNECTION_EVENTS.get(raw)
    if event is None:
        raise FrameDecodeError(f"unknown connection event {raw!r}")
    return ConnectionEventFrame(
        event=event,
        timestamp=_timestamp_ms(m.get("timestamp")),
        detail=_opt_str(m.get("detail") or m.get("reason")),
    )


def _notification(m: dict[str, Any]) -> NotificationFrame:
    raw_kind = str(m.get("kind") or m.get("entity") or "").lower()
    try:
        kind = EntityKind(raw_kind)
    except ValueError as e:
        raise FrameDecodeError(f"notification for unknown entity kind {raw_kind!r}") from e
    return NotificationFrame(
        kind=kind,
        entity_id=_opt_str(m.get("id") or m.get("entity_id")),
        action=_opt_str(m.get("action")),
    )


def _obj(body: Any, typ: str) -> dict[str, Any]:
    if not isinstance(body, dict):
        raise FrameDecodeError(f"{typ} frame without a message object")
    return body


def _opt_str(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _timestamp_ms(v: Any) -> int | None:
    """Accept epoch milliseconds or an ISO-8601 string."""

    if v is None or v == "":
        return None
    if isinstance(v, bool):
        raise FrameDecodeError(f"invalid timestamp {v!r}")
    if isinstance(v, (int, float)):
        return int(v)
    if isinstance(v, str):
        if v.lstrip("-").isdigit():
            return int(v)
        try:
            dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError as e:
            raise FrameDecodeError(f"invalid timestamp {v!r}") from e
        return int(dt.timestamp() * 1000)
    raise FrameDecodeError(f"invalid timestamp {v!r}")
