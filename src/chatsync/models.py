from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        # FAILED sits outside the forward order.
        return _STATUS_RANK.get(self, -1)

    @classmethod
    def parse(cls, value: str) -> MessageStatus:
        return cls(value.strip().lower())


_STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}


class EntityKind(str, Enum):
    CHAT = "chat"
    FRIEND = "friend"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(slots=True)
class MessageRecord:
    """
    A chat message as cached locally.

    Records created by `register_pending` start out without a server id; once
    the server acknowledges them they are linked in place. `client_message_id`
    never changes after creation.
    """

    client_message_id: str
    chat_id: str
    sender_id: str
    content: str
    created_at_local: int
    status: MessageStatus = MessageStatus.PENDING
    server_message_id: str | None = None
    server_timestamp: int | None = None
    sender_username: str | None = None
    # Local creation order; breaks ties between equal timestamps.
    sequence: int = 0

    @property
    def timestamp(self) -> int:
        return self.server_timestamp if self.server_timestamp is not None else self.created_at_local

    @property
    def is_linked(self) -> bool:
        return self.server_message_id is not None

    @property
    def is_failed(self) -> bool:
        return self.status is MessageStatus.FAILED

    @property
    def is_sent(self) -> bool:
        return self.status.rank >= MessageStatus.SENT.rank

    @property
    def is_delivered(self) -> bool:
        # A read receipt implies delivery even when "delivered" never arrived.
        return self.status.rank >= MessageStatus.DELIVERED.rank

    @property
    def is_read(self) -> bool:
        return self.status is MessageStatus.READ


@dataclass(slots=True)
class Chat:
    id: str
    name: str | None = None
    creator_id: str | None = None
    is_group: bool = False
    description: str | None = None
    group_name: str | None = None
    last_message_content: str | None = None
    last_message_timestamp: int | None = None
    unread_count: int = 0
    created_at: int | None = None
    updated_at: int | None = None

    kind = EntityKind.CHAT

    @classmethod
    def from_payload(cls, d: dict[str, Any]) -> Chat:
        chat_id = d.get("chat_id") or d.get("id")
        if not chat_id:
            raise ValueError(f"chat payload without id: {d!r}")
        return cls(
            id=str(chat_id),
            name=d.get("chat_name") or d.get("name"),
            creator_id=d.get("creator_id"),
            is_group=bool(d.get("is_group") or False),
            description=d.get("description"),
            group_name=d.get("group_name"),
            last_message_content=d.get("last_message_content"),
            last_message_timestamp=_opt_int(d.get("last_message_timestamp")),
            unread_count=int(d.get("unread_count") or 0),
            created_at=_opt_int(d.get("created_at")),
            updated_at=_opt_int(d.get("updated_at")),
        )


@dataclass(slots=True)
class Friend:
    id: str
    username: str | None = None
    name: str | None = None
    email: str | None = None
    picture: str | None = None
    status: str | None = None
    is_favorite: bool = False
    updated_at: int | None = None

    kind = EntityKind.FRIEND

    @classmethod
    def from_payload(cls, d: dict[str, Any]) -> Friend:
        user_id = d.get("user_id") or d.get("id")
        if not user_id:
            raise ValueError(f"friend payload without id: {d!r}")
        return cls(
            id=str(user_id),
            username=d.get("username"),
            name=d.get("name"),
            email=d.get("email"),
            picture=d.get("picture"),
            status=d.get("status"),
            is_favorite=bool(d.get("is_favorite") or False),
            updated_at=_opt_int(d.get("updated_at")),
        )


Entity = Chat | Friend

ENTITY_TYPES: dict[EntityKind, type[Chat] | type[Friend]] = {
    EntityKind.CHAT: Chat,
    EntityKind.FRIEND: Friend,
}


@dataclass(frozen=True, slots=True)
class Tombstone:
    id: str
    kind: EntityKind
    created_at: float


@dataclass(slots=True)
class EntityDelta:
    """Server-provided changes since `cursor` for one entity kind."""

    upserted: list[Entity] = field(default_factory=list)
    removed_ids: list[str] = field(default_factory=list)
    cursor: str | None = None


def _opt_int(v: Any) -> int | None:
    if v is None or v == "":
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None
