from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from typing import Protocol

from .models import Entity, EntityKind, MessageRecord


class LocalStore(Protocol):
    """
    Local cache consumed by the sync engine.

    Backed by whatever persistence the host application uses; the engine only
    needs row-level access by id, by client id, by chat and by kind.
    """

    async def get_entity(self, kind: EntityKind, entity_id: str) -> Entity | None: ...

    async def list_entities(self, kind: EntityKind) -> list[Entity]: ...

    async def upsert_entity(self, entity: Entity) -> Entity: ...

    async def replace_entities(self, kind: EntityKind, entities: Iterable[Entity]) -> None: ...

    async def remove_entity(self, kind: EntityKind, entity_id: str) -> bool: ...

    async def insert_message(self, msg: MessageRecord) -> None: ...

    async def update_message(self, msg: MessageRecord) -> None: ...

    async def get_message_by_client_id(self, client_message_id: str) -> MessageRecord | None: ...

    async def get_message_by_server_id(self, server_message_id: str) -> MessageRecord | None: ...

    async def list_messages(self, chat_id: str) -> list[MessageRecord]: ...

    async def clear_messages(self, chat_id: str) -> int: ...


def merge_entity(existing: Entity, incoming: Entity) -> Entity:
    """
    Merge `incoming` into `existing`, preferring new non-null values.

    When both sides carry an `updated_at` freshness marker and the incoming one
    is older, the local record wins and is returned unchanged.
    """

    if (
        existing.updated_at is not None
        and incoming.updated_at is not None
        and incoming.updated_at < existing.updated_at
    ):
        return existing
    for f in dataclasses.fields(incoming):
        value = getattr(incoming, f.name)
        if value is not None:
            setattr(existing, f.name, value)
    return existing


class InMemoryStore:
    """
    In-memory `LocalStore` implementation.

    Good enough for tests and small clients; it has no eviction and does not
    survive a restart.
    """

    def __init__(self) -> None:
        self._entities: dict[EntityKind, dict[str, Entity]] = {k: {} for k in EntityKind}
        self._messages: dict[str, list[MessageRecord]] = {}
        self._by_client_id: dict[str, MessageRecord] = {}
        self._by_server_id: dict[str, MessageRecord] = {}

    async def get_entity(self, kind: EntityKind, entity_id: str) -> Entity | None:
        return self._entities[kind].get(entity_id)

    async def list_entities(self, kind: EntityKind) -> list[Entity]:
        return list(self._entities[kind].values())

    async def upsert_entity(self, entity: Entity) -> Entity:
        bucket = self._entities[entity.kind]
        existing = bucket.get(entity.id)
        if existing is None:
            bucket[entity.id] = entity
            return entity
        return merge_entity(existing, entity)

    async def replace_entities(self, kind: EntityKind, entities: Iterable[Entity]) -> None:
        old = self._entities[kind]
        new: dict[str, Entity] = {}
        for e in entities:
            prev = old.get(e.id)
            new[e.id] = merge_entity(prev, e) if prev is not None else e
        self._entities[kind] = new

    async def remove_entity(self, kind: EntityKind, entity_id: str) -> bool:
        return self._entities[kind].pop(entity_id, None) is not None

    async def insert_message(self, msg: MessageRecord) -> None:
        if msg.client_message_id in self._by_client_id:
            return
        self._messages.setdefault(msg.chat_id, []).append(msg)
        self._index(msg)

    async def update_message(self, msg: MessageRecord) -> None:
        current = self._by_client_id.get(msg.client_message_id)
        if current is None:
            await self.insert_message(msg)
            return
        if current is not msg:
            msgs = self._messages.get(current.chat_id) or []
            self._messages[current.chat_id] = [msg if m is current else m for m in msgs]
        self._index(msg)

    def _index(self, msg: MessageRecord) -> None:
        self._by_client_id[msg.client_message_id] = msg
        if msg.server_message_id:
            self._by_server_id[msg.server_message_id] = msg

    async def get_message_by_client_id(self, client_message_id: str) -> MessageRecord | None:
        return self._by_client_id.get(client_message_id)

    async def get_message_by_server_id(self, server_message_id: str) -> MessageRecord | None:
        return self._by_server_id.get(server_message_id)

    async def list_messages(self, chat_id: str) -> list[MessageRecord]:
        return list(self._messages.get(chat_id) or [])

    async def clear_messages(self, chat_id: str) -> int:
        msgs = self._messages.pop(chat_id, None) or []
        for m in msgs:
            self._by_client_id.pop(m.client_message_id, None)
            if m.server_message_id:
                self._by_server_id.pop(m.server_message_id, None)
        return len(msgs)
