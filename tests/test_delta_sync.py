from __future__ import annotations

import asyncio

import pytest

from chatsync.constants import EVENT_ENTITY_REMOVED, EVENT_ENTITY_UPSERTED
from chatsync.exceptions import InvalidArgumentError, PermissionDeniedError, TransportError
from chatsync.models import Chat, EntityDelta, EntityKind, Friend, MessageRecord
from chatsync.sync.delta import (
    DeleteError,
    DeleteOutcome,
    DeltaSyncCoordinator,
    StuckDeletion,
    SyncError,
)
from chatsync.sync_config import SyncConfig
from chatsync.util.events import AsyncEventEmitter
from chatsync.util.result import Err, Ok


def _chats(api, store, **kw) -> DeltaSyncCoordinator:
    return DeltaSyncCoordinator(EntityKind.CHAT, api, store, token=lambda: "tok", **kw)


async def _visible_ids(c: DeltaSyncCoordinator) -> set[str]:
    return {e.id for e in await c.visible_entities()}


@pytest.mark.asyncio
async def test_offline_delete_stays_hidden_while_server_still_has_it(api, store) -> None:
    api.lists[EntityKind.CHAT] = [Chat("chat-1"), Chat("chat-9")]
    c = _chats(api, store)
    assert (await c.fetch_all_and_replace()).ok

    api.errors["delete"] = TransportError("offline")
    res = await c.delete_entity("chat-9")

    assert res == Err(DeleteError.OFFLINE, api.errors["delete"])
    assert "chat-9" in c.tombstones
    assert await store.get_entity(EntityKind.CHAT, "chat-9") is None

    api.errors.clear()
    res = await c.fetch_all_and_replace()

    assert res.ok
    assert "chat-9" in c.tombstones
    assert await _visible_ids(c) == {"chat-1"}
    assert [e.id for e in res.value] == ["chat-1"]


@pytest.mark.asyncio
async def test_tombstone_cleared_once_server_confirms(api, store) -> None:
    api.lists[EntityKind.CHAT] = [Chat("chat-1"), Chat("chat-9")]
    c = _chats(api, store)
    await c.fetch_all_and_replace()
    api.errors["delete"] = TransportError("offline")
    await c.delete_entity("chat-9")
    api.errors.clear()

    api.lists[EntityKind.CHAT] = [Chat("chat-1")]
    await c.fetch_all_and_replace()

    assert "chat-9" not in c.tombstones
    assert await store.get_entity(EntityKind.CHAT, "chat-9") is None
    assert await _visible_ids(c) == {"chat-1"}

    await c.fetch_all_and_replace()
    assert await _visible_ids(c) == {"chat-1"}


@pytest.mark.asyncio
async def test_delete_tombstones_before_remote_call(api, store) -> None:
    api.lists[EntityKind.CHAT] = [Chat("chat-9")]
    c = _chats(api, store)
    await c.fetch_all_and_replace()
    seen_during_delete: list[bool] = []

    orig_delete = api.delete

    async def delete(kind, entity_id, token):
        seen_during_delete.append(entity_id in c.tombstones)
        # A full fetch racing with the delete must not resurrect the chat.
        assert (await c.fetch_all_and_replace()).ok
        assert await _visible_ids(c) == set()
        await orig_delete(kind, entity_id, token)

    api.delete = delete
    assert await c.delete_entity("chat-9") == Ok(DeleteOutcome.DELETED)
    assert seen_during_delete == [True]


@pytest.mark.asyncio
async def test_delete_clears_chat_messages(api, store) -> None:
    api.lists[EntityKind.CHAT] = [Chat("chat-1")]
    c = _chats(api, store)
    await c.fetch_all_and_replace()
    await store.insert_message(MessageRecord("c1", "chat-1", "u1", "hi", created_at_local=1))

    await c.delete_entity("chat-1")

    assert await store.list_messages("chat-1") == []
    assert await store.get_message_by_client_id("c1") is None


@pytest.mark.asyncio
async def test_forbidden_chat_delete_falls_back_to_leave(api, store) -> None:
    api.errors["delete"] = PermissionDeniedError()
    c = _chats(api, store)

    res = await c.delete_entity("group-1")

    assert res == Ok(DeleteOutcome.LEFT)
    assert [op[2] for op in api.ops("leave")] == ["group-1"]


@pytest.mark.asyncio
async def test_forbidden_friend_delete_has_no_fallback(api, store) -> None:
    api.errors["delete"] = PermissionDeniedError()
    c = DeltaSyncCoordinator(EntityKind.FRIEND, api, store, token=lambda: "tok")

    res = await c.delete_entity("f1")

    assert isinstance(res, Err)
    assert res.error is DeleteError.PERMISSION_DENIED
    assert api.ops("leave") == []
    assert "f1" in c.tombstones


@pytest.mark.asyncio
async def test_missing_token_is_unauthenticated(api, store) -> None:
    c = DeltaSyncCoordinator(EntityKind.CHAT, api, store, token=lambda: None)

    assert await c.fetch_all_and_replace() == Err(SyncError.UNAUTHENTICATED)
    assert api.calls == []


@pytest.mark.asyncio
async def test_async_token_provider(api, store) -> None:
    async def token() -> str:
        return "async-tok"

    c = DeltaSyncCoordinator(EntityKind.CHAT, api, store, token=token)
    await c.fetch_all_and_replace()

    assert api.calls[0] == ("fetch_all", EntityKind.CHAT, "async-tok")


@pytest.mark.asyncio
async def test_network_failure_leaves_cache_untouched(api, store) -> None:
    api.lists[EntityKind.CHAT] = [Chat("chat-1", name="Old")]
    c = _chats(api, store)
    await c.fetch_all_and_replace()

    api.lists[EntityKind.CHAT] = []
    api.errors["fetch_all"] = TransportError("boom")
    res = await c.fetch_all_and_replace()

    assert isinstance(res, Err) and res.error is SyncError.OFFLINE
    assert c.offline
    assert await _visible_ids(c) == {"chat-1"}

    api.errors.clear()
    assert (await c.fetch_all_and_replace()).ok
    assert not c.offline


@pytest.mark.asyncio
async def test_request_timeout_is_reported_offline(api, store) -> None:
    api.delay_s = 0.5
    c = _chats(api, store, config=SyncConfig(request_timeout_s=0.01))

    res = await c.fetch_delta_and_merge()

    assert isinstance(res, Err) and res.error is SyncError.OFFLINE


@pytest.mark.asyncio
async def test_stuck_deletion_is_reported_with_committed_entities(api, store) -> None:
    api.lists[EntityKind.CHAT] = [Chat("chat-1"), Chat("zombie")]
    c = _chats(api, store, config=SyncConfig(tombstone_max_survivals=3))
    await c.delete_entity("zombie")

    results = [await c.fetch_all_and_replace() for _ in range(4)]

    assert all(r.ok for r in results[:3])
    last = results[3]
    assert isinstance(last, Err)
    assert last.error is SyncError.STUCK_DELETION
    assert last.is_integrity_violation
    assert isinstance(last.detail, StuckDeletion)
    assert last.detail.stuck_ids == ["zombie"]
    assert [e.id for e in last.detail.entities] == ["chat-1"]
    assert await _visible_ids(c) == {"chat-1"}

    retried = await c.retry_stuck_deletions()
    assert retried == {"zombie": Ok(DeleteOutcome.DELETED)}
    assert c.tombstones.survivals("zombie") == 0


@pytest.mark.asyncio
async def test_delta_merge_applies_upserts_and_removals(api, store) -> None:
    api.lists[EntityKind.CHAT] = [Chat("a", name="A"), Chat("b", name="B")]
    c = _chats(api, store)
    await c.fetch_all_and_replace()
    api.errors["delete"] = TransportError("offline")
    await c.delete_entity("t")
    api.errors.clear()

    api.deltas[EntityKind.CHAT] = [
        EntityDelta(
            upserted=[Chat("a", name="A2"), Chat("c", name="C"), Chat("t")],
            removed_ids=["b"],
            cursor="cur-1",
        ),
        EntityDelta(removed_ids=["t"]),
    ]
    res = await c.fetch_delta_and_merge()

    assert sorted(e.id for e in res.value) == ["a", "c"]
    assert (await store.get_entity(EntityKind.CHAT, "a")).name == "A2"
    assert await _visible_ids(c) == {"a", "c"}
    assert c.cursor == "cur-1"
    assert c.tombstones.survivals("t") == 1

    await c.fetch_delta_and_merge()
    assert api.ops("fetch_delta")[-1][3] == "cur-1"
    assert "t" not in c.tombstones


@pytest.mark.asyncio
async def test_full_replace_emits_changes(api, store) -> None:
    events = AsyncEventEmitter()
    upserted: list[str] = []
    removed: list[tuple[EntityKind, str]] = []
    events.on(EVENT_ENTITY_UPSERTED, lambda e: upserted.append(e.id))
    events.on(EVENT_ENTITY_REMOVED, lambda kind, i: removed.append((kind, i)))
    c = DeltaSyncCoordinator(EntityKind.FRIEND, api, store, token=lambda: "tok", events=events)

    api.lists[EntityKind.FRIEND] = [Friend("f1"), Friend("f2")]
    await c.fetch_all_and_replace()
    api.lists[EntityKind.FRIEND] = [Friend("f2")]
    await c.fetch_all_and_replace()

    assert upserted == ["f1", "f2", "f2"]
    assert removed == [(EntityKind.FRIEND, "f1")]


@pytest.mark.asyncio
async def test_cancelled_fetch_does_not_commit_half_a_result(api, store) -> None:
    api.lists[EntityKind.CHAT] = [Chat("a")]
    c = _chats(api, store)
    api.gate = asyncio.Event()

    task = asyncio.create_task(c.fetch_all_and_replace())
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await store.list_entities(EntityKind.CHAT) == []


@pytest.mark.asyncio
async def test_delete_rejects_empty_id(api, store) -> None:
    c = _chats(api, store)
    with pytest.raises(InvalidArgumentError):
        await c.delete_entity("  ")
    assert len(c.tombstones) == 0
