from __future__ import annotations

import asyncio

import pytest

from chatsync.util.asyncio import Debouncer, KeyedLocks
from chatsync.util.events import AsyncEventEmitter


@pytest.mark.asyncio
async def test_emit_calls_sync_and_async_listeners_in_order() -> None:
    ev = AsyncEventEmitter()
    seen: list[str] = []

    async def slow(x: str) -> None:
        await asyncio.sleep(0)
        seen.append(f"async:{x}")

    def broken(_: str) -> None:
        raise RuntimeError("listener bug")

    ev.on("e", lambda x: seen.append(f"sync:{x}"))
    ev.on("e", broken)
    ev.on("e", slow)

    assert await ev.emit("e", "1")
    assert seen == ["sync:1", "async:1"]

    ev.off("e", slow)
    assert ev.listener_count("e") == 2
    assert not await ev.emit("other")


@pytest.mark.asyncio
async def test_wait_for_with_predicate() -> None:
    ev = AsyncEventEmitter()
    waiter = asyncio.create_task(ev.wait_for("n", predicate=lambda v: v > 1, timeout_s=1.0))
    await asyncio.sleep(0)

    await ev.emit("n", 1)
    await ev.emit("n", 2)

    assert await waiter == 2


@pytest.mark.asyncio
async def test_debouncer_collapses_triggers_and_can_be_cancelled() -> None:
    calls = 0

    async def cb() -> None:
        nonlocal calls
        calls += 1

    d = Debouncer(0.02, cb)
    d.trigger()
    d.trigger()
    d.trigger()
    assert d.is_scheduled
    await asyncio.sleep(0.05)
    assert calls == 1

    d.trigger()
    await d.cancel()
    await asyncio.sleep(0.05)
    assert calls == 1
    assert not d.is_scheduled


@pytest.mark.asyncio
async def test_keyed_locks_serialize_per_key_and_clean_up() -> None:
    locks = KeyedLocks()
    order: list[str] = []

    async def worker(key: str, tag: str) -> None:
        async with locks.hold(key):
            order.append(f"{tag}+")
            await asyncio.sleep(0.01)
            order.append(f"{tag}-")

    await asyncio.gather(worker("k", "a"), worker("k", "b"))

    assert order == ["a+", "a-", "b+", "b-"]
    assert len(locks) == 0
