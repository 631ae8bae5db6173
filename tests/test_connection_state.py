from __future__ import annotations

import asyncio

import pytest
from conftest import FakeClock, settle

from chatsync.connection.state import (
    ConnectionStateTracker,
    ConnectionStatus,
    HeartbeatTimeout,
    backoff_delay,
)
from chatsync.exceptions import TransportError
from chatsync.models import ConnectionState
from chatsync.sync_config import ConnectionConfig

S = ConnectionState


def test_backoff_delay_doubles_and_caps() -> None:
    delays = [backoff_delay(n, base_s=1.0, max_s=30.0) for n in range(0, 8)]
    assert delays == [0.0, 1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


@pytest.mark.asyncio
async def test_subscribers_run_synchronously_in_order() -> None:
    tracker = ConnectionStateTracker(config=ConnectionConfig(backoff_base_s=60.0))
    seen: list[tuple[S | None, S]] = []
    tracker.on_status_change(lambda st: seen.append((st.previous, st.state)))

    await tracker.connect()
    tracker.on_open()
    assert seen == [(S.DISCONNECTED, S.CONNECTING), (S.CONNECTING, S.CONNECTED)]

    tracker.on_close()
    assert seen[-1] == (S.CONNECTED, S.RECONNECTING)
    assert tracker.reconnect_attempts == 1

    await tracker.disconnect()
    assert seen[-1] == (S.RECONNECTING, S.DISCONNECTED)
    assert tracker.reconnect_attempts == 0


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others() -> None:
    tracker = ConnectionStateTracker()
    seen: list[S] = []

    def broken(_: ConnectionStatus) -> None:
        raise RuntimeError("boom")

    tracker.on_status_change(broken)
    tracker.on_status_change(lambda st: seen.append(st.state))
    await tracker.connect()

    assert seen == [S.CONNECTING]
    await tracker.disconnect()


@pytest.mark.asyncio
async def test_reconnects_with_backoff_until_open() -> None:
    attempts = 0
    tracker: ConnectionStateTracker

    async def connector() -> None:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise TransportError("refused")
        tracker.on_open()

    tracker = ConnectionStateTracker(
        config=ConnectionConfig(backoff_base_s=0.01, backoff_max_s=0.02),
        connector=connector,
    )
    await tracker.connect()
    for _ in range(50):
        if tracker.state is S.CONNECTED:
            break
        await asyncio.sleep(0.01)

    assert tracker.state is S.CONNECTED
    assert attempts == 3
    assert tracker.reconnect_attempts == 0
    await tracker.disconnect()


@pytest.mark.asyncio
async def test_persistent_failure_after_max_attempts() -> None:
    tries = 0

    async def connector() -> None:
        nonlocal tries
        tries += 1
        raise TransportError("down")

    tracker = ConnectionStateTracker(
        config=ConnectionConfig(max_reconnect_attempts=2, backoff_base_s=0.001),
        connector=connector,
    )
    failures: list[ConnectionStatus] = []
    tracker.on_status_change(lambda st: failures.append(st) if st.persistent_failure else None)

    await tracker.connect()
    await asyncio.sleep(0.1)

    assert tries == 3
    assert tracker.state is S.RECONNECTING
    assert tracker.persistent_failure
    assert len(failures) == 1
    assert isinstance(failures[0].last_error, TransportError)

    # Manual retry resumes the cycle.
    tracker.set_connector(lambda: _open_now(tracker))
    await tracker.reconnect()
    assert tracker.state is S.CONNECTED
    assert not tracker.persistent_failure
    await tracker.disconnect()


async def _open_now(tracker: ConnectionStateTracker) -> None:
    tracker.on_open()


@pytest.mark.asyncio
async def test_missed_heartbeats_force_reconnecting() -> None:
    clock = FakeClock()
    tracker = ConnectionStateTracker(
        config=ConnectionConfig(heartbeat_interval_s=30.0, backoff_base_s=60.0), clock=clock
    )
    await tracker.connect()
    tracker.on_open()

    clock.advance(45)
    assert not tracker.check_heartbeat()
    tracker.heartbeat()
    clock.advance(59)
    assert not tracker.check_heartbeat()

    clock.advance(2)
    assert tracker.check_heartbeat()
    assert tracker.state is S.RECONNECTING
    assert isinstance(tracker.last_error, HeartbeatTimeout)
    await tracker.disconnect()


@pytest.mark.asyncio
async def test_open_after_disconnect_is_ignored() -> None:
    tracker = ConnectionStateTracker()
    tracker.on_open()
    await settle()
    assert tracker.state is S.DISCONNECTED
    assert not tracker.is_usable


@pytest.mark.asyncio
async def test_transport_reported_heartbeat_timeout() -> None:
    tracker = ConnectionStateTracker(config=ConnectionConfig(backoff_base_s=60.0))
    await tracker.connect()
    tracker.on_open()

    tracker.on_heartbeat_timeout()
    tracker.on_error(TransportError("second report"))

    assert tracker.state is S.RECONNECTING
    # Repeated loss reports during one outage count once.
    assert tracker.reconnect_attempts == 1
    await tracker.disconnect()


@pytest.mark.asyncio
async def test_watchdog_fires_just_after_the_heartbeat_limit() -> None:
    tracker = ConnectionStateTracker(
        config=ConnectionConfig(heartbeat_interval_s=0.1, backoff_base_s=60.0)
    )
    loop = asyncio.get_running_loop()
    await tracker.connect()
    tracker.on_open()
    opened = loop.time()

    while tracker.state is S.CONNECTED and loop.time() - opened < 1.0:
        await asyncio.sleep(0.005)
    elapsed = loop.time() - opened

    assert tracker.state is S.RECONNECTING
    assert isinstance(tracker.last_error, HeartbeatTimeout)
    # Limit is 0.2s; a full extra interval of slack would put this near 0.3s.
    assert 0.2 <= elapsed < 0.27
    await tracker.disconnect()
