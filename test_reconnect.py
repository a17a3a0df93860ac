"""Tests for the reconnect driver and its backoff policy."""

import asyncio

import pytest

from conftest import EventRecorder
from hooklistener.client import events
from hooklistener.client.events import EventSink
from hooklistener.client.reconnect import DriverState, ReconnectConfig, ReconnectDriver, calculate_backoff
from hooklistener.errors import AuthenticationFailed, ConnectionLost, ReconnectExhausted


class ScriptedClient:
    """Stands in for TunnelClient; each session runs the next scripted step."""

    def __init__(self, *steps):
        self.events = EventSink()
        self.steps = list(steps)
        self.sessions = 0
        self.cancelled = 0

    async def connect_and_listen(self):
        self.sessions += 1
        step = self.steps.pop(0) if self.steps else "block"
        if step == "block":
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        raise step


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_backoff_without_jitter():
    config = ReconnectConfig(initial_delay=1.0, max_delay=60.0, jitter_factor=0.0)
    assert [calculate_backoff(n, config) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert calculate_backoff(10, config) == 60.0


def test_backoff_jitter_bounds():
    config = ReconnectConfig(initial_delay=10.0, jitter_factor=0.3)
    assert calculate_backoff(1, config, rand=lambda: 0.0) == pytest.approx(7.0)
    assert calculate_backoff(1, config, rand=lambda: 1.0) == pytest.approx(13.0)
    assert calculate_backoff(1, config, rand=lambda: 0.5) == pytest.approx(10.0)


def test_backoff_floor():
    config = ReconnectConfig(initial_delay=0.01, jitter_factor=0.0)
    assert calculate_backoff(1, config) == 0.1


async def test_non_retryable_error_stops_driver():
    client = ScriptedClient(AuthenticationFailed())
    driver = ReconnectDriver(client)
    recorder = EventRecorder(client.events)

    with pytest.raises(AuthenticationFailed):
        await driver.run()

    assert client.sessions == 1
    assert driver.state is DriverState.STOPPED
    assert [type(e) for e in recorder.poll()] == [events.Connecting, events.ReconnectFailed]
    assert recorder.events[-1].reason == "Authentication failed: The token is invalid or expired."


async def test_retries_until_exhausted():
    lost = ConnectionLost("WebSocket stream ended")
    client = ScriptedClient(lost, lost, lost)
    config = ReconnectConfig(max_retries=2, initial_delay=0.01, jitter_factor=0.0)
    driver = ReconnectDriver(client, config)
    recorder = EventRecorder(client.events)

    with pytest.raises(ReconnectExhausted):
        await driver.run()

    assert client.sessions == 3
    reconnecting = recorder.of(events.Reconnecting)
    assert [(e.attempt, e.max_attempts) for e in reconnecting] == [(1, 2), (2, 2)]
    assert reconnecting[0].next_retry_in == 0.1
    assert recorder.of(events.ReconnectFailed)[0].reason == "Maximum reconnection attempts exceeded"


async def test_manual_reconnect_restarts_session():
    client = ScriptedClient("block", "block")
    driver = ReconnectDriver(client)
    task = asyncio.create_task(driver.run())

    await wait_until(lambda: client.sessions == 1)
    driver.request_reconnect()
    await wait_until(lambda: client.sessions == 2)

    assert client.cancelled == 1
    assert driver.attempt == 0

    driver.stop()
    await asyncio.wait_for(task, 5)
    assert driver.state is DriverState.STOPPED
    assert client.cancelled == 2


async def test_manual_reconnect_skips_backoff():
    client = ScriptedClient(ConnectionLost("WebSocket stream ended"), "block")
    config = ReconnectConfig(initial_delay=30.0, jitter_factor=0.0)
    driver = ReconnectDriver(client, config)
    task = asyncio.create_task(driver.run())

    await wait_until(lambda: driver.state is DriverState.BACKING_OFF)
    assert driver.attempt == 1
    driver.request_reconnect()
    await wait_until(lambda: client.sessions == 2)
    assert driver.attempt == 0

    driver.stop()
    await asyncio.wait_for(task, 5)
