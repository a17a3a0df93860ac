"""Shared fixtures for the hooklistener tests."""

import asyncio
import json

import pytest
from websockets.asyncio.server import serve

ENDPOINT = "my-endpoint"
TOPIC = f"cli:tunnel:{ENDPOINT}"


class EventRecorder:
    """Collects events from an EventSink without a background consumer task."""

    def __init__(self, sink):
        self.sink = sink
        self.events = []

    def poll(self):
        self.events.extend(self.sink.drain())
        return self.events

    def of(self, kind):
        return [event for event in self.poll() if isinstance(event, kind)]

    async def wait_for(self, kind, count=1, timeout=5.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while len(self.of(kind)) < count:
            if loop.time() > deadline:
                raise AssertionError(f"timed out waiting for {count} x {kind.__name__}, got {self.events!r}")
            await asyncio.sleep(0.01)
        return self.of(kind)


def join_reply(status="ok", response=None, ref="1", topic=TOPIC):
    return json.dumps({
        "topic": topic,
        "event": "phx_reply",
        "payload": {"status": status, "response": response or {}},
        "ref": ref,
    })


def webhook_frame(request, topic=TOPIC):
    return json.dumps({
        "topic": topic,
        "event": "webhook_received",
        "payload": {"request": request},
        "ref": None,
    })


async def next_frame(frames, event, timeout=5.0):
    """Return the next frame in ``frames`` whose event matches, skipping others."""
    async def _wait():
        while True:
            frame = await frames.get()
            if frame.get("event") == event:
                return frame
    return await asyncio.wait_for(_wait(), timeout)



def scripted_relay(frames, outgoing=None, reply=None):
    """Relay handler: answer the join, send whatever is put on ``outgoing``
    and push every frame the client sends onto ``frames``."""
    async def handler(ws):
        join = json.loads(await ws.recv())
        await frames.put(join)
        await ws.send(reply or join_reply())

        async def pump():
            while True:
                await ws.send(await outgoing.get())

        pump_task = asyncio.create_task(pump()) if outgoing is not None else None
        try:
            async for raw in ws:
                await frames.put(json.loads(raw))
        finally:
            if pump_task is not None:
                pump_task.cancel()
                await asyncio.gather(pump_task, return_exceptions=True)
    return handler


async def stop(task):
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


@pytest.fixture
async def relay_server():
    """Factory starting a local websocket server; returns its http:// base URL."""
    servers = []

    async def start(handler, process_request=None):
        server = await serve(handler, "127.0.0.1", 0, process_request=process_request)
        servers.append(server)
        port = server.sockets[0].getsockname()[1]
        return f"http://127.0.0.1:{port}"

    yield start

    for server in servers:
        server.close()
        await server.wait_closed()


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    directory = tmp_path / "config"
    monkeypatch.setenv("HOOKLISTENER_CONFIG_DIR", str(directory))
    monkeypatch.delenv("HOOKLISTENER_TOKEN", raising=False)
    monkeypatch.delenv("HOOKLISTENER_API_URL", raising=False)
    return directory
