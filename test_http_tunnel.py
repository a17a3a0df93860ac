"""End-to-end tests of the HTTP tunnel mode against an in-process relay."""

import asyncio
import json

import httpx
import pytest

from conftest import EventRecorder, join_reply, next_frame, scripted_relay, stop
from hooklistener.client import events
from hooklistener.client.app import SessionState
from hooklistener.client.events import EventSink
from hooklistener.client.http_tunnel import TunnelForwarder
from hooklistener.errors import TunnelJoinRejected

TUNNEL_TOPIC = "tunnel:abc123"
ESTABLISHED = join_reply(
    response={"subdomain": "abc123", "tunnel_id": "t-42", "static": False},
    topic=TUNNEL_TOPIC,
)


def make_forwarder(api_url, handler=None, **kwargs):
    if handler is None:
        def handler(request):
            return httpx.Response(200, text="hello from local")
    sink = EventSink()
    forwarder = TunnelForwarder(
        "secret-token",
        8080,
        api_url=api_url,
        event_sink=sink,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    return forwarder, EventRecorder(sink)


def tunnel_request(payload, topic=TUNNEL_TOPIC):
    return json.dumps({"topic": topic, "event": "tunnel_request", "payload": payload, "ref": None})


async def start_tunnel(relay_server, handler=None, **kwargs):
    frames, outgoing = asyncio.Queue(), asyncio.Queue()
    url = await relay_server(scripted_relay(frames, outgoing, reply=ESTABLISHED))
    forwarder, recorder = make_forwarder(url, handler, **kwargs)
    task = asyncio.create_task(forwarder.connect_and_listen())
    await recorder.wait_for(events.TunnelEstablished)
    return forwarder, recorder, task, frames, outgoing


async def test_join_establishes_tunnel(relay_server):
    frames = asyncio.Queue()
    paths = []

    async def handler(ws):
        paths.append(ws.request.path)
        await scripted_relay(frames, reply=ESTABLISHED)(ws)

    url = await relay_server(handler)
    forwarder, recorder = make_forwarder(url, organization_id="org_1", slug="my-app")

    task = asyncio.create_task(forwarder.connect_and_listen())
    established = await recorder.wait_for(events.TunnelEstablished)

    join = await frames.get()
    assert join == {
        "topic": "tunnel:connect",
        "event": "phx_join",
        "payload": {"local_port": 8080, "organization_id": "org_1", "slug": "my-app"},
        "ref": "1",
    }
    assert paths == ["/tunnel/websocket?token=secret-token"]
    assert established == [events.TunnelEstablished(subdomain="abc123", tunnel_id="t-42", is_static=False)]
    assert forwarder.topic == TUNNEL_TOPIC
    assert forwarder.state is SessionState.ACTIVE
    assert recorder.of(events.Connected) == []

    await stop(task)


async def test_rejected_tunnel_join(relay_server):
    frames = asyncio.Queue()
    url = await relay_server(scripted_relay(frames, reply=join_reply("error", {"reason": "slug taken"})))
    forwarder, recorder = make_forwarder(url, slug="taken")

    with pytest.raises(TunnelJoinRejected) as exc_info:
        await forwarder.connect_and_listen()

    assert exc_info.value.message == "Tunnel join failed: slug taken"
    assert not exc_info.value.retryable
    assert [e.message for e in recorder.of(events.ConnectionFailed)] == ["Tunnel join failed: slug taken"]
    assert recorder.of(events.TunnelEstablished) == []


async def test_ping_uses_tunnel_topic(relay_server):
    forwarder, recorder, task, frames, outgoing = await start_tunnel(relay_server, heartbeat_interval=0.2)

    first = await next_frame(frames, "ping")
    second = await next_frame(frames, "ping")
    assert first == {"topic": TUNNEL_TOPIC, "event": "ping", "payload": {}, "ref": "2"}
    assert second["ref"] == "3"

    await outgoing.put(join_reply(response={"pong": True}, ref="2", topic=TUNNEL_TOPIC))
    await asyncio.sleep(0.2)
    assert forwarder.state is SessionState.ACTIVE

    await stop(task)


async def test_request_is_proxied_and_response_returned(relay_server):
    received = []

    def local_server(request):
        received.append(request)
        return httpx.Response(404, headers={"x-local": "yes"}, text="no such page")

    forwarder, recorder, task, frames, outgoing = await start_tunnel(relay_server, local_server)

    await outgoing.put(tunnel_request({
        "request_id": "r1",
        "method": "POST",
        "path": "/api/items",
        "query_string": "page=2&q=a%20b",
        "headers": {"Host": "abc123.hooklistener.dev", "X-Count": 3},
        "body": "{\"name\": \"x\"}",
        "body_encoding": "raw",
    }))
    response = await next_frame(frames, "tunnel_response")

    assert response["topic"] == TUNNEL_TOPIC
    assert response["payload"]["request_id"] == "r1"
    assert response["payload"]["status"] == 404
    assert response["payload"]["headers"]["x-local"] == "yes"
    assert "content-length" not in response["payload"]["headers"]
    assert response["payload"]["body"] == "no such page"
    assert response["payload"]["body_encoding"] == "raw"

    assert str(received[0].url) == "http://localhost:8080/api/items?page=2&q=a%20b"
    assert received[0].headers["x-count"] == "3"
    assert received[0].headers["host"] == "localhost:8080"
    assert received[0].content == b'{"name": "x"}'

    request = (await recorder.wait_for(events.WebhookReceived))[0].request
    assert request.url == "/api/items?page=2&q=a%20b"
    assert request.query_params == {"page": "2", "q": "a b"}
    success = (await recorder.wait_for(events.ForwardSuccess))[0].outcome
    assert success.status_code == 404
    assert recorder.of(events.ForwardError) == []

    await stop(task)


async def test_binary_bodies_use_url_safe_base64(relay_server):
    received = []

    def local_server(request):
        received.append(request)
        return httpx.Response(200, headers={"content-type": "image/png"}, content=b"\x89PNG\xff\xfe")

    forwarder, recorder, task, frames, outgoing = await start_tunnel(relay_server, local_server)

    await outgoing.put(tunnel_request({
        "request_id": "bin",
        "method": "PUT",
        "path": "/upload",
        "body": "AAH_",
        "body_encoding": "base64",
    }))
    response = await next_frame(frames, "tunnel_response")

    assert received[0].content == b"\x00\x01\xff"
    assert response["payload"]["body_encoding"] == "base64"
    assert response["payload"]["body"] == "iVBOR__-"

    await stop(task)


async def test_unreachable_local_server_sends_tunnel_error(relay_server):
    def local_server(request):
        raise httpx.ConnectError("Connection refused", request=request)

    forwarder, recorder, task, frames, outgoing = await start_tunnel(relay_server, local_server)

    await outgoing.put(tunnel_request({"request_id": "r2", "method": "GET", "path": "/health"}))
    error = await next_frame(frames, "tunnel_error")

    assert error["topic"] == TUNNEL_TOPIC
    assert error["payload"] == {"request_id": "r2", "error": "Failed to forward request: Connection refused"}
    failures = await recorder.wait_for(events.ForwardError)
    assert failures[0].outcome.error == "Failed to forward request: Connection refused"
    assert forwarder.state is SessionState.ACTIVE

    await stop(task)


async def test_unsupported_method_sends_tunnel_error(relay_server):
    forwarder, recorder, task, frames, outgoing = await start_tunnel(relay_server)

    await outgoing.put(tunnel_request({"request_id": "r3", "method": "TRACE", "path": "/"}))
    await outgoing.put(tunnel_request({"request_id": "r4", "method": "OPTIONS", "path": "/"}))

    error = await next_frame(frames, "tunnel_error")
    assert error["payload"] == {"request_id": "r3", "error": "Unsupported method: TRACE"}
    response = await next_frame(frames, "tunnel_response")
    assert response["payload"]["request_id"] == "r4"

    await stop(task)


async def test_request_defaults(relay_server):
    received = []

    def local_server(request):
        received.append(request)
        return httpx.Response(204)

    forwarder, recorder, task, frames, outgoing = await start_tunnel(relay_server, local_server)

    await outgoing.put(tunnel_request({}))
    response = await next_frame(frames, "tunnel_response")

    assert response["payload"]["request_id"] == "unknown"
    assert response["payload"]["body"] == ""
    assert received[0].method == "GET"
    assert str(received[0].url) == "http://localhost:8080/"

    await stop(task)
