import asyncio
import json
import logging
import os
from enum import Enum
from typing import Any, Coroutine, Optional, Set, Union

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
    InvalidStatus,
    WebSocketException,
)

from . import events
from .events import EventSink
from .forwarder import Forwarder
from ..errors import (
    AuthenticationFailed,
    ConnectionLost,
    ConnectionRefused,
    EndpointNotFound,
    HandshakeRejected,
    JoinRejected,
    JoinTimeout,
    TransportFailure,
    TunnelError,
)
from ..models import WebhookRequest
from ..protocol import (
    EVENT_REPLY,
    EVENT_WEBHOOK,
    JOIN_REF,
    Envelope,
    InboundWebhook,
    JoinReply,
    ProtocolError,
    ack_envelope,
    decode_join_reply,
    decode_webhook,
    heartbeat_envelope,
    join_envelope,
    tunnel_topic,
)
from ..utils import to_websocket_url

logger = logging.getLogger("hooklistener-client")

DEFAULT_RELAY_URL = "https://api.hooklistener.com"
JOIN_TIMEOUT = 5.0
HEARTBEAT_INTERVAL = 30.0
POLL_INTERVAL = 0.1
MAX_CONCURRENT_FORWARDS = 10
MAX_MESSAGE_SIZE = 16 * 1024 * 1024


class SessionState(Enum):
    CONNECTING = "connecting"
    JOINING = "joining"
    ACTIVE = "active"
    CLOSED = "closed"
    ERRORED = "errored"


class ChannelSession:
    """One connect/join/run cycle over a relay channel.

    A single call to :meth:`connect_and_listen` connects, joins the channel
    and runs until the session ends, at which point it raises a
    :class:`~hooklistener.errors.TunnelError` describing why. It never retries;
    see :class:`~hooklistener.client.reconnect.ReconnectDriver` for that.

    The socket has exactly one writer: the run loop. Requests are handled in
    separate tasks which hand their replies to the loop through an outbound
    queue. Subclasses decide what to join, how to keep the channel alive and
    what to do with inbound envelopes.
    """

    # Used in the error raised when a queued reply cannot be written
    outbound_label = "message"

    def __init__(
        self,
        ws_url: str,
        topic: str,
        event_sink: Optional[EventSink] = None,
        join_timeout: float = JOIN_TIMEOUT,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        poll_interval: float = POLL_INTERVAL,
        max_concurrency: int = MAX_CONCURRENT_FORWARDS,
    ):
        self.ws_url = ws_url
        self.topic = topic
        self.events = event_sink if event_sink is not None else EventSink()
        self.join_timeout = join_timeout
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.max_concurrency = max_concurrency

        self.state = SessionState.CLOSED
        self.websocket: Optional[ClientConnection] = None
        self._outbound: "asyncio.Queue[Envelope]" = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(max_concurrency)

    def describe(self) -> str:
        return f"channel {self.topic}"

    def _join_envelope(self) -> Envelope:
        raise NotImplementedError

    def _heartbeat_envelope(self, ref: int) -> Envelope:
        return heartbeat_envelope(ref)

    def _not_found(self) -> TunnelError:
        return HandshakeRejected(404)

    def _rejected(self, reply: JoinReply) -> TunnelError:
        return JoinRejected(reply.reason)

    def _on_joined(self, reply: JoinReply, envelope: Envelope) -> None:
        logger.info(f"Joined channel {self.topic}")
        self.events.emit(events.Connected())

    def _handle(self, envelope: Envelope) -> None:
        logger.debug(f"Unhandled event: {envelope.event}")

    async def connect_and_listen(self) -> None:
        logger.info(f"Connecting to {self.describe()}")

        self.state = SessionState.CONNECTING
        self._outbound = asyncio.Queue()
        self._tasks = set()
        self._slots = asyncio.Semaphore(self.max_concurrency)

        try:
            self.websocket = await self._open_socket()
        except TunnelError:
            self.state = SessionState.ERRORED
            raise
        except asyncio.CancelledError:
            self.state = SessionState.CLOSED
            raise

        websocket = self.websocket
        try:
            self.state = SessionState.JOINING
            await self._join(websocket)
            self.state = SessionState.ACTIVE
            await self._listen(websocket)
        except TunnelError:
            if self.state is not SessionState.CLOSED:
                self.state = SessionState.ERRORED
            raise
        except asyncio.CancelledError:
            self.state = SessionState.CLOSED
            raise
        except Exception as e:
            logger.exception("Unexpected error in tunnel session")
            self.events.emit(events.ConnectionFailed(f"Unexpected error: {e}"))
            self.state = SessionState.ERRORED
            raise
        finally:
            await self._cancel_tasks()
            await websocket.close()

    def _fail(self, error: TunnelError) -> TunnelError:
        """Report ``error`` through the event sink and hand it back for raising."""
        logger.error(error.message)
        self.events.emit(events.ConnectionFailed(error.message))
        return error

    async def _open_socket(self) -> ClientConnection:
        logger.debug(f"WebSocket URL: {self.ws_url}")
        try:
            websocket = await connect(
                self.ws_url,
                ping_interval=None,  # channel heartbeats keep the connection alive
                close_timeout=10,
                max_size=MAX_MESSAGE_SIZE,
            )
        except InvalidStatus as e:
            status_code = e.response.status_code
            if status_code in (401, 403):
                raise self._fail(AuthenticationFailed()) from e
            if status_code == 404:
                raise self._fail(self._not_found()) from e
            raise self._fail(HandshakeRejected(status_code)) from e
        except (WebSocketException, asyncio.TimeoutError) as e:
            raise self._fail(TransportFailure(str(e) or type(e).__name__)) from e
        except OSError as e:
            raise self._fail(ConnectionRefused(str(e) or type(e).__name__)) from e

        logger.info("WebSocket connected successfully")
        return websocket

    async def _join(self, websocket: ClientConnection) -> None:
        try:
            await websocket.send(self._join_envelope().to_json())
        except ConnectionClosed as e:
            raise self._fail(ConnectionLost(f"Failed to send join message: {e}")) from e

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.join_timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise self._fail(JoinTimeout())
            try:
                frame = await asyncio.wait_for(websocket.recv(), timeout=remaining)
            except asyncio.TimeoutError:
                raise self._fail(JoinTimeout()) from None
            except ConnectionClosedOK as e:
                raise self._fail(ConnectionLost(f"WebSocket closed during join: {e}")) from e
            except ConnectionClosedError as e:
                if e.rcvd is None:
                    raise self._fail(ConnectionLost("WebSocket stream ended during join")) from e
                raise self._fail(ConnectionLost(f"WebSocket error during join: {e}")) from e

            envelope = self._decode_frame(frame)
            if envelope is None:
                continue

            reply = decode_join_reply(envelope)
            if reply is None:
                logger.debug(f"Ignoring '{envelope.event}' on {envelope.topic} while waiting for join reply")
                continue

            if not reply.ok:
                raise self._fail(self._rejected(reply))

            self._on_joined(reply, envelope)
            return

    async def _listen(self, websocket: ClientConnection) -> None:
        loop = asyncio.get_running_loop()
        heartbeat_ref = int(JOIN_REF) + 1
        last_heartbeat = loop.time()

        while True:
            if loop.time() - last_heartbeat >= self.heartbeat_interval:
                await self._send(websocket, self._heartbeat_envelope(heartbeat_ref), "heartbeat")
                heartbeat_ref += 1
                last_heartbeat = loop.time()

            await self._flush_outbound(websocket)

            try:
                frame = await asyncio.wait_for(websocket.recv(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
            except ConnectionClosedOK as e:
                logger.info(f"WebSocket closed: {e}")
                self.state = SessionState.CLOSED
                raise self._fail(ConnectionLost("WebSocket connection closed")) from e
            except ConnectionClosedError as e:
                if e.rcvd is None:
                    logger.warning("WebSocket stream ended")
                    raise self._fail(ConnectionLost("WebSocket stream ended")) from e
                raise self._fail(ConnectionLost(f"WebSocket error: {e}")) from e

            self._dispatch(frame)

    async def _send(self, websocket: ClientConnection, envelope: Envelope, what: str) -> None:
        try:
            await websocket.send(envelope.to_json())
        except ConnectionClosed as e:
            raise self._fail(ConnectionLost(f"Failed to send {what}: {e}")) from e

    async def _flush_outbound(self, websocket: ClientConnection) -> None:
        while not self._outbound.empty():
            envelope = self._outbound.get_nowait()
            await self._send(websocket, envelope, self.outbound_label)

    def _decode_frame(self, frame: Union[str, bytes]) -> Optional[Envelope]:
        if isinstance(frame, bytes):
            logger.debug(f"Ignoring binary frame ({len(frame)} bytes)")
            return None
        try:
            return Envelope.from_json(frame)
        except ProtocolError as e:
            logger.error(f"Error handling message: {e}")
            return None

    def _dispatch(self, frame: Union[str, bytes]) -> None:
        envelope = self._decode_frame(frame)
        if envelope is None:
            return

        logger.debug(f"Received message topic={envelope.topic} event={envelope.event}")

        if envelope.event == EVENT_REPLY:
            # Only the join reply is correlated
            return
        self._handle(envelope)

    def _spawn(self, handler: Coroutine[Any, Any, None], request_id: str) -> None:
        task = asyncio.create_task(self._bounded(handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"Created forwarding task for request {request_id}")

    async def _bounded(self, handler: Coroutine[Any, Any, None]) -> None:
        try:
            await self._slots.acquire()
        except asyncio.CancelledError:
            handler.close()
            raise
        try:
            await handler
        finally:
            self._slots.release()

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class TunnelClient(ChannelSession):
    """Relays webhooks captured on one Hooklistener endpoint to a local server."""

    outbound_label = "acknowledgment"

    def __init__(
        self,
        access_token: str,
        endpoint_slug: str,
        target_url: str,
        relay_url: Optional[str] = None,
        event_sink: Optional[EventSink] = None,
        forwarder: Optional[Forwarder] = None,
        join_timeout: float = JOIN_TIMEOUT,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        poll_interval: float = POLL_INTERVAL,
        max_concurrency: int = MAX_CONCURRENT_FORWARDS,
    ):
        self.endpoint_slug = endpoint_slug
        self.relay_url = relay_url or os.getenv("HOOKLISTENER_WS_URL") or DEFAULT_RELAY_URL
        self.forwarder = forwarder or Forwarder(target_url)
        super().__init__(
            to_websocket_url(self.relay_url, token=access_token),
            tunnel_topic(endpoint_slug),
            event_sink=event_sink,
            join_timeout=join_timeout,
            heartbeat_interval=heartbeat_interval,
            poll_interval=poll_interval,
            max_concurrency=max_concurrency,
        )

    @property
    def target_url(self) -> str:
        return self.forwarder.target_url

    def describe(self) -> str:
        return f"WebSocket tunnel for endpoint '{self.endpoint_slug}', forwarding to {self.target_url}"

    def _join_envelope(self) -> Envelope:
        return join_envelope(self.endpoint_slug)

    def _not_found(self) -> TunnelError:
        return EndpointNotFound(self.endpoint_slug)

    def _handle(self, envelope: Envelope) -> None:
        if envelope.event == EVENT_WEBHOOK:
            self._handle_webhook(envelope)
            return
        super()._handle(envelope)

    def _handle_webhook(self, envelope: Envelope) -> None:
        try:
            webhook = decode_webhook(envelope)
        except ProtocolError as e:
            data = envelope.payload.get("request") if isinstance(envelope.payload, dict) else envelope.payload
            message = f"Invalid webhook payload: {e}. Data: {json.dumps(data)}"
            logger.error(message)
            self.events.emit(events.ConnectionFailed(message, fatal=False))
            return

        self.events.emit(events.WebhookReceived(WebhookRequest.from_inbound(webhook)))
        self._spawn(self._forward(webhook), webhook.id)

    async def _forward(self, webhook: InboundWebhook) -> None:
        outcome = await self.forwarder.forward(webhook)
        if outcome is None:
            return

        if outcome.success:
            self.events.emit(events.ForwardSuccess(outcome))
        else:
            self.events.emit(events.ForwardError(outcome))
        self._outbound.put_nowait(ack_envelope(self.endpoint_slug, outcome.ack_payload()))
