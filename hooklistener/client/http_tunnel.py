"""HTTP tunnel mode: expose a local port on a relay-assigned public subdomain.

The relay forwards every HTTP request it receives on the subdomain as a
``tunnel_request`` envelope. Each one is replayed against the local server and
the full response (or the reason it failed) is sent back on the channel.
"""

import logging
import os
import time
from typing import Dict, Optional

import httpx

from . import events
from .app import HEARTBEAT_INTERVAL, MAX_CONCURRENT_FORWARDS, POLL_INTERVAL, ChannelSession
from .events import EventSink
from .forwarder import SUPPORTED_METHODS, Forwarder, build_forward_headers
from ..errors import TunnelError, TunnelJoinRejected
from ..models import ForwardOutcome, WebhookRequest
from ..protocol import (
    EVENT_REPLY,
    EVENT_TUNNEL_REQUEST,
    TUNNEL_CONNECT_TOPIC,
    Envelope,
    JoinReply,
    ProtocolError,
    TunnelEstablishment,
    TunnelRequest,
    encode_body,
    ping_envelope,
    tunnel_error_envelope,
    tunnel_join_envelope,
    tunnel_response_envelope,
)
from ..utils import build_tunnel_target, to_websocket_url

logger = logging.getLogger("hooklistener-client")

DEFAULT_API_URL = "https://app.hooklistener.com"
TUNNEL_SOCKET_PATH = "tunnel/websocket"
TUNNEL_JOIN_TIMEOUT = 10.0
REQUEST_TIMEOUT = 30.0
TUNNEL_METHODS = SUPPORTED_METHODS + ("OPTIONS",)
# httpx hands back a decoded body, so the upstream framing headers no longer match it
DROPPED_RESPONSE_HEADERS = ("content-encoding", "content-length", "transfer-encoding")


def build_response_headers(response: httpx.Response) -> Dict[str, str]:
    return {
        key: value
        for key, value in response.headers.items()
        if key.lower() not in DROPPED_RESPONSE_HEADERS
    }


class TunnelForwarder(ChannelSession):
    """Proxies HTTP requests arriving on a public tunnel to ``host:port``.

    Unlike :class:`~hooklistener.client.app.TunnelClient`, every response the
    local server gives, whatever its status, is relayed back to the caller.
    Only requests that never got a response are reported as ``tunnel_error``.
    """

    outbound_label = "tunnel response"

    def __init__(
        self,
        access_token: str,
        local_port: int,
        local_host: str = "localhost",
        organization_id: Optional[str] = None,
        slug: Optional[str] = None,
        api_url: Optional[str] = None,
        event_sink: Optional[EventSink] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        join_timeout: float = TUNNEL_JOIN_TIMEOUT,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        poll_interval: float = POLL_INTERVAL,
        max_concurrency: int = MAX_CONCURRENT_FORWARDS,
    ):
        self.local_port = local_port
        self.local_host = local_host
        self.organization_id = organization_id
        self.slug = slug
        self.api_url = api_url or os.getenv("HOOKLISTENER_API_URL") or DEFAULT_API_URL
        self.forwarder = Forwarder(f"http://{local_host}:{local_port}", transport=transport, timeout=REQUEST_TIMEOUT)
        self.establishment: Optional[TunnelEstablishment] = None
        super().__init__(
            to_websocket_url(self.api_url, path=TUNNEL_SOCKET_PATH, token=access_token),
            TUNNEL_CONNECT_TOPIC,
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
        return f"HTTP tunnel for {self.target_url}"

    def _join_envelope(self) -> Envelope:
        # Each session joins the connect topic; the relay answers on the tunnel's own topic
        self.topic = TUNNEL_CONNECT_TOPIC
        return tunnel_join_envelope(self.local_port, self.organization_id, self.slug)

    def _heartbeat_envelope(self, ref: int) -> Envelope:
        return ping_envelope(self.topic, ref)

    def _rejected(self, reply: JoinReply) -> TunnelError:
        return TunnelJoinRejected(reply.reason)

    def _on_joined(self, reply: JoinReply, envelope: Envelope) -> None:
        self.establishment = TunnelEstablishment.from_response(reply.response)
        self.topic = envelope.topic
        logger.info(
            f"Tunnel established: {self.establishment.subdomain} "
            f"(id: {self.establishment.tunnel_id}, static: {self.establishment.is_static})"
        )
        self.events.emit(events.TunnelEstablished(
            subdomain=self.establishment.subdomain,
            tunnel_id=self.establishment.tunnel_id,
            is_static=self.establishment.is_static,
        ))

    def _dispatch(self, frame) -> None:
        envelope = self._decode_frame(frame)
        if envelope is None:
            return

        if envelope.event == EVENT_REPLY:
            payload = envelope.payload if isinstance(envelope.payload, dict) else {}
            response = payload.get("response")
            if isinstance(response, dict) and "pong" in response:
                logger.debug("Received pong")
            return
        if envelope.event == EVENT_TUNNEL_REQUEST:
            self._handle_request(envelope)
            return
        logger.debug(f"Unhandled tunnel event: {envelope.event}")

    def _handle_request(self, envelope: Envelope) -> None:
        try:
            request = TunnelRequest.from_payload(envelope.payload)
        except ProtocolError as e:
            logger.error(f"Invalid tunnel request: {e}")
            self.events.emit(events.ConnectionFailed(f"Invalid tunnel request: {e}", fatal=False))
            return

        logger.info(f"[{request.request_id}] {request.method} {request.path}")
        self.events.emit(events.WebhookReceived(WebhookRequest.from_tunnel_request(request)))
        self._spawn(self._proxy(request), request.request_id)

    async def _proxy(self, request: TunnelRequest) -> None:
        method = request.method.upper()
        if method not in TUNNEL_METHODS:
            logger.warning(f"[{request.request_id}] Unsupported HTTP method: {request.method}")
            self._outbound.put_nowait(tunnel_error_envelope(
                self.topic, request.request_id, f"Unsupported method: {request.method}"
            ))
            return

        url = build_tunnel_target(self.target_url, request.path, request.query_string)
        headers = build_forward_headers(request.headers)

        start_time = time.monotonic()
        try:
            response = await self.forwarder.send(method, url, headers, request.body or None)
        except Exception as e:
            error = f"Failed to forward request: {str(e) or type(e).__name__}"
            logger.error(f"[{request.request_id}] {error}")
            self.events.emit(events.ForwardError(ForwardOutcome(
                request_id=request.request_id,
                method=method,
                target_url=url,
                success=False,
                duration_ms=(time.monotonic() - start_time) * 1000,
                error=error,
            )))
            self._outbound.put_nowait(tunnel_error_envelope(self.topic, request.request_id, error))
            return

        response_headers = build_response_headers(response)
        body, _ = encode_body(response.content)
        self.events.emit(events.ForwardSuccess(ForwardOutcome(
            request_id=request.request_id,
            method=method,
            target_url=url,
            success=True,
            duration_ms=(time.monotonic() - start_time) * 1000,
            status_code=response.status_code,
            headers=response_headers,
            body=body,
        )))
        logger.debug(f"[{request.request_id}] Local server responded with {response.status_code}")
        self._outbound.put_nowait(tunnel_response_envelope(
            self.topic, request.request_id, response.status_code, response_headers, response.content
        ))
