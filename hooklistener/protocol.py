"""Channel envelopes exchanged with the Hooklistener relay.

Every frame on the socket is a JSON object ``{topic, event, payload, ref}``.
Frames are first decoded into an :class:`Envelope`; the payload is only
interpreted once the ``event`` discriminator is known (see :func:`decode_join_reply` and
:func:`decode_webhook`).

The same envelope format carries the HTTP tunnel channel (``tunnel:connect``),
where the relay sends whole HTTP requests and expects ``tunnel_response`` or
``tunnel_error`` envelopes back.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

logger = logging.getLogger("hooklistener-client")

HEARTBEAT_TOPIC = "phoenix"
JOIN_REF = "1"

EVENT_JOIN = "phx_join"
EVENT_REPLY = "phx_reply"
EVENT_HEARTBEAT = "heartbeat"
EVENT_WEBHOOK = "webhook_received"
EVENT_ACK = "request_ack"


class ProtocolError(ValueError):
    """A frame or payload does not have the expected shape."""


def tunnel_topic(endpoint_slug: str) -> str:
    return f"cli:tunnel:{endpoint_slug}"


def stringify(value: Any) -> str:
    """Render a JSON value the way it should appear in a header or query string.

    Strings are kept as-is, booleans become ``true``/``false`` and everything
    else uses its compact JSON form (``1``, ``2.5``, ``null``, ``[1,2]``).
    """
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


@dataclass
class Envelope:
    topic: str
    event: str
    payload: Any = field(default_factory=dict)
    ref: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({
            "topic": self.topic,
            "event": self.event,
            "payload": self.payload,
            "ref": self.ref,
        })

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Envelope":
        try:
            data = json.loads(raw)
        except (TypeError, ValueError, RecursionError) as e:
            # json raises RecursionError on deeply nested input
            raise ProtocolError(f"Invalid JSON frame: {e}") from e

        if not isinstance(data, dict):
            raise ProtocolError("Channel message must be a JSON object")

        topic = data.get("topic")
        event = data.get("event")
        if not isinstance(topic, str) or not isinstance(event, str):
            raise ProtocolError("Channel message requires string 'topic' and 'event'")

        ref = data.get("ref")
        if ref is not None and not isinstance(ref, str):
            ref = stringify(ref)

        return cls(topic=topic, event=event, payload=data.get("payload", {}), ref=ref)


def join_envelope(endpoint_slug: str) -> Envelope:
    return Envelope(topic=tunnel_topic(endpoint_slug), event=EVENT_JOIN, payload={}, ref=JOIN_REF)


def heartbeat_envelope(ref: int) -> Envelope:
    return Envelope(topic=HEARTBEAT_TOPIC, event=EVENT_HEARTBEAT, payload={}, ref=str(ref))


def ack_envelope(endpoint_slug: str, payload: Dict[str, Any]) -> Envelope:
    return Envelope(topic=tunnel_topic(endpoint_slug), event=EVENT_ACK, payload=payload, ref=None)


@dataclass
class JoinReply:
    status: Optional[str]
    response: Dict[str, Any]

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def reason(self) -> str:
        reason = self.response.get("reason")
        return reason if isinstance(reason, str) else "Unknown error"


@dataclass
class InboundWebhook:
    """A webhook as delivered inside a ``webhook_received`` envelope.

    Header and query values keep their raw JSON types here; they are coerced
    to strings only when the request is displayed or forwarded.
    """

    id: str
    method: str
    path: str
    query_params: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, Any] = field(default_factory=dict)
    body: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "InboundWebhook":
        if not isinstance(data, dict):
            raise ProtocolError("webhook request must be an object")

        for key in ("id", "method", "path"):
            if not isinstance(data.get(key), str):
                raise ProtocolError(f"missing or invalid field '{key}'")

        query_params = data.get("query_params") or {}
        headers = data.get("headers") or {}
        if not isinstance(query_params, dict):
            raise ProtocolError("field 'query_params' must be an object")
        if not isinstance(headers, dict):
            raise ProtocolError("field 'headers' must be an object")

        body = data.get("body")
        if body is not None and not isinstance(body, str):
            raise ProtocolError("field 'body' must be a string")

        return cls(
            id=data["id"],
            method=data["method"],
            path=data["path"],
            query_params=query_params,
            headers=headers,
            body=body,
        )


def decode_join_reply(envelope: Envelope) -> Optional[JoinReply]:
    """Return the join reply carried by ``envelope``, or None if it is something else.

    Only a ``phx_reply`` whose ``ref`` matches the join ref and whose payload
    carries a ``status`` counts as the answer to the join.
    """
    if envelope.event != EVENT_REPLY or envelope.ref != JOIN_REF:
        return None
    payload = envelope.payload if isinstance(envelope.payload, dict) else {}
    if "status" not in payload:
        return None
    response = payload.get("response")
    return JoinReply(
        status=payload.get("status"),
        response=response if isinstance(response, dict) else {},
    )


def decode_webhook(envelope: Envelope) -> InboundWebhook:
    payload = envelope.payload if isinstance(envelope.payload, dict) else {}
    if "request" not in payload:
        raise ProtocolError("payload has no 'request' object")
    return InboundWebhook.from_dict(payload["request"])


# HTTP tunnel channel: full request/response proxying on a relay-assigned subdomain

TUNNEL_CONNECT_TOPIC = "tunnel:connect"

EVENT_PING = "ping"
EVENT_TUNNEL_REQUEST = "tunnel_request"
EVENT_TUNNEL_RESPONSE = "tunnel_response"
EVENT_TUNNEL_ERROR = "tunnel_error"

BODY_RAW = "raw"
BODY_BASE64 = "base64"


def encode_body(content: bytes) -> Tuple[str, str]:
    """Return ``(body, body_encoding)``: UTF-8 text as-is, anything else as unpadded URL-safe base64."""
    try:
        return content.decode("utf-8"), BODY_RAW
    except UnicodeDecodeError:
        return base64.urlsafe_b64encode(content).rstrip(b"=").decode("ascii"), BODY_BASE64


def decode_body(body: str, body_encoding: str) -> bytes:
    if body_encoding == BODY_BASE64:
        try:
            return base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
        except (binascii.Error, ValueError):
            logger.warning("Failed to decode base64 body, forwarding it verbatim")
    return body.encode("utf-8")


def tunnel_join_envelope(local_port: int, organization_id: Optional[str] = None, slug: Optional[str] = None) -> Envelope:
    payload: Dict[str, Any] = {"local_port": local_port}
    if organization_id:
        payload["organization_id"] = organization_id
    if slug:
        payload["slug"] = slug
    return Envelope(topic=TUNNEL_CONNECT_TOPIC, event=EVENT_JOIN, payload=payload, ref=JOIN_REF)


def ping_envelope(topic: str, ref: int) -> Envelope:
    return Envelope(topic=topic, event=EVENT_PING, payload={}, ref=str(ref))


def tunnel_response_envelope(topic: str, request_id: str, status: int, headers: Dict[str, str], content: bytes) -> Envelope:
    body, body_encoding = encode_body(content)
    return Envelope(topic=topic, event=EVENT_TUNNEL_RESPONSE, payload={
        "request_id": request_id,
        "status": status,
        "headers": headers,
        "body": body,
        "body_encoding": body_encoding,
    })


def tunnel_error_envelope(topic: str, request_id: str, error: str) -> Envelope:
    return Envelope(topic=topic, event=EVENT_TUNNEL_ERROR, payload={"request_id": request_id, "error": error})


@dataclass
class TunnelEstablishment:
    subdomain: str
    tunnel_id: str
    is_static: bool

    @classmethod
    def from_response(cls, response: Dict[str, Any]) -> "TunnelEstablishment":
        subdomain = response.get("subdomain")
        tunnel_id = response.get("tunnel_id")
        return cls(
            subdomain=subdomain if isinstance(subdomain, str) else "unknown",
            tunnel_id=tunnel_id if isinstance(tunnel_id, str) else "unknown",
            is_static=response.get("static") is True,
        )


@dataclass
class TunnelRequest:
    """An HTTP request relayed through a ``tunnel_request`` envelope.

    Unlike webhook records, missing fields fall back to defaults instead of
    rejecting the request, and the body arrives already decoded to bytes.
    """

    request_id: str
    method: str = "GET"
    path: str = "/"
    query_string: str = ""
    headers: Dict[str, Any] = field(default_factory=dict)
    body: bytes = b""

    @classmethod
    def from_payload(cls, payload: Any) -> "TunnelRequest":
        if not isinstance(payload, dict):
            raise ProtocolError("tunnel request payload must be an object")

        def text(key, default):
            value = payload.get(key)
            return value if isinstance(value, str) else default

        headers = payload.get("headers")
        return cls(
            request_id=text("request_id", "unknown"),
            method=text("method", "GET"),
            path=text("path", "/"),
            query_string=text("query_string", ""),
            headers=headers if isinstance(headers, dict) else {},
            body=decode_body(text("body", ""), text("body_encoding", BODY_RAW)),
        )
