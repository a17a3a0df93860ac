from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from .protocol import InboundWebhook, TunnelRequest, stringify


@dataclass
class WebhookRequest:
    """A captured webhook, independent of the wire shape it arrived in."""

    id: str
    method: str
    url: str
    timestamp: int
    created_at: str
    headers: Dict[str, str] = field(default_factory=dict)
    query_params: Dict[str, str] = field(default_factory=dict)
    path: Optional[str] = None
    body: Optional[str] = None
    body_preview: Optional[str] = None
    content_length: int = 0
    remote_addr: str = "Tunnel"

    @classmethod
    def from_inbound(cls, inbound: InboundWebhook) -> "WebhookRequest":
        now = datetime.now(timezone.utc)
        return cls(
            id=inbound.id,
            method=inbound.method,
            url=inbound.path,
            path=inbound.path,
            timestamp=int(now.timestamp()),
            created_at=now.isoformat(),
            headers={k: stringify(v) for k, v in inbound.headers.items()},
            query_params={k: stringify(v) for k, v in inbound.query_params.items()},
            body=inbound.body,
            body_preview=inbound.body,
            content_length=len(inbound.body) if inbound.body is not None else 0,
        )

    @classmethod
    def from_tunnel_request(cls, request: TunnelRequest) -> "WebhookRequest":
        now = datetime.now(timezone.utc)
        url = f"{request.path}?{request.query_string}" if request.query_string else request.path
        body = request.body.decode("utf-8", errors="replace") if request.body else None
        return cls(
            id=request.request_id,
            method=request.method,
            url=url,
            path=request.path,
            timestamp=int(now.timestamp()),
            created_at=now.isoformat(),
            headers={k: stringify(v) for k, v in request.headers.items()},
            query_params=dict(parse_qsl(request.query_string, keep_blank_values=True)),
            body=body,
            body_preview=body,
            content_length=len(request.body),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ForwardOutcome:
    """Result of replaying one webhook against the local target."""

    request_id: str
    method: str
    target_url: str
    success: bool
    duration_ms: float
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    error: Optional[str] = None

    def ack_payload(self) -> Dict[str, Any]:
        if self.success:
            return {
                "request_id": self.request_id,
                "status": "proxied",
                "proxied_to": self.target_url,
            }
        return {
            "request_id": self.request_id,
            "status": "error",
            "error": self.error or "Unknown error",
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
