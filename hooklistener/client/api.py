import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI

from . import events
from .events import EventSink
from .request_logger import RequestLogger, format_access_log
from ..models import ForwardOutcome, WebhookRequest

logger = logging.getLogger("hooklistener-client")


class TunnelMonitor:
    """Consumes tunnel events and keeps the state shown by the status API."""

    def __init__(
        self,
        endpoint_slug: Optional[str],
        target_url: str,
        relay_url: str,
        request_logger: Optional[RequestLogger] = None,
        max_history: int = 100,
    ):
        self.endpoint_slug = endpoint_slug
        self.target_url = target_url
        self.relay_url = relay_url
        self.request_logger = request_logger
        self.max_history = max_history

        self.connected = False
        self.last_error: Optional[str] = None
        self.connection_start_time: Optional[datetime] = None
        self.reconnect_attempt = 0
        self.next_retry_in: Optional[float] = None
        self.tunnel: Optional[Dict[str, Any]] = None
        self.webhook_history: List[Dict[str, Any]] = []
        self.total_count = 0
        self.forwarded_count = 0
        self.failed_count = 0
        self._requests: Dict[str, WebhookRequest] = {}

    async def consume(self, sink: EventSink):
        async for event in sink:
            self.handle(event)

    def handle(self, event: events.TunnelEvent):
        if isinstance(event, events.Connecting):
            logger.info("Connecting...")
        elif isinstance(event, events.Connected):
            self._mark_connected()
            logger.info(f"Listening on endpoint '{self.endpoint_slug}', forwarding to {self.target_url}")
        elif isinstance(event, events.TunnelEstablished):
            self._mark_connected()
            self.tunnel = {
                "subdomain": event.subdomain,
                "tunnel_id": event.tunnel_id,
                "static": event.is_static,
            }
            logger.info(f"Tunnel {event.subdomain} is forwarding to {self.target_url}")
        elif isinstance(event, events.ConnectionFailed):
            self.last_error = event.message
            if event.fatal:
                self.connected = False
                self.connection_start_time = None
        elif isinstance(event, events.Reconnecting):
            self.connected = False
            self.reconnect_attempt = event.attempt
            self.next_retry_in = event.next_retry_in
            logger.info(f"Reconnecting... (attempt {event.attempt}/{event.max_attempts})")
        elif isinstance(event, events.ReconnectFailed):
            self.connected = False
            self.last_error = event.reason
        elif isinstance(event, events.WebhookReceived):
            self._record_webhook(event.request)
        elif isinstance(event, (events.ForwardSuccess, events.ForwardError)):
            self._record_outcome(event.outcome)

    def _mark_connected(self):
        self.connected = True
        self.last_error = None
        self.reconnect_attempt = 0
        self.next_retry_in = None
        self.connection_start_time = datetime.now(timezone.utc)

    def _record_webhook(self, request: WebhookRequest):
        self.total_count += 1
        self._requests[request.id] = request

        record = request.to_dict()
        record.update({
            "forward_status": "pending",
            "response_status": None,
            "duration_ms": None,
            "error": None,
        })
        self.webhook_history.insert(0, record)  # Insert at beginning
        if len(self.webhook_history) > self.max_history:
            removed = self.webhook_history.pop()  # Remove oldest
            self._requests.pop(removed["id"], None)

    def _record_outcome(self, outcome: ForwardOutcome):
        if outcome.success:
            self.forwarded_count += 1
        else:
            self.failed_count += 1

        for record in self.webhook_history:
            if record["id"] == outcome.request_id:
                record.update({
                    "forward_status": "proxied" if outcome.success else "error",
                    "response_status": outcome.status_code,
                    "duration_ms": outcome.duration_ms,
                    "proxied_to": outcome.target_url,
                    "error": outcome.error,
                })
                break

        request = self._requests.get(outcome.request_id)
        logger.info(format_access_log(request, outcome))
        if self.request_logger:
            self.request_logger.log_forward(request, outcome)

    def status(self) -> Dict[str, Any]:
        uptime_seconds = None
        if self.connection_start_time:
            uptime_seconds = (datetime.now(timezone.utc) - self.connection_start_time).total_seconds()

        return {
            "connected": self.connected,
            "endpoint": self.endpoint_slug,
            "target_url": self.target_url,
            "relay_url": self.relay_url,
            "last_error": self.last_error,
            "uptime_seconds": uptime_seconds,
            "connection_start_time": self.connection_start_time.isoformat() if self.connection_start_time else None,
            "reconnect_attempt": self.reconnect_attempt,
            "next_retry_in": self.next_retry_in,
            "webhook_count": self.total_count,
            "tunnel": self.tunnel,
        }

    def stats(self) -> Dict[str, Any]:
        status_codes: Dict[str, int] = {}
        methods: Dict[str, int] = {}

        for webhook in self.webhook_history:
            status = webhook.get("response_status")
            if status is not None:
                status_codes[str(status)] = status_codes.get(str(status), 0) + 1
            method = webhook.get("method", "UNKNOWN")
            methods[method] = methods.get(method, 0) + 1

        return {
            "total_count": self.total_count,
            "forwarded_count": self.forwarded_count,
            "failed_count": self.failed_count,
            "status_codes": status_codes,
            "methods": methods,
            "latest_webhook": self.webhook_history[0] if self.webhook_history else None,
        }


def create_api_app(monitor: TunnelMonitor) -> FastAPI:
    """Create simple JSON API application"""
    api_app = FastAPI(title="Hooklistener Client API", version="1.0.0")

    @api_app.get("/status")
    async def get_status():
        """Get current tunnel status"""
        return monitor.status()

    @api_app.get("/webhooks")
    async def get_webhooks(limit: int = 10):
        """Get recent webhooks"""
        limited_webhooks = monitor.webhook_history[:limit] if limit > 0 else monitor.webhook_history
        return {
            "webhooks": limited_webhooks,
            "total_count": monitor.total_count,
            "limit": limit,
        }

    @api_app.get("/webhooks/stats")
    async def get_webhook_stats():
        """Get webhook statistics"""
        return monitor.stats()

    @api_app.get("/health")
    async def health_check():
        """Simple health check"""
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    return api_app
