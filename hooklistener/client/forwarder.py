import base64
import logging
import time
from typing import Any, Dict, Optional

import httpx

from ..models import ForwardOutcome
from ..protocol import InboundWebhook, stringify
from ..utils import build_forward_target, is_binary_content, normalize_target

logger = logging.getLogger("hooklistener-client")

SUPPORTED_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD")


def build_forward_headers(headers: Dict[str, Any]) -> Dict[str, str]:
    """Copy inbound headers for the outbound call, dropping ``host`` so httpx sets it for the new destination."""
    return {
        key: stringify(value)
        for key, value in headers.items()
        if key.lower() != "host"
    }


class Forwarder:
    """Replays inbound webhooks against the local target."""

    def __init__(
        self,
        target_url: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.target_url = normalize_target(target_url)
        # Injected in tests; None means a real network transport.
        self.transport = transport
        self.timeout = timeout

    async def send(self, method: str, url: str, headers: Dict[str, str], content: Optional[bytes]) -> httpx.Response:
        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            return await client.request(method, url, headers=headers, content=content)

    async def forward(self, webhook: InboundWebhook) -> Optional[ForwardOutcome]:
        """Issue the webhook as an HTTP request against the local target.

        Returns None if the method is not one we forward. Failures (transport
        errors and HTTP status >= 400) are returned as an unsuccessful outcome,
        never raised.
        """
        method = webhook.method.upper()
        if method not in SUPPORTED_METHODS:
            logger.warning(f"[{webhook.id}] Unsupported HTTP method: {webhook.method}")
            return None

        url = build_forward_target(self.target_url, webhook.path, webhook.query_params)
        headers = build_forward_headers(webhook.headers)
        content = webhook.body.encode("utf-8") if webhook.body is not None else None

        logger.info(f"[{webhook.id}] Forwarding {method} {webhook.path} to {url}")

        start_time = time.monotonic()
        try:
            response = await self.send(method, url, headers, content)
        except Exception as e:
            duration_ms = (time.monotonic() - start_time) * 1000
            error = str(e) or type(e).__name__
            logger.error(f"[{webhook.id}] Failed to forward request: {error}")
            return ForwardOutcome(
                request_id=webhook.id,
                method=method,
                target_url=url,
                success=False,
                duration_ms=duration_ms,
                error=error,
            )

        duration_ms = (time.monotonic() - start_time) * 1000
        content_type = response.headers.get("content-type", "")
        if is_binary_content(content_type) and response.content:
            body = base64.b64encode(response.content).decode("ascii")
        else:
            body = response.text

        outcome = ForwardOutcome(
            request_id=webhook.id,
            method=method,
            target_url=url,
            success=response.status_code < 400,
            duration_ms=duration_ms,
            status_code=response.status_code,
            headers=dict(response.headers),
            body=body,
        )
        if outcome.success:
            logger.debug(f"[{webhook.id}] Request forwarded successfully, status: {response.status_code}")
        else:
            outcome.error = f"Local server responded with HTTP {response.status_code}"
            logger.warning(f"[{webhook.id}] {outcome.error}")
        return outcome
