"""Request logging system for detailed webhook/forwarding logging to a single file."""

import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..models import ForwardOutcome, WebhookRequest
from ..utils import build_query_string, is_binary_content

logger = logging.getLogger("hooklistener-client")


def _display_path(request: Optional[WebhookRequest], outcome: ForwardOutcome) -> str:
    if request is None:
        return outcome.target_url
    path = request.path or request.url
    if request.query_params:
        path += "?" + build_query_string(request.query_params)
    return path


class RequestLogger:
    """Appends every forwarded webhook and the local server's answer to one flat file."""

    def __init__(self, log_file: Optional[str] = None):
        """Initialize the request logger.

        Args:
            log_file: Path to the request log file. If not provided, checks HOOKLISTENER_REQUEST_LOG env var.
        """
        log_path = log_file or os.getenv("HOOKLISTENER_REQUEST_LOG")
        if not log_path:
            raise ValueError("Request logger requires a log file path")

        self.log_file = Path(log_path)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()

    def log_forward(self, request: Optional[WebhookRequest], outcome: ForwardOutcome):
        """Log a webhook and the outcome of forwarding it.

        Args:
            request: The webhook as received from the relay, if it is still known
            outcome: Result of replaying it against the local target
        """
        timestamp = datetime.now(timezone.utc)

        log_lines = []
        log_lines.append("=" * 80)
        log_lines.append(f"REQUEST ID: {outcome.request_id}")
        log_lines.append(f"TIMESTAMP: {timestamp.isoformat()}")
        log_lines.append(f"FORWARDED TO: {outcome.target_url}")
        log_lines.append("")

        log_lines.append(f"REQUEST: {outcome.method} {_display_path(request, outcome)}")

        if request is not None:
            if request.headers:
                log_lines.append("REQUEST HEADERS:")
                for key, value in request.headers.items():
                    log_lines.append(f"  {key}: {value}")

            if request.body:
                log_lines.append("REQUEST BODY:")
                for line in request.body.split('\n'):
                    log_lines.append(f"  {line}")

        log_lines.append("")

        if outcome.status_code is None:
            log_lines.append(f"ERROR: {outcome.error}")
        else:
            log_lines.append(f"RESPONSE: {outcome.status_code}")

            if outcome.headers:
                log_lines.append("RESPONSE HEADERS:")
                for key, value in outcome.headers.items():
                    log_lines.append(f"  {key}: {value}")

            if outcome.body:
                log_lines.append("RESPONSE BODY:")
                content_type = outcome.headers.get("content-type", "")
                if is_binary_content(content_type):
                    log_lines.append(f"  [Binary data: {len(outcome.body)} bytes base64-encoded]")
                else:
                    for line in outcome.body.split('\n'):
                        log_lines.append(f"  {line}")

        log_lines.append(f"DURATION: {outcome.duration_ms:.0f}ms")
        log_lines.append("")

        with self.lock:
            with open(self.log_file, 'a', encoding='utf-8') as f:
                f.write('\n'.join(log_lines) + '\n')


def format_access_log(request: Optional[WebhookRequest], outcome: ForwardOutcome) -> str:
    """Format a concise access log entry for console output.

    Format: [timestamp] request_id METHOD /path -> status_code duration
    """
    timestamp = datetime.now().strftime("%H:%M:%S")
    path = _display_path(request, outcome)
    if outcome.status_code is not None:
        result = str(outcome.status_code)
    else:
        result = f"ERROR {outcome.error}"
    return f"[{timestamp}] {outcome.request_id} {outcome.method} {path} -> {result} {outcome.duration_ms:.0f}ms"
