"""Common utility functions for hooklistener."""

from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from .protocol import stringify


def to_websocket_url(base_url: str, path: str = "socket/websocket", token: Optional[str] = None) -> str:
    """
    Build the relay WebSocket URL from an HTTP(S) base URL.

    ``https`` becomes ``wss`` and ``http`` becomes ``ws``; ``ws``/``wss`` URLs are kept.
    The access token, if any, is passed as the ``token`` query parameter.

    Args:
        base_url: Relay base URL (e.g. 'https://api.hooklistener.com')
        path: Socket path appended to the base URL
        token: Access token sent as a query parameter

    Returns:
        The WebSocket URL to dial
    """
    parts = urlsplit(base_url.strip())
    scheme = {"https": "wss", "http": "ws"}.get(parts.scheme.lower(), parts.scheme.lower())
    if scheme not in ("ws", "wss"):
        raise ValueError(f"Unsupported relay URL scheme: {base_url!r}")

    full_path = parts.path.rstrip("/") + "/" + path.lstrip("/")
    query = urlencode({"token": token}) if token else ""
    return urlunsplit((scheme, parts.netloc, full_path, query, ""))


def build_query_string(query_params: Dict[str, Any]) -> str:
    """Join query parameters as ``k=v`` pairs, with non-string values stringified (not JSON-quoted)."""
    return "&".join(f"{k}={stringify(v)}" for k, v in query_params.items())


def build_forward_target(target_url: str, path: str, query_params: Dict[str, Any]) -> str:
    """Concatenate the local target with the webhook path and, if present, its query string."""
    base = f"{target_url}{path}"
    if not query_params:
        return base
    return f"{base}?{build_query_string(query_params)}"


def normalize_target(local_endpoint: str) -> str:
    # Ensure local endpoint has a protocol
    if not local_endpoint.startswith(("http://", "https://")):
        local_endpoint = f"http://{local_endpoint}"
    return local_endpoint.rstrip("/")


def is_binary_content(content_type: Optional[str]) -> bool:
    """
    Determine if a content-type header value indicates binary data.

    Args:
        content_type: The content-type header value (e.g., 'application/pdf')

    Returns:
        True if the content is binary, False if it's text-based
    """
    if not content_type:
        # If no content type is provided, assume binary to be safe
        return True

    # Normalize content type (remove parameters like charset)
    base_type = content_type.split(';')[0].strip().lower()

    if base_type.startswith('text/'):
        return False

    text_types = {
        'application/x-www-form-urlencoded',
        'message/rfc822', 'message/http',
        'application/graphql', 'application/sql',
    }
    if base_type in text_types:
        return False

    # Check for text keywords in content type
    text_keywords = ['json', 'xml', 'javascript', 'ecmascript', 'yaml', 'csv', 'text']
    for keyword in text_keywords:
        if keyword in base_type:
            return False

    # Everything else is considered binary
    return True


def build_tunnel_target(target_url: str, path: str, query_string: str) -> str:
    """Like :func:`build_forward_target`, but with a query string that is already encoded."""
    base = f"{target_url}{path}"
    return f"{base}?{query_string}" if query_string else base
