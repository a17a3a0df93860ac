"""Error types raised by the tunnel client and the configuration layer."""

from typing import Optional


class HooklistenerError(Exception):
    """Base class for all errors surfaced to the user."""

    hint: Optional[str] = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class TunnelError(HooklistenerError):
    """A tunnel session failed to start or was terminated.

    ``message`` is the same human-readable text that was emitted as a
    ConnectionFailed event before the exception was raised, so a presentation
    layer never needs to re-derive it from the exception.
    """

    retryable: bool = True


class AuthenticationFailed(TunnelError):
    retryable = False
    hint = "Run `hooklistener login` to store a valid access token."

    def __init__(self):
        super().__init__("Authentication failed: The token is invalid or expired.")


class EndpointNotFound(TunnelError):
    retryable = False
    hint = "Check the endpoint slug in your Hooklistener dashboard."

    def __init__(self, slug: str):
        super().__init__(f"Endpoint not found: '{slug}'.")
        self.slug = slug


class HandshakeRejected(TunnelError):
    hint = "The Hooklistener server may be temporarily unavailable. Try again shortly."

    def __init__(self, status_code: int):
        super().__init__(f"Connection failed with HTTP status: {status_code}")
        self.status_code = status_code


class ConnectionRefused(TunnelError):
    hint = "Check your internet connection and that the server is reachable."

    def __init__(self, detail: str):
        super().__init__(f"Connection refused: {detail}.")


class TransportFailure(TunnelError):
    hint = "Check your internet connection and try again."

    def __init__(self, detail: str):
        super().__init__(f"Failed to connect to WebSocket: {detail}")


class JoinRejected(TunnelError):
    retryable = False
    hint = "The channel could not be joined. Verify the endpoint exists and you have access."
    channel = "Channel"

    def __init__(self, reason: str):
        super().__init__(f"{self.channel} join failed: {reason}")
        self.reason = reason


class TunnelJoinRejected(JoinRejected):
    hint = "The tunnel could not be opened. Check the organization and slug, and that your token has access to them."
    channel = "Tunnel"


class JoinTimeout(TunnelError):
    hint = "The server did not respond in time. Try again shortly."

    def __init__(self):
        super().__init__("Timeout waiting for channel join response")


class ConnectionLost(TunnelError):
    hint = "The connection was interrupted. It will reconnect automatically."


class ReconnectExhausted(TunnelError):
    retryable = False
    hint = "Check your internet connection, then run the command again."

    def __init__(self):
        super().__init__("Maximum reconnection attempts exceeded")


class ConfigError(HooklistenerError):
    hint = "Delete the hooklistener config.json and run `hooklistener login` again."
