"""Lifecycle events emitted by the tunnel client and the reconnect driver."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

from ..models import ForwardOutcome, WebhookRequest

logger = logging.getLogger("hooklistener-client")

DEFAULT_SINK_CAPACITY = 100


@dataclass(frozen=True)
class Connecting:
    pass


@dataclass(frozen=True)
class Connected:
    pass


@dataclass(frozen=True)
class ConnectionFailed:
    message: str
    # False for problems that leave the session running, such as a malformed webhook
    fatal: bool = True


@dataclass(frozen=True)
class TunnelEstablished:
    subdomain: str
    tunnel_id: str
    is_static: bool


@dataclass(frozen=True)
class WebhookReceived:
    request: WebhookRequest


@dataclass(frozen=True)
class ForwardSuccess:
    outcome: ForwardOutcome


@dataclass(frozen=True)
class ForwardError:
    outcome: ForwardOutcome


@dataclass(frozen=True)
class Reconnecting:
    attempt: int
    max_attempts: int
    next_retry_in: float


@dataclass(frozen=True)
class ReconnectFailed:
    reason: str


TunnelEvent = Union[
    Connecting, Connected, ConnectionFailed, TunnelEstablished, WebhookReceived,
    ForwardSuccess, ForwardError, Reconnecting, ReconnectFailed,
]


class EventSink:
    """Bounded, best-effort channel of lifecycle events.

    ``emit`` never blocks: when the consumer falls behind and the queue is
    full, the event is dropped and counted.
    """

    def __init__(self, maxsize: int = DEFAULT_SINK_CAPACITY):
        self._queue: "asyncio.Queue[TunnelEvent]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def emit(self, event: TunnelEvent) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"Event sink full, dropping {type(event).__name__}")
            return False

    async def get(self) -> TunnelEvent:
        return await self._queue.get()

    def get_nowait(self) -> Optional[TunnelEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> list:
        """Return every event currently queued, oldest first."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def __aiter__(self):
        return self

    async def __anext__(self) -> TunnelEvent:
        return await self.get()
