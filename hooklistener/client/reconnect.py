"""Reconnection policy for relay sessions.

A session itself never retries. :class:`ReconnectDriver` calls
``connect_and_listen`` again after retryable failures, backing off
exponentially with jitter, and restarts immediately when a manual reconnect
is requested.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from . import events
from .app import ChannelSession
from ..errors import ReconnectExhausted, TunnelError

logger = logging.getLogger("hooklistener-client")


@dataclass
class ReconnectConfig:
    max_retries: int = 10
    initial_delay: float = 1.0
    max_delay: float = 60.0
    jitter_factor: float = 0.3
    # A session that lasted at least this long resets the attempt counter
    stable_after: float = 5.0


def calculate_backoff(attempt: int, config: ReconnectConfig, rand: Callable[[], float] = random.random) -> float:
    """Exponential backoff in seconds for the given 1-based attempt, with symmetric jitter."""
    base_delay = config.initial_delay * (2 ** max(attempt - 1, 0))
    capped_delay = min(base_delay, config.max_delay)
    jitter_range = capped_delay * config.jitter_factor
    jitter = rand() * jitter_range * 2 - jitter_range
    return max(capped_delay + jitter, 0.1)


class DriverState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    BACKING_OFF = "backing_off"
    STOPPED = "stopped"


class ReconnectDriver:
    def __init__(self, client: ChannelSession, config: Optional[ReconnectConfig] = None):
        self.client = client
        self.config = config or ReconnectConfig()
        self.state = DriverState.IDLE
        self.attempt = 0
        self._triggers: "asyncio.Queue[None]" = asyncio.Queue()
        self._stopped = False

    @property
    def events(self) -> events.EventSink:
        return self.client.events

    def request_reconnect(self):
        """Ask the driver to drop the current session (or backoff) and connect again now."""
        self._triggers.put_nowait(None)

    def stop(self):
        self._stopped = True
        # Wake the driver if it is waiting
        self._triggers.put_nowait(None)

    def _drain_triggers(self) -> bool:
        drained = False
        while not self._triggers.empty():
            self._triggers.get_nowait()
            drained = True
        return drained

    async def run(self):
        """Keep the tunnel connected until stopped or a non-retryable error occurs."""
        loop = asyncio.get_running_loop()
        try:
            while not self._stopped:
                self.state = DriverState.CONNECTING
                self.events.emit(events.Connecting())
                started = loop.time()

                error, manual = await self._run_session()
                if self._stopped:
                    break

                if manual:
                    logger.info("Manual reconnect requested")
                    self.attempt = 0
                    continue

                if error is not None and not error.retryable:
                    self.events.emit(events.ReconnectFailed(error.message))
                    raise error

                if loop.time() - started >= self.config.stable_after:
                    self.attempt = 0

                self.attempt += 1
                if self.attempt > self.config.max_retries:
                    exhausted = ReconnectExhausted()
                    self.events.emit(events.ReconnectFailed(exhausted.message))
                    raise exhausted

                delay = calculate_backoff(self.attempt, self.config)
                logger.info(f"Reconnecting in {delay:.1f} seconds... (attempt {self.attempt}/{self.config.max_retries})")
                self.events.emit(events.Reconnecting(self.attempt, self.config.max_retries, delay))

                self.state = DriverState.BACKING_OFF
                if await self._wait_for_trigger(delay):
                    self._drain_triggers()
                    if not self._stopped:
                        logger.info("Manual reconnect requested, skipping backoff")
                        self.attempt = 0
        finally:
            self.state = DriverState.STOPPED

    async def _run_session(self):
        """Run one session. Returns ``(error, manual)`` where ``manual`` means it was cut short by a trigger."""
        session = asyncio.create_task(self.client.connect_and_listen())
        trigger = asyncio.create_task(self._triggers.get())
        try:
            done, _ = await asyncio.wait({session, trigger}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            session.cancel()
            trigger.cancel()
            await asyncio.gather(session, trigger, return_exceptions=True)
            raise

        if trigger in done:
            session.cancel()
            await asyncio.gather(session, return_exceptions=True)
            # Collapse bursty reconnect requests into a single restart
            self._drain_triggers()
            return None, True

        trigger.cancel()
        await asyncio.gather(trigger, return_exceptions=True)
        try:
            session.result()
        except TunnelError as e:
            return e, False
        return None, False

    async def _wait_for_trigger(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._triggers.get(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
