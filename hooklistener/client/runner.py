import asyncio
import logging
import signal
import sys
from typing import Optional

import click
import uvicorn

from .api import TunnelMonitor, create_api_app
from .app import MAX_CONCURRENT_FORWARDS, ChannelSession, TunnelClient
from .http_tunnel import TunnelForwarder
from .reconnect import ReconnectDriver
from .request_logger import RequestLogger
from ..errors import TunnelError

logger = logging.getLogger("hooklistener-client")


async def main_client(
    access_token: str,
    endpoint: str,
    target: str,
    relay_url: Optional[str] = None,
    api_port: Optional[int] = 8081,
    request_log: Optional[str] = None,
    max_concurrency: int = MAX_CONCURRENT_FORWARDS,
):
    logger.info(f"Starting tunnel client - endpoint: {endpoint}, target: {target}")

    client = TunnelClient(
        access_token,
        endpoint,
        target,
        relay_url=relay_url,
        max_concurrency=max_concurrency,
    )
    monitor = TunnelMonitor(
        endpoint,
        client.target_url,
        client.relay_url,
        request_logger=RequestLogger(request_log) if request_log else None,
    )
    await serve_session(client, monitor, api_port)


async def main_tunnel(
    access_token: str,
    port: int,
    host: str = "localhost",
    organization_id: Optional[str] = None,
    slug: Optional[str] = None,
    api_url: Optional[str] = None,
    api_port: Optional[int] = 8081,
    request_log: Optional[str] = None,
    max_concurrency: int = MAX_CONCURRENT_FORWARDS,
):
    logger.info(f"Starting HTTP tunnel - local: {host}:{port}")

    forwarder = TunnelForwarder(
        access_token,
        port,
        local_host=host,
        organization_id=organization_id,
        slug=slug,
        api_url=api_url,
        max_concurrency=max_concurrency,
    )
    monitor = TunnelMonitor(
        slug,
        forwarder.target_url,
        forwarder.api_url,
        request_logger=RequestLogger(request_log) if request_log else None,
    )
    await serve_session(forwarder, monitor, api_port)


async def serve_session(session: ChannelSession, monitor: TunnelMonitor, api_port: Optional[int] = 8081):
    """Keep ``session`` connected and serve the status API until shutdown or a fatal error."""
    sink = session.events
    driver = ReconnectDriver(session)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    handled_signals = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, shutdown_event.set)
            handled_signals.append(signum)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; Ctrl+C still raises KeyboardInterrupt
            pass

    server = None
    tasks = [asyncio.create_task(monitor.consume(sink))]
    try:
        if api_port:
            api_config = uvicorn.Config(
                app=create_api_app(monitor),
                host="127.0.0.1",
                port=api_port,
                log_level="warning",
                loop="asyncio",
                access_log=False,
            )
            server = uvicorn.Server(api_config)
            tasks.append(asyncio.create_task(server.serve()))
            logger.info(f"API available at: http://localhost:{api_port}")

        driver_task = asyncio.create_task(driver.run())
        shutdown_task = asyncio.create_task(shutdown_event.wait())
        tasks.append(shutdown_task)

        done, _ = await asyncio.wait(
            {driver_task, shutdown_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if driver_task in done:
            # Drain what the driver emitted last so the final error is shown
            for event in sink.drain():
                monitor.handle(event)
            driver_task.result()
        else:
            logger.info("Shutting down...")
            driver.stop()
            driver_task.cancel()
            await asyncio.gather(driver_task, return_exceptions=True)
    finally:
        logger.info("Cleaning up...")
        if server is not None:
            server.should_exit = True
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for signum in handled_signals:
            loop.remove_signal_handler(signum)


def _run(main):
    try:
        asyncio.run(main)
    except KeyboardInterrupt:
        logger.info("Stopping tunnel client...")
    except TunnelError as e:
        click.echo(f"Error: {e.message}", err=True)
        if e.hint:
            click.echo(f"Hint: {e.hint}", err=True)
        sys.exit(1)


def run_client(
    access_token: str,
    endpoint: str,
    target: str,
    relay_url: Optional[str] = None,
    api_port: Optional[int] = 8081,
    request_log: Optional[str] = None,
    max_concurrency: int = MAX_CONCURRENT_FORWARDS,
):
    _run(main_client(access_token, endpoint, target, relay_url, api_port, request_log, max_concurrency))


def run_tunnel(
    access_token: str,
    port: int,
    host: str = "localhost",
    organization_id: Optional[str] = None,
    slug: Optional[str] = None,
    api_url: Optional[str] = None,
    api_port: Optional[int] = 8081,
    request_log: Optional[str] = None,
    max_concurrency: int = MAX_CONCURRENT_FORWARDS,
):
    _run(main_tunnel(access_token, port, host, organization_id, slug, api_url, api_port, request_log, max_concurrency))
