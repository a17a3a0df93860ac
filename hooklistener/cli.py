import logging
import sys

import click

from . import __version__
from .client.app import DEFAULT_RELAY_URL, MAX_CONCURRENT_FORWARDS
from .client.http_tunnel import DEFAULT_API_URL
from .client.runner import run_client, run_tunnel
from .config import Config
from .errors import ConfigError


def _load_config() -> Config:
    try:
        return Config.load()
    except ConfigError as e:
        click.echo(f"Error: {e.message}", err=True)
        click.echo(f"Hint: {e.hint}", err=True)
        sys.exit(1)


def _resolve_token(config: Config, token):
    if token:
        return token
    if not config.is_token_valid():
        click.echo("Not authenticated. Please run `hooklistener login` first.", err=True)
        sys.exit(1)
    return config.access_token


@click.group()
@click.version_option(__version__, prog_name="hooklistener")
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
              envvar="HOOKLISTENER_LOG_LEVEL", help="Log level (can be set via HOOKLISTENER_LOG_LEVEL)")
def cli(log_level):
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Suppress httpx request logs to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)


@cli.command()
@click.argument("endpoint")
@click.option("--target", "-t", default="http://localhost:3000", envvar="HOOKLISTENER_TARGET",
              help="Local URL to forward webhooks to (default: http://localhost:3000, env: HOOKLISTENER_TARGET)")
@click.option("--ws-url", envvar="HOOKLISTENER_WS_URL",
              help=f"Relay server URL (default: {DEFAULT_RELAY_URL}, env: HOOKLISTENER_WS_URL)")
@click.option("--token", envvar="HOOKLISTENER_TOKEN",
              help="Access token; defaults to the token stored by `hooklistener login` (env: HOOKLISTENER_TOKEN)")
@click.option("--api-port", default=8081, type=int, envvar="HOOKLISTENER_API_PORT",
              help="Port for the local JSON status API (default: 8081, env: HOOKLISTENER_API_PORT)")
@click.option("--no-api", is_flag=True, help="Do not start the local JSON status API")
@click.option("--request-log", envvar="HOOKLISTENER_REQUEST_LOG", type=click.Path(dir_okay=False),
              help="Append full request/response details to this file (env: HOOKLISTENER_REQUEST_LOG)")
@click.option("--max-concurrency", default=MAX_CONCURRENT_FORWARDS, type=click.IntRange(min=1),
              help=f"Maximum webhooks forwarded at the same time (default: {MAX_CONCURRENT_FORWARDS})")
def listen(endpoint, target, ws_url, token, api_port, no_api, request_log, max_concurrency):
    """Relay webhooks captured on ENDPOINT to a local server."""
    config = _load_config()
    token = _resolve_token(config, token)

    run_client(
        access_token=token,
        endpoint=endpoint,
        target=target,
        relay_url=ws_url or config.relay_url,
        api_port=None if no_api else api_port,
        request_log=request_log,
        max_concurrency=max_concurrency,
    )


@cli.command()
@click.option("--port", "-p", default=3000, type=click.IntRange(1, 65535), help="Local port to expose (default: 3000)")
@click.option("--host", default="localhost", help="Local host to forward requests to (default: localhost)")
@click.option("--org", "-o", "organization_id", help="Organization ID; defaults to the one set with `hooklistener config set-org`")
@click.option("--slug", "-s", help="Request a static subdomain slug")
@click.option("--api-url", envvar="HOOKLISTENER_API_URL",
              help=f"Hooklistener API URL (default: {DEFAULT_API_URL}, env: HOOKLISTENER_API_URL)")
@click.option("--token", envvar="HOOKLISTENER_TOKEN",
              help="Access token; defaults to the token stored by `hooklistener login` (env: HOOKLISTENER_TOKEN)")
@click.option("--api-port", default=8081, type=int, envvar="HOOKLISTENER_API_PORT",
              help="Port for the local JSON status API (default: 8081, env: HOOKLISTENER_API_PORT)")
@click.option("--no-api", is_flag=True, help="Do not start the local JSON status API")
@click.option("--request-log", envvar="HOOKLISTENER_REQUEST_LOG", type=click.Path(dir_okay=False),
              help="Append full request/response details to this file (env: HOOKLISTENER_REQUEST_LOG)")
@click.option("--max-concurrency", default=MAX_CONCURRENT_FORWARDS, type=click.IntRange(min=1),
              help=f"Maximum requests proxied at the same time (default: {MAX_CONCURRENT_FORWARDS})")
def tunnel(port, host, organization_id, slug, api_url, token, api_port, no_api, request_log, max_concurrency):
    """Expose a local HTTP server on a public Hooklistener subdomain."""
    config = _load_config()
    token = _resolve_token(config, token)

    run_tunnel(
        access_token=token,
        port=port,
        host=host,
        organization_id=organization_id or config.selected_organization_id,
        slug=slug,
        api_url=api_url,
        api_port=None if no_api else api_port,
        request_log=request_log,
        max_concurrency=max_concurrency,
    )


@cli.command()
@click.option("--token", prompt=True, hide_input=True, help="Access token issued by Hooklistener")
@click.option("--expires-in", type=click.IntRange(min=1), default=None,
              help="Seconds until the token expires (default: never)")
def login(token, expires_in):
    """Store an access token for later commands."""
    config = _load_config()
    config.set_access_token(token.strip(), expires_in)
    config.save()
    click.echo(f"Token saved to {Config.config_path()}")


@cli.command()
def logout():
    """Sign out and clear the locally stored token."""
    config = _load_config()
    config.clear_token()
    config.save()
    click.echo("Logged out.")


@cli.group(name="config")
def config_group():
    """Manage CLI configuration."""


@config_group.command(name="path")
def config_path():
    """Print the location of the config file."""
    click.echo(str(Config.config_path()))


@config_group.command(name="show")
def config_show():
    """Show the stored configuration (token masked)."""
    config = _load_config()
    click.echo(f"access_token: {config.masked_token() or '(not set)'}")
    expires = config.token_expires_at.isoformat() if config.token_expires_at else "never"
    click.echo(f"token_expires_at: {expires if config.access_token else '-'}")
    click.echo(f"token_valid: {'yes' if config.is_token_valid() else 'no'}")
    click.echo(f"relay_url: {config.relay_url or DEFAULT_RELAY_URL}")
    click.echo(f"selected_organization_id: {config.selected_organization_id or '(not set)'}")


@config_group.command(name="set-relay")
@click.argument("url")
def config_set_relay(url):
    """Set the relay server URL used by `listen`."""
    config = _load_config()
    config.relay_url = url
    config.save()
    click.echo(f"relay_url set to {url}")


@config_group.command(name="set-org")
@click.argument("organization_id")
def config_set_org(organization_id):
    """Set the organization used by `tunnel` when --org is not given."""
    config = _load_config()
    config.selected_organization_id = organization_id
    config.save()
    click.echo(f"selected_organization_id set to {organization_id}")


if __name__ == "__main__":
    cli()
