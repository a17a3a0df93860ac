"""Tests for the process-level wiring of the tunnel client."""

from http import HTTPStatus

import pytest

from hooklistener.client.runner import main_client, main_tunnel
from hooklistener.errors import AuthenticationFailed, EndpointNotFound


async def rejecting_relay(relay_server, status):
    def reject(connection, request):
        return connection.respond(status, "rejected\n")

    async def handler(ws):
        await ws.wait_closed()

    return await relay_server(handler, process_request=reject)


async def test_invalid_token_stops_without_retrying(relay_server):
    url = await rejecting_relay(relay_server, HTTPStatus.UNAUTHORIZED)

    with pytest.raises(AuthenticationFailed):
        await main_client("bad-token", "my-endpoint", "http://localhost:3000", relay_url=url, api_port=None)


async def test_unknown_endpoint_is_reported(relay_server, tmp_path):
    url = await rejecting_relay(relay_server, HTTPStatus.NOT_FOUND)

    with pytest.raises(EndpointNotFound, match="Endpoint not found: 'missing'."):
        await main_client(
            "token",
            "missing",
            "http://localhost:3000",
            relay_url=url,
            api_port=None,
            request_log=str(tmp_path / "requests.log"),
        )


async def test_tunnel_with_invalid_token_stops(relay_server):
    url = await rejecting_relay(relay_server, HTTPStatus.FORBIDDEN)

    with pytest.raises(AuthenticationFailed):
        await main_tunnel("bad-token", 8080, api_url=url, api_port=None)
