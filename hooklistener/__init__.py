"""
Hooklistener - A command-line client that relays captured webhooks to a local development server.

Connects to the Hooklistener relay over a WebSocket channel and replays every webhook against a local target,
or exposes a local HTTP server on a public tunnel subdomain.
"""

__version__ = "0.9.0"
__author__ = "Hooklistener Team"
__email__ = "support@hooklistener.com"
__description__ = "Relay webhooks captured by Hooklistener to a local development server"
