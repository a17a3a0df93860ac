"""Tunnel client: channel sessions for webhooks and HTTP tunnels, forwarding, lifecycle events and reconnection."""
