"""Relay-side routing, framing, TCP tunnels, state stores and metrics for a tunnelling reverse proxy."""

__version__ = "0.1.3"

__all__ = [
    "models",
    "redis_store",
    "router",
    "state_store",
    "tcp",
    "transport",
    "tunnel_metrics",
    "ws_proxy",
]