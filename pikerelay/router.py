"""Virtual-host routing of incoming hosts to registered tunnels."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Hashable

logger = logging.getLogger(__name__)

_ASCII_LOWER = str.maketrans(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz"
)


def normalize_host(host: str) -> str:
    """Strip the port and trailing dots from a host and lowercase ASCII letters."""
    return host.split(":", 1)[0].rstrip(".").translate(_ASCII_LOWER)


def extract_subdomain_key(host: str) -> str:
    """Return the left-most label of a dotted host, or the host itself."""
    if "." not in host:
        return host
    return host.split(".", 1)[0]


@dataclass
class TunnelEntry:
    """A tunnel registered under a subdomain, owned by one client connection."""

    tunnel_id: Hashable
    connection_id: Hashable
    stream_tx: Any
    active: bool = True

    def is_active(self) -> bool:
        return self.active


class VhostRouter:
    """Thread-safe map from normalized hosts to tunnel entries."""

    def __init__(self) -> None:
        self._tunnels: dict[str, TunnelEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tunnels)

    def register(self, subdomain: str, entry: TunnelEntry) -> None:
        normalized = normalize_host(subdomain)
        logger.info("registering tunnel subdomain=%s normalized=%s", subdomain, normalized)
        with self._lock:
            self._tunnels[normalized] = entry
            count = len(self._tunnels)
        logger.info("tunnel count after register: %d", count)

    def unregister(self, subdomain: str) -> None:
        logger.warning("unregistering tunnel subdomain=%s", subdomain)
        with self._lock:
            self._tunnels.pop(normalize_host(subdomain), None)
            count = len(self._tunnels)
        logger.warning("tunnel count after unregister: %d", count)

    def unregister_if_owner(self, subdomain: str, connection_id: Hashable) -> bool:
        """Remove the entry only if it belongs to ``connection_id``; report whether it did."""
        normalized = normalize_host(subdomain)
        with self._lock:
            entry = self._tunnels.get(normalized)
            removed = entry is not None and entry.connection_id == connection_id
            if removed:
                del self._tunnels[normalized]
        if removed:
            logger.warning(
                "unregistered tunnel subdomain=%s connection_id=%s (owner match)",
                subdomain,
                connection_id,
            )
        else:
            logger.info(
                "skipped unregister subdomain=%s connection_id=%s (different owner)",
                subdomain,
                connection_id,
            )
        return removed

    def unregister_by_connection_id(self, connection_id: Hashable) -> list[str]:
        """Remove every entry owned by ``connection_id`` and return their keys."""
        with self._lock:
            removed = [
                key
                for key, entry in self._tunnels.items()
                if entry.connection_id == connection_id
            ]
            for key in removed:
                del self._tunnels[key]
        if removed:
            logger.info(
                "cleaned up %d entries for dead connection %s", len(removed), connection_id
            )
        return removed

    def route(self, host: str) -> TunnelEntry | None:
        """Find the tunnel for ``host`` by exact match, then by subdomain label."""
        normalized = normalize_host(host)
        logger.debug("route lookup host=%s normalized=%s", host, normalized)
        with self._lock:
            entry = self._tunnels.get(normalized)
            if entry is not None:
                logger.debug("found exact match")
                return entry
            subdomain = extract_subdomain_key(normalized)
            entry = self._tunnels.get(subdomain)
        if entry is not None:
            logger.debug("found subdomain match for %s", subdomain)
        else:
            logger.debug("no match found")
        return entry