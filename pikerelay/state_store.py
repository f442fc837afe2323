"""Shared counters, bans, logs and tunnel metrics kept by the relay."""

from __future__ import annotations

import copy
import ipaddress
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from pikerelay.models import (
    PersistedMinuteBucket,
    PersistedTunnelMetrics,
    PersistedTunnelMetricsDelta,
)

logger = logging.getLogger(__name__)

MAX_ABUSE_LOGS = 10_000
MAX_MINUTE_BUCKETS = 7 * 24 * 60 + 10
U64_MAX = 2**64 - 1

_FRACTION = re.compile(r"\.(\d+)")

IpAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _sat_add(left: int, right: int) -> int:
    return min(left + right, U64_MAX)


def _format_timestamp(value: datetime) -> str:
    text = value.isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _parse_timestamp(text: str) -> datetime:
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValueError(f"invalid timestamp {text!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _field(data: Mapping[str, Any], key: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise ValueError(f"missing field `{key}`") from None


def _optional_uint(data: Mapping[str, Any], key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"field `{key}` must be a non-negative integer")
    return value


def _uint(data: Mapping[str, Any], key: str) -> int:
    value = _field(data, key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"field `{key}` must be a non-negative integer")
    return value


def _string(data: Mapping[str, Any], key: str) -> str:
    value = _field(data, key)
    if not isinstance(value, str):
        raise ValueError(f"field `{key}` must be a string")
    return value


@dataclass(frozen=True)
class AbuseLogEntry:
    """A record of suspected abuse by a user, address or tunnel."""

    timestamp: datetime
    reason: str
    source_ip: IpAddress | None = None
    user_id: str | None = None
    tunnel_id: str | None = None
    request_count_per_minute: int | None = None
    bandwidth_bytes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": _format_timestamp(self.timestamp),
            "source_ip": None if self.source_ip is None else str(self.source_ip),
            "user_id": self.user_id,
            "tunnel_id": None if self.tunnel_id is None else str(self.tunnel_id),
            "request_count_per_minute": self.request_count_per_minute,
            "bandwidth_bytes": self.bandwidth_bytes,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AbuseLogEntry:
        source_ip = data.get("source_ip")
        tunnel_id = data.get("tunnel_id")
        user_id = data.get("user_id")
        if user_id is not None and not isinstance(user_id, str):
            raise ValueError("field `user_id` must be a string or null")
        return cls(
            timestamp=_parse_timestamp(_string(data, "timestamp")),
            reason=_string(data, "reason"),
            source_ip=None if source_ip is None else ipaddress.ip_address(source_ip),
            user_id=user_id,
            tunnel_id=None if tunnel_id is None else str(tunnel_id),
            request_count_per_minute=_optional_uint(data, "request_count_per_minute"),
            bandwidth_bytes=_optional_uint(data, "bandwidth_bytes"),
        )


@dataclass(frozen=True)
class RequestLogEntry:
    """One proxied HTTP request as shown in a tunnel's request log."""

    id: str
    timestamp: str
    method: str
    path: str
    status_code: int
    duration_ms: int
    request_size: int
    response_size: int
    tunnel_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "method": self.method,
            "path": self.path,
            "status_code": self.status_code,
            "duration_ms": self.duration_ms,
            "request_size": self.request_size,
            "response_size": self.response_size,
            "tunnel_id": self.tunnel_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RequestLogEntry:
        return cls(
            id=_string(data, "id"),
            timestamp=_string(data, "timestamp"),
            method=_string(data, "method"),
            path=_string(data, "path"),
            status_code=_uint(data, "status_code"),
            duration_ms=_uint(data, "duration_ms"),
            request_size=_uint(data, "request_size"),
            response_size=_uint(data, "response_size"),
            tunnel_id=_string(data, "tunnel_id"),
        )


class StateStore(ABC):
    """Storage shared by relay components; every operation may raise on failure."""

    @abstractmethod
    async def get_counter(self, key: str) -> int | None: ...

    @abstractmethod
    async def increment_counter(self, key: str, window_secs: int) -> int: ...

    @abstractmethod
    async def increment_counter_by(self, key: str, amount: int, window_secs: int) -> int: ...

    @abstractmethod
    async def get_bandwidth(self, key: str) -> int: ...

    @abstractmethod
    async def add_bandwidth(self, key: str, nbytes: int) -> int: ...

    @abstractmethod
    async def increment_gauge(self, key: str) -> int: ...

    @abstractmethod
    async def decrement_gauge(self, key: str) -> int: ...

    @abstractmethod
    async def get_gauge(self, key: str) -> int: ...

    @abstractmethod
    async def is_banned(self, user_id: str) -> bool: ...

    @abstractmethod
    async def ban_user(self, user_id: str, reason: str, duration_secs: int) -> None: ...

    @abstractmethod
    async def unban_user(self, user_id: str) -> None: ...

    @abstractmethod
    async def log_abuse(self, entry: AbuseLogEntry) -> None: ...

    @abstractmethod
    async def get_abuse_logs(self, limit: int) -> list[AbuseLogEntry]: ...

    @abstractmethod
    async def append_request_log(self, entry: RequestLogEntry, max_entries: int) -> None: ...

    @abstractmethod
    async def get_request_logs(
        self, tunnel_id: str, limit: int, offset: int
    ) -> tuple[list[RequestLogEntry], int]: ...

    @abstractmethod
    async def remember_tunnel_owner(
        self,
        tunnel_id: str,
        owner_user_id: str,
        created_at_unix_sec: int,
        created_at_rfc3339: str,
        last_activity_unix_ms: int,
    ) -> None: ...

    @abstractmethod
    async def record_tunnel_metrics(
        self, tunnel_id: str, delta: PersistedTunnelMetricsDelta
    ) -> None: ...

    @abstractmethod
    async def get_tunnel_metrics(self, tunnel_id: str) -> PersistedTunnelMetrics | None: ...


@dataclass
class _Ban:
    reason: str
    expires_at: float | None


class InMemoryStateStore(StateStore):
    """A process-local state store; counter windows are not enforced."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}
        self._bans: dict[str, _Ban] = {}
        self._abuse_logs: deque[AbuseLogEntry] = deque()
        self._request_logs: dict[str, deque[RequestLogEntry]] = {}
        self._tunnel_metrics: dict[str, PersistedTunnelMetrics] = {}

    def _adjust(self, key: str, change: int) -> int:
        with self._lock:
            value = min(max(self._counters.get(key, 0) + change, 0), U64_MAX)
            self._counters[key] = value
            return value

    async def get_counter(self, key: str) -> int | None:
        with self._lock:
            return self._counters.get(f"counter:{key}")

    async def increment_counter(self, key: str, window_secs: int) -> int:
        return await self.increment_counter_by(key, 1, window_secs)

    async def increment_counter_by(self, key: str, amount: int, window_secs: int) -> int:
        return self._adjust(f"counter:{key}", amount)

    async def get_bandwidth(self, key: str) -> int:
        with self._lock:
            return self._counters.get(f"bandwidth:{key}", 0)

    async def add_bandwidth(self, key: str, nbytes: int) -> int:
        return self._adjust(f"bandwidth:{key}", nbytes)

    async def increment_gauge(self, key: str) -> int:
        return self._adjust(f"gauge:{key}", 1)

    async def decrement_gauge(self, key: str) -> int:
        return self._adjust(f"gauge:{key}", -1)

    async def get_gauge(self, key: str) -> int:
        with self._lock:
            return self._counters.get(f"gauge:{key}", 0)

    async def is_banned(self, user_id: str) -> bool:
        with self._lock:
            ban = self._bans.get(user_id)
            if ban is None:
                return False
            if ban.expires_at is not None and ban.expires_at <= self._clock():
                del self._bans[user_id]
                return False
            return True

    async def ban_user(self, user_id: str, reason: str, duration_secs: int) -> None:
        expires_at = None if duration_secs == 0 else self._clock() + duration_secs
        with self._lock:
            self._bans[user_id] = _Ban(reason, expires_at)

    async def unban_user(self, user_id: str) -> None:
        with self._lock:
            self._bans.pop(user_id, None)

    async def log_abuse(self, entry: AbuseLogEntry) -> None:
        with self._lock:
            self._abuse_logs.appendleft(entry)
            while len(self._abuse_logs) > MAX_ABUSE_LOGS:
                self._abuse_logs.pop()

    async def get_abuse_logs(self, limit: int) -> list[AbuseLogEntry]:
        with self._lock:
            return list(self._abuse_logs)[:limit]

    async def append_request_log(self, entry: RequestLogEntry, max_entries: int) -> None:
        with self._lock:
            entries = self._request_logs.setdefault(entry.tunnel_id, deque())
            entries.appendleft(entry)
            while len(entries) > max_entries:
                entries.pop()

    async def get_request_logs(
        self, tunnel_id: str, limit: int, offset: int
    ) -> tuple[list[RequestLogEntry], int]:
        with self._lock:
            entries = self._request_logs.get(tunnel_id)
            if entries is None:
                return [], 0
            return list(entries)[offset : offset + limit], len(entries)

    async def remember_tunnel_owner(
        self,
        tunnel_id: str,
        owner_user_id: str,
        created_at_unix_sec: int,
        created_at_rfc3339: str,
        last_activity_unix_ms: int,
    ) -> None:
        with self._lock:
            metrics = self._tunnel_metrics.get(tunnel_id)
            if metrics is None:
                metrics = persisted_metrics_seed(
                    created_at_unix_sec, created_at_rfc3339, last_activity_unix_ms
                )
                self._tunnel_metrics[tunnel_id] = metrics
            if metrics.owner_user_id is None:
                metrics.owner_user_id = owner_user_id
            metrics.last_activity_unix_ms = max(
                metrics.last_activity_unix_ms, last_activity_unix_ms
            )

    async def record_tunnel_metrics(
        self, tunnel_id: str, delta: PersistedTunnelMetricsDelta
    ) -> None:
        with self._lock:
            metrics = self._tunnel_metrics.get(tunnel_id)
            if metrics is None:
                metrics = persisted_metrics_seed(
                    delta.created_at_unix_sec,
                    delta.created_at_rfc3339,
                    delta.last_activity_unix_ms,
                )
                self._tunnel_metrics[tunnel_id] = metrics
            apply_metrics_delta(metrics, delta)

    async def get_tunnel_metrics(self, tunnel_id: str) -> PersistedTunnelMetrics | None:
        with self._lock:
            metrics = self._tunnel_metrics.get(tunnel_id)
            return None if metrics is None else copy.deepcopy(metrics)


class FallbackStateStore(StateStore):
    """Use a primary store and fall back to an in-memory one whenever it fails."""

    def __init__(self, primary: StateStore, fallback: InMemoryStateStore) -> None:
        self._primary = primary
        self._fallback = fallback

    async def _call(self, name: str, *args: Any) -> Any:
        try:
            return await getattr(self._primary, name)(*args)
        except Exception as exc:  # noqa: BLE001 - any primary failure degrades
            logger.warning("primary store unavailable, using in-memory fallback: %s", exc)
            return await getattr(self._fallback, name)(*args)

    async def get_counter(self, key: str) -> int | None:
        return await self._call("get_counter", key)

    async def increment_counter(self, key: str, window_secs: int) -> int:
        return await self._call("increment_counter", key, window_secs)

    async def increment_counter_by(self, key: str, amount: int, window_secs: int) -> int:
        return await self._call("increment_counter_by", key, amount, window_secs)

    async def get_bandwidth(self, key: str) -> int:
        return await self._call("get_bandwidth", key)

    async def add_bandwidth(self, key: str, nbytes: int) -> int:
        return await self._call("add_bandwidth", key, nbytes)

    async def increment_gauge(self, key: str) -> int:
        return await self._call("increment_gauge", key)

    async def decrement_gauge(self, key: str) -> int:
        return await self._call("decrement_gauge", key)

    async def get_gauge(self, key: str) -> int:
        return await self._call("get_gauge", key)

    async def is_banned(self, user_id: str) -> bool:
        return await self._call("is_banned", user_id)

    async def ban_user(self, user_id: str, reason: str, duration_secs: int) -> None:
        await self._call("ban_user", user_id, reason, duration_secs)

    async def unban_user(self, user_id: str) -> None:
        await self._call("unban_user", user_id)

    async def log_abuse(self, entry: AbuseLogEntry) -> None:
        await self._call("log_abuse", entry)

    async def get_abuse_logs(self, limit: int) -> list[AbuseLogEntry]:
        return await self._call("get_abuse_logs", limit)

    async def append_request_log(self, entry: RequestLogEntry, max_entries: int) -> None:
        await self._call("append_request_log", entry, max_entries)

    async def get_request_logs(
        self, tunnel_id: str, limit: int, offset: int
    ) -> tuple[list[RequestLogEntry], int]:
        return await self._call("get_request_logs", tunnel_id, limit, offset)

    async def remember_tunnel_owner(
        self,
        tunnel_id: str,
        owner_user_id: str,
        created_at_unix_sec: int,
        created_at_rfc3339: str,
        last_activity_unix_ms: int,
    ) -> None:
        await self._call(
            "remember_tunnel_owner",
            tunnel_id,
            owner_user_id,
            created_at_unix_sec,
            created_at_rfc3339,
            last_activity_unix_ms,
        )

    async def record_tunnel_metrics(
        self, tunnel_id: str, delta: PersistedTunnelMetricsDelta
    ) -> None:
        await self._call("record_tunnel_metrics", tunnel_id, delta)

    async def get_tunnel_metrics(self, tunnel_id: str) -> PersistedTunnelMetrics | None:
        return await self._call("get_tunnel_metrics", tunnel_id)


def persisted_metrics_seed(
    created_at_unix_sec: int, created_at_rfc3339: str, last_activity_unix_ms: int
) -> PersistedTunnelMetrics:
    """Return empty metrics for a tunnel first seen at the given times."""
    return PersistedTunnelMetrics(
        created_at_unix_sec=created_at_unix_sec,
        created_at_rfc3339=created_at_rfc3339,
        last_activity_unix_ms=last_activity_unix_ms,
    )


def apply_metrics_delta(
    metrics: PersistedTunnelMetrics, delta: PersistedTunnelMetricsDelta
) -> None:
    """Fold a recorded delta into ``metrics`` in place."""
    metrics.last_activity_unix_ms = max(
        metrics.last_activity_unix_ms, delta.last_activity_unix_ms
    )
    metrics.total_requests = _sat_add(metrics.total_requests, delta.total_requests_delta)
    metrics.bytes_in = _sat_add(metrics.bytes_in, delta.bytes_in_delta)
    metrics.bytes_out = _sat_add(metrics.bytes_out, delta.bytes_out_delta)
    metrics.status_2xx = _sat_add(metrics.status_2xx, delta.status_2xx_delta)
    metrics.status_4xx = _sat_add(metrics.status_4xx, delta.status_4xx_delta)
    metrics.status_5xx = _sat_add(metrics.status_5xx, delta.status_5xx_delta)
    metrics.total_latency_ms = _sat_add(
        metrics.total_latency_ms, delta.total_latency_ms_delta
    )

    buckets = metrics.minute_buckets
    if buckets and buckets[-1].minute_start_unix_sec == delta.minute_start_unix_sec:
        last = buckets[-1]
        last.count = _sat_add(last.count, delta.minute_count_delta)
        last.total_latency_ms = _sat_add(
            last.total_latency_ms, delta.minute_total_latency_ms_delta
        )
    else:
        buckets.append(
            PersistedMinuteBucket(
                minute_start_unix_sec=delta.minute_start_unix_sec,
                count=delta.minute_count_delta,
                total_latency_ms=delta.minute_total_latency_ms_delta,
            )
        )

    if delta.pruned_minute_starts:
        pruned = set(delta.pruned_minute_starts)
        buckets = [b for b in buckets if b.minute_start_unix_sec not in pruned]

    buckets.sort(key=lambda bucket: bucket.minute_start_unix_sec)
    metrics.minute_buckets = buckets[-MAX_MINUTE_BUCKETS:]