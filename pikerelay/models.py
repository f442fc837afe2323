"""Persisted tunnel metrics records shared by the state stores and the metrics store."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

_INT_FIELDS = (
    "created_at_unix_sec",
    "last_activity_unix_ms",
    "total_requests",
    "bytes_in",
    "bytes_out",
    "status_2xx",
    "status_4xx",
    "status_5xx",
    "total_latency_ms",
)


def _require(data: Mapping[str, Any], key: str) -> Any:
    try:
        return data[key]
    except KeyError:
        raise ValueError(f"missing field `{key}`") from None


def _require_uint(data: Mapping[str, Any], key: str) -> int:
    value = _require(data, key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"field `{key}` must be a non-negative integer")
    return value


@dataclass
class PersistedMinuteBucket:
    """Request count and summed latency for one wall-clock minute."""

    minute_start_unix_sec: int
    count: int
    total_latency_ms: int

    def to_dict(self) -> dict[str, int]:
        return {
            "minute_start_unix_sec": self.minute_start_unix_sec,
            "count": self.count,
            "total_latency_ms": self.total_latency_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PersistedMinuteBucket:
        return cls(
            minute_start_unix_sec=_require_uint(data, "minute_start_unix_sec"),
            count=_require_uint(data, "count"),
            total_latency_ms=_require_uint(data, "total_latency_ms"),
        )


@dataclass
class PersistedTunnelMetrics:
    """Cumulative metrics of one tunnel as kept by a state store."""

    created_at_unix_sec: int
    created_at_rfc3339: str
    last_activity_unix_ms: int
    owner_user_id: str | None = None
    total_requests: int = 0
    bytes_in: int = 0
    bytes_out: int = 0
    status_2xx: int = 0
    status_4xx: int = 0
    status_5xx: int = 0
    total_latency_ms: int = 0
    minute_buckets: list[PersistedMinuteBucket] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at_unix_sec": self.created_at_unix_sec,
            "created_at_rfc3339": self.created_at_rfc3339,
            "last_activity_unix_ms": self.last_activity_unix_ms,
            "owner_user_id": self.owner_user_id,
            "total_requests": self.total_requests,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "status_2xx": self.status_2xx,
            "status_4xx": self.status_4xx,
            "status_5xx": self.status_5xx,
            "total_latency_ms": self.total_latency_ms,
            "minute_buckets": [bucket.to_dict() for bucket in self.minute_buckets],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PersistedTunnelMetrics:
        created_at_rfc3339 = _require(data, "created_at_rfc3339")
        if not isinstance(created_at_rfc3339, str):
            raise ValueError("field `created_at_rfc3339` must be a string")
        owner = data.get("owner_user_id")
        if owner is not None and not isinstance(owner, str):
            raise ValueError("field `owner_user_id` must be a string or null")
        buckets = _require(data, "minute_buckets")
        if not isinstance(buckets, list):
            raise ValueError("field `minute_buckets` must be a list")
        numbers = {name: _require_uint(data, name) for name in _INT_FIELDS}
        return cls(
            created_at_rfc3339=created_at_rfc3339,
            owner_user_id=owner,
            minute_buckets=[PersistedMinuteBucket.from_dict(item) for item in buckets],
            **numbers,
        )


@dataclass
class PersistedTunnelMetricsDelta:
    """The change one recorded request makes to a tunnel's persisted metrics."""

    created_at_unix_sec: int
    created_at_rfc3339: str
    last_activity_unix_ms: int
    total_requests_delta: int = 0
    bytes_in_delta: int = 0
    bytes_out_delta: int = 0
    status_2xx_delta: int = 0
    status_4xx_delta: int = 0
    status_5xx_delta: int = 0
    total_latency_ms_delta: int = 0
    minute_start_unix_sec: int = 0
    minute_count_delta: int = 0
    minute_total_latency_ms_delta: int = 0
    pruned_minute_starts: list[int] = field(default_factory=list)