"""Per-tunnel request metrics with minute buckets and optional persistence."""

from __future__ import annotations

import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from pikerelay.models import (
    PersistedMinuteBucket,
    PersistedTunnelMetrics,
    PersistedTunnelMetricsDelta,
)
from pikerelay.state_store import MAX_MINUTE_BUCKETS, U64_MAX

logger = logging.getLogger(__name__)

_RATE_WINDOW_SECS = 5 * 60


def _sat_add(left: int, right: int) -> int:
    return min(left + right, U64_MAX)


def _rfc3339(unix_sec: int) -> str | None:
    try:
        return datetime.fromtimestamp(unix_sec, timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def _rfc3339_or_now(unix_sec: int) -> str:
    text = _rfc3339(unix_sec)
    return text if text is not None else datetime.now(timezone.utc).isoformat()


def _average(total: int, count: int) -> float:
    return 0.0 if count == 0 else total / count


class MetricsRange(enum.Enum):
    """The span a metrics timeseries covers."""

    ONE_HOUR = "1h"
    TWENTY_FOUR_HOURS = "24h"
    SEVEN_DAYS = "7d"

    @classmethod
    def parse(cls, text: str) -> MetricsRange | None:
        """Return the range named by ``text`` ("1h", "24h" or "7d"), else None."""
        try:
            return cls(text)
        except ValueError:
            return None

    def range_seconds(self) -> int:
        return {
            MetricsRange.ONE_HOUR: 60 * 60,
            MetricsRange.TWENTY_FOUR_HOURS: 24 * 60 * 60,
            MetricsRange.SEVEN_DAYS: 7 * 24 * 60 * 60,
        }[self]

    def bucket_size_seconds(self) -> int:
        return 60 if self is MetricsRange.ONE_HOUR else 60 * 60


@dataclass(frozen=True)
class StatusBreakdown:
    """Request counts by status class."""

    two_xx: int = 0
    four_xx: int = 0
    five_xx: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"2xx": self.two_xx, "4xx": self.four_xx, "5xx": self.five_xx}


@dataclass(frozen=True)
class TunnelMetricsResponse:
    """Summary metrics of one tunnel."""

    total_requests: int
    requests_per_minute: float
    status_breakdown: StatusBreakdown
    avg_latency_ms: float
    bytes_in: int
    bytes_out: int
    uptime_seconds: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "requests_per_minute": self.requests_per_minute,
            "status_breakdown": self.status_breakdown.to_dict(),
            "avg_latency_ms": self.avg_latency_ms,
            "bytes_in": self.bytes_in,
            "bytes_out": self.bytes_out,
            "uptime_seconds": self.uptime_seconds,
        }


@dataclass(frozen=True)
class TimeseriesPoint:
    """Request count and mean latency of one time bucket."""

    timestamp: str
    count: int
    avg_latency_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "count": self.count,
            "avg_latency_ms": self.avg_latency_ms,
        }


@dataclass(frozen=True)
class TunnelMetricsTimeseriesResponse:
    """A tunnel's request timeseries over a range."""

    range: str
    bucket_size_seconds: int
    data: list[TimeseriesPoint] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "range": self.range,
            "bucket_size_seconds": self.bucket_size_seconds,
            "data": [point.to_dict() for point in self.data],
        }


@dataclass(frozen=True)
class TunnelMetricsSnapshot:
    """Creation and last-activity times of a tunnel."""

    created_at_unix_sec: int
    created_at_rfc3339: str
    last_activity_unix_ms: int
    last_activity_rfc3339: str | None


@dataclass(frozen=True)
class _TimeseriesDelta:
    minute_start_unix_sec: int
    count_delta: int
    total_latency_ms_delta: int
    pruned_minute_starts: list[int]


class MinuteTimeseries:
    """Contiguous per-minute buckets, at most ``MAX_MINUTE_BUCKETS`` of them."""

    def __init__(self, buckets: Iterable[PersistedMinuteBucket] = ()) -> None:
        ordered = sorted(
            (
                PersistedMinuteBucket(b.minute_start_unix_sec, b.count, b.total_latency_ms)
                for b in buckets
            ),
            key=lambda bucket: bucket.minute_start_unix_sec,
        )
        self.buckets: deque[PersistedMinuteBucket] = deque(ordered[-MAX_MINUTE_BUCKETS:])

    def record(self, now_unix_sec: int, latency_ms: int) -> _TimeseriesDelta:
        """Count one request in its minute, filling gaps with empty buckets."""
        minute_start = (now_unix_sec // 60) * 60
        last = self.buckets[-1] if self.buckets else None

        if last is not None and last.minute_start_unix_sec == minute_start:
            last.count = _sat_add(last.count, 1)
            last.total_latency_ms = _sat_add(last.total_latency_ms, latency_ms)
        else:
            if last is not None:
                self.buckets.extend(
                    PersistedMinuteBucket(start, 0, 0)
                    for start in range(last.minute_start_unix_sec + 60, minute_start, 60)
                )
            self.buckets.append(PersistedMinuteBucket(minute_start, 1, latency_ms))

        pruned = []
        while len(self.buckets) > MAX_MINUTE_BUCKETS:
            pruned.append(self.buckets.popleft().minute_start_unix_sec)

        return _TimeseriesDelta(minute_start, 1, latency_ms, pruned)


class _TunnelMetrics:
    def __init__(
        self,
        created_at_unix_sec: int,
        created_at_rfc3339: str,
        last_activity_unix_ms: int,
        owner_user_id: str | None = None,
        timeseries: MinuteTimeseries | None = None,
    ) -> None:
        self.created_at_unix_sec = created_at_unix_sec
        self.created_at_rfc3339 = created_at_rfc3339
        self.last_activity_unix_ms = last_activity_unix_ms
        self.owner_user_id = owner_user_id
        self.total_requests = 0
        self.bytes_in = 0
        self.bytes_out = 0
        self.status_2xx = 0
        self.status_4xx = 0
        self.status_5xx = 0
        self.total_latency_ms = 0
        self.timeseries = timeseries if timeseries is not None else MinuteTimeseries()

    @classmethod
    def fresh(cls, now_unix_ms: int, now_unix_sec: int) -> _TunnelMetrics:
        return cls(now_unix_sec, _rfc3339_or_now(now_unix_sec), now_unix_ms)

    @classmethod
    def from_persisted(cls, snapshot: PersistedTunnelMetrics) -> _TunnelMetrics:
        metrics = cls(
            snapshot.created_at_unix_sec,
            snapshot.created_at_rfc3339,
            snapshot.last_activity_unix_ms,
            snapshot.owner_user_id,
            MinuteTimeseries(snapshot.minute_buckets),
        )
        metrics.total_requests = snapshot.total_requests
        metrics.bytes_in = snapshot.bytes_in
        metrics.bytes_out = snapshot.bytes_out
        metrics.status_2xx = snapshot.status_2xx
        metrics.status_4xx = snapshot.status_4xx
        metrics.status_5xx = snapshot.status_5xx
        metrics.total_latency_ms = snapshot.total_latency_ms
        return metrics

    def remember_owner(self, owner_user_id: str) -> bool:
        if self.owner_user_id is None:
            self.owner_user_id = owner_user_id
            return True
        return False

    def record(
        self,
        status_code: int,
        latency_ms: int,
        bytes_in: int,
        bytes_out: int,
        now_unix_ms: int,
        now_unix_sec: int,
    ) -> PersistedTunnelMetricsDelta:
        self.last_activity_unix_ms = now_unix_ms
        self.total_requests = _sat_add(self.total_requests, 1)
        self.bytes_in = _sat_add(self.bytes_in, bytes_in)
        self.bytes_out = _sat_add(self.bytes_out, bytes_out)
        self.total_latency_ms = _sat_add(self.total_latency_ms, latency_ms)

        status_class = status_code // 100
        deltas = {2: (1, 0, 0), 4: (0, 1, 0), 5: (0, 0, 1)}.get(status_class, (0, 0, 0))
        self.status_2xx = _sat_add(self.status_2xx, deltas[0])
        self.status_4xx = _sat_add(self.status_4xx, deltas[1])
        self.status_5xx = _sat_add(self.status_5xx, deltas[2])

        ts_delta = self.timeseries.record(now_unix_sec, latency_ms)
        return PersistedTunnelMetricsDelta(
            created_at_unix_sec=self.created_at_unix_sec,
            created_at_rfc3339=self.created_at_rfc3339,
            last_activity_unix_ms=now_unix_ms,
            total_requests_delta=1,
            bytes_in_delta=bytes_in,
            bytes_out_delta=bytes_out,
            status_2xx_delta=deltas[0],
            status_4xx_delta=deltas[1],
            status_5xx_delta=deltas[2],
            total_latency_ms_delta=latency_ms,
            minute_start_unix_sec=ts_delta.minute_start_unix_sec,
            minute_count_delta=ts_delta.count_delta,
            minute_total_latency_ms_delta=ts_delta.total_latency_ms_delta,
            pruned_minute_starts=ts_delta.pruned_minute_starts,
        )

    def requests_per_minute(self, now_unix_sec: int) -> float:
        cutoff = max(now_unix_sec - _RATE_WINDOW_SECS, 0)
        recent = [b for b in self.timeseries.buckets if b.minute_start_unix_sec >= cutoff]
        if not recent:
            return 0.0
        total = min(sum(b.count for b in recent), U64_MAX)
        span_seconds = max(now_unix_sec - recent[0].minute_start_unix_sec, 0)
        minutes = min(max(span_seconds // 60 + 1, 1), 5)
        return total / minutes

    def timeseries_response(
        self, metrics_range: MetricsRange, now_unix_sec: int
    ) -> TunnelMetricsTimeseriesResponse:
        cutoff = max(now_unix_sec - metrics_range.range_seconds(), 0)
        bucket_size = metrics_range.bucket_size_seconds()
        raw = [b for b in self.timeseries.buckets if b.minute_start_unix_sec >= cutoff]

        if bucket_size == 60:
            data = [
                TimeseriesPoint(
                    timestamp=_rfc3339_or_now(b.minute_start_unix_sec),
                    count=b.count,
                    avg_latency_ms=_average(b.total_latency_ms, b.count),
                )
                for b in raw
            ]
        else:
            aggregated: dict[int, list[int]] = {}
            for b in raw:
                start = (b.minute_start_unix_sec // bucket_size) * bucket_size
                totals = aggregated.setdefault(start, [0, 0])
                totals[0] = _sat_add(totals[0], b.count)
                totals[1] = _sat_add(totals[1], b.total_latency_ms)
            data = [
                TimeseriesPoint(
                    timestamp=_rfc3339_or_now(start),
                    count=count,
                    avg_latency_ms=_average(latency, count),
                )
                for start, (count, latency) in sorted(aggregated.items())
            ]

        return TunnelMetricsTimeseriesResponse(metrics_range.value, bucket_size, data)


class TunnelMetricsStore:
    """Metrics of every tunnel, optionally mirrored into a state store."""

    def __init__(
        self,
        state_store: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tunnels: dict[str, _TunnelMetrics] = {}
        self._state_store = state_store
        self._clock = clock

    def _now(self) -> tuple[int, int]:
        now = self._clock()
        return max(int(now * 1000), 0), max(int(now), 0)

    async def record(
        self,
        tunnel_id: str,
        status_code: int,
        latency_ms: int,
        bytes_in: int,
        bytes_out: int,
    ) -> None:
        """Count one proxied request and persist the change if a store is set."""
        now_unix_ms, now_unix_sec = self._now()
        metrics = await self._get_or_create(tunnel_id, now_unix_ms, now_unix_sec)
        delta = metrics.record(
            status_code, latency_ms, bytes_in, bytes_out, now_unix_ms, now_unix_sec
        )
        if self._state_store is not None:
            try:
                await self._state_store.record_tunnel_metrics(tunnel_id, delta)
            except Exception as exc:  # noqa: BLE001 - persistence is best effort
                logger.warning(
                    "failed to persist tunnel metrics delta tunnel_id=%s: %s", tunnel_id, exc
                )

    async def remember_tunnel(self, tunnel_id: str, owner_user_id: str) -> None:
        """Record the tunnel's owner the first time it is seen."""
        now_unix_ms, now_unix_sec = self._now()
        metrics = await self._get_or_create(tunnel_id, now_unix_ms, now_unix_sec)
        if not metrics.remember_owner(owner_user_id) or self._state_store is None:
            return
        try:
            await self._state_store.remember_tunnel_owner(
                tunnel_id,
                owner_user_id,
                metrics.created_at_unix_sec,
                metrics.created_at_rfc3339,
                metrics.last_activity_unix_ms,
            )
        except Exception as exc:  # noqa: BLE001 - persistence is best effort
            logger.warning("failed to persist tunnel owner tunnel_id=%s: %s", tunnel_id, exc)

    async def owner_user_id(self, tunnel_id: str) -> str | None:
        metrics = await self._get_or_load(tunnel_id)
        return None if metrics is None else metrics.owner_user_id

    async def metrics_response(
        self, tunnel_id: str, uptime_seconds: int
    ) -> TunnelMetricsResponse:
        metrics = await self._get_or_load(tunnel_id)
        if metrics is None:
            return TunnelMetricsResponse(
                total_requests=0,
                requests_per_minute=0.0,
                status_breakdown=StatusBreakdown(),
                avg_latency_ms=0.0,
                bytes_in=0,
                bytes_out=0,
                uptime_seconds=uptime_seconds,
            )
        _, now_unix_sec = self._now()
        return TunnelMetricsResponse(
            total_requests=metrics.total_requests,
            requests_per_minute=metrics.requests_per_minute(now_unix_sec),
            status_breakdown=StatusBreakdown(
                metrics.status_2xx, metrics.status_4xx, metrics.status_5xx
            ),
            avg_latency_ms=_average(metrics.total_latency_ms, metrics.total_requests),
            bytes_in=metrics.bytes_in,
            bytes_out=metrics.bytes_out,
            uptime_seconds=uptime_seconds,
        )

    async def timeseries_response(
        self, tunnel_id: str, metrics_range: MetricsRange
    ) -> TunnelMetricsTimeseriesResponse:
        metrics = await self._get_or_load(tunnel_id)
        if metrics is None:
            return TunnelMetricsTimeseriesResponse(
                metrics_range.value, metrics_range.bucket_size_seconds(), []
            )
        _, now_unix_sec = self._now()
        return metrics.timeseries_response(metrics_range, now_unix_sec)

    async def snapshot_times(self, tunnel_id: str) -> TunnelMetricsSnapshot | None:
        metrics = await self._get_or_load(tunnel_id)
        if metrics is None:
            return None
        last_ms = metrics.last_activity_unix_ms
        if last_ms == 0:
            last_rfc3339 = None
        else:
            last_rfc3339 = _rfc3339(last_ms // 1000)
            if last_rfc3339 is None:
                return None
        return TunnelMetricsSnapshot(
            created_at_unix_sec=metrics.created_at_unix_sec,
            created_at_rfc3339=metrics.created_at_rfc3339,
            last_activity_unix_ms=last_ms,
            last_activity_rfc3339=last_rfc3339,
        )

    async def _get_or_load(self, tunnel_id: str) -> _TunnelMetrics | None:
        existing = self._tunnels.get(tunnel_id)
        if existing is not None:
            return existing
        loaded = await self._load(tunnel_id)
        if loaded is None:
            return None
        return self._tunnels.setdefault(tunnel_id, loaded)

    async def _get_or_create(
        self, tunnel_id: str, now_unix_ms: int, now_unix_sec: int
    ) -> _TunnelMetrics:
        existing = await self._get_or_load(tunnel_id)
        if existing is not None:
            return existing
        return self._tunnels.setdefault(
            tunnel_id, _TunnelMetrics.fresh(now_unix_ms, now_unix_sec)
        )

    async def _load(self, tunnel_id: str) -> _TunnelMetrics | None:
        if self._state_store is None:
            return None
        try:
            snapshot = await self._state_store.get_tunnel_metrics(tunnel_id)
        except Exception as exc:  # noqa: BLE001 - fall back to fresh metrics
            logger.warning(
                "failed to load persisted tunnel metrics tunnel_id=%s: %s", tunnel_id, exc
            )
            return None
        return None if snapshot is None else _TunnelMetrics.from_persisted(snapshot)