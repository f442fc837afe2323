import pytest

from pikerelay.state_store import MAX_MINUTE_BUCKETS, InMemoryStateStore
from pikerelay.tunnel_metrics import (
    MetricsRange,
    MinuteTimeseries,
    StatusBreakdown,
    TunnelMetricsStore,
)

BASE = 1_700_000_000  # 2023-11-14T22:13:20+00:00


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenStore:
    async def record_tunnel_metrics(self, tunnel_id, delta):
        raise RuntimeError("down")

    async def remember_tunnel_owner(self, *args):
        raise RuntimeError("down")

    async def get_tunnel_metrics(self, tunnel_id):
        raise RuntimeError("down")


@pytest.mark.asyncio
async def test_metrics_survive_store_restart():
    shared = InMemoryStateStore()
    store = TunnelMetricsStore(shared)

    await store.remember_tunnel("tunnel-1", "user-1")
    await store.record("tunnel-1", 200, 50, 10, 20)
    await store.record("tunnel-1", 500, 150, 5, 8)

    first = await store.snapshot_times("tunnel-1")
    assert first is not None

    restarted = TunnelMetricsStore(shared)
    response = await restarted.metrics_response("tunnel-1", 42)

    assert await restarted.owner_user_id("tunnel-1") == "user-1"
    assert response.total_requests == 2
    assert response.status_breakdown.two_xx == 1
    assert response.status_breakdown.five_xx == 1
    assert response.bytes_in == 15
    assert response.bytes_out == 28
    assert response.avg_latency_ms == 100.0
    assert response.uptime_seconds == 42

    restored = await restarted.snapshot_times("tunnel-1")
    assert restored is not None
    assert restored.created_at_unix_sec == first.created_at_unix_sec
    assert restored.created_at_rfc3339 == first.created_at_rfc3339
    assert restored.last_activity_unix_ms >= first.last_activity_unix_ms

    timeseries = await restarted.timeseries_response("tunnel-1", MetricsRange.ONE_HOUR)
    assert sum(point.count for point in timeseries.data) == 2


def test_metrics_range_parse_and_sizes():
    assert MetricsRange.parse("1h") is MetricsRange.ONE_HOUR
    assert MetricsRange.parse("24h") is MetricsRange.TWENTY_FOUR_HOURS
    assert MetricsRange.parse("7d") is MetricsRange.SEVEN_DAYS
    assert MetricsRange.parse("2h") is None
    assert MetricsRange.ONE_HOUR.range_seconds() == 3600
    assert MetricsRange.SEVEN_DAYS.range_seconds() == 604800
    assert MetricsRange.ONE_HOUR.bucket_size_seconds() == 60
    assert MetricsRange.TWENTY_FOUR_HOURS.bucket_size_seconds() == 3600


def test_minute_timeseries_fills_gaps():
    ts = MinuteTimeseries()
    ts.record(120, 10)
    ts.record(130, 20)
    delta = ts.record(300, 5)
    assert delta.minute_start_unix_sec == 300
    assert delta.pruned_minute_starts == []
    assert [(b.minute_start_unix_sec, b.count, b.total_latency_ms) for b in ts.buckets] == [
        (120, 2, 30),
        (180, 0, 0),
        (240, 0, 0),
        (300, 1, 5),
    ]


def test_minute_timeseries_prunes_oldest():
    ts = MinuteTimeseries()
    ts.record(0, 1)
    delta = ts.record(60 * MAX_MINUTE_BUCKETS, 1)
    assert delta.pruned_minute_starts == [0]
    assert len(ts.buckets) == MAX_MINUTE_BUCKETS
    assert ts.buckets[0].minute_start_unix_sec == 60


@pytest.mark.asyncio
async def test_unknown_tunnel_has_empty_metrics():
    store = TunnelMetricsStore()
    response = await store.metrics_response("missing", 7)
    assert response.total_requests == 0
    assert response.status_breakdown == StatusBreakdown(0, 0, 0)
    assert response.uptime_seconds == 7
    series = await store.timeseries_response("missing", MetricsRange.SEVEN_DAYS)
    assert series.range == "7d"
    assert series.bucket_size_seconds == 3600
    assert series.data == []
    assert await store.snapshot_times("missing") is None
    assert await store.owner_user_id("missing") is None


@pytest.mark.asyncio
async def test_requests_per_minute_over_span():
    clock = FakeClock(BASE)
    store = TunnelMetricsStore(clock=clock)
    for _ in range(3):
        await store.record("t", 200, 10, 0, 0)
    assert (await store.metrics_response("t", 0)).requests_per_minute == 3.0

    clock.now = BASE + 120
    await store.record("t", 404, 10, 0, 0)
    response = await store.metrics_response("t", 0)
    assert response.requests_per_minute == pytest.approx(4 / 3)
    assert response.status_breakdown.four_xx == 1


@pytest.mark.asyncio
async def test_other_status_codes_only_count_in_total():
    store = TunnelMetricsStore(clock=FakeClock(BASE))
    await store.record("t", 302, 4, 1, 2)
    response = await store.metrics_response("t", 0)
    assert response.total_requests == 1
    assert response.status_breakdown.to_dict() == {"2xx": 0, "4xx": 0, "5xx": 0}
    assert response.to_dict()["avg_latency_ms"] == 4.0


@pytest.mark.asyncio
async def test_timeseries_hourly_aggregation_and_minute_view():
    clock = FakeClock(BASE)
    store = TunnelMetricsStore(clock=clock)
    await store.record("t", 200, 10, 0, 0)
    clock.now = BASE + 3600
    await store.record("t", 200, 30, 0, 0)

    hourly = await store.timeseries_response("t", MetricsRange.TWENTY_FOUR_HOURS)
    assert [(p.timestamp, p.count, p.avg_latency_ms) for p in hourly.data] == [
        ("2023-11-14T22:00:00+00:00", 1, 10.0),
        ("2023-11-14T23:00:00+00:00", 1, 30.0),
    ]

    minutes = await store.timeseries_response("t", MetricsRange.ONE_HOUR)
    assert minutes.bucket_size_seconds == 60
    assert len(minutes.data) == 60
    assert sum(p.count for p in minutes.data) == 1
    assert minutes.data[-1].timestamp == "2023-11-14T23:13:00+00:00"
    assert minutes.data[-1].avg_latency_ms == 30.0
    assert minutes.data[0].avg_latency_ms == 0.0


@pytest.mark.asyncio
async def test_snapshot_times_and_owner_kept_first():
    store = TunnelMetricsStore(clock=FakeClock(BASE + 0.5))
    await store.remember_tunnel("t", "alice")
    await store.remember_tunnel("t", "bob")
    snapshot = await store.snapshot_times("t")
    assert snapshot.created_at_unix_sec == BASE
    assert snapshot.created_at_rfc3339 == "2023-11-14T22:13:20+00:00"
    assert snapshot.last_activity_unix_ms == BASE * 1000 + 500
    assert snapshot.last_activity_rfc3339 == "2023-11-14T22:13:20+00:00"
    assert await store.owner_user_id("t") == "alice"


@pytest.mark.asyncio
async def test_state_store_failures_are_tolerated():
    store = TunnelMetricsStore(BrokenStore(), clock=FakeClock(BASE))
    await store.remember_tunnel("t", "alice")
    await store.record("t", 200, 8, 3, 4)
    response = await store.metrics_response("t", 1)
    assert response.total_requests == 1
    assert response.bytes_in == 3
    assert response.bytes_out == 4
    assert await store.owner_user_id("t") == "alice"


@pytest.mark.asyncio
async def test_record_persists_delta_to_state_store():
    shared = InMemoryStateStore()
    store = TunnelMetricsStore(shared, clock=FakeClock(BASE))
    await store.record("t", 201, 12, 100, 200)
    persisted = await shared.get_tunnel_metrics("t")
    assert persisted.total_requests == 1
    assert persisted.status_2xx == 1
    assert persisted.bytes_in == 100
    assert persisted.created_at_unix_sec == BASE
    assert [(b.minute_start_unix_sec, b.count) for b in persisted.minute_buckets] == [
        (1_699_999_980, 1)
    ]