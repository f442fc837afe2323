import pytest

from pikerelay.models import (
    PersistedMinuteBucket,
    PersistedTunnelMetrics,
    PersistedTunnelMetricsDelta,
)


def _metrics() -> PersistedTunnelMetrics:
    return PersistedTunnelMetrics(
        created_at_unix_sec=123,
        created_at_rfc3339="2026-03-21T10:00:00Z",
        last_activity_unix_ms=124_000,
        owner_user_id="user-a",
        total_requests=2,
        bytes_in=15,
        bytes_out=28,
        status_2xx=1,
        status_4xx=0,
        status_5xx=1,
        total_latency_ms=200,
        minute_buckets=[
            PersistedMinuteBucket(minute_start_unix_sec=120, count=2, total_latency_ms=200)
        ],
    )


def test_minute_bucket_round_trip():
    bucket = PersistedMinuteBucket(minute_start_unix_sec=120, count=3, total_latency_ms=75)
    data = bucket.to_dict()
    assert data["minute_start_unix_sec"] == 120
    assert data["count"] == 3
    assert PersistedMinuteBucket.from_dict(data) == bucket


def test_minute_bucket_rejects_missing_field():
    with pytest.raises(ValueError, match="count"):
        PersistedMinuteBucket.from_dict({"minute_start_unix_sec": 60, "total_latency_ms": 1})


def test_minute_bucket_rejects_negative_value():
    with pytest.raises(ValueError):
        PersistedMinuteBucket.from_dict(
            {"minute_start_unix_sec": 60, "count": -1, "total_latency_ms": 1}
        )


def test_tunnel_metrics_round_trip():
    metrics = _metrics()
    data = metrics.to_dict()
    assert data["minute_buckets"] == [
        {"minute_start_unix_sec": 120, "count": 2, "total_latency_ms": 200}
    ]
    assert data["owner_user_id"] == "user-a"
    assert PersistedTunnelMetrics.from_dict(data) == metrics


def test_tunnel_metrics_missing_owner_is_none():
    data = _metrics().to_dict()
    del data["owner_user_id"]
    restored = PersistedTunnelMetrics.from_dict(data)
    assert restored.owner_user_id is None
    assert restored.total_requests == 2


def test_tunnel_metrics_rejects_missing_counter():
    data = _metrics().to_dict()
    del data["bytes_out"]
    with pytest.raises(ValueError, match="bytes_out"):
        PersistedTunnelMetrics.from_dict(data)


def test_tunnel_metrics_rejects_bad_timestamp_type():
    data = _metrics().to_dict()
    data["created_at_rfc3339"] = 5
    with pytest.raises(ValueError):
        PersistedTunnelMetrics.from_dict(data)


def test_tunnel_metrics_defaults_start_empty():
    metrics = PersistedTunnelMetrics(
        created_at_unix_sec=1, created_at_rfc3339="2026-03-21T10:00:00Z", last_activity_unix_ms=2
    )
    assert metrics.total_requests == 0
    assert metrics.minute_buckets == []
    assert metrics.owner_user_id is None


def test_delta_pruned_list_is_not_shared():
    first = PersistedTunnelMetricsDelta(1, "2026-03-21T10:00:00Z", 2)
    second = PersistedTunnelMetricsDelta(1, "2026-03-21T10:00:00Z", 2)
    first.pruned_minute_starts.append(60)
    assert second.pruned_minute_starts == []
    assert first.pruned_minute_starts == [60]