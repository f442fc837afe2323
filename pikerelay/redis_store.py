"""A state store kept in Redis."""

from __future__ import annotations

import contextlib
import json
import re
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from pikerelay.models import (
    PersistedMinuteBucket,
    PersistedTunnelMetrics,
    PersistedTunnelMetricsDelta,
)
from pikerelay.state_store import (
    MAX_MINUTE_BUCKETS,
    U64_MAX,
    AbuseLogEntry,
    RequestLogEntry,
    StateStore,
)

MAX_ABUSE_LOGS_INDEX = 9_999
ABUSE_LOGS_KEY = "abuse:logs"
I64_MAX = 2**63 - 1

FIELD_CREATED_AT_UNIX_SEC = "created_at_unix_sec"
FIELD_CREATED_AT_RFC3339 = "created_at_rfc3339"
FIELD_LAST_ACTIVITY_UNIX_MS = "last_activity_unix_ms"
FIELD_OWNER_USER_ID = "owner_user_id"
FIELD_TOTAL_REQUESTS = "total_requests"
FIELD_BYTES_IN = "bytes_in"
FIELD_BYTES_OUT = "bytes_out"
FIELD_STATUS_2XX = "status_2xx"
FIELD_STATUS_4XX = "status_4xx"
FIELD_STATUS_5XX = "status_5xx"
FIELD_TOTAL_LATENCY_MS = "total_latency_ms"

_DECREMENT_GAUGE_SCRIPT = """\
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current <= 0 then
  redis.call('SET', KEYS[1], 0)
  return 0
end
current = current - 1
redis.call('SET', KEYS[1], current)
return current"""

_U64_TEXT = re.compile(r"\+?[0-9]+")


class RedisStoreError(RuntimeError):
    """A Redis operation failed or returned data that could not be read."""


@contextlib.contextmanager
def _context(message: str) -> Iterator[None]:
    try:
        yield
    except (RedisError, OSError, ValueError, TypeError) as exc:
        raise RedisStoreError(f"{message}: {exc}") from exc


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode()
    return str(value)


def _parse_u64(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value if 0 <= value <= U64_MAX else None
    text = _text(value)
    if not _U64_TEXT.fullmatch(text):
        return None
    number = int(text)
    return number if number <= U64_MAX else None


def _require_u64(value: Any) -> int:
    number = _parse_u64(value)
    if number is None:
        raise ValueError(f"response {value!r} is not an unsigned integer")
    return number


def _optional_u64(value: Any) -> int | None:
    return None if value is None else _require_u64(value)


def _i64(value: int) -> int:
    return min(value, I64_MAX)


def _decode_map(raw: Mapping[Any, Any] | None) -> dict[str, str]:
    return {_text(key): _text(value) for key, value in (raw or {}).items()}


def _map_u64(values: Mapping[str, str], key: str) -> int | None:
    return _parse_u64(values.get(key))


class RedisStateStore(StateStore):
    """A state store whose data lives in Redis and is shared between relays."""

    def __init__(self, redis_url: str = "redis://127.0.0.1:6379/", client: Any = None) -> None:
        if client is None:
            with _context("failed to create Redis client"):
                client = aioredis.from_url(redis_url, decode_responses=True)
        self._client = client

    @staticmethod
    def _counter_key(key: str) -> str:
        return f"counter:{key}"

    @staticmethod
    def _bandwidth_key(key: str) -> str:
        return f"bandwidth:{key}"

    @staticmethod
    def _gauge_key(key: str) -> str:
        return f"gauge:{key}"

    @staticmethod
    def _ban_key(user_id: str) -> str:
        return f"user:ban:{user_id}"

    @staticmethod
    def _request_log_key(tunnel_id: str) -> str:
        return f"request_logs:{tunnel_id}"

    @staticmethod
    def _summary_key(tunnel_id: str) -> str:
        return f"tunnel_metrics:{tunnel_id}:summary"

    @staticmethod
    def _counts_key(tunnel_id: str) -> str:
        return f"tunnel_metrics:{tunnel_id}:counts"

    @staticmethod
    def _latency_key(tunnel_id: str) -> str:
        return f"tunnel_metrics:{tunnel_id}:latency"

    async def ping(self) -> None:
        """Check that Redis answers; raise if it does not."""
        with _context("failed to ping Redis"):
            response = await self._client.ping()
        if response is True or _text(response) == "PONG":
            return
        raise RedisStoreError(f"unexpected Redis ping response: {response!r}")

    async def get_counter(self, key: str) -> int | None:
        with _context("failed to get counter from Redis"):
            return _optional_u64(await self._client.get(self._counter_key(key)))

    async def increment_counter(self, key: str, window_secs: int) -> int:
        return await self.increment_counter_by(key, 1, window_secs)

    async def increment_counter_by(self, key: str, amount: int, window_secs: int) -> int:
        redis_key = self._counter_key(key)
        with _context("failed to increment counter in Redis"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incrby(redis_key, amount)
                pipe.expire(redis_key, window_secs)
                value, _ = await pipe.execute()
            return _require_u64(value)

    async def get_bandwidth(self, key: str) -> int:
        with _context("failed to get bandwidth from Redis"):
            value = _optional_u64(await self._client.get(self._bandwidth_key(key)))
        return 0 if value is None else value

    async def add_bandwidth(self, key: str, nbytes: int) -> int:
        with _context("failed to increment bandwidth in Redis"):
            return _require_u64(await self._client.incrby(self._bandwidth_key(key), nbytes))

    async def increment_gauge(self, key: str) -> int:
        with _context("failed to increment gauge in Redis"):
            return _require_u64(await self._client.incrby(self._gauge_key(key), 1))

    async def decrement_gauge(self, key: str) -> int:
        with _context("failed to decrement gauge in Redis"):
            value = await self._client.eval(_DECREMENT_GAUGE_SCRIPT, 1, self._gauge_key(key))
            return _require_u64(value)

    async def get_gauge(self, key: str) -> int:
        with _context("failed to get gauge from Redis"):
            value = _optional_u64(await self._client.get(self._gauge_key(key)))
        return 0 if value is None else value

    async def is_banned(self, user_id: str) -> bool:
        with _context("failed to check ban in Redis"):
            return int(await self._client.exists(self._ban_key(user_id))) > 0

    async def ban_user(self, user_id: str, reason: str, duration_secs: int) -> None:
        with _context("failed to write ban to Redis"):
            await self._client.set(self._ban_key(user_id), reason, ex=duration_secs)

    async def unban_user(self, user_id: str) -> None:
        with _context("failed to remove ban from Redis"):
            await self._client.delete(self._ban_key(user_id))

    async def log_abuse(self, entry: AbuseLogEntry) -> None:
        serialized = json.dumps(entry.to_dict())
        with _context("failed to write abuse log to Redis"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.lpush(ABUSE_LOGS_KEY, serialized)
                pipe.ltrim(ABUSE_LOGS_KEY, 0, MAX_ABUSE_LOGS_INDEX)
                await pipe.execute()

    async def get_abuse_logs(self, limit: int) -> list[AbuseLogEntry]:
        end = -1 if limit == 0 else limit - 1
        with _context("failed to fetch abuse logs from Redis"):
            raw = await self._client.lrange(ABUSE_LOGS_KEY, 0, end)
        entries = []
        for idx, value in enumerate(raw):
            try:
                entries.append(AbuseLogEntry.from_dict(json.loads(_text(value))))
            except (ValueError, TypeError) as exc:
                raise RedisStoreError(
                    f"failed to deserialize abuse log at index {idx}: {exc}"
                ) from exc
        return entries

    async def append_request_log(self, entry: RequestLogEntry, max_entries: int) -> None:
        serialized = json.dumps(entry.to_dict())
        key = self._request_log_key(entry.tunnel_id)
        trim_end = max(max_entries - 1, 0)
        with _context("failed to persist request log entry to Redis"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.lpush(key, serialized)
                pipe.ltrim(key, 0, trim_end)
                await pipe.execute()

    async def get_request_logs(
        self, tunnel_id: str, limit: int, offset: int
    ) -> tuple[list[RequestLogEntry], int]:
        key = self._request_log_key(tunnel_id)
        if limit == 0:
            with _context("failed to count request logs in Redis"):
                return [], int(await self._client.llen(key))

        with _context("failed to fetch request logs from Redis"):
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.llen(key)
                pipe.lrange(key, offset, offset + limit - 1)
                total, raw = await pipe.execute()
            total = int(total)

        entries = []
        for idx, value in enumerate(raw):
            try:
                entries.append(RequestLogEntry.from_dict(json.loads(_text(value))))
            except (ValueError, TypeError) as exc:
                raise RedisStoreError(
                    f"failed to deserialize request log entry at index {idx}: {exc}"
                ) from exc
        return entries, total

    async def remember_tunnel_owner(
        self,
        tunnel_id: str,
        owner_user_id: str,
        created_at_unix_sec: int,
        created_at_rfc3339: str,
        last_activity_unix_ms: int,
    ) -> None:
        summary_key = self._summary_key(tunnel_id)
        with _context("failed to persist tunnel owner to Redis"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hsetnx(summary_key, FIELD_CREATED_AT_UNIX_SEC, created_at_unix_sec)
                pipe.hsetnx(summary_key, FIELD_CREATED_AT_RFC3339, created_at_rfc3339)
                pipe.hsetnx(summary_key, FIELD_LAST_ACTIVITY_UNIX_MS, last_activity_unix_ms)
                pipe.hsetnx(summary_key, FIELD_OWNER_USER_ID, owner_user_id)
                await pipe.execute()

    async def record_tunnel_metrics(
        self, tunnel_id: str, delta: PersistedTunnelMetricsDelta
    ) -> None:
        summary_key = self._summary_key(tunnel_id)
        counts_key = self._counts_key(tunnel_id)
        latency_key = self._latency_key(tunnel_id)
        minute_field = str(delta.minute_start_unix_sec)
        increments = (
            (FIELD_TOTAL_REQUESTS, delta.total_requests_delta),
            (FIELD_BYTES_IN, delta.bytes_in_delta),
            (FIELD_BYTES_OUT, delta.bytes_out_delta),
            (FIELD_STATUS_2XX, delta.status_2xx_delta),
            (FIELD_STATUS_4XX, delta.status_4xx_delta),
            (FIELD_STATUS_5XX, delta.status_5xx_delta),
            (FIELD_TOTAL_LATENCY_MS, delta.total_latency_ms_delta),
        )
        with _context("failed to persist tunnel metrics delta to Redis"):
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hsetnx(summary_key, FIELD_CREATED_AT_UNIX_SEC, delta.created_at_unix_sec)
                pipe.hsetnx(summary_key, FIELD_CREATED_AT_RFC3339, delta.created_at_rfc3339)
                pipe.hset(summary_key, FIELD_LAST_ACTIVITY_UNIX_MS, delta.last_activity_unix_ms)
                for field_name, amount in increments:
                    pipe.hincrby(summary_key, field_name, _i64(amount))
                pipe.hincrby(counts_key, minute_field, _i64(delta.minute_count_delta))
                pipe.hincrby(
                    latency_key, minute_field, _i64(delta.minute_total_latency_ms_delta)
                )
                if delta.pruned_minute_starts:
                    pruned = [str(start) for start in delta.pruned_minute_starts]
                    pipe.hdel(counts_key, *pruned)
                    pipe.hdel(latency_key, *pruned)
                await pipe.execute()

    async def get_tunnel_metrics(self, tunnel_id: str) -> PersistedTunnelMetrics | None:
        with _context("failed to load tunnel metrics from Redis"):
            async with self._client.pipeline(transaction=False) as pipe:
                pipe.hgetall(self._summary_key(tunnel_id))
                pipe.hgetall(self._counts_key(tunnel_id))
                pipe.hgetall(self._latency_key(tunnel_id))
                raw_summary, raw_counts, raw_latencies = await pipe.execute()
            summary = _decode_map(raw_summary)
            counts = _decode_map(raw_counts)
            latencies = _decode_map(raw_latencies)

        if not summary and not counts and not latencies:
            return None

        created_at_rfc3339 = summary.get(FIELD_CREATED_AT_RFC3339)
        if created_at_rfc3339 is None:
            created_at_rfc3339 = datetime.now(timezone.utc).isoformat()

        buckets = []
        for minute_start, count_text in counts.items():
            start = _parse_u64(minute_start)
            count = _parse_u64(count_text)
            if start is None or count is None:
                continue
            latency = _parse_u64(latencies.get(minute_start))
            buckets.append(
                PersistedMinuteBucket(
                    minute_start_unix_sec=start,
                    count=count,
                    total_latency_ms=0 if latency is None else latency,
                )
            )
        buckets.sort(key=lambda bucket: bucket.minute_start_unix_sec)
        buckets = buckets[-MAX_MINUTE_BUCKETS:]

        def number(key: str) -> int:
            value = _map_u64(summary, key)
            return 0 if value is None else value

        owner = summary.get(FIELD_OWNER_USER_ID) or None
        return PersistedTunnelMetrics(
            created_at_unix_sec=number(FIELD_CREATED_AT_UNIX_SEC),
            created_at_rfc3339=created_at_rfc3339,
            last_activity_unix_ms=number(FIELD_LAST_ACTIVITY_UNIX_MS),
            owner_user_id=owner,
            total_requests=number(FIELD_TOTAL_REQUESTS),
            bytes_in=number(FIELD_BYTES_IN),
            bytes_out=number(FIELD_BYTES_OUT),
            status_2xx=number(FIELD_STATUS_2XX),
            status_4xx=number(FIELD_STATUS_4XX),
            status_5xx=number(FIELD_STATUS_5XX),
            total_latency_ms=number(FIELD_TOTAL_LATENCY_MS),
            minute_buckets=buckets,
        )