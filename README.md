# pikerelay

Building blocks for the relay side of a tunnelling reverse proxy. Public
traffic arrives at the relay. The relay picks the tunnel that serves it and
forwards the bytes to the connected client. It also keeps rate-limit state,
abuse logs, request logs and per-tunnel metrics.

pikerelay is a library and installs no commands.

## Installation

```
pip install pikerelay
```

Python 3.10 or newer is required. The `redis` client library is installed as
a dependency. `RedisStateStore` needs a running Redis server;
`InMemoryStateStore` works without one.

## Modules

- `pikerelay.router`: `VhostRouter` maps a `Host` header to a `TunnelEntry`.
  The port, trailing dots and ASCII letter case are ignored. If the full host
  name has no entry, the router falls back to its first label. It is safe to
  use from several threads. `unregister_if_owner` removes an entry only when
  it belongs to the given connection, and `unregister_by_connection_id`
  removes every entry of a connection and returns their keys. The helpers
  `normalize_host` and `extract_subdomain_key` expose the matching rules.
- `pikerelay.transport`: a frame format for several streams over one
  connection. A frame is a big-endian u64 stream id, a u32 length and the
  payload (`encode_multiplexed_frame`, `decode_multiplexed_frame`). Malformed
  frames raise `FrameError`. `QuicTransport.create(buffer)` returns a
  queue-backed transport and the `QuicTransportHandle` that drains what it
  sends and feeds what it receives. Putting `None` on the inbound queue makes
  `recv` raise `TransportClosed`.
- `pikerelay.ws_proxy`: helpers for WebSocket upgrades.
  `compute_accept_key` returns the `Sec-WebSocket-Accept` value.
  `build_raw_upgrade_request` rebuilds the raw HTTP/1.1 request and drops
  header values that are not visible ASCII. `relay_raw` copies bytes both
  ways between an asyncio stream pair and two queues until either side ends.
- `pikerelay.tcp`: `PortPool` hands out ports 10000–65000, either a
  preferred port or a random one. `TcpTunnelManager` binds one asyncio
  listener per tunnel. A listener made with `create_listener` closes every
  connection it accepts. A listener made with
  `create_listener_with_dispatcher` puts each accepted `(reader, writer)` pair
  on the given queue. When no port can be bound, `PortExhausted` is raised.
  `QuicConnectionIo` is the abstract stream interface that
  `send_with_backpressure` and `copy_with_backpressure` use to move data
  between a TCP connection and a stream.
- `pikerelay.models`: the persisted metric records (`PersistedMinuteBucket`,
  `PersistedTunnelMetrics`, `PersistedTunnelMetricsDelta`) with
  `to_dict`/`from_dict` where they are stored.
- `pikerelay.state_store`: the `StateStore` interface and its record types
  `AbuseLogEntry` and `RequestLogEntry`. `InMemoryStateStore` keeps counters,
  gauges, bandwidth, bans (with optional expiry), the newest 10,000 abuse
  logs, capped per-tunnel request logs and persisted tunnel metrics. Counter
  windows are not enforced in memory. `FallbackStateStore` calls a primary
  store and, when it raises, logs a warning and uses an in-memory store.
- `pikerelay.redis_store`: `RedisStateStore` keeps the same state in Redis.
  Counter windows become key expiries there. It takes a Redis URL or a
  ready-made `redis.asyncio` client. Failures raise `RedisStoreError`.
- `pikerelay.tunnel_metrics`: `TunnelMetricsStore` counts requests, bytes,
  status classes and latency per tunnel. It keeps per-minute buckets for up
  to seven days. It returns a summary (`metrics_response`), a time series
  for `MetricsRange` "1h", "24h" or "7d" (`timeseries_response`), the
  tunnel's owner and its creation and last-activity times. With a state
  store it persists every change and reloads tunnels it has not seen yet.

## Examples

Routing a request:

```python
from pikerelay.router import TunnelEntry, VhostRouter

router = VhostRouter()
entry = TunnelEntry(tunnel_id="t-1", connection_id="c-1", stream_tx=None)
router.register("demo", entry)
assert router.route("Demo.example.com:8080") is entry
```

Multiplexed frames:

```python
from pikerelay.transport import decode_multiplexed_frame, encode_multiplexed_frame

frame = encode_multiplexed_frame(8, b"hello")
assert decode_multiplexed_frame(frame) == (8, b"hello")
```

Tunnel metrics that outlive a restart:

```python
import asyncio
from pikerelay.state_store import InMemoryStateStore
from pikerelay.tunnel_metrics import MetricsRange, TunnelMetricsStore

async def demo():
    shared = InMemoryStateStore()
    store = TunnelMetricsStore(state_store=shared)
    await store.remember_tunnel("tunnel-1", "user-1")
    await store.record("tunnel-1", 200, 50, 10, 20)

    restarted = TunnelMetricsStore(state_store=shared)
    response = await restarted.metrics_response("tunnel-1", 42)
    print(response.total_requests)
    series = await restarted.timeseries_response("tunnel-1", MetricsRange.parse("1h"))
    print(series.data)

asyncio.run(demo())
```

## What it does not do

pikerelay has no command, no HTTP server, no client login or control-message
handling and no usage reporting. It does not implement QUIC: `QuicTransport`
is only a pair of queues, and `QuicConnectionIo` must be implemented by the
caller over a real connection. To run a complete relay, you have to combine
these parts with your own server.

## Running the tests

```
pip install "pikerelay[test]"
pytest
```