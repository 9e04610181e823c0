"""
Prometheus metric definitions.
Exposed over HTTP by the /metrics endpoint.
"""
from prometheus_client import Counter, Enum, Gauge, Histogram


# Counters
stream_events_received_total = Counter(
    "lineops_stream_events_received_total",
    "Total stream messages received",
    ["event_type"]
)

stream_events_dropped_total = Counter(
    "lineops_stream_events_dropped_total",
    "Stream messages dropped before reaching a handler",
    ["reason"]
)

stream_reconnects_total = Counter(
    "lineops_stream_reconnects_total",
    "Total scheduled stream reconnect attempts"
)

cache_events_total = Counter(
    "lineops_cache_events_total",
    "Status events offered to the cache",
    ["outcome"]
)

# Histograms
api_request_duration_seconds = Histogram(
    "lineops_api_request_duration_seconds",
    "API request duration in seconds",
    ["method", "endpoint", "status_code"]
)

# Gauges
stream_state = Enum(
    "lineops_stream_state",
    "Current stream connection state",
    states=["disconnected", "connecting", "connected", "reconnecting"]
)

stream_backoff_seconds = Gauge(
    "lineops_stream_backoff_seconds",
    "Delay before the next stream reconnect attempt"
)

cached_lines_total = Gauge(
    "lineops_cached_lines_total",
    "Number of lines held in the cache"
)
