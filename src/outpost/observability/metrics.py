from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

ACTIVE_CONNECTIONS = Gauge(
    "outpost_active_connections",
    "Currently connected agents",
    ["transport"],
)

CONNECTIONS = Counter(
    "outpost_connections_total",
    "Total agent registrations",
    ["transport"],
)

EVICTIONS = Counter(
    "outpost_evictions_total",
    "Connections removed, by reason",
    ["reason"],
)

FORWARDED_REQUESTS = Counter(
    "outpost_forwarded_requests_total",
    "Public requests forwarded to agents",
    ["method", "status"],
)

# outcome: resolved/timed_out/failed/already_handled
RESOLUTIONS = Counter(
    "outpost_resolutions_total",
    "Pending request resolutions",
    ["outcome"],
)

REQUEST_DURATION = Histogram(
    "outpost_request_duration_seconds",
    "Round trip latency through an agent",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def bucket_status(status: int) -> str:
    """Bucket HTTP status to prevent cardinality explosion."""
    if 100 <= status < 600:
        return f"{status // 100}xx"
    return "other"


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
