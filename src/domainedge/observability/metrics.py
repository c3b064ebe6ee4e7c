from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

PROXY_REQUESTS = Counter(
    "domainedge_proxy_requests_total",
    "Total proxied HTTP requests",
    ["method", "status"],
)

PROXY_REQUEST_DURATION = Histogram(
    "domainedge_proxy_request_duration_seconds",
    "Proxied request latency",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# kind: upstream_timeout / upstream_error / internal
UPSTREAM_ERRORS = Counter(
    "domainedge_upstream_errors_total",
    "Failed attempts to reach the origin",
    ["kind"],
)

# outcome: verified / failed / rate_limited / skipped
DOMAIN_CHECKS = Counter(
    "domainedge_domain_checks_total",
    "Domain verification checks",
    ["outcome"],
)


def bucket_status(status: int) -> str:
    """Bucket HTTP status to prevent cardinality explosion."""
    if 100 <= status < 200:
        return "1xx"
    if 200 <= status < 300:
        return "2xx"
    if 300 <= status < 400:
        return "3xx"
    if 400 <= status < 500:
        return "4xx"
    if 500 <= status < 600:
        return "5xx"
    return "other"


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
