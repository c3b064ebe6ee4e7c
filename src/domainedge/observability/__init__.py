from domainedge.observability.logging import configure_logging
from domainedge.observability.metrics import (
    DOMAIN_CHECKS,
    PROXY_REQUEST_DURATION,
    PROXY_REQUESTS,
    UPSTREAM_ERRORS,
    bucket_status,
    generate_metrics,
    get_content_type,
)

__all__ = [
    # Metrics
    "PROXY_REQUESTS",
    "PROXY_REQUEST_DURATION",
    "UPSTREAM_ERRORS",
    "DOMAIN_CHECKS",
    "bucket_status",
    "generate_metrics",
    "get_content_type",
    # Logging
    "configure_logging",
]
