"""Prometheus metrics collection."""
from prometheus_client import Counter, Histogram


# Request counter with labels: outcome (success, upstream_error, rejected, internal_error)
request_count = Counter(
    "credit_gateway_requests_total",
    "Total number of proxied requests",
    ["outcome"],
)

# Rejections before upstream with labels: reason
rejection_count = Counter(
    "credit_gateway_rejections_total",
    "Requests rejected by the admission pipeline",
    ["reason"],
)

# Billed cost with labels: model
cost_total = Counter(
    "credit_gateway_cost_usd_total",
    "Total cost billed in USD",
    ["model"],
)

# Debits that could not be applied after a successful upstream call
debit_failure_count = Counter(
    "credit_gateway_debit_failures_total",
    "Credit debits that failed after upstream success",
    ["reason"],
)

usage_write_failure_count = Counter(
    "credit_gateway_usage_write_failures_total",
    "Usage records that could not be written",
)

# Upstream latency histogram with labels: model
latency_histogram = Histogram(
    "credit_gateway_upstream_latency_seconds",
    "Upstream request latency in seconds",
    ["model"],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)


def record_request(outcome: str):
    """Record a request outcome."""
    request_count.labels(outcome=outcome).inc()


def record_rejection(reason: str):
    """Record a rejection before the upstream call."""
    rejection_count.labels(reason=reason).inc()


def record_cost(model: str, cost_usd: float):
    """Record cost."""
    cost_total.labels(model=model).inc(cost_usd)


def record_debit_failure(reason: str):
    """Record a failed settlement; alert on any increase."""
    debit_failure_count.labels(reason=reason).inc()


def record_usage_write_failure():
    usage_write_failure_count.inc()


def record_latency(model: str, latency_seconds: float):
    """Record upstream latency."""
    latency_histogram.labels(model=model).observe(latency_seconds)
