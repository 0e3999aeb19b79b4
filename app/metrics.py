"""
Prometheus counters for requests, webhooks, the notification sweep and chat lifecycle.

Values live in the default in-process registry and are scraped from /metrics.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route template and status",
    labelnames=["method", "path", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Time spent handling a request",
    labelnames=["method", "path"],
)

# logged | duplicate | skipped | invalid_signature | invalid_payload | error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Chat provider webhook deliveries by result",
    labelnames=["result"],
)

# sent | canceled
notification_sweep_notifications_total = Counter(
    "notification_sweep_notifications_total",
    "Pending notifications moved out of pending by the sweep",
    labelnames=["outcome"],
)

notification_sweep_duration_seconds = Histogram(
    "notification_sweep_duration_seconds",
    "Wall time of one notification sweep",
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120),
)

# sent | failed
notification_emails_total = Counter(
    "notification_emails_total",
    "Unread-message digest emails by delivery result",
    labelnames=["result"],
)

# action: create | close | expire; result: ok | noop | conflict | error
chat_lifecycle_total = Counter(
    "chat_lifecycle_total",
    "Appointment chat operations by action and result",
    labelnames=["action", "result"],
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    route = path.partition("?")[0]
    http_requests_total.labels(method=method, path=route, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=route).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_sweep_outcome(outcome: str, count: int = 1) -> None:
    """Count `count` notifications reaching `outcome`; zero is ignored."""
    if count > 0:
        notification_sweep_notifications_total.labels(outcome=outcome).inc(count)


def time_sweep():
    """Context manager observing the duration of one sweep run."""
    return notification_sweep_duration_seconds.time()


def record_email_outcome(result: str) -> None:
    notification_emails_total.labels(result=result).inc()


def record_chat_lifecycle(action: str, result: str) -> None:
    chat_lifecycle_total.labels(action=action, result=result).inc()


def get_metrics() -> bytes:
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
