import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.http_requests = None
            self.http_5xx = None
            self.http_latency = None
            self.bookings = None
            self.payments = None
            self.refunds = None
            self.chat_messages = None
            self.push_notifications = None
            self.circuit_state = None
            return

        self.http_requests = Counter(
            "http_requests_total",
            "HTTP requests by method, route and status class.",
            ["method", "path", "status_class"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.bookings = Counter(
            "bookings_total",
            "Booking lifecycle events.",
            ["action"],
            registry=self.registry,
        )
        self.payments = Counter(
            "payments_total",
            "Payment attempts by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.refunds = Counter(
            "refunds_total",
            "Refund attempts by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.chat_messages = Counter(
            "chat_messages_total",
            "Chat messages sent by message type.",
            ["type"],
            registry=self.registry,
        )
        self.push_notifications = Counter(
            "push_notifications_total",
            "Push notification outcomes.",
            ["status"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_http_request(self, method: str, path: str, status_code: int) -> None:
        if not self.enabled or self.http_requests is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        self.http_requests.labels(method=method, path=path, status_class=status_class).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def record_booking(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.bookings is None:
            return
        if count <= 0:
            return
        self.bookings.labels(action=action).inc(count)

    def record_payment(self, outcome: str) -> None:
        if not self.enabled or self.payments is None:
            return
        self.payments.labels(outcome=outcome or "unknown").inc()

    def record_refund(self, outcome: str) -> None:
        if not self.enabled or self.refunds is None:
            return
        self.refunds.labels(outcome=outcome or "unknown").inc()

    def record_chat_message(self, message_type: str) -> None:
        if not self.enabled or self.chat_messages is None:
            return
        self.chat_messages.labels(type=message_type or "unknown").inc()

    def record_push(self, status: str) -> None:
        if not self.enabled or self.push_notifications is None:
            return
        self.push_notifications.labels(status=status or "unknown").inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
