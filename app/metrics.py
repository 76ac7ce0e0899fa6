from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)

ORDER_ACTIVATIONS = Counter(
    "hotspot_order_activations_total",
    "Payment confirmations processed by outcome",
    ["provider", "outcome"],
)
WEBHOOK_EVENTS = Counter(
    "hotspot_webhook_events_total",
    "Inbound payment webhooks",
    ["provider", "result"],
)
GATE_DENIALS = Counter(
    "hotspot_voucher_gate_denials_total",
    "Voucher validation denials",
    ["code"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def record_activation(provider: str, outcome: str) -> None:
    ORDER_ACTIVATIONS.labels(provider=provider, outcome=outcome).inc()


def record_webhook(provider: str, result: str) -> None:
    WEBHOOK_EVENTS.labels(provider=provider, result=result).inc()


def record_gate_denial(code: str) -> None:
    GATE_DENIALS.labels(code=code).inc()
