"""Prometheus metrics for the Pinmeet backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"pinmeet_http_requests_total",
	"HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"pinmeet_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)

SOCKET_CLIENTS = Gauge(
	"pinmeet_socket_clients",
	"Connected Socket.IO clients",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"pinmeet_socket_events_total",
	"Socket.IO events received",
	["namespace", "event"],
)

SAGA_OUTCOMES = Counter(
	"pinmeet_saga_outcomes_total",
	"Event saga results by outcome",
	["saga", "outcome"],
)

SAGA_COMPENSATIONS = Counter(
	"pinmeet_saga_compensations_total",
	"Compensating steps executed after a saga failure",
	["saga", "step", "result"],
)

SWEEP_ITEMS = Counter(
	"pinmeet_sweep_items_total",
	"Events handled by lifecycle sweeps",
	["sweep", "result"],
)

FEED_CHANGES = Counter(
	"pinmeet_feed_changes_total",
	"Event change-feed records relayed to subscribers",
	["kind"],
)

CHAT_PROVIDER_ERRORS = Counter(
	"pinmeet_chat_provider_errors_total",
	"Messaging provider call failures",
	["op"],
)

RATE_LIMITED = Counter(
	"pinmeet_rate_limited_total",
	"Requests rejected by a rate limit",
	["kind"],
)

REDIS_UP = Gauge("pinmeet_redis_up", "Redis availability (1 = up)")
POSTGRES_UP = Gauge("pinmeet_postgres_up", "Postgres availability (1 = up)")
REDIS_LATENCY = Histogram("pinmeet_redis_ping_seconds", "Redis ping latency")
POSTGRES_LATENCY = Histogram("pinmeet_postgres_ping_seconds", "Postgres ping latency")

BACKGROUND_RUNS = Counter(
	"pinmeet_background_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"pinmeet_background_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def saga_outcome(saga: str, outcome: str) -> None:
	SAGA_OUTCOMES.labels(saga=saga, outcome=outcome).inc()


def saga_compensation(saga: str, step: str, *, ok: bool) -> None:
	SAGA_COMPENSATIONS.labels(saga=saga, step=step, result="ok" if ok else "failed").inc()


def sweep_item(sweep: str, result: str) -> None:
	SWEEP_ITEMS.labels(sweep=sweep, result=result).inc()


def feed_change(kind: str) -> None:
	FEED_CHANGES.labels(kind=kind).inc()


def chat_provider_error(op: str) -> None:
	CHAT_PROVIDER_ERRORS.labels(op=op).inc()


def rate_limited(kind: str) -> None:
	RATE_LIMITED.labels(kind=kind).inc()


def mark_redis(ok: bool, *, latency_seconds: float | None = None) -> None:
	REDIS_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		REDIS_LATENCY.observe(latency_seconds)


def mark_postgres(ok: bool, *, latency_seconds: float | None = None) -> None:
	POSTGRES_UP.set(1 if ok else 0)
	if latency_seconds is not None:
		POSTGRES_LATENCY.observe(latency_seconds)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
