"""Prometheus metrics instrumentation for the retry service."""

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator, metrics

# Retry attempts by outcome (success, failure, skipped)
retry_attempts_total = Counter(
    "notification_retry_attempts_total",
    "Retry attempts made by the queue processor",
    ["outcome"],
)

# Notifications that ran out of attempts
retry_exhausted_total = Counter(
    "notification_retry_exhausted_total",
    "Notifications removed from the retry queue after exhausting their attempts",
)

retry_queue_size = Gauge(
    "notification_retry_queue_size",
    "Number of notifications waiting in the retry queue",
)

# 0 = closed, 1 = half-open, 2 = open
circuit_breaker_state = Gauge(
    "notification_retry_circuit_state",
    "State of the push gateway circuit breaker",
)

retry_cycle_duration = Histogram(
    "notification_retry_cycle_seconds",
    "Time spent draining the retry queue",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

CIRCUIT_STATE_VALUES = {
    "closed": 0,
    "half_open": 1,
    "open": 2,
}


def setup_metrics(app, registry: CollectorRegistry = REGISTRY) -> Instrumentator:
    """Set up Prometheus metrics instrumentation for FastAPI app."""
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/health", "/metrics"],
        env_var_name="METRICS_ENABLED",
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
        registry=registry,
    )

    instrumentator.add(
        metrics.default(
            metric_namespace="",
            metric_subsystem="",
            latency_highr_buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
            registry=registry,
        )
    )

    instrumentator.instrument(app)

    return instrumentator


def expose_metrics(app, instrumentator: Instrumentator) -> None:
    """Expose the /metrics endpoint."""
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)


# Helper functions for updating custom metrics


def record_retry_attempt(outcome: str) -> None:
    """Increment the retry attempt counter for an outcome."""
    retry_attempts_total.labels(outcome=outcome).inc()


def record_retry_exhausted() -> None:
    """Increment the exhausted retries counter."""
    retry_exhausted_total.inc()


def set_retry_queue_size(size: int) -> None:
    """Set the current retry queue size."""
    retry_queue_size.set(size)


def set_circuit_breaker_state(state: str) -> None:
    """Set the circuit breaker gauge from a state value."""
    circuit_breaker_state.set(CIRCUIT_STATE_VALUES.get(state, 0))


def observe_retry_cycle(duration: float) -> None:
    """Record how long a drain cycle took."""
    retry_cycle_duration.observe(duration)
