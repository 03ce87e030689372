"""Retry subsystem for notification delivery.

Backoff calculator, circuit breaker, retry queue and queue processor, tied
together by NotificationRetryManager.
"""

from pushretry.services.retry.backoff import base_delay, compute_delay
from pushretry.services.retry.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerState,
    CircuitState,
)
from pushretry.services.retry.errors import (
    RetryConfigError,
    RetryError,
    RetryExhaustedError,
)
from pushretry.services.retry.processor import QueueProcessor
from pushretry.services.retry.retry_manager import NotificationRetryManager
from pushretry.services.retry.retry_queue import RetryQueue
from pushretry.services.retry.store import InMemoryRetryStore, RetryStore, SqlRetryStore
from pushretry.services.retry.types import (
    CycleResult,
    DeliveryFunc,
    DeliveryResult,
    FailedNotification,
    FailureOutcome,
    JitterType,
    QueueStatistics,
    RetryConfig,
    RetryRecord,
)

__all__ = [
    "base_delay",
    "compute_delay",
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitState",
    "RetryConfigError",
    "RetryError",
    "RetryExhaustedError",
    "QueueProcessor",
    "NotificationRetryManager",
    "RetryQueue",
    "InMemoryRetryStore",
    "RetryStore",
    "SqlRetryStore",
    "CycleResult",
    "DeliveryFunc",
    "DeliveryResult",
    "FailedNotification",
    "FailureOutcome",
    "JitterType",
    "QueueStatistics",
    "RetryConfig",
    "RetryRecord",
]
