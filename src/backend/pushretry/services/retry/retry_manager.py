"""Notification retry manager.

Owns the retry configuration, the circuit breaker, the retry queue and the
queue processor for one delivery channel. One instance is built at startup
and handed to whoever needs it; there is no module-level singleton.
"""

import asyncio
import random
import threading
from collections.abc import Mapping
from typing import Any

import structlog

from pushretry.core import metrics
from pushretry.services.retry.circuit_breaker import CircuitBreaker, CircuitState
from pushretry.services.retry.errors import RetryExhaustedError
from pushretry.services.retry.processor import QueueProcessor
from pushretry.services.retry.retry_queue import RetryQueue
from pushretry.services.retry.store import InMemoryRetryStore, RetryStore
from pushretry.services.retry.types import (
    Clock,
    CycleResult,
    DeliveryFunc,
    FailedNotification,
    RetryConfig,
    RetryRecord,
    utc_now,
)

logger = structlog.get_logger()


class NotificationRetryManager:
    """Schedules, drains and reports on notification retries."""

    def __init__(
        self,
        deliver: DeliveryFunc,
        config: RetryConfig | None = None,
        store: RetryStore | None = None,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
        processing_interval: float = 5.0,
        delivery_timeout: float = 10.0,
        max_concurrency: int = 1,
        autostart: bool = True,
    ):
        self._config = config or RetryConfig()
        self._config_lock = threading.Lock()
        self._clock = clock
        self.store = store or InMemoryRetryStore()
        self.autostart = autostart

        self.breaker = CircuitBreaker(
            threshold=self._config.circuit_breaker_threshold,
            reset_timeout=self._config.circuit_breaker_reset_timeout,
            clock=clock,
            on_state_change=self._on_breaker_state_change,
        )
        self.queue = RetryQueue(config_provider=self.get_config, clock=clock, rng=rng)
        self.processor = QueueProcessor(
            queue=self.queue,
            breaker=self.breaker,
            deliver=deliver,
            clock=clock,
            interval=processing_interval,
            delivery_timeout=delivery_timeout,
            max_concurrency=max_concurrency,
        )
        self._pending_enqueues: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        deliver: DeliveryFunc,
        settings,
        store: RetryStore | None = None,
    ) -> "NotificationRetryManager":
        return cls(
            deliver=deliver,
            config=RetryConfig.from_settings(settings),
            store=store,
            processing_interval=settings.retry_processing_interval,
            delivery_timeout=settings.retry_delivery_timeout,
            max_concurrency=settings.retry_max_concurrency,
            autostart=settings.retry_autostart,
        )

    # ===========================
    # Lifecycle
    # ===========================

    async def init(self) -> None:
        """Load persisted configuration and queue, then start processing."""
        persisted_config = await self.store.load_config()
        if persisted_config is not None:
            self._apply_config(persisted_config)

        records = await self.store.load_records()
        restored = self.queue.restore(records)
        metrics.set_retry_queue_size(restored)
        metrics.set_circuit_breaker_state(self.breaker.status.value)

        logger.info(
            "Notification retry manager initialized",
            restored_retries=restored,
            max_attempts=self._config.max_attempts,
            jitter_type=self._config.jitter_type.value,
        )

        if self.autostart:
            await self.processor.start()

    async def shutdown(self, persist: bool = True) -> None:
        """Stop processing and optionally persist what is left in the queue."""
        await self.processor.stop()

        if self._pending_enqueues:
            await asyncio.gather(*self._pending_enqueues, return_exceptions=True)

        if persist:
            records = self.queue.snapshot()
            await self.store.save_records(records)
            await self.store.save_config(self.get_config())
            logger.info("Persisted retry queue", remaining_retries=len(records))

        logger.info("Notification retry manager shut down")

    # ===========================
    # Scheduling
    # ===========================

    async def schedule_retry(self, notification: FailedNotification) -> RetryRecord:
        """Queue a failed notification for retry.

        Raises:
            RetryExhaustedError: the notification already used all its attempts
        """
        try:
            record = self.queue.schedule_retry(notification)
        except RetryExhaustedError:
            metrics.record_retry_exhausted()
            raise
        finally:
            metrics.set_retry_queue_size(len(self.queue))
        return record

    def schedule_retry_nowait(self, notification: FailedNotification) -> asyncio.Task | None:
        """Queue a retry without waiting for it, from a delivery-failure handler.

        Never raises: enqueue failures are logged.
        """
        coro = self.schedule_retry(notification)
        try:
            task = asyncio.create_task(coro)
        except RuntimeError as e:
            coro.close()
            logger.error(
                "Failed to schedule notification retry",
                notification_id=notification.notification_id,
                error=str(e),
            )
            return None

        self._pending_enqueues.add(task)
        task.add_done_callback(self._on_enqueue_done)
        return task

    def _on_enqueue_done(self, task: asyncio.Task) -> None:
        self._pending_enqueues.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, RetryExhaustedError):
            logger.warning(
                "Notification retry not scheduled, attempts exhausted",
                notification_id=exc.notification_id,
                error=exc.record.last_error,
            )
        elif exc is not None:
            logger.error("Failed to schedule notification retry", error=str(exc))

    # ===========================
    # Processing
    # ===========================

    async def process_queue(self) -> CycleResult:
        """Run one drain cycle now."""
        return await self.processor.run_cycle()

    # ===========================
    # Queries and admin commands
    # ===========================

    def get_status(self, notification_id: str) -> dict[str, Any] | None:
        record = self.queue.get_status(notification_id)
        if record is None:
            return None
        status = record.to_dict()
        status["circuit_breaker_state"] = self.breaker.status.value
        status["total_delay"] = (record.next_retry_at - record.created_at).total_seconds()
        return status

    def get_statistics(self) -> dict[str, Any]:
        stats = self.queue.get_statistics(self._clock()).to_dict()
        breaker_state = self.breaker.state
        stats["circuit_breaker_state"] = breaker_state.status.value
        stats["circuit_breaker_failures"] = breaker_state.consecutive_failures
        return stats

    def force_retry(self, notification_id: str) -> RetryRecord | None:
        """Make a queued notification due on the next cycle."""
        record = self.queue.force_due(notification_id)
        if record is not None:
            logger.info("Forced notification retry", notification_id=notification_id)
        return record

    def clear(self, notification_id: str) -> int:
        cleared = self.queue.clear(notification_id)
        metrics.set_retry_queue_size(len(self.queue))
        return cleared

    def clear_all(self) -> int:
        cleared = self.queue.clear_all()
        metrics.set_retry_queue_size(0)
        return cleared

    # ===========================
    # Configuration
    # ===========================

    def get_config(self) -> RetryConfig:
        return self._config

    async def update_config(self, changes: Mapping[str, Any]) -> RetryConfig:
        """Apply a partial configuration update.

        The merged configuration is validated as a whole and swapped in at
        once. Retries that are already scheduled keep their next retry time.

        Raises:
            RetryConfigError: the update was rejected and nothing changed
        """
        with self._config_lock:
            old_config = self._config
            new_config = old_config.merge(changes)
            self._apply_config(new_config)

        logger.info(
            "Retry configuration updated",
            old=old_config.model_dump(mode="json"),
            new=new_config.model_dump(mode="json"),
            queue_size=len(self.queue),
        )

        try:
            await self.store.save_config(new_config)
        except Exception as e:
            logger.error("Failed to persist retry configuration", error=str(e))

        return new_config

    def _apply_config(self, config: RetryConfig) -> None:
        self._config = config
        self.breaker.reconfigure(
            threshold=config.circuit_breaker_threshold,
            reset_timeout=config.circuit_breaker_reset_timeout,
        )

    @staticmethod
    def _on_breaker_state_change(old_state: CircuitState, new_state: CircuitState) -> None:
        metrics.set_circuit_breaker_state(new_state.value)
