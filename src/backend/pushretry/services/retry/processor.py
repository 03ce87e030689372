"""Queue processor: drains due retries through the circuit breaker."""

import asyncio
import time

import structlog

from pushretry.core import metrics
from pushretry.services.retry.circuit_breaker import CircuitBreaker
from pushretry.services.retry.retry_queue import RetryQueue
from pushretry.services.retry.types import (
    Clock,
    CycleResult,
    DeliveryFunc,
    DeliveryResult,
    FailureOutcome,
    RetryRecord,
    utc_now,
)

logger = structlog.get_logger()

ALREADY_RUNNING = "Processing already in progress"


class QueueProcessor:
    """
    Runs drain cycles over the retry queue.

    The periodic loop and on-demand triggers both go through
    :meth:`run_cycle`, and at most one cycle runs at a time. A cycle
    triggered while another is active is rejected rather than queued.
    """

    def __init__(
        self,
        queue: RetryQueue,
        breaker: CircuitBreaker,
        deliver: DeliveryFunc,
        clock: Clock = utc_now,
        interval: float = 5.0,
        delivery_timeout: float = 10.0,
        max_concurrency: int = 1,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.queue = queue
        self.breaker = breaker
        self.deliver = deliver
        self.interval = interval
        self.delivery_timeout = delivery_timeout
        self.max_concurrency = max_concurrency
        self._clock = clock

        self._cycle_lock = asyncio.Lock()
        self._current_cycle: asyncio.Task | None = None
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def is_running(self) -> bool:
        """Whether the periodic loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the periodic processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="notification_retry_processor")
        logger.info("Retry queue processor started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the loop and cancel any cycle that is still running."""
        self._running = False

        cycle = self._current_cycle
        if cycle is not None and cycle is not self._task and not cycle.done():
            cycle.cancel()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Retry queue processor stopped")

    async def _process_loop(self) -> None:
        """Main processing loop."""
        while self._running:
            try:
                await self.run_cycle()
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in automatic retry queue processing", error=str(e))
                await asyncio.sleep(self.interval)

    async def run_cycle(self) -> CycleResult:
        """Run one drain cycle, or report that one is already running."""
        if self._cycle_lock.locked():
            logger.info("Retry queue processing already in progress, skipping")
            return CycleResult(errors=[ALREADY_RUNNING], already_running=True)

        async with self._cycle_lock:
            self._current_cycle = asyncio.current_task()
            try:
                return await self._drain()
            finally:
                self._current_cycle = None

    async def _drain(self) -> CycleResult:
        started = time.perf_counter()
        result = CycleResult()

        due = self.queue.due_records(self._clock())
        if not due:
            result.duration = time.perf_counter() - started
            metrics.observe_retry_cycle(result.duration)
            metrics.set_retry_queue_size(len(self.queue))
            return result

        logger.info(
            "Processing notifications ready for retry",
            ready=len(due),
            total_in_queue=len(self.queue),
        )

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def handle(record: RetryRecord) -> None:
            async with semaphore:
                await self._process_record(record, result)

        outcomes = await asyncio.gather(
            *(handle(record) for record in due),
            return_exceptions=True,
        )
        for record, outcome in zip(due, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    "Error processing retry",
                    notification_id=record.notification_id,
                    error=str(outcome),
                )
                result.errors.append(f"Retry error for {record.notification_id}: {outcome}")

        result.duration = time.perf_counter() - started
        metrics.observe_retry_cycle(result.duration)
        metrics.set_retry_queue_size(len(self.queue))

        logger.info(
            "Retry queue processing complete",
            processed=result.processed,
            successful=result.successful,
            failed=result.failed,
            skipped=result.skipped,
            errors=len(result.errors),
            remaining_in_queue=len(self.queue),
            duration=round(result.duration, 4),
            circuit_state=self.breaker.status.value,
        )
        return result

    async def _process_record(self, record: RetryRecord, result: CycleResult) -> None:
        """Attempt one due record and commit its outcome."""
        notification_id = record.notification_id
        result.processed += 1

        if not self.breaker.allow_attempt():
            logger.info(
                "Circuit breaker open, skipping retry",
                notification_id=notification_id,
            )
            result.skipped += 1
            metrics.record_retry_attempt("skipped")
            return

        logger.info(
            "Retrying notification",
            notification_id=notification_id,
            attempt=record.attempt,
            max_attempts=record.max_attempts,
        )

        try:
            outcome = await asyncio.wait_for(
                self.deliver(record.notification),
                timeout=self.delivery_timeout,
            )
        except asyncio.TimeoutError:
            outcome = DeliveryResult(
                success=False,
                errors=[f"Delivery timed out after {self.delivery_timeout}s"],
            )
        except asyncio.CancelledError:
            # Nothing committed yet, the record keeps its pre-cycle state
            self.breaker.release_trial()
            raise
        except Exception as e:
            logger.error(
                "Error delivering notification retry",
                notification_id=notification_id,
                error=str(e),
            )
            outcome = DeliveryResult(success=False, errors=[str(e) or type(e).__name__])

        if outcome.success:
            self.breaker.record_success()
            self.queue.mark_succeeded(notification_id)
            result.successful += 1
            metrics.record_retry_attempt("success")
            logger.info(
                "Retry successful",
                notification_id=notification_id,
                attempt=record.attempt,
                messages_sent=outcome.messages_sent,
            )
            return

        self.breaker.record_failure()
        metrics.record_retry_attempt("failure")
        error = "; ".join(outcome.errors) or "Delivery failed"
        status, _ = self.queue.mark_failed(notification_id, error)
        result.failed += 1

        if status == FailureOutcome.EXHAUSTED:
            metrics.record_retry_exhausted()
            result.exhausted.append(notification_id)
            result.errors.append(
                f"Max attempts ({record.max_attempts}) exceeded for {notification_id}: {error}"
            )
        elif status == FailureOutcome.NOT_FOUND:
            logger.info(
                "Retry record cleared during processing",
                notification_id=notification_id,
            )
