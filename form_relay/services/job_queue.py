"""
Durable job queue with retries, backoff and stalled-job recovery.
Drives a QueueBroker and publishes job lifecycle events to subscribers.
"""

import asyncio
import inspect
import logging
import os
import socket
import time
from typing import Awaitable, Callable, List, Optional, Set, Union

from ..domain.ports import EnqueueError, QueueBroker, QueueBrokerError
from ..domain.schema import (
    Delivery,
    Job,
    JobEvent,
    JobEventType,
    JobHandle,
    JobOptions,
    JobPayload,
)


logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[None]]
JobListener = Callable[[JobEvent], Union[None, Awaitable[None]]]

STALLED_LIMIT_REASON = "job stalled more than allowable limit"
BATCH_SIZE = 100


def default_consumer_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _now_ms() -> int:
    return int(time.time() * 1000)


class JobQueue:
    """
    At-least-once work queue.

    Processing runs as three background loops on the current event loop:
    - claim: leases ready jobs and runs the handler, bounded by concurrency
    - promote: moves retries whose backoff elapsed back to ready
    - stalled: takes over jobs whose lease expired (crashed or hung consumer)

    A handler that raises consumes one attempt. Jobs that run out of attempts,
    or stall more than max_stalled_count times, are dead-lettered.
    """

    def __init__(
        self,
        broker: QueueBroker,
        name: str = "form-submissions",
        default_options: Optional[JobOptions] = None,
        lock_duration_ms: int = 30000,
        stalled_interval_ms: int = 30000,
        max_stalled_count: int = 1,
        poll_interval_ms: int = 1000,
        consumer_id: Optional[str] = None,
        error_pause_seconds: float = 5.0,
        on_fatal: Optional[Callable[[BaseException], None]] = None
    ):
        """
        Initialize job queue.

        Args:
            broker: Storage and lease backend
            name: Queue name used in events and logs
            default_options: Options for jobs enqueued without explicit ones
            lock_duration_ms: Lease length; renewed every half of it while a job runs
            stalled_interval_ms: Period of the stalled-job check
            max_stalled_count: Stalls tolerated before a job is failed
            poll_interval_ms: Claim block time and delayed-job promotion period
            consumer_id: Consumer name, defaults to hostname-pid
            error_pause_seconds: Pause after a broker error in a background loop
            on_fatal: Called when a background loop dies unexpectedly
        """
        self.broker = broker
        self.name = name
        self.default_options = default_options or JobOptions()
        self.lock_duration_ms = lock_duration_ms
        self.stalled_interval_ms = stalled_interval_ms
        self.max_stalled_count = max_stalled_count
        self.poll_interval_ms = poll_interval_ms
        self.consumer_id = consumer_id or default_consumer_id()
        self.error_pause_seconds = error_pause_seconds

        self._on_fatal = on_fatal
        self._listeners: List[JobListener] = []
        self._handler: Optional[JobHandler] = None
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._loops: List[asyncio.Task] = []
        self._active: Set[asyncio.Task] = set()
        self._closing = False
        self._closed = False

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """
        Register a lifecycle event listener (sync or async).

        Returns:
            Function that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def enqueue(self, payload: JobPayload, options: Optional[JobOptions] = None) -> JobHandle:
        """
        Persist a new job.

        Raises:
            EnqueueError: If the queue is closing or the broker is unreachable
        """
        if self._closing:
            raise EnqueueError(f"Queue {self.name} is closing")

        options = options or self.default_options
        job = Job(
            payload=payload,
            max_attempts=options.attempts,
            backoff=options.backoff,
            remove_on_complete=options.remove_on_complete
        )

        try:
            entry_id = await self.broker.push(job)
        except QueueBrokerError as e:
            raise EnqueueError(f"Failed to enqueue job: {e}") from e

        logger.info(
            f"Job {job.id} enqueued",
            extra={
                "component": "job_queue",
                "queue": self.name,
                "job_id": job.id,
                "entry_id": entry_id
            }
        )
        return JobHandle(job_id=job.id, entry_id=entry_id)

    def process(self, handler: JobHandler, concurrency: int = 1) -> None:
        """
        Start consuming jobs with `handler`. Must be called from a running loop.
        """
        if self._handler is not None:
            raise RuntimeError(f"Queue {self.name} is already processing")
        if self._closing:
            raise RuntimeError(f"Queue {self.name} is closed")

        self._handler = handler
        self._semaphore = asyncio.Semaphore(concurrency)

        for loop_name, loop in (
            ("claim", self._claim_loop),
            ("promote", self._promote_loop),
            ("stalled", self._stalled_loop),
        ):
            task = asyncio.create_task(loop(), name=f"{self.name}-{loop_name}")
            task.add_done_callback(self._on_loop_done)
            self._loops.append(task)

        logger.info(
            f"Processing queue {self.name}",
            extra={
                "component": "job_queue",
                "queue": self.name,
                "consumer_id": self.consumer_id,
                "concurrency": concurrency
            }
        )

    @property
    def is_processing(self) -> bool:
        return self._handler is not None and not self._closing

    @property
    def in_flight(self) -> int:
        return len(self._active)

    async def check_stalled(self) -> int:
        """
        Reclaim jobs whose lease expired and run them again here.

        Returns:
            Number of stalled jobs found
        """
        if self._handler is None:
            raise RuntimeError("check_stalled requires an active processor")

        deliveries = await self.broker.reclaim_stalled(
            self.consumer_id,
            self.lock_duration_ms,
            BATCH_SIZE
        )

        for delivery in deliveries:
            job = delivery.job
            if job.stalled_count > self.max_stalled_count:
                job.failed_reason = STALLED_LIMIT_REASON
                await self.broker.dead_letter(delivery)
                await self._emit(self._event(JobEventType.FAILED, job, error=STALLED_LIMIT_REASON))
                continue

            await self._emit(self._event(JobEventType.STALLED, job))
            await self._semaphore.acquire()
            self._spawn(delivery)

        return len(deliveries)

    async def close(self, timeout: float = 30.0) -> None:
        """
        Stop claiming and wait up to `timeout` seconds for in-flight jobs.

        Jobs still running after the timeout are cancelled; their entries stay
        pending and are picked up again once the lease expires.
        """
        if self._closed:
            return
        self._closing = True

        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()

        if self._active:
            logger.info(
                f"Waiting for {len(self._active)} in-flight jobs",
                extra={"component": "job_queue", "queue": self.name, "timeout_seconds": timeout}
            )
            _, pending = await asyncio.wait(set(self._active), timeout=timeout)
            if pending:
                logger.warning(
                    f"Drain timeout reached, cancelling {len(pending)} jobs",
                    extra={"component": "job_queue", "queue": self.name}
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self._closed = True
        logger.info(f"Queue {self.name} closed", extra={"component": "job_queue", "queue": self.name})

    async def _claim_loop(self) -> None:
        while not self._closing:
            await self._semaphore.acquire()
            try:
                deliveries = await self.broker.claim(self.consumer_id, 1, self.poll_interval_ms)
            except QueueBrokerError as e:
                self._semaphore.release()
                await self._emit_error("claim", e)
                await asyncio.sleep(self.error_pause_seconds)
                continue
            except asyncio.CancelledError:
                self._semaphore.release()
                raise

            if not deliveries:
                self._semaphore.release()
                continue

            self._spawn(deliveries[0])

    async def _promote_loop(self) -> None:
        interval = self.poll_interval_ms / 1000
        while not self._closing:
            try:
                promoted = await self.broker.promote_due(_now_ms(), BATCH_SIZE)
            except QueueBrokerError as e:
                await self._emit_error("promote", e)
                await asyncio.sleep(self.error_pause_seconds)
                continue

            if promoted:
                logger.debug(
                    f"Promoted {promoted} delayed jobs",
                    extra={"component": "job_queue", "queue": self.name, "promoted": promoted}
                )
            await asyncio.sleep(interval)

    async def _stalled_loop(self) -> None:
        # First pass runs at startup to recover jobs left by a previous process
        interval = self.stalled_interval_ms / 1000
        while not self._closing:
            try:
                await self.check_stalled()
            except QueueBrokerError as e:
                await self._emit_error("stalled check", e)
            await asyncio.sleep(interval)

    def _spawn(self, delivery: Delivery) -> None:
        task = asyncio.create_task(self._run(delivery), name=f"{self.name}-job-{delivery.job.id}")
        self._active.add(task)
        task.add_done_callback(self._on_job_done)

    def _on_job_done(self, task: asyncio.Task) -> None:
        self._active.discard(task)
        self._semaphore.release()
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Job task crashed: {task.exception()}",
                exc_info=task.exception(),
                extra={"component": "job_queue", "queue": self.name}
            )

    def _on_loop_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._closing:
            return

        error = task.exception() or RuntimeError(f"{task.get_name()} loop exited")
        logger.critical(
            f"Queue loop {task.get_name()} stopped: {error}",
            exc_info=error,
            extra={"component": "job_queue", "queue": self.name}
        )
        if self._on_fatal:
            self._on_fatal(error)

    async def _run(self, delivery: Delivery) -> None:
        job = delivery.job
        logger.debug(
            f"Running job {job.id}, attempt {job.attempt}/{job.max_attempts}",
            extra={"component": "job_queue", "queue": self.name, "job_id": job.id}
        )

        renewal = asyncio.create_task(self._renew_lease(delivery))
        error: Optional[Exception] = None
        try:
            await self._handler(job)
        except Exception as e:
            error = e
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)

        try:
            if error is None:
                await self._handle_success(delivery)
            else:
                await self._handle_failure(delivery, error)
        except QueueBrokerError as e:
            # Entry stays pending and is reclaimed after its lease expires
            await self._emit_error(f"finalize job {job.id}", e)

    async def _renew_lease(self, delivery: Delivery) -> None:
        interval = self.lock_duration_ms / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                owned = await self.broker.extend_lease(self.consumer_id, delivery)
            except QueueBrokerError as e:
                logger.warning(
                    f"Lease renewal failed for job {delivery.job.id}: {e}",
                    extra={"component": "job_queue", "queue": self.name, "job_id": delivery.job.id}
                )
                continue

            if not owned:
                logger.warning(
                    f"Lease lost for job {delivery.job.id}",
                    extra={"component": "job_queue", "queue": self.name, "job_id": delivery.job.id}
                )
                return

    async def _handle_success(self, delivery: Delivery) -> None:
        await self.broker.complete(delivery)
        job = delivery.job
        await self._emit(self._event(JobEventType.COMPLETED, job, attempts_made=job.attempt))

    async def _handle_failure(self, delivery: Delivery, error: Exception) -> None:
        job = delivery.job
        job.attempts_made += 1
        job.failed_reason = str(error) or error.__class__.__name__

        if job.exhausted:
            await self.broker.dead_letter(delivery)
            await self._emit(self._event(JobEventType.FAILED, job, error=job.failed_reason))
            return

        delay_ms = job.backoff.delay_for(job.attempts_made)
        await self.broker.retry_later(delivery, _now_ms() + delay_ms)
        await self._emit(
            self._event(JobEventType.RETRY_SCHEDULED, job, error=job.failed_reason, delay_ms=delay_ms)
        )

    def _event(self, event_type: JobEventType, job: Job, **fields) -> JobEvent:
        values = {
            "type": event_type,
            "queue": self.name,
            "job_id": job.id,
            "attempts_made": job.attempts_made,
            "max_attempts": job.max_attempts,
            "submitter_name": job.payload.name,
        }
        values.update(fields)
        return JobEvent(**values)

    async def _emit_error(self, operation: str, error: Exception) -> None:
        await self._emit(JobEvent(type=JobEventType.ERROR, queue=self.name, error=f"{operation}: {error}"))

    async def _emit(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Queue event listener failed: {e}",
                    extra={"component": "job_queue", "queue": self.name, "event": event.type.value}
                )
