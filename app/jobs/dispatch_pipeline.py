"""
Priority dispatch pipeline for notification jobs.

One DispatchPipeline is built per process (see app.container) and handed to
the services that enqueue work. It owns a fixed set of named queues; every
queue has its own pool of worker tasks, each a single consumer loop.

Within a queue jobs are served by priority (Emergency first), escalated jobs
ahead of their new peers, then insertion order. Failed attempts are retried
with exponential backoff until max_attempts; exhausted jobs are recorded and,
unless best-effort, escalated to the registered exhaustion sinks.
"""

import asyncio
import heapq
import itertools
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from app.infrastructure.observability.logging import get_logger, log_job_outcome
from app.models.domain.blood_domain import Urgency
from app.models.domain.job_domain import (
    ChannelType,
    JobHandle,
    JobPriority,
    JobStatus,
    NotificationJob,
)
from app.services.errors import ExhaustionError, TransientChannelError, ValidationError
from app.services.notification_channel import NotificationChannel

logger = get_logger(__name__)

Clock = Callable[[], datetime]
ExhaustionSink = Callable[[NotificationJob], Awaitable[None]]

DEFAULT_QUEUES = {"urgent": 5, "matching": 3, "notification": 10}
DEFAULT_MAX_ATTEMPTS = {
    Urgency.EMERGENCY: 5,
    Urgency.HIGH: 3,
    Urgency.MEDIUM: 3,
    Urgency.LOW: 2,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"  # removed before any worker claimed it
    RETRIES_CLEARED = "retries_cleared"  # in flight; will not be retried
    NOT_FOUND = "not_found"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """delay = base * 2**attempt, capped; attempt is the zero-based index of the failed attempt."""

    base_seconds: float = 1.0
    cap_seconds: float = 300.0

    def delay_for(self, attempts_made: int) -> float:
        exponent = max(attempts_made - 1, 0)
        return min(self.base_seconds * (2**exponent), self.cap_seconds)


class JobQueue:
    """
    A named priority queue with delayed scheduling.

    All structure changes happen under one asyncio.Condition so a claim and
    an escalation or cancellation never interleave.
    """

    def __init__(self, name: str, concurrency: int, clock: Clock = _utcnow):
        if concurrency < 1:
            raise ValueError(f"Queue '{name}' needs at least one worker")
        self.name = name
        self.concurrency = concurrency
        self._clock = clock
        self._condition = asyncio.Condition()
        self._sequence = itertools.count(1)
        self._ready: list[tuple[tuple, str]] = []
        self._delayed: list[tuple[datetime, int, str]] = []
        self._pending: dict[str, NotificationJob] = {}
        self._in_flight: dict[str, NotificationJob] = {}

    # ----------------------------------------------------------------- helpers

    def _push(self, job: NotificationJob) -> None:
        now = self._clock()
        if job.scheduled_for and job.scheduled_for > now:
            job.status = JobStatus.SCHEDULED
            heapq.heappush(self._delayed, (job.scheduled_for, job.sequence, job.id))
        else:
            job.status = JobStatus.QUEUED
            heapq.heappush(self._ready, (job.sort_key(), job.id))
        self._pending[job.id] = job

    def _release_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._pending.get(job_id)
            if job is None or job.status is not JobStatus.SCHEDULED:
                continue
            job.status = JobStatus.QUEUED
            heapq.heappush(self._ready, (job.sort_key(), job.id))

    def _rebuild(self) -> None:
        self._ready = [
            (job.sort_key(), job.id)
            for job in self._pending.values()
            if job.status is JobStatus.QUEUED
        ]
        heapq.heapify(self._ready)
        self._delayed = [
            (job.scheduled_for, job.sequence, job.id)
            for job in self._pending.values()
            if job.status is JobStatus.SCHEDULED
        ]
        heapq.heapify(self._delayed)

    def _seconds_until_next_due(self) -> float | None:
        if not self._delayed:
            return None
        remaining = (self._delayed[0][0] - self._clock()).total_seconds()
        return max(remaining, 0.0)

    # -------------------------------------------------------------- operations

    async def put(self, job: NotificationJob) -> None:
        async with self._condition:
            job.sequence = next(self._sequence)
            self._push(job)
            self._condition.notify_all()

    async def claim(self) -> NotificationJob:
        """Wait for the best ready job and mark it in flight."""
        async with self._condition:
            while True:
                self._release_due()
                if self._ready:
                    _, job_id = heapq.heappop(self._ready)
                    job = self._pending.pop(job_id)
                    job.status = JobStatus.IN_FLIGHT
                    self._in_flight[job.id] = job
                    return job

                timeout = self._seconds_until_next_due()
                if timeout is None:
                    await self._condition.wait()
                else:
                    try:
                        await asyncio.wait_for(self._condition.wait(), timeout=timeout)
                    except TimeoutError:
                        pass

    async def requeue(self, job: NotificationJob) -> None:
        """Return an in-flight job to the queue (retry or shutdown)."""
        async with self._condition:
            self._in_flight.pop(job.id, None)
            job.sequence = next(self._sequence)
            self._push(job)
            self._condition.notify_all()

    async def finish(self, job: NotificationJob, status: JobStatus) -> None:
        async with self._condition:
            self._in_flight.pop(job.id, None)
            job.status = status
            self._condition.notify_all()

    async def escalate(self, request_id: str, priority: JobPriority) -> list[NotificationJob]:
        """Promote every not-yet-claimed job of a request."""
        async with self._condition:
            promoted = []
            for job in self._pending.values():
                if job.request_id == request_id and job.priority < priority:
                    job.priority = priority
                    job.escalated = True
                    promoted.append(job)
            if promoted:
                self._rebuild()
                self._condition.notify_all()
            return promoted

    async def cancel(self, job_id: str) -> CancelOutcome:
        async with self._condition:
            job = self._pending.pop(job_id, None)
            if job is not None:
                job.status = JobStatus.CANCELLED
                self._rebuild()
                self._condition.notify_all()
                return CancelOutcome.CANCELLED

            job = self._in_flight.get(job_id)
            if job is not None:
                job.retries_cleared = True
                return CancelOutcome.RETRIES_CLEARED

            return CancelOutcome.NOT_FOUND

    async def wait_idle(self) -> None:
        async with self._condition:
            while self._pending or self._in_flight:
                timeout = self._seconds_until_next_due()
                if timeout is None:
                    await self._condition.wait()
                else:
                    try:
                        await asyncio.wait_for(self._condition.wait(), timeout=timeout)
                    except TimeoutError:
                        pass

    def lookup(self, job_id: str) -> NotificationJob | None:
        return self._pending.get(job_id) or self._in_flight.get(job_id)

    def stats(self) -> dict[str, int]:
        scheduled = sum(1 for job in self._pending.values() if job.status is JobStatus.SCHEDULED)
        return {
            "workers": self.concurrency,
            "queued": len(self._pending) - scheduled,
            "scheduled": scheduled,
            "in_flight": len(self._in_flight),
        }


class DispatchPipeline:
    """
    Named queues plus worker pools delivering NotificationJobs.

    Usage:
        pipeline = DispatchPipeline(channels, queues={"urgent": 5})
        await pipeline.start()
        handle = await pipeline.enqueue(job)
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        channels: Mapping[ChannelType, NotificationChannel],
        queues: Mapping[str, int] | None = None,
        retry_policy: RetryPolicy | None = None,
        send_timeout: float = 10.0,
        max_attempts: Mapping[Urgency, int] | None = None,
        archive_size: int = 1000,
        clock: Clock = _utcnow,
    ):
        self._channels = dict(channels)
        self._clock = clock
        self.retry_policy = retry_policy or RetryPolicy()
        self.send_timeout = send_timeout
        self.max_attempts = dict(max_attempts or DEFAULT_MAX_ATTEMPTS)
        self.queues: dict[str, JobQueue] = {
            name: JobQueue(name, concurrency, clock=clock)
            for name, concurrency in (queues or DEFAULT_QUEUES).items()
        }
        self._index: dict[str, str] = {}
        self._archive: OrderedDict[str, NotificationJob] = OrderedDict()
        self._archive_size = archive_size
        self._exhaustion_sinks: list[ExhaustionSink] = []
        self._workers: list[asyncio.Task] = []
        # most recent escalated exhaustions, bounded like the archive
        self.exhausted: deque[NotificationJob] = deque(maxlen=archive_size)
        self.counters = {"completed": 0, "retried": 0, "exhausted": 0, "cancelled": 0}

    # -------------------------------------------------------------- lifecycle

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            logger.warning("Dispatch pipeline already running")
            return

        for queue in self.queues.values():
            for worker_number in range(queue.concurrency):
                task = asyncio.create_task(
                    self._worker_loop(queue, worker_number),
                    name=f"dispatch-{queue.name}-{worker_number}",
                )
                self._workers.append(task)

        logger.info(
            "Dispatch pipeline started",
            queues={name: queue.concurrency for name, queue in self.queues.items()},
        )

    async def stop(self) -> None:
        """Cancel all workers; jobs interrupted mid-attempt go back to their queue."""
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.info("Dispatch pipeline stopped", **self.counters)

    async def join(self) -> None:
        """Wait until every queue is empty and idle."""
        for queue in self.queues.values():
            await queue.wait_idle()

    def add_exhaustion_sink(self, sink: ExhaustionSink) -> None:
        """Register a coroutine called with each exhausted non-best-effort job."""
        self._exhaustion_sinks.append(sink)

    # -------------------------------------------------------------- producers

    def default_queue_for(self, priority: JobPriority) -> str:
        return "urgent" if priority >= JobPriority.HIGH else "notification"

    def job_for_urgency(
        self,
        urgency: Urgency,
        *,
        channel: ChannelType,
        recipient: str,
        template_id: str,
        data: dict[str, Any],
        request_id: str | None = None,
        queue: str | None = None,
    ) -> NotificationJob:
        """Build a job whose priority, attempts and best-effort flag follow the urgency."""
        priority = JobPriority.from_urgency(urgency)
        return NotificationJob(
            type=channel,
            recipient=recipient,
            template_id=template_id,
            data=data,
            priority=priority,
            max_attempts=self.max_attempts.get(urgency, 3),
            queue=queue or self.default_queue_for(priority),
            request_id=request_id,
            best_effort=urgency is Urgency.LOW,
        )

    async def enqueue(
        self, job: NotificationJob, delay: float | timedelta | None = None
    ) -> JobHandle:
        """
        Accept a job for delivery.

        Args:
            job: The job; its queue must be one of the configured queues
            delay: Optional delay before the first attempt (seconds or timedelta)

        Returns:
            JobHandle for lookup/cancellation

        Raises:
            ValidationError: Unknown queue or non-positive max_attempts
        """
        queue = self.queues.get(job.queue)
        if queue is None:
            raise ValidationError(f"Unknown dispatch queue '{job.queue}'", operation="enqueue")
        if job.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", operation="enqueue")

        if delay is not None:
            if not isinstance(delay, timedelta):
                delay = timedelta(seconds=delay)
            job.scheduled_for = self._clock() + delay

        self._index[job.id] = job.queue
        await queue.put(job)

        logger.debug(
            "Job enqueued",
            job_id=job.id,
            queue=job.queue,
            priority=int(job.priority),
            template_id=job.template_id,
            scheduled_for=job.scheduled_for.isoformat() if job.scheduled_for else None,
        )
        return job.handle()

    async def escalate_request(
        self, request_id: str, priority: JobPriority = JobPriority.EMERGENCY
    ) -> int:
        """Promote all not-yet-processed jobs tied to request_id. Returns the count."""
        promoted = 0
        for queue in self.queues.values():
            promoted += len(await queue.escalate(request_id, priority))

        logger.info("Request jobs escalated", request_id=request_id, promoted=promoted)
        return promoted

    async def cancel(self, handle: JobHandle) -> CancelOutcome:
        queue = self.queues.get(handle.queue)
        if queue is None:
            return CancelOutcome.NOT_FOUND

        outcome = await queue.cancel(handle.job_id)
        if outcome is CancelOutcome.CANCELLED:
            job = self._index.pop(handle.job_id, None)
            self.counters["cancelled"] += 1
            logger.info("Job cancelled before start", job_id=handle.job_id, queue=job)
        elif outcome is CancelOutcome.RETRIES_CLEARED:
            logger.info("In-flight job retries cleared", job_id=handle.job_id)
        return outcome

    def get_job(self, handle: JobHandle) -> NotificationJob | None:
        queue = self.queues.get(handle.queue)
        if queue is not None:
            job = queue.lookup(handle.job_id)
            if job is not None:
                return job
        return self._archive.get(handle.job_id)

    def stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "queues": {name: queue.stats() for name, queue in self.queues.items()},
            **self.counters,
        }

    # ---------------------------------------------------------------- workers

    async def _worker_loop(self, queue: JobQueue, worker_number: int) -> None:
        while True:
            job = await queue.claim()
            try:
                await self._run_attempt(queue, job)
            except asyncio.CancelledError:
                # shutdown mid-attempt: the attempt does not count
                job.attempts = max(job.attempts - 1, 0)
                await asyncio.shield(queue.requeue(job))
                raise
            except Exception as e:
                logger.exception(
                    "Unexpected dispatch worker error",
                    job_id=job.id,
                    queue=queue.name,
                    worker=worker_number,
                )
                await self._exhaust(queue, job, f"{type(e).__name__}: {e}")

    async def _run_attempt(self, queue: JobQueue, job: NotificationJob) -> None:
        job.attempts += 1
        channel = self._channels.get(job.type)

        try:
            if channel is None:
                raise TransientChannelError(f"No channel configured for {job.type.value}")
            delivered = await asyncio.wait_for(
                channel.send(job.recipient, job.template_id, job.data),
                timeout=self.send_timeout,
            )
            if not delivered:
                raise TransientChannelError("Channel reported delivery failure")
        except TimeoutError:
            await self._handle_failure(queue, job, f"timed out after {self.send_timeout}s")
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_failure(queue, job, f"{type(e).__name__}: {e}")
            return

        job.last_error = None
        self.counters["completed"] += 1
        await queue.finish(job, JobStatus.COMPLETED)
        self._archive_job(job)
        log_job_outcome(job.id, queue.name, "completed", job.attempts)

    async def _handle_failure(self, queue: JobQueue, job: NotificationJob, error: str) -> None:
        job.last_error = error

        if job.retries_cleared:
            self.counters["cancelled"] += 1
            await queue.finish(job, JobStatus.CANCELLED)
            self._archive_job(job)
            log_job_outcome(job.id, queue.name, "cancelled", job.attempts, error)
            return

        if job.remaining_attempts > 0:
            delay = self.retry_policy.delay_for(job.attempts)
            job.scheduled_for = self._clock() + timedelta(seconds=delay)
            self.counters["retried"] += 1
            logger.warning(
                "Dispatch attempt failed, retrying",
                job_id=job.id,
                queue=queue.name,
                attempt=job.attempts,
                remaining_attempts=job.remaining_attempts,
                retry_in_seconds=delay,
                error=error,
            )
            await queue.requeue(job)
            return

        await self._exhaust(queue, job, error)

    async def _exhaust(self, queue: JobQueue, job: NotificationJob, error: str) -> None:
        job.last_error = error
        job.exhaustion = ExhaustionError(job.id, job.attempts, error)
        self.counters["exhausted"] += 1
        await queue.finish(job, JobStatus.EXHAUSTED)
        self._archive_job(job)

        if job.best_effort:
            logger.warning(
                "Best-effort job exhausted",
                job_id=job.id,
                queue=queue.name,
                attempts=job.attempts,
                error=error,
            )
            return

        self.exhausted.append(job)
        log_job_outcome(job.id, queue.name, "exhausted", job.attempts, error)
        for sink in self._exhaustion_sinks:
            try:
                await sink(job)
            except Exception as sink_error:
                logger.error(
                    "Exhaustion sink failed",
                    job_id=job.id,
                    error=str(sink_error),
                    error_type=type(sink_error).__name__,
                )

    def _archive_job(self, job: NotificationJob) -> None:
        self._index.pop(job.id, None)
        self._archive[job.id] = job
        while len(self._archive) > self._archive_size:
            self._archive.popitem(last=False)
