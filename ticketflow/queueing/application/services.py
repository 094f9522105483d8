"""
Job Queue Application Services
==============================

The queue scheduler: named queues, worker pools and job lifecycle.

A worker leases one job at a time from the broker, keeps the lease alive
with a heartbeat while the handler runs, then moves the job to completed,
delayed (retry) or failed. Leases that are not renewed expire and the
stall reaper puts those jobs back in line.
"""

import asyncio
import inspect
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ticketflow.config import HealthStatus, JobState
from ticketflow.core import (
    DuplicateQueueError,
    ProcessorAlreadyRegisteredError,
    QueueNotFoundError,
    UnrecoverableJobError,
    ValidationException,
)
from ticketflow.queueing.domain import (
    STALLED_FAILED_REASON,
    Job,
    JobEvent,
    JobEventType,
    JobOptions,
)
from ticketflow.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

JobHandler = Callable[[Job], Union[Any, Awaitable[Any]]]
OptionsOverrides = Union[JobOptions, Mapping[str, Any], None]


# ========== Broker Interface ==========

class IBroker(ABC):
    """
    Durable job storage shared by every scheduler process.

    Moves out of ``active`` are guarded: a worker's move succeeds only while
    it still holds the lease token; a stall move succeeds only once the
    lease has expired. Each method is atomic with respect to the others.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open connections; raises BrokerConnectionError if unreachable."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def ping(self) -> bool:
        """True if the broker is reachable."""

    @abstractmethod
    async def add(self, queue_name: str, payload: Any, options: JobOptions, now: float) -> Job:
        """Store a new job (waiting, or delayed if options.delay > 0)."""

    @abstractmethod
    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        """Snapshot of a job, or None if unknown or evicted."""

    @abstractmethod
    async def lease(self, queue_name: str, token: str, lock_duration: float, now: float) -> Optional[Job]:
        """Promote due delayed jobs, then take the next waiting job and mark it active."""

    @abstractmethod
    async def renew(self, queue_name: str, job_id: str, token: str, lock_duration: float, now: float) -> bool:
        """Extend a held lease; False if the lease was lost."""

    @abstractmethod
    async def move_to_completed(self, job: Job, token: str, now: float) -> bool:
        """Finish a leased job successfully."""

    @abstractmethod
    async def move_to_failed(self, job: Job, token: str, now: float) -> bool:
        """Finish a leased job as failed."""

    @abstractmethod
    async def move_to_delayed(self, job: Job, token: str, run_at: float, now: float) -> bool:
        """Put a leased job back to wait until ``run_at``."""

    @abstractmethod
    async def list_stalled(self, queue_name: str, now: float) -> List[Job]:
        """Active jobs whose lease expired at or before ``now``."""

    @abstractmethod
    async def requeue_stalled(self, job: Job, now: float) -> bool:
        """Return an expired active job to waiting, keeping its place in line."""

    @abstractmethod
    async def fail_stalled(self, job: Job, now: float) -> bool:
        """Fail an expired active job."""

    @abstractmethod
    async def counts(self, queue_name: str) -> Dict[str, int]:
        """Number of jobs per state."""

    @abstractmethod
    async def clean(self, queue_name: str, grace: float, now: float) -> Dict[str, int]:
        """Remove completed/failed jobs finished more than ``grace`` seconds ago."""

    @abstractmethod
    async def trim(self, queue_name: str, state: str, keep: int) -> int:
        """Keep only the ``keep`` most recently finished jobs in ``state``."""


# ========== Scheduler ==========

@dataclass
class QueueState:
    """Per-queue runtime state held by the scheduler."""
    name: str
    concurrency: int
    default_options: JobOptions
    handler: Optional[JobHandler] = None
    workers: Dict[int, asyncio.Task] = field(default_factory=dict)
    paused: bool = False
    resumed: asyncio.Event = field(default_factory=asyncio.Event)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    last_error: Optional[str] = None
    completed_count: int = 0
    failed_count: int = 0

    def __post_init__(self):
        self.resumed.set()


class QueueScheduler:
    """
    Runs named queues over a broker.

    Usage:
        scheduler = QueueScheduler(InMemoryBroker())
        scheduler.create_queue("ticket-processing", concurrency=5)
        scheduler.add_processor("ticket-processing", handle_ticket)
        await scheduler.start()
        job = await scheduler.add_job("ticket-processing", {"id": "T-1"})
    """

    def __init__(
        self,
        broker: IBroker,
        lock_duration: float = 30.0,
        stall_interval: float = 30.0,
        max_stalled_count: int = 1,
        poll_interval: float = 1.0,
        drain_timeout: float = 10.0,
        event_buffer_size: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        self._broker = broker
        self._lock_duration = lock_duration
        self._stall_interval = stall_interval
        self._max_stalled_count = max_stalled_count
        self._poll_interval = poll_interval
        self._drain_timeout = drain_timeout
        self._clock = clock

        self._queues: Dict[str, QueueState] = {}
        self._events: asyncio.Queue = asyncio.Queue(maxsize=event_buffer_size)
        self._reaper: Optional[asyncio.Task] = None
        self._running = False
        self._closing = False

    @property
    def broker(self) -> IBroker:
        return self._broker

    @property
    def events(self) -> asyncio.Queue:
        """Bounded channel of JobEvents; the oldest event is dropped when full."""
        return self._events

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def queue_names(self) -> List[str]:
        return list(self._queues)

    # ---------- Registration ----------

    def create_queue(
        self,
        name: str,
        concurrency: int = 1,
        default_options: OptionsOverrides = None
    ) -> QueueState:
        """
        Register a queue.

        Registering the same name again with identical settings returns the
        existing queue; different settings raise DuplicateQueueError.
        """
        if concurrency < 1:
            raise ValidationException(f"Queue concurrency must be at least 1, got {concurrency}")
        options = JobOptions().merge(default_options)

        existing = self._queues.get(name)
        if existing is not None:
            if existing.concurrency == concurrency and existing.default_options == options:
                return existing
            raise DuplicateQueueError(
                name,
                {"concurrency": existing.concurrency, "requested_concurrency": concurrency}
            )

        queue = QueueState(name=name, concurrency=concurrency, default_options=options)
        self._queues[name] = queue
        logger.info("Queue created", extra={"queue": name, "concurrency": concurrency})
        return queue

    def add_processor(self, queue_name: str, handler: JobHandler) -> None:
        """Bind the job handler and start the queue's workers."""
        queue = self._get_queue(queue_name)
        if queue.handler is not None:
            raise ProcessorAlreadyRegisteredError(queue_name)

        queue.handler = handler
        logger.info("Processor registered", extra={"queue": queue_name})
        if self._running:
            self._ensure_workers(queue)

    async def update_queue(
        self,
        name: str,
        concurrency: Optional[int] = None,
        default_options: OptionsOverrides = None
    ) -> QueueState:
        """
        Apply new settings to a live queue.

        Extra workers start immediately; surplus workers retire after the
        job they are running. New default options apply to jobs added later.
        """
        queue = self._get_queue(name)

        if default_options is not None:
            queue.default_options = queue.default_options.merge(default_options)

        if concurrency is not None and concurrency != queue.concurrency:
            if concurrency < 1:
                raise ValidationException(f"Queue concurrency must be at least 1, got {concurrency}")
            previous = queue.concurrency
            queue.concurrency = concurrency
            logger.info(
                "Queue concurrency updated",
                extra={"queue": name, "previous": previous, "concurrency": concurrency}
            )
            if self._running:
                self._ensure_workers(queue)
            # let idle surplus workers notice
            queue.wakeup.set()

        return queue

    # ---------- Lifecycle ----------

    async def start(self) -> None:
        """Connect the broker, start workers for bound queues and the stall reaper."""
        if self._running:
            return

        await self._broker.connect()
        self._running = True
        self._closing = False

        for queue in self._queues.values():
            if queue.handler is not None:
                self._ensure_workers(queue)

        self._reaper = asyncio.create_task(self._reap_stalled_loop(), name="queue-stall-reaper")
        logger.info("Queue scheduler started", extra={"queues": self.queue_names})

    async def shutdown(self) -> None:
        """
        Stop dispatching and release the broker.

        In-flight handlers get ``drain_timeout`` seconds to finish; the rest
        are cancelled and their leases left to expire, so another process
        reclaims those jobs.
        """
        if not self._running:
            return

        self._closing = True
        for queue in self._queues.values():
            queue.resumed.set()
            queue.wakeup.set()

        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.gather(self._reaper, return_exceptions=True)
            self._reaper = None

        tasks = [task for queue in self._queues.values() for task in queue.workers.values()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self._drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    "Cancelled in-flight jobs on shutdown",
                    extra={"cancelled": len(pending)}
                )
                await asyncio.gather(*pending, return_exceptions=True)

        for queue in self._queues.values():
            queue.workers.clear()
            if queue.paused:
                queue.resumed.clear()

        await self._broker.close()
        self._running = False
        logger.info("Queue scheduler stopped")

    # ---------- Jobs ----------

    async def add_job(self, queue_name: str, payload: Any, options: OptionsOverrides = None) -> Job:
        """
        Enqueue a job.

        ``options`` as a mapping overrides individual queue defaults; a full
        JobOptions replaces them (see JobOptions.merge).
        """
        queue = self._get_queue(queue_name)
        job_options = queue.default_options.merge(options)

        job = await self._broker.add(queue_name, payload, job_options, self._clock())
        self._emit(JobEventType.WAITING, job, delay=job.delay, priority=job.priority)
        queue.wakeup.set()

        logger.debug(
            "Job added",
            extra={"queue": queue_name, "job_id": job.id, "priority": job.priority, "delay": job.delay}
        )
        return job

    async def get_job_status(self, queue_name: str, job_id: str) -> Optional[Job]:
        self._get_queue(queue_name)
        return await self._broker.get_job(queue_name, job_id)

    async def get_queue_stats(self, queue_name: str) -> Dict[str, Any]:
        queue = self._get_queue(queue_name)
        counts = await self._broker.counts(queue_name)
        return {
            "queue": queue_name,
            **counts,
            "concurrency": queue.concurrency,
            "paused": queue.paused,
            "workers": len(queue.workers),
        }

    async def pause_queue(self, queue_name: str) -> None:
        """Stop leasing new jobs; running jobs finish normally."""
        queue = self._get_queue(queue_name)
        queue.paused = True
        queue.resumed.clear()
        logger.info("Queue paused", extra={"queue": queue_name})

    async def resume_queue(self, queue_name: str) -> None:
        queue = self._get_queue(queue_name)
        queue.paused = False
        queue.resumed.set()
        queue.wakeup.set()
        logger.info("Queue resumed", extra={"queue": queue_name})

    async def clean_queue(self, queue_name: str, grace: float = 24 * 60 * 60) -> Dict[str, int]:
        """Purge jobs finished more than ``grace`` seconds ago."""
        self._get_queue(queue_name)
        removed = await self._broker.clean(queue_name, grace, self._clock())
        logger.info("Queue cleaned", extra={"queue": queue_name, "grace": grace, **removed})
        return removed

    async def reclaim_stalled_jobs(self, queue_name: str) -> Dict[str, int]:
        """
        One stall-detection pass over a queue.

        Each expired job's ``stalled_count`` goes up by one; past
        ``max_stalled_count`` the job fails, otherwise it goes back to waiting.
        """
        queue = self._get_queue(queue_name)
        now = self._clock()
        requeued = failed = 0

        for job in await self._broker.list_stalled(queue_name, now):
            job.stalled_count += 1
            if job.stalled_count > self._max_stalled_count:
                job.failed_reason = STALLED_FAILED_REASON
                job.finished_on = now
                if await self._broker.fail_stalled(job, now):
                    failed += 1
                    queue.failed_count += 1
                    self._emit(JobEventType.FAILED, job, reason=STALLED_FAILED_REASON)
                    if job.remove_on_fail is not None:
                        await self._broker.trim(queue_name, JobState.FAILED, job.remove_on_fail)
            elif await self._broker.requeue_stalled(job, now):
                requeued += 1
                self._emit(JobEventType.STALLED, job, stalled_count=job.stalled_count)

        if requeued or failed:
            logger.warning(
                "Stalled jobs reclaimed",
                extra={"queue": queue_name, "requeued": requeued, "failed": failed}
            )
            queue.wakeup.set()
        return {"requeued": requeued, "failed": failed}

    # ---------- Health ----------

    async def get_health(self) -> Dict[str, Any]:
        try:
            broker_ok = await self._broker.ping()
        except Exception as e:
            logger.error(f"Broker ping failed: {e}")
            broker_ok = False

        queues: Dict[str, Any] = {}
        any_queue_error = False
        for name, queue in self._queues.items():
            detail: Dict[str, Any] = {
                "concurrency": queue.concurrency,
                "paused": queue.paused,
                "workers": len(queue.workers),
                "processed": queue.completed_count,
                "failed": queue.failed_count,
            }
            error = queue.last_error
            if broker_ok:
                try:
                    detail["counts"] = await self._broker.counts(name)
                except Exception as e:
                    error = str(e)
            if error:
                detail["error"] = error
                any_queue_error = True
            queues[name] = detail

        if not broker_ok:
            status = HealthStatus.UNHEALTHY
        elif any_queue_error:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return {
            "status": status,
            "broker": "connected" if broker_ok else "error",
            "running": self._running,
            "queues": queues,
        }

    # ---------- Workers ----------

    def _get_queue(self, name: str) -> QueueState:
        queue = self._queues.get(name)
        if queue is None:
            raise QueueNotFoundError(name)
        return queue

    def _ensure_workers(self, queue: QueueState) -> None:
        for index in range(queue.concurrency):
            task = queue.workers.get(index)
            if task is None or task.done():
                queue.workers[index] = asyncio.create_task(
                    self._worker_loop(queue, index),
                    name=f"queue-worker:{queue.name}:{index}"
                )

    async def _worker_loop(self, queue: QueueState, index: int) -> None:
        token_prefix = uuid.uuid4().hex
        try:
            while not self._closing and index < queue.concurrency:
                await queue.resumed.wait()
                if self._closing or index >= queue.concurrency:
                    break

                try:
                    job = await self._broker.lease(
                        queue.name, f"{token_prefix}:{uuid.uuid4().hex}", self._lock_duration, self._clock()
                    )
                    queue.last_error = None
                except Exception as e:
                    queue.last_error = str(e)
                    logger.error(
                        f"Failed to lease job: {e}",
                        extra={"queue": queue.name, "worker": index}
                    )
                    await asyncio.sleep(self._poll_interval)
                    continue

                if job is None:
                    queue.wakeup.clear()
                    try:
                        await asyncio.wait_for(queue.wakeup.wait(), timeout=self._poll_interval)
                    except asyncio.TimeoutError:
                        pass
                    continue

                try:
                    await self._process_job(queue, job)
                except Exception as e:
                    # job stays active; its lease expires and the reaper reclaims it
                    queue.last_error = str(e)
                    logger.error(
                        f"Failed to record job outcome: {e}",
                        extra={"queue": queue.name, "job_id": job.id}
                    )
        finally:
            if queue.workers.get(index) is asyncio.current_task():
                del queue.workers[index]

    async def _process_job(self, queue: QueueState, job: Job) -> None:
        token = job.lease_token
        self._emit(JobEventType.ACTIVE, job)
        heartbeat = asyncio.create_task(self._heartbeat(job, token))

        try:
            result = await self._run_handler(queue, job)
        except Exception as e:
            await self._handle_failure(queue, job, token, e)
        else:
            await self._handle_success(queue, job, token, result)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _run_handler(self, queue: QueueState, job: Job) -> Any:
        handler = queue.handler
        if inspect.iscoroutinefunction(handler):
            call = handler(job.copy())
        else:
            call = asyncio.to_thread(handler, job.copy())

        if job.timeout:
            return await asyncio.wait_for(call, timeout=job.timeout)
        return await call

    async def _heartbeat(self, job: Job, token: str) -> None:
        interval = self._lock_duration / 2
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self._broker.renew(
                    job.queue_name, job.id, token, self._lock_duration, self._clock()
                )
            except Exception as e:
                logger.warning(f"Lease renewal failed: {e}", extra={"queue": job.queue_name, "job_id": job.id})
                continue
            if not renewed:
                logger.warning("Lease lost", extra={"queue": job.queue_name, "job_id": job.id})
                return

    async def _handle_success(self, queue: QueueState, job: Job, token: str, result: Any) -> None:
        now = self._clock()
        job.attempts_made += 1
        job.return_value = result
        job.finished_on = now

        if not await self._broker.move_to_completed(job, token, now):
            self._log_lease_lost(job)
            return

        queue.completed_count += 1
        self._emit(JobEventType.COMPLETED, job)
        logger.info(
            "Job completed",
            extra={"queue": queue.name, "job_id": job.id, "attempts_made": job.attempts_made}
        )
        if job.remove_on_complete is not None:
            await self._broker.trim(queue.name, JobState.COMPLETED, job.remove_on_complete)

    async def _handle_failure(self, queue: QueueState, job: Job, token: str, error: Exception) -> None:
        now = self._clock()
        job.attempts_made += 1
        if isinstance(error, asyncio.TimeoutError):
            job.failed_reason = f"job timed out after {job.timeout}s"
        else:
            job.failed_reason = str(error) or type(error).__name__

        retryable = not isinstance(error, UnrecoverableJobError)
        if retryable and job.attempts_made < job.max_attempts:
            delay = job.backoff.compute(job.attempts_made)
            job.retry_delays.append(delay)
            if not await self._broker.move_to_delayed(job, token, now + delay, now):
                self._log_lease_lost(job)
                return

            self._emit(JobEventType.RETRYING, job, delay=delay, reason=job.failed_reason)
            logger.warning(
                "Job failed, retrying",
                extra={
                    "queue": queue.name,
                    "job_id": job.id,
                    "attempts_made": job.attempts_made,
                    "delay": delay,
                    "reason": job.failed_reason
                }
            )
            return

        job.finished_on = now
        if not await self._broker.move_to_failed(job, token, now):
            self._log_lease_lost(job)
            return

        queue.failed_count += 1
        self._emit(JobEventType.FAILED, job, reason=job.failed_reason)
        logger.error(
            "Job failed",
            extra={
                "queue": queue.name,
                "job_id": job.id,
                "attempts_made": job.attempts_made,
                "reason": job.failed_reason
            }
        )
        if job.remove_on_fail is not None:
            await self._broker.trim(queue.name, JobState.FAILED, job.remove_on_fail)

    def _log_lease_lost(self, job: Job) -> None:
        logger.warning(
            "Discarding job outcome, lease no longer held",
            extra={"queue": job.queue_name, "job_id": job.id}
        )

    async def _reap_stalled_loop(self) -> None:
        while True:
            for name in list(self._queues):
                try:
                    await self.reclaim_stalled_jobs(name)
                except Exception as e:
                    self._queues[name].last_error = str(e)
                    logger.error(f"Stalled job check failed: {e}", extra={"queue": name})
            await asyncio.sleep(self._stall_interval)

    # ---------- Events ----------

    def _emit(self, event_type: str, job: Job, **data: Any) -> None:
        event = JobEvent(
            type=event_type,
            queue_name=job.queue_name,
            job_id=job.id,
            timestamp=self._clock(),
            attempts_made=job.attempts_made,
            data=data,
        )
        if self._events.full():
            self._events.get_nowait()
        self._events.put_nowait(event)


def iter_events(queue: asyncio.Queue) -> Iterable[JobEvent]:
    """Drain whatever events are buffered right now, without waiting."""
    while not queue.empty():
        yield queue.get_nowait()
