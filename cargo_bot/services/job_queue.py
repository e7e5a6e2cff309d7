"""Durable background job queue.

Jobs live in the `jobs` table of the application database, so enqueued work
survives restarts. Workers claim due jobs atomically and hold a lease while
running; a job whose lease expires (worker crash, killed process) is claimed
again, which makes delivery at-least-once. Failed attempts are retried with
exponential backoff and jobs that exhaust their attempts stay in the table
with status `failed` (the dead-letter set) until replayed or purged.

Repeating jobs are identified by a repeat key and reuse one row: after each
run the row is rescheduled for the next interval or cron fire time.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ValidationError, model_validator

from ..config import QueueConfig
from ..errors import USER_FACING_ERRORS, QueueClosedError
from ..models import JobRecord, JobStatus
from .database import Database
from .jobs import JOB_PAYLOAD_ADAPTER, CleanupJob, JobPayload, NotificationJob

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobPayload], Awaitable[None]]


class RepeatSpec(BaseModel):
    """Schedule of a repeating job: an interval in seconds or a cron expression."""

    key: str
    every: float | None = None
    cron: str | None = None

    @model_validator(mode="after")
    def _check_schedule(self) -> "RepeatSpec":
        if (self.every is None) == (self.cron is None):
            raise ValueError("exactly one of 'every' and 'cron' must be set")
        if self.every is not None and self.every <= 0:
            raise ValueError("'every' must be positive")
        if self.cron is not None:
            CronTrigger.from_crontab(self.cron, timezone=UTC)
        return self


class JobOptions(BaseModel):
    """Per-job overrides of the queue defaults.

    Attributes:
        attempts: Attempt budget, type default when unset.
        backoff_delay: Base retry delay in seconds.
        delay: Seconds before the first run.
        repeat: Repeat schedule, one-shot when unset.
    """

    attempts: int | None = None
    backoff_delay: float | None = None
    delay: float = 0
    repeat: RepeatSpec | None = None


def next_run_time(repeat: RepeatSpec, now: float) -> float:
    """Epoch seconds of the next run of a repeating job after `now`."""
    if repeat.every is not None:
        return now + repeat.every
    assert repeat.cron is not None
    trigger = CronTrigger.from_crontab(repeat.cron, timezone=UTC)
    fire_time = trigger.get_next_fire_time(None, datetime.fromtimestamp(now, UTC))
    return fire_time.timestamp()


class RateLimiter:
    """Sliding-window limiter shared by all workers."""

    def __init__(self, max_calls: int, period: float):
        self.max_calls = max_calls
        self.period = period
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._calls and now - self._calls[0] >= self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                await asyncio.sleep(self.period - (now - self._calls[0]))


class JobQueue:
    """Worker pool over the durable jobs table.

    Attributes:
        database: Store holding the jobs table.
        config: Concurrency, retry and retention settings.
    """

    def __init__(self, database: Database, config: QueueConfig):
        self.database = database
        self.config = config
        self._handler: JobHandler | None = None
        self._limiter = RateLimiter(config.rate_limit_max, config.rate_limit_period)
        self._workers: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._closing = False

    @property
    def is_closing(self) -> bool:
        return self._closing

    def set_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    def _default_attempts(self, job: JobPayload) -> int:
        if isinstance(job, NotificationJob):
            return self.config.notification_attempts
        return self.config.default_attempts

    async def enqueue(self, job: JobPayload, options: JobOptions | None = None) -> int:
        """Add a job to the queue.

        Re-enqueueing a repeating job with the same repeat key updates the
        existing schedule instead of adding a second job.

        Args:
            job: Job payload.
            options: Attempts, backoff, delay and repeat overrides.

        Returns:
            ID of the job row.

        Raises:
            QueueClosedError: The queue is shutting down.
        """
        if self._closing:
            raise QueueClosedError(job_type=job.type)

        options = options or JobOptions()
        now = time.time()
        run_at = now + options.delay
        repeat = options.repeat
        if repeat is not None and repeat.cron is not None and options.delay == 0:
            run_at = next_run_time(repeat, now)

        job_id = await self.database.run(
            lambda repo: repo.insert_job(
                job_type=job.type,
                payload=job.model_dump_json(),
                max_attempts=options.attempts or self._default_attempts(job),
                backoff_delay=(
                    options.backoff_delay
                    if options.backoff_delay is not None
                    else self.config.backoff_delay
                ),
                run_at=run_at,
                now=now,
                repeat_key=repeat.key if repeat else None,
                repeat_every=repeat.every if repeat else None,
                repeat_cron=repeat.cron if repeat else None,
            )
        )
        logger.debug(f"Enqueued {job.type} job {job_id}")
        return job_id

    async def schedule_recurring(self) -> None:
        """Register the maintenance jobs; safe to call on every startup."""
        await self.enqueue(
            CleanupJob(target="jobs"),
            JobOptions(repeat=RepeatSpec(key="cleanup-jobs", cron="0 3 * * *")),
        )
        await self.enqueue(
            CleanupJob(target="cache"),
            JobOptions(repeat=RepeatSpec(key="cleanup-cache", every=6 * 3600)),
        )
        logger.info("Recurring maintenance jobs scheduled")

    async def _claim(self) -> JobRecord | None:
        now = time.time()
        lease = self.config.job_timeout * 2

        def work(repo):
            abandoned = repo.fail_abandoned_jobs(now)
            if abandoned:
                logger.error(f"{abandoned} jobs dead-lettered after their lease expired")
            return repo.claim_job(now, lease)

        return await self.database.run(work)

    async def _execute(self, record: JobRecord) -> None:
        """Run one claimed job and record the outcome."""
        if self._handler is None:
            raise RuntimeError("JobQueue handler is not set")

        try:
            payload = JOB_PAYLOAD_ADAPTER.validate_json(record.payload)
        except ValidationError as e:
            await self._dead_letter(record, f"invalid payload: {e}")
            return

        try:
            await asyncio.wait_for(self._handler(payload), timeout=self.config.job_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            if isinstance(e, USER_FACING_ERRORS):
                # Domain rejections fail the same way on every attempt
                await self._dead_letter(record, error)
            else:
                await self._handle_failure(record, error)
            return

        now = time.time()
        repeat = self._repeat_spec(record)
        if repeat is not None:
            next_run = next_run_time(repeat, now)
            await self.database.run(lambda repo: repo.reschedule_job(record.id, next_run))
        else:
            await self.database.run(lambda repo: repo.complete_job(record.id, now))
        logger.debug(f"Job {record.id} ({record.job_type}) completed")

    @staticmethod
    def _repeat_spec(record: JobRecord) -> RepeatSpec | None:
        if record.repeat_key is None:
            return None
        return RepeatSpec(key=record.repeat_key, every=record.repeat_every, cron=record.repeat_cron)

    async def _handle_failure(self, record: JobRecord, error: str) -> None:
        if record.attempts_made >= record.max_attempts:
            await self._dead_letter(record, error)
            return

        delay = record.backoff_delay * 2 ** (record.attempts_made - 1)
        run_at = time.time() + delay
        await self.database.run(lambda repo: repo.retry_job(record.id, run_at, error))
        logger.warning(
            f"Job {record.id} ({record.job_type}) failed attempt "
            f"{record.attempts_made}/{record.max_attempts}: {error}, retrying in {delay}s"
        )

    async def _dead_letter(self, record: JobRecord, error: str) -> None:
        logger.error(
            f"Job {record.id} ({record.job_type}) moved to dead-letter after "
            f"{record.attempts_made} attempts: {error}; payload={record.payload}"
        )
        repeat = self._repeat_spec(record)
        if repeat is not None:
            # A repeating job keeps its schedule; only this run is lost
            next_run = next_run_time(repeat, time.time())
            await self.database.run(lambda repo: repo.reschedule_job(record.id, next_run))
            return
        now = time.time()
        await self.database.run(lambda repo: repo.fail_job(record.id, error, now))

    async def run_pending(self, limit: int | None = None) -> int:
        """Process due jobs inline until none are due.

        Args:
            limit: Maximum number of jobs to process.

        Returns:
            Number of jobs processed.
        """
        processed = 0
        while limit is None or processed < limit:
            record = await self._claim()
            if record is None:
                break
            await self._execute(record)
            processed += 1
        return processed

    async def _worker(self, index: int) -> None:
        logger.debug(f"Queue worker {index} started")
        while not self._stopping.is_set():
            try:
                record = await self._claim()
            except Exception as e:
                logger.error(f"Queue worker {index} failed to claim a job: {e}")
                record = None

            if record is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.config.poll_interval)
                except TimeoutError:
                    pass
                continue

            await self._limiter.acquire()
            try:
                await self._execute(record)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # The lease expires and the job is claimed again
                logger.error(f"Queue worker {index} could not record job {record.id}: {e}")
        logger.debug(f"Queue worker {index} stopped")

    async def start(self) -> None:
        """Start the worker pool."""
        if self._workers:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"job-worker-{i}")
            for i in range(self.config.concurrency)
        ]
        logger.info(f"Job queue started with {self.config.concurrency} workers")

    async def close(self) -> None:
        """Stop accepting jobs and drain the workers.

        In-flight jobs get `shutdown_timeout` seconds to finish; workers still
        running after that are cancelled and their jobs are picked up again
        once their lease expires.
        """
        self._closing = True
        self._stopping.set()
        if not self._workers:
            return

        _, pending = await asyncio.wait(self._workers, timeout=self.config.shutdown_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(f"Cancelled {len(pending)} job workers after shutdown timeout")
        self._workers = []
        logger.info("Job queue closed")

    async def stats(self) -> dict[str, int]:
        """Job counts by status."""
        return await self.database.run(lambda repo: repo.count_jobs_by_status(), write=False)

    async def get_job(self, job_id: int) -> JobRecord | None:
        return await self.database.run(lambda repo: repo.get_job(job_id), write=False)

    async def list_dead(self, limit: int = 100) -> list[JobRecord]:
        return await self.database.run(
            lambda repo: repo.list_jobs(JobStatus.FAILED, limit), write=False
        )

    async def replay(self, job_id: int) -> bool:
        """Return a dead-lettered job to the waiting set with a fresh budget."""
        replayed = await self.database.run(lambda repo: repo.replay_job(job_id, time.time()))
        if replayed:
            logger.info(f"Job {job_id} replayed from dead-letter")
        return replayed

    async def purge_finished(self) -> int:
        """Delete old completed and dead-lettered one-shot jobs."""
        now = time.time()

        def work(repo):
            completed = repo.purge_jobs(JobStatus.COMPLETED, now - self.config.completed_retention)
            failed = repo.purge_jobs(JobStatus.FAILED, now - self.config.failed_retention)
            return completed + failed

        return await self.database.run(work)
