"""
Job Scheduler - cron-driven execution of analysis jobs.

Two asyncio tasks cooperate:
- the coordinator wakes every ``tick_seconds``, finds due jobs and enqueues a
  firing (it never awaits analysis);
- the dispatcher takes firings off the bounded queue, acquires a slot under the
  global concurrency ceiling and starts the execution as its own task.

A job has at most one firing in flight (queued or running). Cancelling a
running execution releases its slot immediately; the slot lease is idempotent
so the execution finishing at the same time cannot release it twice.
"""

import asyncio
import inspect
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from croniter import croniter
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from pipewatch.core.domain.errors import (
    ConcurrencyExceeded,
    ConfigurationInvalid,
    NotFound,
    StoreUnavailable,
    TransientError,
)
from pipewatch.core.domain.job import JobDefinition, JobExecution, JobStats, parse_job_definition
from pipewatch.core.domain.settings import SchedulerSettings
from pipewatch.core.ports.record_store import EXECUTIONS, JOBS, RecordStore
from pipewatch.core.services.analysis_loop import AnalysisLoop

logger = logging.getLogger(__name__)

RECENT_EXECUTIONS = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_fire_time(schedule: str, after: datetime) -> datetime:
    """First cron fire time strictly after ``after``."""
    return croniter(schedule, after).get_next(datetime)


class SlotLease:
    """One unit of the concurrency ceiling. ``release`` is safe to call twice."""

    def __init__(self, semaphore: asyncio.Semaphore):
        self._semaphore = semaphore
        self._lock = threading.Lock()
        self._released = False

    def release(self) -> bool:
        with self._lock:
            if self._released:
                return False
            self._released = True
        self._semaphore.release()
        return True

    @property
    def released(self) -> bool:
        return self._released


@dataclass
class _Firing:
    job_id: str
    reason: str
    queued_at: datetime
    execution: JobExecution | None = None
    task: asyncio.Task | None = None
    lease: SlotLease | None = None
    cancelled: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)


class JobScheduler:
    """
    Owns job definitions and their execution history.
    """

    def __init__(
        self,
        runner: AnalysisLoop,
        settings: SchedulerSettings | None = None,
        store: RecordStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
        listeners: list[Callable[[JobExecution], Any]] | None = None,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            runner: Executes a job firing
            settings: Scheduler settings
            store: Optional record store; persistence is best effort
            clock: Source of the current time
            listeners: Callbacks invoked with every finished execution
            retry_sleep: Awaitable used between retry attempts
        """
        self.runner = runner
        self.settings = settings or SchedulerSettings()
        self.store = store
        self._clock = clock
        self._listeners = list(listeners or [])
        self._retry_sleep = retry_sleep

        self._jobs: dict[str, JobDefinition] = {}
        self._stats: dict[str, JobStats] = {}
        self._history: dict[str, deque[JobExecution]] = {}
        self._in_flight: dict[str, _Firing] = {}
        self._lock = threading.Lock()

        self._queue: asyncio.Queue[_Firing] = asyncio.Queue(maxsize=self.settings.queue_size)
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_jobs)
        self._running = 0
        self._peak_running = 0
        self._tasks: set[asyncio.Task] = set()
        self._coordinator: asyncio.Task | None = None
        self._dispatcher: asyncio.Task | None = None

        self._scheduled = 0
        self._dropped = 0
        self._rejected = 0
        self._outcomes = {"succeeded": 0, "failed": 0, "cancelled": 0}
        self._duration_ms_total = 0.0
        self._alerts_generated = 0

    def add_listener(self, listener: Callable[[JobExecution], Any]) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    async def create_job(self, data: dict[str, Any] | JobDefinition) -> JobDefinition:
        """
        Validate and register a job definition.

        Raises:
            ConfigurationInvalid: invalid definition or duplicate id
        """
        job = parse_job_definition(data)
        with self._lock:
            if job.id in self._jobs:
                raise ConfigurationInvalid("Job id already exists", job_id=job.id)
            self._register(job)
        logger.info(f"Created job '{job.name}' ({job.id}, type={job.type}, schedule='{job.schedule}')")
        await self._persist(JOBS, job.id, job.model_dump(mode="json"))
        return job

    def _register(self, job: JobDefinition, stats: JobStats | None = None) -> None:
        self._jobs[job.id] = job
        self._stats[job.id] = stats or JobStats()
        self._history.setdefault(job.id, deque(maxlen=self.settings.history_limit))
        self._stats[job.id].next_run = next_fire_time(job.schedule, self._clock()) if job.enabled else None

    def get_job(self, job_id: str) -> JobDefinition:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound("job", job_id)
        return job

    def list_jobs(self) -> list[JobDefinition]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at)

    async def enable_job(self, job_id: str) -> JobDefinition:
        return await self._set_enabled(job_id, True)

    async def disable_job(self, job_id: str) -> JobDefinition:
        return await self._set_enabled(job_id, False)

    async def _set_enabled(self, job_id: str, enabled: bool) -> JobDefinition:
        with self._lock:
            job = self.get_job(job_id).model_copy(update={"enabled": enabled})
            self._jobs[job_id] = job
            self._stats[job_id].next_run = next_fire_time(job.schedule, self._clock()) if enabled else None
        logger.info(f"Job '{job.name}' {'enabled' if enabled else 'disabled'}")
        await self._persist(JOBS, job.id, job.model_dump(mode="json"))
        return job

    async def delete_job(self, job_id: str) -> None:
        """Remove a job, cancelling any in-flight firing."""
        self.get_job(job_id)
        self.cancel_job(job_id)
        with self._lock:
            self._jobs.pop(job_id, None)
            self._stats.pop(job_id, None)
            self._history.pop(job_id, None)
        if self.store is not None:
            try:
                await self.store.delete(JOBS, job_id)
            except StoreUnavailable as e:
                logger.warning(f"Could not delete job {job_id} from store: {e}")

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> list[str]:
        """
        Enqueue every enabled job whose next fire time has passed.

        Returns:
            Ids of jobs that were enqueued
        """
        now = now or self._clock()
        fired = []
        for job in list(self._jobs.values()):
            stats = self._stats.get(job.id)
            if not job.enabled or stats is None or stats.next_run is None:
                continue
            if stats.next_run <= now:
                stats.next_run = next_fire_time(job.schedule, now)
                if self.submit(job.id, reason="schedule", now=now):
                    fired.append(job.id)
        return fired

    def submit(self, job_id: str, reason: str = "manual", now: datetime | None = None) -> bool:
        """
        Enqueue a firing.

        Returns:
            False when the job already has a firing in flight or the queue is full
        """
        self.get_job(job_id)
        firing = _Firing(job_id=job_id, reason=reason, queued_at=now or self._clock())
        with self._lock:
            if job_id in self._in_flight:
                self._rejected += 1
                logger.warning(f"Job {job_id} already has a firing in flight; {reason} firing rejected")
                return False
            try:
                self._queue.put_nowait(firing)
            except asyncio.QueueFull:
                self._dropped += 1
                logger.warning(str(ConcurrencyExceeded(
                    "Scheduler queue full, firing dropped", job_id=job_id, queue_size=self.settings.queue_size,
                )))
                return False
            self._in_flight[job_id] = firing
            self._scheduled += 1
        logger.debug(f"Queued {reason} firing of job {job_id}")
        return True

    async def run_job_now(self, job_id: str) -> JobExecution:
        """
        Fire a job and wait for the execution to finish. Requires ``start``.

        Raises:
            ConcurrencyExceeded: the firing was rejected or dropped
        """
        if not self.submit(job_id, reason="manual"):
            raise ConcurrencyExceeded("Job could not be queued", job_id=job_id)
        firing = self._in_flight[job_id]
        await firing.done.wait()
        if firing.execution is None:
            raise ConcurrencyExceeded("Firing was cancelled before it started", job_id=job_id)
        return firing.execution

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel the job's in-flight firing.

        A queued firing is discarded. A running execution is marked
        ``cancelled``, its slot is released right away and its task is
        cancelled.

        Returns:
            True if something was cancelled
        """
        self.get_job(job_id)
        with self._lock:
            firing = self._in_flight.get(job_id)
            if firing is None:
                return False
            if firing.execution is None:
                firing.cancelled = True
                del self._in_flight[job_id]
                firing.done.set()
                logger.info(f"Discarded queued firing of job {job_id}")
                return True

        if self._finish(firing, "cancelled", error="cancelled by operator"):
            logger.info(f"Cancelled execution {firing.execution.id} of job {job_id}")
        if firing.task is not None:
            firing.task.cancel()
        return True

    async def _dispatch_loop(self) -> None:
        while True:
            firing = await self._queue.get()
            try:
                if firing.cancelled:
                    continue
                await self._semaphore.acquire()
                lease = SlotLease(self._semaphore)
                with self._lock:
                    if firing.cancelled:
                        lease.release()
                        continue
                    firing.lease = lease
                    firing.execution = JobExecution(job_id=firing.job_id, started_at=self._clock())
                    self._running += 1
                    self._peak_running = max(self._peak_running, self._running)
                    history = self._history.get(firing.job_id)
                    if history is not None:
                        history.append(firing.execution)
                task = asyncio.create_task(self._execute(firing))
                firing.task = task
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            finally:
                self._queue.task_done()

    async def _execute(self, firing: _Firing) -> None:
        job = self._jobs.get(firing.job_id)
        execution = firing.execution
        if job is None:
            self._finish(firing, "cancelled", error="job deleted")
            return

        logger.info(f"Starting execution {execution.id} of job '{job.name}' ({firing.reason})")
        try:
            result = await self._attempt(job, execution)
        except asyncio.CancelledError:
            self._finish(firing, "cancelled", error="cancelled")
            return
        except asyncio.TimeoutError:
            self._finish(firing, "failed", error=f"timed out after {self.settings.job_timeout_seconds}s")
            logger.error(f"Execution {execution.id} of job '{job.name}' timed out")
            return
        except Exception as e:
            self._finish(firing, "failed", error=str(e))
            logger.error(f"Execution {execution.id} of job '{job.name}' failed: {e}")
            return

        summary = result.summary()
        status = "succeeded"
        error = None
        if result.failed:
            error = f"{len(result.failed)} of {len(result.outcomes)} pipeline(s) failed"
        self._finish(firing, status, summary=summary, error=error, alerts=result.alerts)

    async def _attempt(self, job: JobDefinition, execution: JobExecution):
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_exponential(
                multiplier=self.settings.retry_min_wait_seconds,
                max=self.settings.retry_max_wait_seconds,
            ),
            retry=retry_if_exception_type((TransientError, asyncio.TimeoutError)),
            sleep=self._retry_sleep,
            reraise=True,
        )
        result = None
        async for attempt in retrying:
            with attempt:
                execution.attempts += 1
                if execution.attempts > 1:
                    logger.warning(f"Retrying job '{job.name}' (attempt {execution.attempts})")
                result = await asyncio.wait_for(
                    self.runner.run(job, execution_id=execution.id),
                    timeout=self.settings.job_timeout_seconds,
                )
        return result

    def _finish(
        self,
        firing: _Firing,
        status: str,
        summary: dict | None = None,
        error: str | None = None,
        alerts: list[str] | None = None,
    ) -> bool:
        """Move a running execution to a terminal status. Only the first caller wins."""
        execution = firing.execution
        with self._lock:
            if execution is None or execution.status != "running":
                return False
            execution.status = status
            execution.finished_at = self._clock()
            execution.result_summary = summary or {}
            execution.error = error
            execution.alerts_generated = alerts or []
            if firing.lease is not None and firing.lease.release():
                self._running -= 1
            if self._in_flight.get(firing.job_id) is firing:
                del self._in_flight[firing.job_id]

            self._outcomes[status] += 1
            self._duration_ms_total += execution.duration_ms or 0.0
            self._alerts_generated += len(execution.alerts_generated)
            stats = self._stats.get(firing.job_id)
            if stats is not None:
                stats.run_count += 1
                stats.last_run = execution.started_at
                stats.last_status = status
                if status == "failed":
                    stats.error_count += 1
        firing.done.set()

        for listener in self._listeners:
            try:
                outcome = listener(execution)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.error(f"Execution listener failed: {e}")
        self._spawn_persist(EXECUTIONS, execution.id, execution.model_dump(mode="json"))
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, schedule: bool = True) -> None:
        """
        Start the dispatcher and, unless ``schedule`` is False, the cron coordinator.
        """
        if self._dispatcher is None:
            self._dispatcher = asyncio.create_task(self._dispatch_loop())
        if schedule and self._coordinator is None:
            self._coordinator = asyncio.create_task(self._coordinate())
        logger.info(
            f"Scheduler started (max_concurrent_jobs={self.settings.max_concurrent_jobs}, "
            f"queue_size={self.settings.queue_size}, schedule={schedule})"
        )

    async def _coordinate(self) -> None:
        while True:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.settings.tick_seconds)

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop scheduling, wait up to ``timeout`` for running executions, then cancel them."""
        for task in (self._coordinator, self._dispatcher):
            if task is not None:
                task.cancel()
        for task in (self._coordinator, self._dispatcher):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._coordinator = self._dispatcher = None

        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduler stopped")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        job = self.get_job(job_id)
        stats = self._stats[job_id]
        firing = self._in_flight.get(job_id)
        if firing is not None:
            state = "running" if firing.execution is not None else "queued"
        else:
            state = "enabled" if job.enabled else "disabled"
        return {
            "job": job.model_dump(mode="json"),
            "state": state,
            "stats": stats.model_dump(mode="json"),
            "current_execution": firing.execution.model_dump(mode="json") if firing and firing.execution else None,
            "recent_executions": [e.model_dump(mode="json") for e in self.get_execution_history(job_id, RECENT_EXECUTIONS)],
        }

    def get_execution_history(self, job_id: str, limit: int | None = None) -> list[JobExecution]:
        """Executions of a job, newest first."""
        self.get_job(job_id)
        executions = list(reversed(self._history.get(job_id, ())))
        return executions[:limit] if limit else executions

    def get_metrics(self) -> dict[str, Any]:
        finished = sum(self._outcomes.values())
        return {
            "total_jobs": len(self._jobs),
            "scheduled_jobs": sum(1 for j in self._jobs.values() if j.enabled),
            "active_jobs": self._running,
            "queued_firings": self._queue.qsize(),
            "peak_concurrency": self._peak_running,
            "max_concurrent_jobs": self.settings.max_concurrent_jobs,
            "total_jobs_scheduled": self._scheduled,
            "total_executions": finished,
            "successful_executions": self._outcomes["succeeded"],
            "failed_executions": self._outcomes["failed"],
            "cancelled_executions": self._outcomes["cancelled"],
            "dropped_firings": self._dropped,
            "rejected_firings": self._rejected,
            "average_execution_ms": self._duration_ms_total / finished if finished else 0.0,
            "success_rate": self._outcomes["succeeded"] / finished * 100 if finished else 0.0,
            "alerts_generated": self._alerts_generated,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore job definitions from the store."""
        if self.store is None:
            return
        try:
            docs = await self.store.list(JOBS)
        except StoreUnavailable as e:
            logger.warning(f"Could not restore jobs: {e}")
            return
        with self._lock:
            for doc in docs:
                try:
                    job = JobDefinition(**doc)
                except ValidationError as e:
                    logger.error(f"Skipping stored job {doc.get('id')}: {e}")
                    continue
                if job.id not in self._jobs:
                    self._register(job)
        logger.info(f"Restored {len(self._jobs)} job(s)")

    def _spawn_persist(self, collection: str, key: str, document: dict) -> None:
        if self.store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._persist(collection, key, document))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _persist(self, collection: str, key: str, document: dict) -> None:
        if self.store is None:
            return
        try:
            await self.store.save(collection, key, document)
        except StoreUnavailable as e:
            logger.warning(f"Record store unavailable, {collection}/{key} kept in memory only: {e}")
