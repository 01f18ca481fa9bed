"""Periodic drivers for session processing.

Each driver scans persisted state and dispatches work; nothing is carried
between cycles in memory except the set of in-flight session ids.

Default intervals (from pipeline_config.yaml):
    retry sweep:        every 5 minutes
    auto-stop:          every minute
    abandoned cleanup:  every 30 minutes
    stale lock cleanup: every 5 minutes
    historical sync:    at 00:00, 06:00, 12:00 and 18:00 UTC

Usage::

    workers = SessionWorkers(repos, orchestrator, TaskDispatcher(max_concurrent=5))
    scheduler = build_worker_scheduler(workers, historical_sync=job)
    task = asyncio.create_task(scheduler.run())
    ...
    scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from src.rehab.base import SessionStatus, utc_now
from src.rehab.config_loader import PipelineConfig, get_pipeline_config
from src.rehab.repositories import Repositories
from src.rehab.sync import schedule
from src.rehab.sync.credential_lock import CredentialLockManager
from src.rehab.sync.orchestrator import SessionOrchestrator

logger = logging.getLogger("cardiorehab.rehab.sync.workers")

ABANDONED_REASON = "Session was started but never stopped (abandoned after {hours} hours)"


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IntervalTrigger:
    """Fire every ``seconds`` after the previous run."""

    seconds: int

    def next_fire_time(self, after: datetime) -> datetime:
        return after + timedelta(seconds=self.seconds)


@dataclass(frozen=True)
class HourlyBoundaryTrigger:
    """Fire at fixed UTC hours of the day, plus an optional minute offset."""

    hours: tuple[int, ...]
    offset_minutes: int = 0

    def next_fire_time(self, after: datetime) -> datetime:
        """Return the first boundary strictly after ``after``."""
        offset = timedelta(minutes=self.offset_minutes)
        hours = sorted(self.hours)
        day = after.replace(hour=0, minute=0, second=0, microsecond=0)
        for days_ahead in (0, 1):
            base = day + timedelta(days=days_ahead)
            for hour in hours:
                candidate = base + timedelta(hours=hour) + offset
                if candidate > after:
                    return candidate
        return day + timedelta(days=2, hours=hours[0]) + offset


@dataclass
class PeriodicJob:
    """One named driver registered with the WorkerScheduler.

    Attributes:
        name:     Job name used in logs.
        trigger:  Object exposing ``next_fire_time(after)``.
        func:     Async callable receiving the cycle's ``now``.
        next_run: When the job is next due (None until scheduled).
    """

    name: str
    trigger: Any
    func: Callable[[datetime], Awaitable[Any]]
    next_run: datetime | None = None
    last_run: datetime | None = None
    _task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class WorkerScheduler:
    """Run periodic jobs on their triggers.

    A due job is started as its own task so a slow job (historical sync)
    never delays the others.  A job still running from its previous cycle
    is skipped rather than overlapped.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        idle_seconds: float = 1.0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            clock:        Source of the current time.
            sleeper:      Async sleep function (injectable for tests).
            idle_seconds: Upper bound on one sleep between checks.
        """
        self._clock = clock
        self._sleeper = sleeper
        self._idle_seconds = idle_seconds
        self._jobs: list[PeriodicJob] = []
        self._running = False

    @property
    def jobs(self) -> list[PeriodicJob]:
        return list(self._jobs)

    def add_job(
        self,
        name: str,
        trigger: Any,
        func: Callable[[datetime], Awaitable[Any]],
        run_immediately: bool = False,
    ) -> PeriodicJob:
        now = self._clock()
        job = PeriodicJob(
            name=name,
            trigger=trigger,
            func=func,
            next_run=now if run_immediately else trigger.next_fire_time(now),
        )
        self._jobs.append(job)
        logger.debug("Registered job %s, first run at %s", name, job.next_run)
        return job

    async def run_due(self, now: datetime | None = None) -> list[str]:
        """Start every job whose next run is at or before ``now``.

        Returns:
            Names of the jobs started this cycle.
        """
        now = now or self._clock()
        started: list[str] = []
        for job in self._jobs:
            if job.next_run is None or job.next_run > now:
                continue
            if job.is_running:
                logger.warning("Job %s still running from previous cycle, skipping", job.name)
                job.next_run = job.trigger.next_fire_time(now)
                continue
            job.last_run = now
            job.next_run = job.trigger.next_fire_time(now)
            job._task = asyncio.create_task(self._run_job(job, now), name=f"worker:{job.name}")
            started.append(job.name)
        return started

    async def wait_idle(self) -> None:
        """Wait until every started job has finished."""
        tasks = [job._task for job in self._jobs if job.is_running]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def run(self, max_cycles: int | None = None) -> None:
        """Loop until ``stop()`` is called (or ``max_cycles`` checks have run)."""
        self._running = True
        cycles = 0
        logger.info("WorkerScheduler started with %d jobs", len(self._jobs))
        try:
            while self._running:
                await self.run_due(self._clock())
                cycles += 1
                if max_cycles is not None and cycles >= max_cycles:
                    break
                await self._sleeper(self._seconds_until_next())
        finally:
            self._running = False
            await self.wait_idle()
            logger.info("WorkerScheduler stopped")

    def stop(self) -> None:
        self._running = False

    def _seconds_until_next(self) -> float:
        pending = [job.next_run for job in self._jobs if job.next_run is not None]
        if not pending:
            return self._idle_seconds
        wait = (min(pending) - self._clock()).total_seconds()
        return max(0.0, min(wait, self._idle_seconds))

    async def _run_job(self, job: PeriodicJob, now: datetime) -> None:
        try:
            result = await job.func(now)
        except Exception:
            logger.exception("Job %s failed", job.name)
            return
        logger.debug("Job %s finished: %s", job.name, result)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TaskDispatcher:
    """Fire-and-forget execution of per-session work, bounded and tracked.

    A key that is already in flight is not dispatched again, so one session
    never has two concurrent attempts from this process.
    """

    def __init__(self, max_concurrent: int = 5) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: dict[int, asyncio.Task] = {}

    @property
    def in_flight(self) -> frozenset[int]:
        return frozenset(self._tasks)

    def dispatch(self, key: int, work: Callable[[], Awaitable[Any]]) -> bool:
        """Schedule ``work()`` under ``key``.

        Returns:
            False when ``key`` is already in flight.
        """
        if key in self._tasks:
            logger.debug("Session %s already in flight, not dispatching", key)
            return False
        task = asyncio.create_task(self._run(work), name=f"session:{key}")
        self._tasks[key] = task
        task.add_done_callback(lambda t, k=key: self._on_done(k, t))
        return True

    async def drain(self) -> None:
        """Wait for every in-flight task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _run(self, work: Callable[[], Awaitable[Any]]) -> Any:
        async with self._semaphore:
            return await work()

    def _on_done(self, key: int, task: asyncio.Task) -> None:
        self._tasks.pop(key, None)
        if task.cancelled():
            logger.warning("Session %s task cancelled", key)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Session %s task failed: %s", key, exc, exc_info=exc)
        else:
            logger.debug("Session %s task done: %s", key, task.result())


# ---------------------------------------------------------------------------
# Session drivers
# ---------------------------------------------------------------------------


class SessionWorkers:
    """Session drivers plus the sweep that frees credential locks left by crashed holders."""

    def __init__(
        self,
        repos: Repositories,
        orchestrator: SessionOrchestrator,
        dispatcher: TaskDispatcher | None = None,
        config: PipelineConfig | None = None,
        lock_manager: CredentialLockManager | None = None,
    ) -> None:
        self._repos = repos
        self._orchestrator = orchestrator
        self._dispatcher = dispatcher or TaskDispatcher()
        self._config = config or get_pipeline_config()
        self._locks = lock_manager or CredentialLockManager(
            repos.credentials,
            stale_after=timedelta(minutes=self._config.credentials.lock_stale_minutes),
        )

    @property
    def dispatcher(self) -> TaskDispatcher:
        return self._dispatcher

    async def retry_sweep(self, now: datetime) -> int:
        """Start processing finished sessions and dispatch due attempts.

        Returns:
            Number of sessions dispatched.
        """
        retry_cfg = self._config.retry
        grace = timedelta(seconds=retry_cfg.attempt_grace_seconds)

        due = {
            s.session_id: s
            for s in await self._repos.sessions.due_for_attempt(now + grace)
            if schedule.should_attempt_now(s.next_attempt_at, now, retry_cfg)
        }

        for session in await self._repos.sessions.ready_to_process(now):
            if session.session_id in self._dispatcher.in_flight:
                continue
            self._orchestrator.begin_processing(session, now)
            await self._repos.sessions.save(session)
            logger.info("Session %s: processing started", session.session_id)
            due[session.session_id] = session

        dispatched = 0
        for session_id in due:
            if self._dispatcher.dispatch(
                session_id, lambda sid=session_id: self._orchestrator.process_attempt(sid)
            ):
                dispatched += 1

        if dispatched:
            logger.info("Retry sweep dispatched %d session(s)", dispatched)
        else:
            logger.debug("Retry sweep: nothing due")
        return dispatched

    async def auto_stop(self, now: datetime) -> int:
        """Move active sessions whose planned window has elapsed to in_progress."""
        stopped = 0
        for session in await self._repos.sessions.active_past_planned_end(now):
            session.status = SessionStatus.in_progress
            if session.actual_duration is None:
                session.actual_duration = session.planned_duration
            if session.processing_starts_at is None:
                session.processing_starts_at = session.end_time
            session.updated_at = now
            await self._repos.sessions.save(session)
            stopped += 1
            logger.info(
                "Session %s (patient %s) auto-stopped at planned end, duration %d min",
                session.session_id, session.patient_id, session.actual_duration,
            )
        return stopped

    async def cleanup_abandoned(self, now: datetime) -> int:
        """Mark sessions still active past the abandonment grace period."""
        hours = self._config.sessions.abandon_after_hours
        cutoff = now - timedelta(hours=hours)
        abandoned = 0
        for session in await self._repos.sessions.active_created_before(cutoff):
            session.status = SessionStatus.abandoned
            session.failure_reason = ABANDONED_REASON.format(hours=hours)
            session.next_attempt_at = None
            session.updated_at = now
            await self._repos.sessions.save(session)
            abandoned += 1
            logger.info(
                "Session %s (patient %s) marked abandoned", session.session_id, session.patient_id
            )
        return abandoned

    async def release_stale_locks(self, now: datetime) -> int:
        return await self._locks.release_stale_locks(now)


def build_worker_scheduler(
    workers: SessionWorkers,
    historical_sync: Any | None = None,
    config: PipelineConfig | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> WorkerScheduler:
    """Register the standard drivers on a new WorkerScheduler.

    Args:
        workers:         Session drivers.
        historical_sync: Optional job exposing ``run(now)``.
        config:          Pipeline config (defaults to the loaded singleton).
        clock:           Source of the current time.
        sleeper:         Async sleep function.
    """
    cfg = config or get_pipeline_config()
    scheduler = WorkerScheduler(clock=clock, sleeper=sleeper)
    scheduler.add_job(
        "retry_sweep", IntervalTrigger(cfg.workers.retry_sweep_seconds),
        workers.retry_sweep, run_immediately=True,
    )
    scheduler.add_job(
        "auto_stop", IntervalTrigger(cfg.workers.auto_stop_seconds),
        workers.auto_stop, run_immediately=True,
    )
    scheduler.add_job(
        "abandoned_cleanup", IntervalTrigger(cfg.workers.abandoned_cleanup_seconds),
        workers.cleanup_abandoned, run_immediately=True,
    )
    scheduler.add_job(
        "stale_lock_cleanup", IntervalTrigger(cfg.workers.stale_lock_cleanup_seconds),
        workers.release_stale_locks,
    )
    if historical_sync is not None:
        scheduler.add_job(
            "historical_sync", HourlyBoundaryTrigger(tuple(cfg.bulk_sync.hours)),
            historical_sync.run,
        )
    return scheduler
