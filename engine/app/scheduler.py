"""Backup scheduler.

A background APScheduler interval job calls :meth:`Scheduler.tick`. Each tick
looks at every job; a job whose next due time has passed and that is not
already running gets its own thread. While a run is in flight its due times
are skipped rather than queued, and once it finishes the next due time is
computed from the finish time.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .errors import (
    ConfigurationError,
    JobAlreadyRunning,
    SchedulerInternalError,
    ShutdownInProgress,
    UnknownJobError,
)
from .events import EventBroadcaster
from .executor import JobExecutor
from .schemas import DatabaseTarget, JobRun, JobSpec, RunStatus
from .shutdown import ShutdownCoordinator
from .status import StatusStore

logger = logging.getLogger("backupd.scheduler")

TICK_JOB_ID = "backupd_tick"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerHandle:
    """Returned by :meth:`Scheduler.start`; stops that particular run."""

    def __init__(self, scheduler: "Scheduler", background: BackgroundScheduler):
        self._scheduler = scheduler
        self.background = background

    @property
    def active(self) -> bool:
        return self.background.running

    def stop(self) -> None:
        self._scheduler.stop(self)


class Scheduler:
    def __init__(
        self,
        executor: JobExecutor,
        targets: Iterable[DatabaseTarget],
        status: StatusStore,
        events: EventBroadcaster,
        shutdown: ShutdownCoordinator,
        on_finished: Optional[Callable[[JobRun], None]] = None,
        tick_seconds: float = 5.0,
        job_timeout: Optional[float] = None,
        last_runs: Optional[dict[str, datetime]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._executor = executor
        self._targets = {target.name: target for target in targets}
        self._status = status
        self._events = events
        self._shutdown = shutdown
        self._on_finished = on_finished
        self._tick_seconds = tick_seconds
        self._job_timeout = job_timeout
        self._clock = clock
        self._jobs: dict[str, JobSpec] = {}
        self._last_run: dict[str, datetime] = dict(last_runs or {})
        self._in_flight: dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._handle: Optional[SchedulerHandle] = None

    # -- configuration -------------------------------------------------

    def load_jobs(self, jobs: Iterable[JobSpec]) -> None:
        jobs = list(jobs)
        seen = set()
        for spec in jobs:
            if spec.name in seen:
                raise ConfigurationError(f"duplicate job name: {spec.name}")
            if spec.target not in self._targets:
                raise ConfigurationError(f"job '{spec.name}' references unknown database '{spec.target}'")
            seen.add(spec.name)
        with self._lock:
            self._jobs = {spec.name: spec for spec in jobs}
        self._status.register_jobs(jobs)
        now = self._clock()
        for spec in jobs:
            self._status.set_next_due(spec.name, self.next_due(spec.name, now))

    @property
    def jobs(self) -> list[JobSpec]:
        with self._lock:
            return list(self._jobs.values())

    # -- lifecycle -----------------------------------------------------

    def start(self, jobs: Optional[Iterable[JobSpec]] = None) -> SchedulerHandle:
        if self._shutdown.is_shutdown_requested():
            raise ShutdownInProgress("shutdown in progress, scheduler not started")
        if jobs is not None:
            self.load_jobs(jobs)
        # one tick loop per scheduler: check, create and assign happen under the lock
        with self._lock:
            if self._shutdown.is_shutdown_requested():
                raise ShutdownInProgress("shutdown in progress, scheduler not started")
            if self._handle is not None and self._handle.active:
                return self._handle
            background = BackgroundScheduler(timezone=timezone.utc)
            background.add_job(
                self._safe_tick,
                "interval",
                seconds=self._tick_seconds,
                id=TICK_JOB_ID,
                max_instances=1,
                coalesce=True,
                next_run_time=utcnow(),
            )
            try:
                background.start()
            except Exception as exc:
                raise SchedulerInternalError(f"cannot start scheduler thread: {exc}") from exc
            handle = self._handle = SchedulerHandle(self, background)
            job_count = len(self._jobs)
        self._status.set_scheduler_running(True)
        if not job_count:
            self._events.warn("scheduler", "No backup jobs configured. Scheduler will wait for configuration.")
        self._events.info("scheduler", f"Starting backup scheduler ({job_count} job(s), tick {self._tick_seconds:g}s)")
        return handle

    def stop(self, handle: Optional[SchedulerHandle] = None) -> None:
        """Stop ticking. Runs already in flight are left to finish."""
        with self._lock:
            handle = handle or self._handle
            if handle is None:
                return
            if handle.background.running:
                handle.background.shutdown(wait=False)
            current = handle is self._handle
            if current:
                self._handle = None
        if current:
            self._status.set_scheduler_running(False)
            self._events.info("scheduler", "Scheduler stopped")

    def is_running(self) -> bool:
        with self._lock:
            return self._handle is not None and self._handle.active

    def in_flight(self) -> set[str]:
        with self._lock:
            return set(self._in_flight)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no run is in flight."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout)

    # -- scheduling ----------------------------------------------------

    def next_due(self, name: str, now: Optional[datetime] = None) -> Optional[datetime]:
        with self._lock:
            spec = self._jobs.get(name)
            last_run = self._last_run.get(name)
        if spec is None:
            raise UnknownJobError(name)
        return spec.schedule.next_due(last_run, now or self._clock())

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception:  # noqa: BLE001
            logger.exception("Scheduler tick failed")

    def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Launch every due job; returns the names launched."""
        if self._shutdown.is_shutdown_requested():
            return []
        now = now or self._clock()
        launched = []
        for spec in self.jobs:
            try:
                if self._launch_if_due(spec, now):
                    launched.append(spec.name)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Scheduling %s failed", spec.name)
                self._events.error("scheduler", f"Internal error scheduling {spec.name}: {exc}")
        return launched

    def _launch_if_due(self, spec: JobSpec, now: datetime) -> bool:
        with self._lock:
            # admission and the shutdown check share the lock that wait_idle uses
            if self._shutdown.is_shutdown_requested():
                return False
            if spec.name in self._in_flight:
                return False
            due = spec.schedule.next_due(self._last_run.get(spec.name), now)
            if due is None or due > now:
                return False
            self._in_flight[spec.name] = now
        try:
            thread = threading.Thread(
                target=self._run_scheduled, args=(spec, now), name=f"backupd-job-{spec.name}", daemon=True
            )
            thread.start()
        except RuntimeError as exc:
            self._release(spec.name)
            raise SchedulerInternalError(f"cannot start thread for {spec.name}: {exc}") from exc
        return True

    def _run_scheduled(self, spec: JobSpec, started_at: datetime) -> None:
        try:
            self._run(spec, started_at)
        except Exception:  # noqa: BLE001
            logger.exception("Run of %s failed unexpectedly", spec.name)

    # -- manual runs ---------------------------------------------------

    def trigger(self, name: str) -> JobRun:
        """Run a job now on the caller's thread, ignoring its schedule."""
        if self._shutdown.is_shutdown_requested():
            raise ShutdownInProgress("shutdown in progress, job not started")
        now = self._clock()
        with self._lock:
            if self._shutdown.is_shutdown_requested():
                raise ShutdownInProgress("shutdown in progress, job not started")
            spec = self._jobs.get(name)
            if spec is None:
                raise UnknownJobError(name)
            if name in self._in_flight:
                raise JobAlreadyRunning(name)
            self._in_flight[name] = now
        self._events.info("scheduler", f"Manual backup requested for {name}")
        return self._run(spec, now)

    # -- execution -----------------------------------------------------

    def _run(self, spec: JobSpec, started_at: datetime) -> JobRun:
        origin = f"job:{spec.name}"
        try:
            self._status.mark_started(spec.name, started_at)
            self._events.info(origin, f"Executing backup job {spec.name} ({len(spec.databases)} database(s))")
            run = self._execute(spec, started_at)
            self._finalize(spec, run)
            return run
        finally:
            self._release(spec.name)

    def _execute(self, spec: JobSpec, started_at: datetime) -> JobRun:
        target = self._targets[spec.target]
        if self._job_timeout is None:
            return self._execute_guarded(spec, target, started_at)
        box: dict[str, JobRun] = {}
        worker = threading.Thread(
            target=lambda: box.setdefault("run", self._execute_guarded(spec, target, started_at)),
            name=f"backupd-exec-{spec.name}",
            daemon=True,
        )
        worker.start()
        worker.join(self._job_timeout)
        if worker.is_alive():
            logger.error("Job %s exceeded %ss, abandoning it", spec.name, self._job_timeout)
            return self._failed_run(spec, started_at, "timeout")
        return box["run"]

    def _execute_guarded(self, spec: JobSpec, target: DatabaseTarget, started_at: datetime) -> JobRun:
        try:
            return self._executor.execute(spec, target)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Executor raised for %s", spec.name)
            return self._failed_run(spec, started_at, f"internal error: {exc}")

    def _failed_run(self, spec: JobSpec, started_at: datetime, error: str) -> JobRun:
        return JobRun(
            job_name=spec.name,
            target=spec.target,
            databases=spec.databases,
            started_at=started_at,
            finished_at=self._clock(),
            status=RunStatus.FAILURE,
            error=error,
        )

    def _finalize(self, spec: JobSpec, run: JobRun) -> None:
        with self._lock:
            self._last_run[spec.name] = run.finished_at
        self._status.record(run)
        self._status.set_next_due(spec.name, spec.schedule.next_due(run.finished_at, run.finished_at))
        origin = f"job:{spec.name}"
        if run.status == RunStatus.SUCCESS:
            self._events.info(
                origin,
                f"Backup of {run.target} ({len(run.databases)} databases) completed: "
                f"{run.size_bytes / 1024 / 1024:.2f} MB in {run.duration_seconds:.0f} sec",
            )
        else:
            self._events.error(origin, f"Backup of {run.target} failed: {run.error}")
        if self._on_finished is not None:
            try:
                self._on_finished(run)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Post-run hook failed for %s", spec.name)
                self._events.error("scheduler", f"Post-run handling of {spec.name} failed: {exc}")

    def _release(self, name: str) -> None:
        with self._idle:
            self._in_flight.pop(name, None)
            self._idle.notify_all()
