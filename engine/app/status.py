import threading
from collections import deque
from datetime import datetime, timezone
from typing import Iterable, Optional

from .errors import UnknownJobError
from .schemas import (
    ConfigSummary,
    JobRun,
    JobSpec,
    JobStatus,
    RunStatus,
    StatusSnapshot,
    UploadOutcome,
)


class _JobEntry:
    def __init__(self, spec: JobSpec, history_limit: int):
        self.spec = spec
        self.history: deque[JobRun] = deque(maxlen=history_limit)
        self.last_run: Optional[JobRun] = None
        self.started_at: Optional[datetime] = None
        self.next_due: Optional[datetime] = None
        self.last_upload: Optional[UploadOutcome] = None


class StatusStore:
    """Current state of the engine, shared by the scheduler, jobs and readers.

    Every mutation happens under one lock, so ``snapshot()`` never observes a
    run whose counters were updated but whose history entry was not appended.
    Readers always get copies.
    """

    def __init__(self, history_limit: int = 50):
        self._history_limit = max(1, history_limit)
        self._lock = threading.Lock()
        self._jobs: dict[str, _JobEntry] = {}
        self._scheduler_running = False
        self._shutdown_state = "running"
        self._summary = ConfigSummary()
        self._total_runs = 0
        self._successes = 0
        self._failures = 0
        self._total_bytes = 0
        self._uploads_succeeded = 0
        self._uploads_failed = 0

    def register_jobs(self, jobs: Iterable[JobSpec]) -> None:
        with self._lock:
            for spec in jobs:
                entry = self._jobs.get(spec.name)
                if entry is None:
                    self._jobs[spec.name] = _JobEntry(spec, self._history_limit)
                else:
                    entry.spec = spec

    def set_summary(self, summary: ConfigSummary) -> None:
        with self._lock:
            self._summary = summary.model_copy()

    def set_scheduler_running(self, running: bool) -> None:
        with self._lock:
            self._scheduler_running = running

    def set_shutdown_state(self, state: str) -> None:
        with self._lock:
            self._shutdown_state = state

    def _entry(self, name: str) -> _JobEntry:
        try:
            return self._jobs[name]
        except KeyError:
            raise UnknownJobError(name) from None

    def mark_started(self, name: str, started_at: datetime) -> None:
        with self._lock:
            self._entry(name).started_at = started_at

    def set_next_due(self, name: str, when: Optional[datetime]) -> None:
        with self._lock:
            self._entry(name).next_due = when

    def record(self, run: JobRun) -> None:
        with self._lock:
            entry = self._entry(run.job_name)
            entry.history.append(run)
            entry.last_run = run
            entry.started_at = None
            self._total_runs += 1
            if run.status == RunStatus.SUCCESS:
                self._successes += 1
            else:
                self._failures += 1
            self._total_bytes += run.size_bytes

    def record_upload(self, outcome: UploadOutcome) -> None:
        with self._lock:
            entry = self._jobs.get(outcome.job_name)
            if entry is not None:
                entry.last_upload = outcome
            if outcome.success:
                self._uploads_succeeded += 1
            else:
                self._uploads_failed += 1

    def history(self, limit: Optional[int] = None) -> list[JobRun]:
        with self._lock:
            runs = [run for entry in self._jobs.values() for run in entry.history]
        runs.sort(key=lambda run: run.finished_at, reverse=True)
        return runs[:limit] if limit is not None else runs

    def snapshot(self) -> StatusSnapshot:
        with self._lock:
            jobs = {
                name: JobStatus(
                    name=name,
                    target=entry.spec.target,
                    databases=entry.spec.databases,
                    schedule=entry.spec.schedule.describe(),
                    running=entry.started_at is not None,
                    started_at=entry.started_at,
                    last_run=entry.last_run,
                    next_due=entry.next_due,
                    last_upload=entry.last_upload,
                    history=list(entry.history),
                )
                for name, entry in self._jobs.items()
            }
            return StatusSnapshot(
                scheduler_running=self._scheduler_running,
                shutdown_state=self._shutdown_state,
                generated_at=datetime.now(timezone.utc),
                total_runs=self._total_runs,
                successes=self._successes,
                failures=self._failures,
                total_bytes=self._total_bytes,
                uploads_succeeded=self._uploads_succeeded,
                uploads_failed=self._uploads_failed,
                jobs=jobs,
                summary=self._summary.model_copy(),
            )
