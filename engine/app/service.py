import logging
from datetime import datetime
from typing import Callable, Optional

from .config import AppConfig, Settings, settings as default_settings
from .dumpers import Dumper, create_dumper
from .events import EventBroadcaster, Subscription
from .executor import JobExecutor, utcnow
from .ledger import RunLedger
from .scheduler import Scheduler
from .schemas import ConfigSummary, JobRun, StatusSnapshot, UploadOutcome
from .shutdown import ShutdownCoordinator, ShutdownState
from .status import StatusStore
from .uploads import UploadDispatcher, create_uploaders

logger = logging.getLogger("backupd.service")


class BackupService:
    """Owns the engine's components and exposes the control and query API.

    Consumers (console, dashboard) talk to this object only; it is passed to
    them explicitly instead of living in module globals.
    """

    def __init__(
        self,
        config: AppConfig,
        settings: Settings = default_settings,
        dumper: Optional[Dumper] = None,
        uploaders=None,
        ledger: Optional[RunLedger] = None,
        coordinator: Optional[ShutdownCoordinator] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config
        self.settings = settings
        self.ledger = ledger
        self.status_store = StatusStore(history_limit=settings.backupd_history_limit)
        self.events = EventBroadcaster(
            buffer_size=settings.backupd_event_buffer,
            replay_size=settings.backupd_replay_size,
            subscriber_buffer=settings.backupd_subscriber_buffer,
        )
        self.coordinator = coordinator or ShutdownCoordinator()
        self.coordinator.add_listener(self._on_shutdown_state)
        self.dumper = dumper or create_dumper(config.local_backup_dir)

        if uploaders is None:
            uploaders = create_uploaders(config.upload)
        dispatcher_options = {}
        if sleep is not None:
            dispatcher_options["sleep"] = sleep
        self.uploads = UploadDispatcher(
            uploaders,
            on_outcome=self._on_upload,
            max_attempts=settings.backupd_upload_max_attempts,
            backoff_seconds=settings.backupd_upload_backoff_seconds,
            **dispatcher_options,
        )

        self.executor = JobExecutor(
            self.dumper,
            config.local_backup_dir,
            clock=clock,
            on_progress=self.events.emit,
        )
        self.scheduler = Scheduler(
            self.executor,
            config.databases,
            self.status_store,
            self.events,
            self.coordinator,
            on_finished=self._on_run_finished,
            tick_seconds=settings.backupd_tick_seconds,
            job_timeout=settings.backupd_job_timeout_seconds,
            last_runs=ledger.last_runs() if ledger is not None else None,
            clock=clock,
        )
        self.scheduler.load_jobs(config.backup_jobs)
        self.status_store.set_summary(
            ConfigSummary(
                database_connections=len(config.databases),
                backup_jobs=len(config.backup_jobs),
                upload_configured=config.upload.configured,
                backup_directory=str(config.local_backup_dir),
            )
        )
        self.uploads.start()

    # -- hooks ----------------------------------------------------------

    def _on_run_finished(self, run: JobRun) -> None:
        if self.ledger is not None:
            try:
                self.ledger.record_run(run)
            except Exception:  # noqa: BLE001
                logger.exception("Could not persist run of %s", run.job_name)
        if run.artifact is None or not self.uploads.uploaders:
            return
        if self.uploads.submit(run.artifact):
            self.events.info("upload", f"Queued {run.artifact.path.name} for upload")
        else:
            self.events.warn("upload", f"Uploads stopped, {run.artifact.path.name} kept locally")

    def _on_upload(self, outcome: UploadOutcome) -> None:
        self.status_store.record_upload(outcome)
        if self.ledger is not None:
            try:
                self.ledger.record_upload(outcome)
            except Exception:  # noqa: BLE001
                logger.exception("Could not persist upload of %s", outcome.path)
        if outcome.success:
            self.events.info("upload", f"Uploaded {outcome.path.name} to {outcome.uploader}")
        else:
            self.events.error(
                "upload",
                f"Upload of {outcome.path.name} to {outcome.uploader} failed after "
                f"{outcome.attempts} attempt(s): {outcome.error}",
            )

    def _on_shutdown_state(self, state: ShutdownState) -> None:
        self.status_store.set_shutdown_state(state.value)
        if state == ShutdownState.SHUTDOWN_REQUESTED:
            self.events.warn("scheduler", "Shutdown requested, waiting for running backups to finish")
        elif state == ShutdownState.FORCE_STOPPED:
            running = ", ".join(sorted(self.scheduler.in_flight())) or "none"
            self.events.error("scheduler", f"Forced shutdown, abandoning running backups: {running}")

    # -- control API ----------------------------------------------------

    def start_scheduler(self):
        return self.scheduler.start()

    def stop_scheduler(self) -> None:
        self.scheduler.stop()

    def trigger_job(self, name: str) -> JobRun:
        return self.scheduler.trigger(name)

    def request_shutdown(self) -> ShutdownState:
        return self.coordinator.request_shutdown()

    def shutdown(self, timeout: Optional[float] = None) -> ShutdownState:
        """Graceful stop: no new runs, wait for in-flight runs, drain uploads."""
        if timeout is None:
            timeout = self.settings.backupd_shutdown_timeout_seconds
        if not self.coordinator.is_shutdown_requested():
            self.coordinator.request_shutdown()
        self.scheduler.stop()
        if not self.scheduler.wait_idle(timeout):
            logger.warning("Timed out waiting for running backups: %s", sorted(self.scheduler.in_flight()))
            # runs are only ever abandoned through the forced state
            self.coordinator.request_shutdown()
        if not self.uploads.stop(drain=True, timeout=timeout):
            logger.warning("Timed out waiting for %d pending upload(s)", self.uploads.pending())
        state = self.coordinator.mark_stopped()
        if state == ShutdownState.STOPPED:
            self.events.info("scheduler", "Backup service stopped")
        else:
            self.events.warn("scheduler", "Backup service force-stopped")
        self.events.close_all()
        close = getattr(self.dumper, "dispose", None)
        if close is not None:
            close()
        return state

    # -- query API ------------------------------------------------------

    def status(self) -> StatusSnapshot:
        return self.status_store.snapshot()

    def history(self, limit: Optional[int] = None) -> list[JobRun]:
        return self.status_store.history(limit)

    def recent_events(self, limit: Optional[int] = None):
        return self.events.recent(limit)

    def clear_events(self) -> None:
        self.events.clear()

    def subscribe(self, replay: bool = True) -> Subscription:
        return self.events.subscribe(replay=replay)
