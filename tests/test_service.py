import threading
import time
from datetime import datetime, timedelta, timezone

from conftest import FakeDumper, make_config

from engine.app.db import build_engine
from engine.app.errors import ShutdownInProgress
from engine.app.ledger import RunLedger
from engine.app.schemas import RunStatus
from engine.app.service import BackupService
from engine.app.shutdown import ShutdownState


class RecordingUploader:
    name = "recording"

    def __init__(self):
        self.artifacts = []

    def upload(self, artifact):
        self.artifacts.append(artifact)


def _service(tmp_path, settings, dumper=None, uploaders=(), ledger=None):
    return BackupService(
        make_config(tmp_path),
        settings=settings,
        dumper=dumper or FakeDumper(tmp_path / "backups"),
        uploaders=list(uploaders),
        ledger=ledger,
        sleep=lambda seconds: None,
    )


def test_status_reports_configuration(tmp_path, fast_settings):
    service = _service(tmp_path, fast_settings, uploaders=[RecordingUploader()])
    try:
        snapshot = service.status()
        assert snapshot.summary.database_connections == 1
        assert snapshot.summary.backup_jobs == 1
        assert snapshot.jobs["prod"].schedule == "Every 6 hour(s)"
        assert snapshot.shutdown_state == "running"
        assert not snapshot.scheduler_running
    finally:
        service.shutdown()


def test_graceful_shutdown_waits_for_running_job(tmp_path, fast_settings):
    gate = threading.Event()
    service = _service(tmp_path, fast_settings, dumper=FakeDumper(tmp_path / "backups", gate=gate))
    at_stop = []
    service.coordinator.add_listener(
        lambda state: at_stop.append(service.status().total_runs) if state == ShutdownState.STOPPED else None
    )

    assert service.scheduler.tick() == ["prod"]
    assert service.dumper.started.wait(5)
    assert service.request_shutdown() == ShutdownState.SHUTDOWN_REQUESTED
    assert service.status().shutdown_state == "shutdown_requested"

    result = []
    stopper = threading.Thread(target=lambda: result.append(service.shutdown()))
    stopper.start()
    time.sleep(0.2)
    assert stopper.is_alive()
    assert service.scheduler.in_flight() == {"prod"}

    gate.set()
    stopper.join(timeout=5)
    assert result == [ShutdownState.STOPPED]
    assert at_stop == [1]
    assert service.status().shutdown_state == "stopped"


def test_second_request_forces_without_waiting(tmp_path, fast_settings):
    gate = threading.Event()
    service = _service(tmp_path, fast_settings, dumper=FakeDumper(tmp_path / "backups", gate=gate))
    forced = []
    service.coordinator.on_force_stop(lambda: forced.append(service.scheduler.in_flight()))

    service.scheduler.tick()
    assert service.dumper.started.wait(5)
    service.request_shutdown()
    assert service.request_shutdown() == ShutdownState.FORCE_STOPPED

    assert forced == [{"prod"}]
    assert service.status().total_runs == 0
    assert service.status().shutdown_state == "force_stopped"
    assert any("Forced shutdown" in event.message for event in service.recent_events())

    gate.set()
    assert service.shutdown() == ShutdownState.FORCE_STOPPED


def test_artifact_upload_is_recorded(tmp_path, fast_settings):
    uploader = RecordingUploader()
    service = _service(tmp_path, fast_settings, uploaders=[uploader])

    run = service.trigger_job("prod")
    assert run.succeeded
    service.shutdown()

    assert [artifact.path for artifact in uploader.artifacts] == [run.artifact.path]
    snapshot = service.status()
    assert snapshot.uploads_succeeded == 1
    assert snapshot.jobs["prod"].last_upload.uploader == "recording"
    messages = [event.message for event in service.recent_events()]
    assert f"Queued {run.artifact.path.name} for upload" in messages
    assert f"Uploaded {run.artifact.path.name} to recording" in messages


def test_partial_failure_still_uploads_what_was_dumped(tmp_path, fast_settings):
    uploader = RecordingUploader()
    dumper = FakeDumper(tmp_path / "backups", fail={"b"})
    service = _service(tmp_path, fast_settings, dumper=dumper, uploaders=[uploader])

    run = service.trigger_job("prod")
    service.shutdown()

    assert run.status == RunStatus.PARTIAL_FAILURE
    assert "b" in run.error
    assert uploader.artifacts[0].databases == ("a",)
    snapshot = service.status()
    assert snapshot.failures == 1
    assert snapshot.total_bytes == run.size_bytes > 0
    assert any(event.level == "ERROR" and "b: DumpError" in event.message for event in service.recent_events())


def test_upload_failure_does_not_change_the_run(tmp_path, fast_settings):
    class BrokenUploader:
        name = "broken"

        def upload(self, artifact):
            raise RuntimeError("network unreachable")

    service = _service(tmp_path, fast_settings, uploaders=[BrokenUploader()])
    run = service.trigger_job("prod")
    service.shutdown()

    snapshot = service.status()
    assert run.succeeded
    assert snapshot.successes == 1
    assert snapshot.uploads_failed == 1
    assert snapshot.jobs["prod"].last_upload.error == "network unreachable"


def test_subscribers_follow_a_run_and_are_closed_on_shutdown(tmp_path, fast_settings):
    service = _service(tmp_path, fast_settings)
    subscription = service.subscribe(replay=False)

    service.trigger_job("prod")
    messages = []
    while True:
        event = subscription.get(timeout=0.1)
        if event is None:
            break
        messages.append(event.message)
    assert messages[0] == "Manual backup requested for prod"
    assert "Dumping database a" in messages

    service.shutdown()
    assert subscription.closed


def test_ledger_restores_last_run_on_restart(tmp_path, fast_settings):
    ledger = RunLedger(build_engine(fast_settings.backupd_database_url))
    ledger.create_schema()
    service = _service(tmp_path, fast_settings, ledger=ledger)
    run = service.trigger_job("prod")
    service.shutdown()

    rows = ledger.recent_runs()
    assert [(row["job_name"], row["status"]) for row in rows] == [("prod", "success")]
    assert rows[0]["checksum"] == run.artifact.checksum

    restarted = _service(tmp_path, fast_settings, ledger=ledger)
    try:
        next_due = restarted.status().jobs["prod"].next_due
        assert abs(next_due - (run.finished_at + timedelta(hours=6))) < timedelta(seconds=1)
        assert restarted.scheduler.tick() == []
    finally:
        restarted.shutdown()


def test_artifact_kept_locally_once_uploads_stopped(tmp_path, fast_settings):
    uploader = RecordingUploader()
    service = _service(tmp_path, fast_settings, uploaders=[uploader])
    service.uploads.stop()

    run = service.trigger_job("prod")
    service.shutdown()

    assert uploader.artifacts == []
    assert run.artifact.path.exists()
    assert f"Uploads stopped, {run.artifact.path.name} kept locally" in [
        event.message for event in service.recent_events()
    ]


class GatedClock:
    """Blocks the first read after being armed until ``release`` is set."""

    def __init__(self):
        self.armed = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self):
        if self.armed:
            self.armed = False
            self.entered.set()
            self.release.wait(5)
        return datetime.now(timezone.utc)


def test_tick_racing_shutdown_cannot_start_a_run(tmp_path, fast_settings):
    clock = GatedClock()
    dumper = FakeDumper(tmp_path / "backups")
    service = BackupService(make_config(tmp_path), settings=fast_settings, dumper=dumper, uploaders=[], clock=clock)
    clock.armed = True
    launched = []
    ticker = threading.Thread(target=lambda: launched.append(service.scheduler.tick()))
    ticker.start()
    assert clock.entered.wait(5)

    assert service.shutdown() == ShutdownState.STOPPED
    clock.release.set()
    ticker.join(timeout=5)

    assert launched == [[]]
    assert service.scheduler.in_flight() == set()
    assert dumper.calls == []


def test_trigger_racing_shutdown_is_refused(tmp_path, fast_settings):
    clock = GatedClock()
    service = BackupService(
        make_config(tmp_path), settings=fast_settings, dumper=FakeDumper(tmp_path / "backups"), uploaders=[], clock=clock
    )
    clock.armed = True
    errors = []

    def trigger():
        try:
            service.trigger_job("prod")
        except ShutdownInProgress as exc:
            errors.append(exc)

    caller = threading.Thread(target=trigger)
    caller.start()
    assert clock.entered.wait(5)
    assert service.shutdown() == ShutdownState.STOPPED
    clock.release.set()
    caller.join(timeout=5)

    assert len(errors) == 1
    assert service.status().total_runs == 0


def test_shutdown_timeout_escalates_to_force_stop(tmp_path, fast_settings):
    gate = threading.Event()
    service = _service(tmp_path, fast_settings, dumper=FakeDumper(tmp_path / "backups", gate=gate))
    assert service.scheduler.tick() == ["prod"]
    assert service.dumper.started.wait(5)
    try:
        state = service.shutdown(timeout=0.2)
        in_flight = service.scheduler.in_flight()
    finally:
        gate.set()

    assert state == ShutdownState.FORCE_STOPPED
    assert in_flight == {"prod"}
    assert service.status().shutdown_state == "force_stopped"
    messages = [event.message for event in service.recent_events()]
    assert "Forced shutdown, abandoning running backups: prod" in messages
    assert "Backup service force-stopped" in messages
    assert service.scheduler.wait_idle(5)
