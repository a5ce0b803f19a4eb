import itertools
import threading
from pathlib import Path

import pytest

from engine.app.config import AppConfig, Settings
from engine.app.dumpers import DumpResult
from engine.app.errors import DumpError
from engine.app.schemas import DatabaseTarget, JobSpec, Schedule, ScheduleUnit


class FakeDumper:
    """Writes a small SQL file per database; names in ``fail`` raise DumpError.

    With a ``gate`` every dump blocks until the gate is set, which lets a test
    hold a run in flight.
    """

    def __init__(self, backup_dir, fail=(), gate=None):
        self.backup_dir = Path(backup_dir)
        self.fail = set(fail)
        self.gate = gate
        self.started = threading.Event()
        self.calls = []
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def dump(self, target, database):
        with self._lock:
            self.calls.append((target.name, database))
            n = next(self._counter)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        if database in self.fail:
            raise DumpError(f"cannot dump {database}")
        path = self.backup_dir / target.name / f"{database}_{n}.sql"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"-- dump of {database}\n" + "INSERT INTO t VALUES (1);\n" * 20)
        return DumpResult(database=database, path=path, size_bytes=path.stat().st_size)


def make_config(tmp_path, jobs=None, **kwargs) -> AppConfig:
    if jobs is None:
        jobs = [
            JobSpec(
                name="prod",
                target="prod",
                databases=("a", "b"),
                schedule=Schedule(unit=ScheduleUnit.HOURS, every=6),
            )
        ]
    return AppConfig(
        databases=[DatabaseTarget(name="prod", host="db.local")],
        backup_jobs=jobs,
        local_backup_dir=tmp_path / "backups",
        **kwargs,
    )


@pytest.fixture
def fast_settings(tmp_path):
    return Settings(
        backupd_database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        backupd_log_file=str(tmp_path / "backupd.log"),
        backupd_tick_seconds=0.05,
        backupd_upload_backoff_seconds=0.0,
        backupd_shutdown_timeout_seconds=5.0,
    )


@pytest.fixture
def dumper(tmp_path):
    return FakeDumper(tmp_path / "backups")
