import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .archive import checksum, pack_zip
from .dumpers import Dumper, DumpResult
from .schemas import Artifact, DatabaseTarget, JobRun, JobSpec, RunStatus

logger = logging.getLogger("backupd.executor")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobExecutor:
    """Runs one backup job to completion.

    Each database is dumped independently; a failure on one database is
    recorded and the remaining databases are still dumped. The executor never
    retries and never raises for dump failures, everything ends up in the
    returned :class:`JobRun`.
    """

    def __init__(
        self,
        dumper: Dumper,
        backup_dir,
        clock: Callable[[], datetime] = utcnow,
        on_progress: Optional[Callable[[str, str, str], None]] = None,
    ):
        self._dumper = dumper
        self._backup_dir = Path(backup_dir)
        self._clock = clock
        self._on_progress = on_progress

    def _progress(self, spec: JobSpec, level: str, message: str) -> None:
        if self._on_progress is not None:
            self._on_progress(level, f"job:{spec.name}", message)

    def execute(self, spec: JobSpec, target: DatabaseTarget) -> JobRun:
        started_at = self._clock()
        started = time.monotonic()
        dumps: list[DumpResult] = []
        db_errors: dict[str, str] = {}

        for database in spec.databases:
            self._progress(spec, "INFO", f"Dumping database {database}")
            try:
                result = self._dumper.dump(target, database)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Dump of %s.%s failed: %s", target.name, database, exc)
                db_errors[database] = f"{type(exc).__name__}: {exc}"
                self._progress(spec, "ERROR", f"Database {database} failed: {exc}")
                continue
            dumps.append(result)
            self._progress(spec, "INFO", f"Database {database} dumped ({result.size_bytes} bytes)")

        artifact = None
        size_bytes = sum(dump.size_bytes for dump in dumps)
        error = None
        if dumps:
            try:
                artifact = self._build_artifact(spec, target, dumps, started_at, started)
                size_bytes = artifact.size_bytes
            except OSError as exc:
                logger.exception("Archiving %s failed", spec.name)
                error = f"Failed to create archive: {exc}"

        if error is not None:
            status = RunStatus.FAILURE
        elif not dumps:
            status = RunStatus.FAILURE
            error = "No databases were successfully dumped: " + _summarise(db_errors)
        elif db_errors:
            status = RunStatus.PARTIAL_FAILURE
            error = f"{len(db_errors)} of {len(spec.databases)} database(s) failed: " + _summarise(db_errors)
        else:
            status = RunStatus.SUCCESS

        return JobRun(
            job_name=spec.name,
            target=target.name,
            databases=spec.databases,
            started_at=started_at,
            finished_at=self._clock(),
            status=status,
            artifact=artifact,
            size_bytes=size_bytes,
            error=error,
            db_errors=db_errors,
        )

    def _build_artifact(self, spec, target, dumps, started_at, started) -> Artifact:
        stamp = started_at.strftime("%Y%m%d_%H%M%S")
        path = self._backup_dir / target.name / f"backup_{spec.name}_{stamp}.zip"
        try:
            size = pack_zip([(dump.path, dump.path.name) for dump in dumps], path)
        finally:
            for dump in dumps:
                dump.path.unlink(missing_ok=True)
        return Artifact(
            job_name=spec.name,
            target=target.name,
            path=path,
            size_bytes=size,
            checksum=checksum(path),
            databases=tuple(dump.database for dump in dumps),
            created_at=self._clock(),
            duration_seconds=round(time.monotonic() - started, 3),
        )


def _summarise(db_errors: dict[str, str]) -> str:
    return "; ".join(f"{database}: {message}" for database, message in db_errors.items())
