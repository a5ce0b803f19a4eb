import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, insert, select
from sqlalchemy.exc import SQLAlchemyError

from .db import build_engine, build_session_factory
from .models import job_runs, metadata, uploads
from .schemas import JobRun, UploadOutcome

logger = logging.getLogger("backupd.ledger")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RunLedger:
    """Persistent bookkeeping of finished runs and upload outcomes."""

    def __init__(self, engine=None, session_factory=None):
        self.engine = engine or build_engine()
        self.SessionLocal = session_factory or build_session_factory(self.engine)

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    def record_run(self, run: JobRun) -> None:
        with self.SessionLocal() as session:
            session.execute(
                insert(job_runs).values(
                    job_name=run.job_name,
                    target=run.target,
                    databases=",".join(run.databases),
                    status=run.status.value,
                    started_at=run.started_at,
                    finished_at=run.finished_at,
                    size_bytes=run.size_bytes,
                    artifact_path=str(run.artifact.path) if run.artifact else None,
                    checksum=run.artifact.checksum if run.artifact else None,
                    error=run.error,
                )
            )
            session.commit()

    def record_upload(self, outcome: UploadOutcome) -> None:
        with self.SessionLocal() as session:
            session.execute(
                insert(uploads).values(
                    job_name=outcome.job_name,
                    storage=outcome.uploader,
                    remote_path=str(outcome.path),
                    success=outcome.success,
                    attempts=outcome.attempts,
                    error=(outcome.error or "")[:500] or None,
                    created_at=outcome.finished_at,
                )
            )
            session.commit()

    def last_runs(self) -> dict[str, datetime]:
        try:
            with self.SessionLocal() as session:
                rows = session.execute(
                    select(job_runs.c.job_name, func.max(job_runs.c.finished_at)).group_by(job_runs.c.job_name)
                ).all()
        except SQLAlchemyError as exc:
            logger.warning("Could not read last runs: %s", exc)
            return {}
        return {name: _aware(finished) for name, finished in rows}

    def recent_runs(self, limit: int = 50) -> list[dict]:
        with self.SessionLocal() as session:
            rows = session.execute(
                select(job_runs).order_by(job_runs.c.finished_at.desc()).limit(limit)
            ).mappings().all()
        return [
            {**row, "started_at": _aware(row["started_at"]), "finished_at": _aware(row["finished_at"])}
            for row in rows
        ]
