from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DatabaseEngine(str, Enum):
    MYSQL = "mysql"


class DatabaseTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    engine: DatabaseEngine = DatabaseEngine.MYSQL
    host: str = "localhost"
    port: int = 3306
    username: str = "root"
    password: str = ""


class ScheduleUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"


_UNIT_SECONDS = {
    ScheduleUnit.MINUTES: 60,
    ScheduleUnit.HOURS: 3600,
    ScheduleUnit.DAYS: 86400,
}


class Schedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    unit: ScheduleUnit = ScheduleUnit.HOURS
    every: int = Field(default=1, ge=1)
    enabled: bool = True

    @classmethod
    def disabled(cls) -> "Schedule":
        return cls(enabled=False)

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.every * _UNIT_SECONDS[self.unit])

    def next_due(self, last_run: Optional[datetime], now: datetime) -> Optional[datetime]:
        if not self.enabled:
            return None
        if last_run is None:
            return now
        return last_run + self.interval

    def describe(self) -> str:
        if not self.enabled:
            return "Disabled"
        return f"Every {self.every} {self.unit.value[:-1]}(s)"


class JobSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = ""
    target: str
    databases: tuple[str, ...] = Field(min_length=1)
    schedule: Schedule = Field(default_factory=Schedule)

    @model_validator(mode="before")
    @classmethod
    def default_name(cls, data: Any):
        if isinstance(data, dict) and not data.get("name"):
            data = {**data, "name": data.get("target", "")}
        return data


class Artifact(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_name: str
    target: str
    path: Path
    size_bytes: int
    checksum: Optional[str] = None
    databases: tuple[str, ...] = ()
    created_at: datetime
    duration_seconds: float = 0.0


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILURE = "failure"


class JobRun(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_name: str
    target: str
    databases: tuple[str, ...] = ()
    started_at: datetime
    finished_at: datetime
    status: RunStatus
    artifact: Optional[Artifact] = None
    size_bytes: int = 0
    error: Optional[str] = None
    db_errors: dict[str, str] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS

    @property
    def failed_databases(self) -> list[str]:
        return list(self.db_errors)

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class UploadOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_name: str
    uploader: str
    path: Path
    success: bool
    attempts: int
    error: Optional[str] = None
    finished_at: datetime


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    level: str = "INFO"
    origin: str = "scheduler"
    message: str
    kind: str = "log"
    dropped: int = 0

    @property
    def is_gap(self) -> bool:
        return self.kind == "gap"

    def format(self) -> str:
        return f"[{self.timestamp:%Y-%m-%d %H:%M:%S}] {self.level:<5} {self.origin}: {self.message}"


class JobStatus(BaseModel):
    name: str
    target: str
    databases: tuple[str, ...] = ()
    schedule: str
    running: bool = False
    started_at: Optional[datetime] = None
    last_run: Optional[JobRun] = None
    next_due: Optional[datetime] = None
    last_upload: Optional[UploadOutcome] = None
    history: list[JobRun] = Field(default_factory=list)


class ConfigSummary(BaseModel):
    database_connections: int = 0
    backup_jobs: int = 0
    upload_configured: bool = False
    backup_directory: str = ""


class StatusSnapshot(BaseModel):
    scheduler_running: bool = False
    shutdown_state: str = "running"
    generated_at: datetime
    total_runs: int = 0
    successes: int = 0
    failures: int = 0
    total_bytes: int = 0
    uploads_succeeded: int = 0
    uploads_failed: int = 0
    jobs: dict[str, JobStatus] = Field(default_factory=dict)
    summary: ConfigSummary = Field(default_factory=ConfigSummary)

    @property
    def success_rate(self) -> float:
        if not self.total_runs:
            return 100.0
        return self.successes / self.total_runs * 100.0

    @property
    def next_run(self) -> Optional[datetime]:
        due = [job.next_due for job in self.jobs.values() if job.next_due is not None]
        return min(due) if due else None

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["success_rate"] = self.success_rate
        data["total_size_mb"] = self.total_bytes / 1024 / 1024
        next_run = self.next_run
        data["next_run"] = next_run.isoformat() if next_run else None
        return data
