import logging
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError
from .schemas import DatabaseTarget, JobSpec

logger = logging.getLogger("backupd.config")


class Settings(BaseSettings):
    backupd_config_file: str = "./config.toml"
    backupd_database_url: str = "sqlite:///./data/backupd.db"
    backupd_log_file: str = "./data/logs/backupd.log"
    backupd_log_level: str = "INFO"
    backupd_tick_seconds: float = 5.0
    backupd_history_limit: int = 50
    backupd_event_buffer: int = 100
    backupd_replay_size: int = 20
    backupd_subscriber_buffer: int = 256
    backupd_upload_max_attempts: int = 3
    backupd_upload_backoff_seconds: float = 2.0
    backupd_job_timeout_seconds: Optional[float] = None
    backupd_shutdown_timeout_seconds: Optional[float] = None

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, env_file=".env", extra="ignore")


settings = Settings()


class DiscordConfig(BaseModel):
    bot_token: str
    guild_id: int
    forum_channel_name: str = "backups"


class S3Config(BaseModel):
    bucket: str
    prefix: str = ""
    endpoint_url: Optional[str] = None


class UploadConfig(BaseModel):
    discord: Optional[DiscordConfig] = None
    s3: Optional[S3Config] = None

    @property
    def configured(self) -> bool:
        return self.discord is not None or self.s3 is not None


class WebConfig(BaseModel):
    enabled: bool = False
    host: str = "0.0.0.0"
    port: int = 8080
    username: str = ""
    password: str = ""


class AppConfig(BaseModel):
    databases: list[DatabaseTarget] = Field(default_factory=list)
    backup_jobs: list[JobSpec] = Field(default_factory=list)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    local_backup_dir: Path = Path("backups")

    @model_validator(mode="after")
    def check_references(self):
        names = [target.name for target in self.databases]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"duplicate database names: {', '.join(sorted(duplicates))}")
        job_names = [job.name for job in self.backup_jobs]
        duplicates = {name for name in job_names if job_names.count(name) > 1}
        if duplicates:
            raise ValueError(f"duplicate job names: {', '.join(sorted(duplicates))}")
        for job in self.backup_jobs:
            if job.target not in names:
                raise ValueError(f"job '{job.name}' references unknown database '{job.target}'")
        return self


def load_config(path: str | Path | None = None) -> AppConfig:
    path = Path(path or settings.backupd_config_file).expanduser()
    if not path.exists():
        logger.debug("Config file not found at %s, using defaults", path)
        return AppConfig()
    logger.info("Loading configuration from %s", path)
    try:
        with open(path, "rb") as handle:
            raw = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"cannot read {path}: {exc}") from exc
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid configuration in {path}: {exc}") from exc
