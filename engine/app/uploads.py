import json
import logging
import queue
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from .config import DiscordConfig, S3Config, UploadConfig
from .errors import UploadError
from .schemas import Artifact, UploadOutcome

logger = logging.getLogger("backupd.upload")

DISCORD_API_BASE = "https://discord.com/api/v10"
DISCORD_MAX_FILE_SIZE = 8 * 1024 * 1024
DISCORD_FORUM_CHANNEL = 15


class Uploader(Protocol):
    name: str

    def upload(self, artifact: Artifact) -> None:
        ...

    def test_connection(self) -> None:
        ...


class DiscordUploader:
    name = "discord"

    def __init__(self, config: DiscordConfig, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self._config = config
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bot {config.bot_token}", "User-Agent": "backupd/1.0"}
        )
        self._channel_id: Optional[str] = None

    def _request(self, method: str, path: str, **kwargs):
        try:
            response = self._session.request(method, f"{DISCORD_API_BASE}{path}", timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise UploadError(f"Discord request failed: {exc}") from exc
        if not response.ok:
            raise UploadError(f"Discord {method} {path} failed: {response.status_code} - {response.text}")
        return response

    def test_connection(self) -> None:
        guild = self._request("GET", f"/guilds/{self._config.guild_id}").json()
        logger.info("Verified access to guild: %s (%s)", guild.get("name"), guild.get("id"))

    def _forum_channel(self) -> str:
        if self._channel_id:
            return self._channel_id
        channels = self._request("GET", f"/guilds/{self._config.guild_id}/channels").json()
        for channel in channels:
            if channel.get("name") == self._config.forum_channel_name and channel.get("type") == DISCORD_FORUM_CHANNEL:
                self._channel_id = channel["id"]
                return self._channel_id
        logger.info("Creating forum channel: %s", self._config.forum_channel_name)
        created = self._request(
            "POST",
            f"/guilds/{self._config.guild_id}/channels",
            json={"name": self._config.forum_channel_name, "type": DISCORD_FORUM_CHANNEL},
        ).json()
        self._channel_id = created["id"]
        return self._channel_id

    @staticmethod
    def message(artifact: Artifact) -> str:
        return (
            "**Database Backup Completed**\n\n"
            f"**Connection:** `{artifact.target}`\n"
            f"**Databases ({len(artifact.databases)}):** `{', '.join(artifact.databases)}`\n"
            f"**Timestamp:** {artifact.created_at:%Y-%m-%d %H:%M:%S UTC}\n"
            f"**File Size:** {artifact.size_bytes / 1024 / 1024:.2f} MB\n"
            f"**Duration:** {artifact.duration_seconds:.0f} seconds\n"
            f"**SHA256:** `{artifact.checksum or 'N/A'}`"
        )

    def upload(self, artifact: Artifact) -> None:
        channel_id = self._forum_channel()
        topic = f"Backup {artifact.target} - {artifact.created_at:%Y-%m-%d %H:%M}"
        content = self.message(artifact)
        if artifact.size_bytes > DISCORD_MAX_FILE_SIZE:
            logger.warning(
                "Backup file size (%.2f MB) exceeds Discord limit, posting without attachment",
                artifact.size_bytes / 1024 / 1024,
            )
            content += f"\n\n**Note:** File too large for Discord upload. Backup saved locally at: `{artifact.path}`"
            self._request("POST", f"/channels/{channel_id}/threads", json={"name": topic, "message": {"content": content}})
            return
        payload = {
            "name": topic,
            "message": {"content": content, "attachments": [{"id": 0, "filename": artifact.path.name}]},
        }
        with open(artifact.path, "rb") as handle:
            self._request(
                "POST",
                f"/channels/{channel_id}/threads",
                data={"payload_json": json.dumps(payload)},
                files={"files[0]": (artifact.path.name, handle, "application/zip")},
            )


class S3Uploader:
    name = "s3"

    def __init__(self, config: S3Config, client=None):
        self._config = config
        self._client = client or boto3.client("s3", endpoint_url=config.endpoint_url)

    def key_for(self, artifact: Artifact) -> str:
        parts = [self._config.prefix.strip("/"), artifact.job_name, artifact.path.name]
        return "/".join(part for part in parts if part)

    def test_connection(self) -> None:
        try:
            self._client.head_bucket(Bucket=self._config.bucket)
        except (BotoCoreError, ClientError) as exc:
            raise UploadError(f"S3 bucket {self._config.bucket} unavailable: {exc}") from exc

    def upload(self, artifact: Artifact) -> None:
        key = self.key_for(artifact)
        try:
            self._client.upload_file(str(artifact.path), self._config.bucket, key)
        except (BotoCoreError, ClientError, OSError) as exc:
            raise UploadError(f"S3 upload of {artifact.path.name} failed: {exc}") from exc
        logger.info("Uploaded %s to s3://%s/%s", artifact.path, self._config.bucket, key)


def create_uploaders(config: UploadConfig) -> list:
    uploaders = []
    if config.discord is not None:
        uploaders.append(DiscordUploader(config.discord))
    if config.s3 is not None:
        uploaders.append(S3Uploader(config.s3))
    return uploaders


_STOP = object()


class UploadDispatcher:
    """Delivers artifacts to the configured uploaders off the caller's thread.

    ``submit`` only enqueues. A single worker thread performs the uploads,
    retrying each uploader up to ``max_attempts`` times with exponential
    backoff, and reports every outcome through ``on_outcome``.
    """

    def __init__(
        self,
        uploaders,
        on_outcome: Callable[[UploadOutcome], None],
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._uploaders = list(uploaders)
        self._on_outcome = on_outcome
        self._max_attempts = max(1, max_attempts)
        self._backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._queue: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._accepting = False
        self._lock = threading.Lock()

    @property
    def uploaders(self) -> list:
        return list(self._uploaders)

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._accepting = True
            self._thread = threading.Thread(target=self._worker, name="backupd-uploads", daemon=True)
            self._thread.start()

    def submit(self, artifact: Artifact) -> bool:
        if not self._uploaders:
            logger.debug("No uploaders configured, keeping %s local", artifact.path)
            return False
        with self._lock:
            if not self._accepting:
                logger.warning("Upload dispatcher stopped, %s not submitted", artifact.path)
                return False
            self._queue.put_nowait(artifact)
        return True

    def pending(self) -> int:
        return self._queue.unfinished_tasks

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> bool:
        """Stop accepting artifacts; with ``drain`` wait for queued uploads to finish."""
        with self._lock:
            self._accepting = False
            thread = self._thread
            if thread is None:
                return True
            if not drain:
                while True:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        break
                    self._queue.task_done()
            self._queue.put_nowait(_STOP)
        thread.join(timeout)
        return not thread.is_alive()

    def _worker(self) -> None:
        while True:
            artifact = self._queue.get()
            try:
                if artifact is _STOP:
                    return
                for uploader in self._uploaders:
                    self._on_outcome(self._deliver(uploader, artifact))
            except Exception:  # noqa: BLE001
                logger.exception("Upload worker failed on %s", artifact)
            finally:
                self._queue.task_done()

    def _deliver(self, uploader, artifact: Artifact) -> UploadOutcome:
        error = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                uploader.upload(artifact)
            except Exception as exc:  # noqa: BLE001
                error = str(exc)
                logger.warning(
                    "Upload of %s to %s failed (attempt %d/%d): %s",
                    artifact.path.name, uploader.name, attempt, self._max_attempts, exc,
                )
                if attempt < self._max_attempts:
                    self._sleep(self._backoff_seconds * 2 ** (attempt - 1))
                continue
            return UploadOutcome(
                job_name=artifact.job_name,
                uploader=uploader.name,
                path=artifact.path,
                success=True,
                attempts=attempt,
                finished_at=datetime.now(timezone.utc),
            )
        return UploadOutcome(
            job_name=artifact.job_name,
            uploader=uploader.name,
            path=artifact.path,
            success=False,
            attempts=self._max_attempts,
            error=error,
            finished_at=datetime.now(timezone.utc),
        )
