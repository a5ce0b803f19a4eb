import json
import threading
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from engine.app.config import DiscordConfig, S3Config, UploadConfig
from engine.app.errors import UploadError
from engine.app.schemas import Artifact
from engine.app.uploads import DiscordUploader, S3Uploader, UploadDispatcher, create_uploaders


def _artifact(tmp_path, size=None):
    path = tmp_path / "backup_prod_20240501_120000.zip"
    path.write_bytes(b"zipdata")
    return Artifact(
        job_name="prod",
        target="prod",
        path=path,
        size_bytes=size if size is not None else 7,
        checksum="abc123",
        databases=("a", "b"),
        created_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        duration_seconds=3.0,
    )


class FlakyUploader:
    name = "flaky"

    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def upload(self, artifact):
        self.calls += 1
        if self.calls <= self.failures:
            raise UploadError(f"attempt {self.calls} failed")


def _collect(uploaders, **kwargs):
    outcomes = []
    done = threading.Event()

    def on_outcome(outcome):
        outcomes.append(outcome)
        if len(outcomes) == len(uploaders):
            done.set()

    dispatcher = UploadDispatcher(uploaders, on_outcome, **kwargs)
    dispatcher.start()
    return dispatcher, outcomes, done


def test_upload_retries_with_backoff(tmp_path):
    sleeps = []
    uploader = FlakyUploader(failures=2)
    dispatcher, outcomes, done = _collect([uploader], max_attempts=3, backoff_seconds=2.0, sleep=sleeps.append)

    assert dispatcher.submit(_artifact(tmp_path))
    assert done.wait(5)
    assert dispatcher.stop()

    outcome = outcomes[0]
    assert outcome.success
    assert outcome.attempts == 3
    assert outcome.uploader == "flaky"
    assert sleeps == [2.0, 4.0]


def test_upload_gives_up_after_max_attempts(tmp_path):
    sleeps = []
    uploader = FlakyUploader(failures=10)
    dispatcher, outcomes, done = _collect([uploader], max_attempts=3, backoff_seconds=1.0, sleep=sleeps.append)

    dispatcher.submit(_artifact(tmp_path))
    assert done.wait(5)
    dispatcher.stop()

    outcome = outcomes[0]
    assert not outcome.success
    assert outcome.attempts == 3
    assert outcome.error == "attempt 3 failed"
    assert uploader.calls == 3
    assert sleeps == [1.0, 2.0]


def test_each_uploader_gets_its_own_outcome(tmp_path):
    good, bad = FlakyUploader(failures=0), FlakyUploader(failures=5)
    bad.name = "broken"
    dispatcher, outcomes, done = _collect([good, bad], max_attempts=2, sleep=lambda seconds: None)

    dispatcher.submit(_artifact(tmp_path))
    assert done.wait(5)
    dispatcher.stop()
    assert [(outcome.uploader, outcome.success) for outcome in outcomes] == [("flaky", True), ("broken", False)]


def test_submit_without_uploaders_keeps_artifact_local(tmp_path):
    dispatcher = UploadDispatcher([], on_outcome=lambda outcome: None)
    dispatcher.start()
    assert not dispatcher.submit(_artifact(tmp_path))
    assert dispatcher.stop()


def test_stop_drains_queue_and_refuses_new_work(tmp_path):
    release = threading.Event()

    class SlowUploader:
        name = "slow"

        def upload(self, artifact):
            release.wait(5)

    outcomes = []
    dispatcher = UploadDispatcher([SlowUploader()], outcomes.append)
    dispatcher.start()
    for _ in range(3):
        dispatcher.submit(_artifact(tmp_path))
    release.set()

    assert dispatcher.stop(drain=True, timeout=5)
    assert len(outcomes) == 3
    assert dispatcher.pending() == 0
    assert not dispatcher.submit(_artifact(tmp_path))


def test_s3_key_and_upload(tmp_path):
    class FakeS3:
        def __init__(self):
            self.uploaded = []

        def upload_file(self, filename, bucket, key):
            self.uploaded.append((filename, bucket, key))

    client = FakeS3()
    uploader = S3Uploader(S3Config(bucket="backups", prefix="/nightly/"), client=client)
    artifact = _artifact(tmp_path)

    uploader.upload(artifact)
    assert client.uploaded == [(str(artifact.path), "backups", "nightly/prod/backup_prod_20240501_120000.zip")]
    assert S3Uploader(S3Config(bucket="b"), client=client).key_for(artifact) == "prod/backup_prod_20240501_120000.zip"


def test_s3_errors_become_upload_errors(tmp_path):
    class FailingS3:
        def upload_file(self, filename, bucket, key):
            raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")

        def head_bucket(self, Bucket):
            raise ClientError({"Error": {"Code": "404", "Message": "missing"}}, "HeadBucket")

    uploader = S3Uploader(S3Config(bucket="backups"), client=FailingS3())
    with pytest.raises(UploadError):
        uploader.upload(_artifact(tmp_path))
    with pytest.raises(UploadError):
        uploader.test_connection()


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.text = json.dumps(payload)

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, channels):
        self.headers = {}
        self.channels = channels
        self.requests = []

    def request(self, method, url, timeout=None, **kwargs):
        self.requests.append((method, url, kwargs))
        if url.endswith("/channels") and method == "GET":
            return FakeResponse(self.channels)
        if url.endswith("/channels") and method == "POST":
            return FakeResponse({"id": "new-forum"})
        if url.endswith("/threads"):
            return FakeResponse({"id": "thread"})
        return FakeResponse({"id": "1", "name": "guild"})


def _discord(session):
    return DiscordUploader(DiscordConfig(bot_token="token", guild_id=42), session=session)


def test_discord_posts_into_existing_forum(tmp_path):
    session = FakeSession([{"id": "forum-1", "name": "backups", "type": 15}])
    uploader = _discord(session)
    uploader.upload(_artifact(tmp_path))

    assert session.headers["Authorization"] == "Bot token"
    method, url, kwargs = session.requests[-1]
    assert (method, url) == ("POST", "https://discord.com/api/v10/channels/forum-1/threads")
    payload = json.loads(kwargs["data"]["payload_json"])
    assert payload["name"] == "Backup prod - 2024-05-01 12:00"
    assert "**SHA256:** `abc123`" in payload["message"]["content"]
    assert "files[0]" in kwargs["files"]


def test_discord_creates_forum_and_skips_large_attachments(tmp_path):
    session = FakeSession([{"id": "text", "name": "backups", "type": 0}])
    uploader = _discord(session)
    uploader.upload(_artifact(tmp_path, size=9 * 1024 * 1024))

    methods = [(method, url.rsplit("/", 2)[-2:]) for method, url, _ in session.requests]
    assert methods[1] == ("POST", ["42", "channels"])
    _, url, kwargs = session.requests[-1]
    assert url.endswith("/channels/new-forum/threads")
    assert "files" not in kwargs
    assert "File too large for Discord upload" in kwargs["json"]["message"]["content"]


def test_discord_http_errors_raise(tmp_path):
    class DeniedSession(FakeSession):
        def request(self, method, url, timeout=None, **kwargs):
            return FakeResponse({"message": "Missing Access"}, status_code=403)

    with pytest.raises(UploadError, match="403"):
        _discord(DeniedSession([])).test_connection()


def test_create_uploaders_follows_config():
    assert create_uploaders(UploadConfig()) == []
    uploaders = create_uploaders(UploadConfig(discord=DiscordConfig(bot_token="t", guild_id=1)))
    assert [uploader.name for uploader in uploaders] == ["discord"]
