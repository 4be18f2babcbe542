"""Shared test fixtures."""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
import pytest

from threadsync.config import load_config
from threadsync.deliver.base import BasePublishTarget
from threadsync.errors import ThreadFetchError
from threadsync.ingest.base import BaseThreadSource
from threadsync.models import Attachment, Message, PublishProbe, RemoteDocument

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 200
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x10" * 300


class FakeSource(BaseThreadSource):
    """In-memory thread source that records every download."""

    def __init__(self, threads=None, files=None, failing=None, names=None):
        super().__init__({})
        self.threads: dict[str, list[Message]] = threads or {}
        self.files: dict[str, bytes] = files or {}
        self.failing: set[str] = failing or set()
        self.names: dict[str, str] = names or {}
        self.downloads: list[str] = []
        self.channel_error: Exception | None = None
        self.list_error: Exception | None = None

    @property
    def name(self) -> str:
        return "fake"

    async def validate_channel(self, channel_id):
        if self.channel_error:
            raise self.channel_error
        return {"id": channel_id}

    async def list_threads(self, channel_id):
        if self.list_error:
            raise self.list_error
        return [Message(ts=fp, thread_ts=fp) for fp in self.threads]

    async def list_messages(self, channel_id, thread_ts):
        if thread_ts in self.failing:
            raise ThreadFetchError(f"replies for {thread_ts} unavailable")
        return self.threads.get(thread_ts, [])

    async def resolve_user_name(self, user_id):
        return self.names.get(user_id, user_id)

    @asynccontextmanager
    async def open_download(self, url):
        self.downloads.append(url)
        if url not in self.files:
            raise httpx.ConnectError(f"cannot reach {url}")
        yield httpx.Response(
            200, content=self.files[url], headers={"content-type": "image/png"},
        )


class FakeTarget(BasePublishTarget):
    """Publish target that hands out increasing document ids."""

    def __init__(self, fail_with: Exception | None = None):
        super().__init__({})
        self.fail_with = fail_with
        self.created = []
        self.updated = []
        self._next_id = 100

    @property
    def name(self) -> str:
        return "fake"

    async def create_document(self, post):
        if self.fail_with:
            raise self.fail_with
        self._next_id += 1
        self.created.append(post)
        return RemoteDocument(
            id=self._next_id, title=post.title,
            link=f"https://blog.example.com/?p={self._next_id}",
        )

    async def update_document(self, document_id, post):
        if self.fail_with:
            raise self.fail_with
        self.updated.append((document_id, post))
        return RemoteDocument(
            id=document_id, title=post.title,
            link=f"https://blog.example.com/?p={document_id}",
        )

    async def probe(self):
        return PublishProbe(authenticated=True, can_publish=True, username="editor")


def image_attachment(file_id: str, name: str = "photo.png") -> Attachment:
    return Attachment(
        id=file_id,
        name=name,
        mimetype="image/png",
        url_private=f"https://files.example.com/{file_id}",
        url_private_download=f"https://files.example.com/{file_id}/download",
        size=len(PNG_BYTES),
    )


@pytest.fixture
def sample_config(tmp_path):
    """Minimal config for testing (no real credentials)."""
    config_text = """
source:
  type: slack
  slack:
    bot_token: "xoxb-test"
    channel_id: "C123"
    max_retries: 0

publish:
  wordpress:
    enabled: false
    url: "https://blog.example.com"
    username: "editor"
    app_password: "abcd efgh"

storage:
  state_file: "ROOT/state.json"
  output_dir: "ROOT/posts"
  media_dir: "ROOT/images"

pipeline:
  max_concurrency: 4
  progress_retention_seconds: 30
"""
    cfg_path = tmp_path / "config.yaml"
    cfg_path.write_text(config_text.replace("ROOT", str(tmp_path / "data")))
    return load_config(str(cfg_path))


@pytest.fixture
def launch_thread():
    """Two-message thread from the launch channel."""
    return [
        Message(ts="100.1", thread_ts="100.1", text="Launch plan", user="U1"),
        Message(ts="100.2", thread_ts="100.1", text="LGTM", user="U2"),
    ]


@pytest.fixture
def fake_source(launch_thread):
    return FakeSource(threads={"100.1": launch_thread}, names={"U1": "alice", "U2": "bob"})


@pytest.fixture
def fake_target():
    return FakeTarget()
