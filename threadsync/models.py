"""Core data models for the thread sync pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Generic, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Ok(Generic[T]):
    """Successful per-item outcome."""

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass
class Failed:
    """Per-item failure captured as data instead of an exception."""

    key: str
    reason: str

    @property
    def ok(self) -> bool:
        return False


@dataclass
class Attachment:
    """A file attached to a message, as reported by the thread source."""

    id: str
    name: str
    mimetype: str = ""
    url_private: str = ""
    url_private_download: str = ""
    size: int = 0

    @property
    def download_url(self) -> str:
        return self.url_private_download or self.url_private


@dataclass
class Message:
    """A single message inside a thread."""

    ts: str
    text: str = ""
    user: str = ""
    thread_ts: str = ""
    files: list[Attachment] = field(default_factory=list)

    @property
    def is_thread_root(self) -> bool:
        return bool(self.thread_ts) and self.thread_ts == self.ts


@dataclass
class MediaAsset:
    """An image attachment selected for download."""

    id: str
    name: str
    mimetype: str
    url: str


@dataclass
class DownloadedMedia:
    """A media file present on local disk."""

    asset_id: str
    filename: str
    local_path: str
    relative_path: str
    byte_size: int = 0
    cached: bool = False


MediaResult = Ok[DownloadedMedia] | Failed


@dataclass
class MessageMedia:
    """Download outcomes for every image of one message."""

    message_ts: str
    results: list[MediaResult] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return all(r.ok for r in self.results)

    @property
    def downloaded(self) -> list[DownloadedMedia]:
        return [r.value for r in self.results if isinstance(r, Ok)]


@dataclass
class ThreadMapping:
    """Persisted correlation between a thread and its remote document."""

    fingerprint: str
    document_id: int | str
    title: str
    last_updated_at: str
    derived_prompt: str | None = None

    def to_dict(self) -> dict:
        data = {
            "remoteDocumentId": self.document_id,
            "title": self.title,
            "lastUpdatedAt": self.last_updated_at,
        }
        if self.derived_prompt:
            data["derivedPrompt"] = self.derived_prompt
        return data

    @classmethod
    def from_dict(cls, fingerprint: str, data: dict) -> ThreadMapping:
        return cls(
            fingerprint=fingerprint,
            document_id=data["remoteDocumentId"],
            title=data.get("title", ""),
            last_updated_at=data.get("lastUpdatedAt", ""),
            derived_prompt=data.get("derivedPrompt"),
        )


@dataclass
class ScaffoldInfo:
    path: str
    created: bool


@dataclass
class ExportResult:
    """Files written for one thread."""

    fingerprint: str
    title: str
    transcript_path: str
    scaffold: ScaffoldInfo


@dataclass
class ThreadExport:
    """Input for a batch export."""

    fingerprint: str
    messages: list[Message]
    media: list[MessageMedia] | None = None
    user_names: dict[str, str] | None = None


@dataclass
class PostContent:
    title: str
    body: str


@dataclass
class RemoteDocument:
    """A document as returned by the publish target."""

    id: int | str
    title: str
    link: str = ""
    status: str = ""


@dataclass
class PublishProbe:
    """Result of checking credentials and role on the publish target."""

    authenticated: bool
    can_publish: bool = False
    username: str = ""
    roles: list[str] = field(default_factory=list)
    error: str = ""


@dataclass
class SyncResult:
    """Outcome of publishing one thread."""

    action: str  # created, updated, skipped
    fingerprint: str
    document_id: int | str | None = None
    title: str = ""
    link: str = ""


@dataclass
class ThreadError:
    fingerprint: str
    stage: str  # fetch, export, publish, state
    error: str


@dataclass
class SyncReport:
    """Aggregated outcome of a full sync run."""

    created: list[SyncResult] = field(default_factory=list)
    updated: list[SyncResult] = field(default_factory=list)
    skipped: list[SyncResult] = field(default_factory=list)
    errors: list[ThreadError] = field(default_factory=list)
    threads_found: int = 0
    transcripts_exported: int = 0
    scaffolds_created: int = 0
    media_downloaded: int = 0
    media_cached: int = 0
    media_failed: int = 0

    def summary(self) -> str:
        return (
            f"Saved {self.transcripts_exported} transcripts "
            f"({self.scaffolds_created} new scaffolds), "
            f"{self.media_downloaded + self.media_cached} images "
            f"({self.media_failed} failed); "
            f"published {len(self.created)} created, "
            f"{len(self.updated)} updated, {len(self.skipped)} skipped, "
            f"{len(self.errors)} errors"
        )


@dataclass
class PromptResult:
    fingerprint: str
    prompt: str
    cached: bool


@dataclass
class ConnectionReport:
    source: bool = False
    channel: bool = False
    publish: bool = False
    available_channels: list[dict] = field(default_factory=list)
    probe: PublishProbe | None = None
    errors: dict[str, str] = field(default_factory=dict)


TERMINAL_STATUSES = ("completed", "error")


@dataclass
class SyncRun:
    """Progress handle for a single sync run, observable while it runs."""

    id: str = ""
    channel_id: str = ""
    status: str = "starting"
    message: str = ""
    step: int = 0
    total_steps: int = 6
    current_thread: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    report: SyncReport | None = None

    def advance(self, status: str, message: str) -> None:
        self.status = status
        self.message = message
        self.step += 1

    def finish(self, status: str, message: str) -> None:
        self.status = status
        self.message = message
        self.current_thread = None
        self.finished_at = utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
