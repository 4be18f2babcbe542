"""Abstract base class for thread sources."""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager

import httpx

from threadsync.models import MediaAsset, Message


class BaseThreadSource(ABC):
    """Base class for messaging sources that expose threaded conversations."""

    def __init__(self, config: dict, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self.transport = transport

    @abstractmethod
    async def validate_channel(self, channel_id: str) -> dict:
        """Return channel info, or raise AccessError if it is unreachable."""
        ...

    @abstractmethod
    async def list_threads(self, channel_id: str) -> list[Message]:
        """Return root messages that start a thread."""
        ...

    @abstractmethod
    async def list_messages(self, channel_id: str, thread_ts: str) -> list[Message]:
        """Return the root message followed by its replies, oldest first."""
        ...

    async def resolve_user_name(self, user_id: str) -> str:
        """Display name for a user id. Sources without a directory echo the id."""
        return user_id

    async def resolve_download_url(self, asset: MediaAsset) -> str:
        """Freshest URL to download an asset from."""
        return asset.url

    @abstractmethod
    def open_download(self, url: str) -> AbstractAsyncContextManager[httpx.Response]:
        """Open an authenticated streaming response for an attachment URL."""
        ...

    async def test_auth(self) -> dict:
        """Check the configured credentials; raise AccessError on failure."""
        return {}

    async def list_channels(self) -> list[dict]:
        return []

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable source name."""
        ...
