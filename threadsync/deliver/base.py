"""Abstract base class for publish targets."""

from __future__ import annotations

from abc import ABC, abstractmethod

import httpx

from threadsync.models import PostContent, PublishProbe, RemoteDocument


class BasePublishTarget(ABC):
    """Base class for content-management systems that receive threads."""

    def __init__(self, config: dict, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self.transport = transport

    @abstractmethod
    async def create_document(self, post: PostContent) -> RemoteDocument:
        """Create a new document. Raises PublishError on failure."""
        ...

    @abstractmethod
    async def update_document(self, document_id: int | str, post: PostContent) -> RemoteDocument:
        """Replace the title and body of an existing document."""
        ...

    @abstractmethod
    async def probe(self) -> PublishProbe:
        """Check credentials and publishing permission."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Target name."""
        ...
