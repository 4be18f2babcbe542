"""Thread source registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from threadsync.ingest.base import BaseThreadSource

SOURCES: dict[str, type[BaseThreadSource]] = {}


def register_source(name: str):
    """Decorator to register a thread source."""

    def decorator(cls):
        SOURCES[name] = cls
        return cls

    return decorator


def get_source(config: dict) -> BaseThreadSource:
    """Instantiate the thread source named in the config."""
    from threadsync.config import get_source_name

    name = get_source_name(config)
    if name not in SOURCES:
        raise ValueError(f"Unknown thread source: {name}")
    return SOURCES[name](config)


# Import implementations to trigger registration
from threadsync.ingest.slack import SlackSource  # noqa: E402, F401
