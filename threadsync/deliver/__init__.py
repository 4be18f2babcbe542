"""Publish target registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from threadsync.deliver.base import BasePublishTarget

TARGETS: dict[str, type[BasePublishTarget]] = {}


def register_target(name: str):
    """Decorator to register a publish target."""

    def decorator(cls):
        TARGETS[name] = cls
        return cls

    return decorator


def get_target(config: dict) -> BasePublishTarget | None:
    """Instantiate the enabled publish target, or None for local-only runs."""
    from threadsync.config import get_active_target

    name = get_active_target(config)
    if name is None:
        return None
    if name not in TARGETS:
        raise ValueError(f"Unknown publish target: {name}")
    return TARGETS[name](config)


from threadsync.deliver.wordpress import WordPressTarget  # noqa: E402, F401
