"""Render threads as markdown transcripts and summary scaffolds."""

from __future__ import annotations

import re
from datetime import datetime, timezone

from threadsync.errors import ValidationError
from threadsync.models import Message, MessageMedia, Ok

TITLE_MAX_LENGTH = 100
SLUG_MAX_LENGTH = 50
SCAFFOLD_SUFFIX = ".summary.md"


def extract_title(text: str) -> str:
    """First line of the root message, without markdown heading marks."""
    first_line = (text or "").split("\n")[0].strip()
    cleaned = re.sub(r"^#+\s*", "", first_line).strip()
    if len(cleaned) > TITLE_MAX_LENGTH:
        return cleaned[:TITLE_MAX_LENGTH] + "..."
    return cleaned or "Untitled"


def _ts_to_datetime(ts: str) -> datetime | None:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def thread_date(fingerprint: str) -> str:
    dt = _ts_to_datetime(fingerprint)
    return dt.strftime("%Y-%m-%d") if dt else "unknown"


def format_time(ts: str) -> str:
    dt = _ts_to_datetime(ts)
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC") if dt else ts


def format_message_text(text: str, user_names: dict[str, str] | None = None) -> str:
    """Convert Slack markup (mentions, channels, links) to markdown."""
    if not text:
        return ""
    names = user_names or {}

    formatted = re.sub(r"<@([A-Z0-9]+)\|([^>]+)>", r"@\2", text)
    formatted = re.sub(
        r"<@([A-Z0-9]+)>",
        lambda m: f"@{names[m.group(1)]}" if m.group(1) in names else "@user",
        formatted,
    )
    formatted = re.sub(r"<#([A-Z0-9]+)\|([^>]+)>", r"#\2", formatted)
    formatted = re.sub(r"<#([A-Z0-9]+)>", "#channel", formatted)
    formatted = re.sub(r"<([^|>]+)\|([^>]+)>", r"[\2](\1)", formatted)
    formatted = re.sub(r"<([^>]+)>", r"\1", formatted)
    formatted = re.sub(r"```([^`]+)```", lambda m: f"```\n{m.group(1).strip()}\n```", formatted)
    return formatted


def slugify_title(title: str, max_length: int = SLUG_MAX_LENGTH) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "untitled"


def filename_for(title: str, fingerprint: str) -> str:
    """Deterministic transcript filename: ``<fingerprint>-<title-slug>.md``."""
    return f"{fingerprint.replace('.', '-')}-{slugify_title(title)}.md"


def scaffold_filename_for(title: str, fingerprint: str) -> str:
    return filename_for(title, fingerprint)[: -len(".md")] + SCAFFOLD_SUFFIX


def _images_for(media: list[MessageMedia] | None, index: int) -> list[str]:
    if not media or index >= len(media):
        return []
    return [
        f"![{r.value.filename or 'Image'}]({r.value.relative_path})"
        for r in media[index].results
        if isinstance(r, Ok)
    ]


def _header(fingerprint: str, messages: list[Message]) -> list[str]:
    return [
        f"**Thread ID:** {fingerprint}",
        f"**Date:** {thread_date(fingerprint)}",
        f"**Messages:** {len(messages)}",
        "",
        "---",
        "",
    ]


def render_transcript(
    messages: list[Message],
    fingerprint: str,
    media: list[MessageMedia] | None = None,
    user_names: dict[str, str] | None = None,
) -> str:
    """Render the full thread: root message first, then numbered replies.

    ``media`` is aligned with ``messages`` by index; only successful
    downloads are linked.
    """
    if not messages:
        raise ValidationError("No messages to format")

    names = user_names or {}
    title = extract_title(messages[0].text)
    lines = [f"# {title}", "", *_header(fingerprint, messages)]

    for index, msg in enumerate(messages):
        lines.append("## Original Post" if index == 0 else f"## Reply {index}")
        lines.append("")
        lines.append(f"**User:** {names.get(msg.user, msg.user) or 'Unknown'}")
        if msg.ts:
            lines.append(f"**Time:** {format_time(msg.ts)}")
        lines.append("")
        lines.append(format_message_text(msg.text, names))
        lines.append("")
        for image in _images_for(media, index):
            lines.append(image)
            lines.append("")

    return "\n".join(lines)


def render_scaffold(
    messages: list[Message],
    fingerprint: str,
    media: list[MessageMedia] | None = None,
) -> str:
    """Companion document with an empty summary section and every image."""
    if not messages:
        raise ValidationError("No messages to format")

    title = extract_title(messages[0].text)
    lines = [f"# Summary: {title}", "", *_header(fingerprint, messages)]
    lines += [
        "## Summary",
        "",
        "<!-- Write or paste the thread summary here. -->",
        "",
        "## Images",
        "",
    ]

    images = [img for i in range(len(messages)) for img in _images_for(media, i)]
    if images:
        lines += [f"- {img}" for img in images]
    else:
        lines.append("_No images in this thread._")
    lines.append("")

    return "\n".join(lines)
