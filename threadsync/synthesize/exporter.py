"""Write transcripts (overwritten) and summary scaffolds (write-once) to disk."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from threadsync.errors import ValidationError
from threadsync.models import (
    ExportResult,
    Failed,
    Message,
    MessageMedia,
    Ok,
    ScaffoldInfo,
    ThreadExport,
)
from threadsync.synthesize.transcript import (
    SCAFFOLD_SUFFIX,
    extract_title,
    filename_for,
    render_scaffold,
    render_transcript,
    scaffold_filename_for,
)

logger = logging.getLogger(__name__)

THREAD_ID_PREFIX = "**Thread ID:** "


def scaffold_fingerprint(path: Path) -> str | None:
    """Thread id recorded in a scaffold's header, if any."""
    try:
        with open(path, encoding="utf-8") as f:
            for _, line in zip(range(10), f):
                if line.startswith(THREAD_ID_PREFIX):
                    return line[len(THREAD_ID_PREFIX):].strip()
    except (OSError, UnicodeDecodeError):
        logger.warning("Cannot read scaffold %s", path.name)
    return None


class TranscriptExporter:
    """Export threads into one output directory."""

    def __init__(self, output_dir: str | Path, max_concurrency: int = 8) -> None:
        self.output_dir = Path(output_dir)
        self._semaphore = asyncio.Semaphore(max_concurrency)

    def find_scaffold(self, fingerprint: str) -> Path | None:
        """An existing scaffold for the thread, whatever title it was written under.

        The filename prefix only narrows the search; ``100`` and ``100.1``
        share it, so the thread id line in the header decides.
        """
        prefix = fingerprint.replace(".", "-") + "-"
        for path in sorted(self.output_dir.glob(f"{prefix}*{SCAFFOLD_SUFFIX}")):
            if scaffold_fingerprint(path) == fingerprint:
                return path
        return None

    def _write_scaffold(
        self,
        messages: list[Message],
        fingerprint: str,
        path: Path,
        media: list[MessageMedia] | None,
    ) -> ScaffoldInfo:
        existing = self.find_scaffold(fingerprint)
        if existing is not None:
            logger.debug("Scaffold already exists for %s: %s", fingerprint, existing.name)
            return ScaffoldInfo(path=str(existing), created=False)

        content = render_scaffold(messages, fingerprint, media)
        try:
            # "x" mode fails if the file appeared since the check above
            with open(path, "x", encoding="utf-8") as f:
                f.write(content)
        except FileExistsError:
            return ScaffoldInfo(path=str(path), created=False)
        logger.info("Created summary scaffold %s", path.name)
        return ScaffoldInfo(path=str(path), created=True)

    async def export_thread(
        self,
        messages: list[Message],
        fingerprint: str,
        media: list[MessageMedia] | None = None,
        user_names: dict[str, str] | None = None,
    ) -> ExportResult:
        if not messages:
            raise ValidationError(f"Thread {fingerprint} has no messages to export")

        async with self._semaphore:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            title = extract_title(messages[0].text)

            transcript = render_transcript(messages, fingerprint, media, user_names)
            transcript_path = self.output_dir / filename_for(title, fingerprint)
            transcript_path.write_text(transcript, encoding="utf-8")
            logger.debug("Wrote transcript %s", transcript_path.name)

            scaffold = self._write_scaffold(
                messages, fingerprint,
                self.output_dir / scaffold_filename_for(title, fingerprint),
                media,
            )

        return ExportResult(
            fingerprint=fingerprint,
            title=title,
            transcript_path=str(transcript_path),
            scaffold=scaffold,
        )

    async def export_many(self, threads: list[ThreadExport]) -> list[Ok[ExportResult] | Failed]:
        """Export every thread; a failing thread never stops the others."""

        async def _export(item: ThreadExport) -> Ok[ExportResult] | Failed:
            try:
                result = await self.export_thread(
                    item.messages, item.fingerprint, item.media, item.user_names,
                )
            except Exception as exc:
                logger.exception("Export failed for thread %s", item.fingerprint)
                return Failed(key=item.fingerprint, reason=str(exc))
            return Ok(result)

        return list(await asyncio.gather(*[_export(t) for t in threads]))
