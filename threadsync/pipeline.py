"""Pipeline orchestrator: validate → list → fetch → media → export → publish."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta

from threadsync.config import (
    get_channel_id,
    get_max_concurrency,
    get_media_dir,
    get_media_link_prefix,
    get_output_dir,
    get_progress_retention,
    get_state_path,
)
from threadsync.deliver import get_target
from threadsync.deliver.base import BasePublishTarget
from threadsync.errors import PublishError, StateError, SyncInProgressError, ValidationError
from threadsync.ingest import get_source
from threadsync.ingest.base import BaseThreadSource
from threadsync.media import MediaFetcher
from threadsync.models import (
    ConnectionReport,
    Message,
    Ok,
    PromptResult,
    SyncReport,
    SyncResult,
    SyncRun,
    ThreadError,
    ThreadExport,
    utcnow,
)
from threadsync.state import StateStore
from threadsync.synthesize.exporter import TranscriptExporter
from threadsync.synthesize.post import build_prompt, format_post

logger = logging.getLogger(__name__)

# validate, list, fetch, media, export; publishing adds one step per thread
FIXED_STEPS = 5


class RunRegistry:
    """Hands out run handles and keeps finished ones visible for a while.

    Only one live run per channel is allowed inside a process. Separate
    processes sharing a state file are not coordinated.
    """

    def __init__(self, retention_seconds: float = 30.0) -> None:
        self.retention = timedelta(seconds=retention_seconds)
        self._runs: dict[str, SyncRun] = {}

    def _prune(self) -> None:
        now = utcnow()
        expired = [
            run_id for run_id, run in self._runs.items()
            if run.is_terminal and run.finished_at and now - run.finished_at > self.retention
        ]
        for run_id in expired:
            del self._runs[run_id]

    def start(self, channel_id: str) -> SyncRun:
        self._prune()
        for run in self._runs.values():
            if run.channel_id == channel_id and not run.is_terminal:
                raise SyncInProgressError(
                    f"Sync {run.id} for channel {channel_id} is still running",
                )
        run = SyncRun(id=uuid.uuid4().hex[:12], channel_id=channel_id)
        run.message = "Starting sync..."
        self._runs[run.id] = run
        return run

    def get(self, run_id: str) -> SyncRun | None:
        self._prune()
        return self._runs.get(run_id)

    def latest(self, channel_id: str | None = None) -> SyncRun | None:
        self._prune()
        runs = [
            r for r in self._runs.values()
            if channel_id is None or r.channel_id == channel_id
        ]
        # newest first so equal start times resolve to the later run
        return max(reversed(runs), key=lambda r: r.started_at) if runs else None


class SyncPipeline:
    """Synchronize every thread of one channel into the publish target."""

    def __init__(
        self,
        config: dict,
        source: BaseThreadSource | None = None,
        target: BasePublishTarget | None = None,
        state: StateStore | None = None,
        registry: RunRegistry | None = None,
    ) -> None:
        self.config = config
        self.channel_id = get_channel_id(config)
        self.max_concurrency = get_max_concurrency(config)
        self.source = source or get_source(config)
        self.target = target if target is not None else get_target(config)
        self.state = state or StateStore(get_state_path(config))
        self.registry = registry or RunRegistry(get_progress_retention(config))
        self.fetcher = MediaFetcher(
            self.source,
            get_media_dir(config),
            link_prefix=get_media_link_prefix(config),
            max_concurrency=self.max_concurrency,
        )
        self.exporter = TranscriptExporter(
            get_output_dir(config), max_concurrency=self.max_concurrency,
        )

    def init(self) -> None:
        """Load the mapping table. Must run before any sync."""
        self.state.load()

    def start_run(self) -> SyncRun:
        return self.registry.start(self.channel_id)

    async def sync_all(self, run: SyncRun | None = None) -> SyncReport:
        """Run every stage once. Only access and listing failures abort."""
        run = run or self.start_run()
        report = SyncReport()
        run.report = report
        logger.info("Sync %s started for channel %s", run.id, self.channel_id)

        try:
            run.advance("validating", "Validating channel access...")
            await self.source.validate_channel(self.channel_id)

            run.advance("fetching_threads", "Fetching thread list...")
            roots = await self.source.list_threads(self.channel_id)
            fingerprints = [m.ts for m in roots]
            report.threads_found = len(fingerprints)
            run.total_steps = FIXED_STEPS + len(fingerprints)
            logger.info("Found %d threads in channel", len(fingerprints))

            run.advance(
                "fetching_messages",
                f"Fetching messages for {len(fingerprints)} threads...",
            )
            threads = await self._fetch_threads(fingerprints, report)
            # only threads that survived fetching reach the publish loop
            run.total_steps = FIXED_STEPS + len(threads)

            run.advance("downloading_media", f"Downloading images for {len(threads)} threads...")
            await self._download_media(threads, report)

            run.advance("exporting", f"Saving {len(threads)} transcripts...")
            await self._export(threads, report)

            run.status = "publishing"
            for i, item in enumerate(threads, 1):
                run.step += 1
                run.current_thread = item.fingerprint
                run.message = f"Publishing thread {i}/{len(threads)}..."
                await self._publish_reported(item, report)

            run.finish("completed", report.summary())
            logger.info("Sync %s completed: %s", run.id, report.summary())
        except asyncio.CancelledError:
            logger.warning("Sync %s cancelled during %s", run.id, run.status)
            run.finish("error", "Sync was cancelled")
            raise
        except Exception as exc:
            logger.exception("Sync %s failed", run.id)
            run.finish("error", str(exc))
            raise

        return report

    async def _bounded_gather(self, coros: list) -> list:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _run(coro):
            async with semaphore:
                return await coro

        return list(await asyncio.gather(*[_run(c) for c in coros]))

    async def _resolve_names(self, messages: list[Message]) -> dict[str, str]:
        names: dict[str, str] = {}
        for user_id in dict.fromkeys(m.user for m in messages if m.user):
            try:
                names[user_id] = await self.source.resolve_user_name(user_id)
            except Exception:
                logger.debug("Name lookup failed for %s", user_id)
                names[user_id] = user_id
        return names

    async def _fetch_one(self, fingerprint: str) -> ThreadExport:
        messages = await self.source.list_messages(self.channel_id, fingerprint)
        return ThreadExport(
            fingerprint=fingerprint,
            messages=messages,
            user_names=await self._resolve_names(messages),
        )

    async def _fetch_threads(self, fingerprints: list[str], report: SyncReport) -> list[ThreadExport]:
        async def _safe(fp: str) -> ThreadExport | ThreadError:
            try:
                return await self._fetch_one(fp)
            except Exception as exc:
                logger.error("Fetching thread %s failed: %s", fp, exc)
                return ThreadError(fingerprint=fp, stage="fetch", error=str(exc))

        results = await self._bounded_gather([_safe(fp) for fp in fingerprints])

        threads = []
        for result in results:
            if isinstance(result, ThreadError):
                report.errors.append(result)
            elif not result.messages:
                report.skipped.append(SyncResult(action="skipped", fingerprint=result.fingerprint))
            else:
                threads.append(result)
        return threads

    async def _download_media(self, threads: list[ThreadExport], report: SyncReport) -> None:
        per_thread = await asyncio.gather(*[
            self.fetcher.download_all_for_thread(t.messages, t.fingerprint)
            for t in threads
        ])
        for item, media in zip(threads, per_thread):
            item.media = media
            for message_media in media:
                for result in message_media.results:
                    if not isinstance(result, Ok):
                        report.media_failed += 1
                    elif result.value.cached:
                        report.media_cached += 1
                    else:
                        report.media_downloaded += 1

    async def _export(self, threads: list[ThreadExport], report: SyncReport) -> None:
        for result in await self.exporter.export_many(threads):
            if isinstance(result, Ok):
                report.transcripts_exported += 1
                if result.value.scaffold.created:
                    report.scaffolds_created += 1
            else:
                report.errors.append(
                    ThreadError(fingerprint=result.key, stage="export", error=result.reason),
                )

    async def _publish_one(self, item: ThreadExport) -> SyncResult:
        """Create or update the remote document, then record the mapping."""
        if self.target is None:
            return SyncResult(action="skipped", fingerprint=item.fingerprint)

        post = format_post(item.messages)
        prompt = build_prompt(item.messages)
        document_id = self.state.get_document_id(item.fingerprint)

        if document_id is None:
            doc = await self.target.create_document(post)
            action = "created"
            document_id = doc.id
        else:
            doc = await self.target.update_document(document_id, post)
            action = "updated"

        self.state.upsert(item.fingerprint, document_id, doc.title, prompt)
        logger.info("Thread %s %s: %s", item.fingerprint, action, doc.title)
        return SyncResult(
            action=action,
            fingerprint=item.fingerprint,
            document_id=document_id,
            title=doc.title,
            link=doc.link,
        )

    async def _publish_reported(self, item: ThreadExport, report: SyncReport) -> None:
        """Publish one thread and file the outcome; never raises."""
        try:
            result = await self._publish_one(item)
        except StateError as exc:
            logger.error("Mapping for thread %s not saved: %s", item.fingerprint, exc)
            report.errors.append(
                ThreadError(fingerprint=item.fingerprint, stage="state", error=str(exc)),
            )
            return
        except PublishError as exc:
            logger.error("Publishing thread %s failed: %s", item.fingerprint, exc)
            report.errors.append(
                ThreadError(fingerprint=item.fingerprint, stage="publish", error=str(exc)),
            )
            return
        except Exception as exc:
            logger.exception("Publishing thread %s failed", item.fingerprint)
            report.errors.append(
                ThreadError(fingerprint=item.fingerprint, stage="publish", error=str(exc)),
            )
            return

        if result.action == "created":
            report.created.append(result)
        elif result.action == "updated":
            report.updated.append(result)
        else:
            report.skipped.append(result)

    async def sync_thread(self, fingerprint: str) -> SyncResult:
        """Sync a single thread end to end. Errors propagate to the caller.

        Holds a run in the registry, so it cannot overlap a full sync of
        the same channel.
        """
        if not fingerprint:
            raise ValidationError("Invalid thread timestamp")

        run = self.start_run()
        run.total_steps = 4
        run.current_thread = fingerprint
        try:
            run.advance("fetching_messages", f"Fetching thread {fingerprint}...")
            item = await self._fetch_one(fingerprint)
            if not item.messages:
                raise ValidationError(f"Thread {fingerprint} has no messages")

            run.advance("downloading_media", f"Downloading images for {fingerprint}...")
            item.media = await self.fetcher.download_all_for_thread(item.messages, fingerprint)

            run.advance("exporting", f"Saving transcript for {fingerprint}...")
            await self.exporter.export_thread(
                item.messages, fingerprint, item.media, item.user_names,
            )

            run.advance("publishing", f"Publishing thread {fingerprint}...")
            result = await self._publish_one(item)
        except asyncio.CancelledError:
            run.finish("error", "Sync was cancelled")
            raise
        except Exception as exc:
            run.finish("error", str(exc))
            raise

        run.finish("completed", f"Thread {fingerprint} {result.action}")
        return result

    async def get_prompt(self, fingerprint: str) -> PromptResult:
        """Stored writing prompt for a thread, generated on first request."""
        if not fingerprint:
            raise ValidationError("Invalid thread timestamp")

        cached = self.state.get_prompt(fingerprint)
        if cached:
            return PromptResult(fingerprint=fingerprint, prompt=cached, cached=True)

        messages = await self.source.list_messages(self.channel_id, fingerprint)
        prompt = build_prompt(messages)
        if self.state.is_mapped(fingerprint):
            self.state.set_prompt(fingerprint, prompt)
        return PromptResult(fingerprint=fingerprint, prompt=prompt, cached=False)

    def status(self) -> dict:
        mappings = self.state.all_mappings()
        return {
            "total_mappings": len(mappings),
            "mappings": [
                {"fingerprint": fp, **mapping.to_dict()}
                for fp, mapping in mappings.items()
            ],
        }

    async def test_connections(self) -> ConnectionReport:
        """Check the thread source, the channel and the publish target."""
        report = ConnectionReport()

        try:
            await self.source.test_auth()
            report.source = True
        except Exception as exc:
            logger.error("Source connection test failed: %s", exc)
            report.errors["source"] = str(exc)

        if report.source:
            try:
                await self.source.validate_channel(self.channel_id)
                report.channel = True
            except Exception as exc:
                report.errors["channel"] = str(exc)
            try:
                report.available_channels = await self.source.list_channels()
            except Exception:
                logger.warning("Could not list channels", exc_info=True)

        if self.target is None:
            report.errors["publish"] = "No publish target is enabled"
            return report

        try:
            probe = await self.target.probe()
        except Exception as exc:
            logger.error("Publish target test failed: %s", exc)
            report.errors["publish"] = str(exc)
            return report

        report.probe = probe
        report.publish = probe.authenticated and probe.can_publish
        if not report.publish:
            report.errors["publish"] = probe.error or "Publishing is not permitted"
        return report
