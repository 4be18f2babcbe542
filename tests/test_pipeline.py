"""Tests for the sync pipeline orchestration."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest
from conftest import PNG_BYTES, FakeSource, FakeTarget, image_attachment

from threadsync.errors import (
    AccessError,
    PublishError,
    StateError,
    SyncInProgressError,
    ValidationError,
)
from threadsync.models import Message, utcnow
from threadsync.pipeline import FIXED_STEPS, RunRegistry, SyncPipeline
from threadsync.state import StateStore


def _pipeline(config, source, target) -> SyncPipeline:
    pipeline = SyncPipeline(config, source=source, target=target)
    pipeline.init()
    return pipeline


def _posts(config) -> Path:
    return Path(config["storage"]["output_dir"])


@pytest.mark.asyncio
async def test_first_sync_creates_then_updates(sample_config, fake_source, fake_target):
    """A thread maps to one document; later runs update it in place."""
    pipeline = _pipeline(sample_config, fake_source, fake_target)

    first = await pipeline.sync_all()
    assert [r.fingerprint for r in first.created] == ["100.1"]
    assert first.created[0].document_id == 101
    assert pipeline.state.get_document_id("100.1") == 101

    fake_source.threads["100.1"].append(Message(ts="100.3", text="Shipped", user="U1"))
    second = await pipeline.sync_all()

    assert second.created == []
    assert [r.document_id for r in second.updated] == [101]
    assert fake_target.updated[0][0] == 101
    assert len(fake_target.created) == 1


@pytest.mark.asyncio
async def test_mapping_survives_restart(sample_config, fake_source, fake_target):
    await _pipeline(sample_config, fake_source, fake_target).sync_all()

    reloaded = StateStore(sample_config["storage"]["state_file"])
    reloaded.load()
    mapping = reloaded.get("100.1")
    assert mapping.document_id == 101
    assert mapping.title == "Launch plan"
    assert "=== THREAD START ===" in mapping.derived_prompt


@pytest.mark.asyncio
async def test_sync_writes_transcript_and_scaffold(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)

    report = await pipeline.sync_all()

    assert report.threads_found == 1
    assert report.transcripts_exported == 1
    assert report.scaffolds_created == 1
    transcript = (_posts(sample_config) / "100-1-launch-plan.md").read_text()
    assert "**User:** alice" in transcript
    assert "**User:** bob" in transcript

    again = await pipeline.sync_all()
    assert again.scaffolds_created == 0


@pytest.mark.asyncio
async def test_one_failing_thread_does_not_stop_others(sample_config, launch_thread, fake_target):
    source = FakeSource(
        threads={"100.1": launch_thread, "200.1": [Message(ts="200.1", text="Broken")]},
        failing={"200.1"},
    )
    pipeline = _pipeline(sample_config, source, fake_target)

    report = await pipeline.sync_all()

    assert [r.fingerprint for r in report.created] == ["100.1"]
    assert [(e.fingerprint, e.stage) for e in report.errors] == [("200.1", "fetch")]
    assert not pipeline.state.is_mapped("200.1")


@pytest.mark.asyncio
async def test_unreachable_target_keeps_local_output(sample_config, fake_source):
    """Transcripts land on disk even when publishing fails; no mapping is recorded."""
    down = FakeTarget(fail_with=PublishError("WordPress request failed: connection refused"))
    pipeline = _pipeline(sample_config, fake_source, down)

    report = await pipeline.sync_all()

    assert report.transcripts_exported == 1
    assert (_posts(sample_config) / "100-1-launch-plan.md").exists()
    assert [(e.fingerprint, e.stage) for e in report.errors] == [("100.1", "publish")]
    assert not pipeline.state.is_mapped("100.1")

    pipeline.target = FakeTarget()
    retry = await pipeline.sync_all()
    assert [r.fingerprint for r in retry.created] == ["100.1"]


@pytest.mark.asyncio
async def test_local_only_run_skips_publishing(sample_config, fake_source):
    pipeline = _pipeline(sample_config, fake_source, None)
    assert pipeline.target is None

    report = await pipeline.sync_all()

    assert [r.action for r in report.skipped] == ["skipped"]
    assert report.errors == []
    assert report.transcripts_exported == 1
    assert pipeline.state.all_mappings() == {}


@pytest.mark.asyncio
async def test_empty_thread_is_skipped(sample_config, launch_thread, fake_target):
    source = FakeSource(threads={"100.1": launch_thread, "300.1": []})
    pipeline = _pipeline(sample_config, source, fake_target)

    report = await pipeline.sync_all()

    assert [r.fingerprint for r in report.skipped] == ["300.1"]
    assert [r.fingerprint for r in report.created] == ["100.1"]


@pytest.mark.asyncio
async def test_media_downloaded_once_and_linked(sample_config, fake_target):
    url = "https://files.example.com/F1/download"
    source = FakeSource(
        threads={"100.1": [
            Message(ts="100.1", thread_ts="100.1", text="Diagram", user="U1"),
            Message(ts="100.2", thread_ts="100.1", text="see", files=[image_attachment("F1")]),
        ]},
        files={url: PNG_BYTES},
    )
    pipeline = _pipeline(sample_config, source, fake_target)

    first = await pipeline.sync_all()
    second = await pipeline.sync_all()

    assert (first.media_downloaded, first.media_cached) == (1, 0)
    assert (second.media_downloaded, second.media_cached) == (0, 1)
    assert source.downloads == [url]
    transcript = (_posts(sample_config) / "100-1-diagram.md").read_text()
    assert "![100-2-0-photo.png](../images/100-1/100-2-0-photo.png)" in transcript


@pytest.mark.asyncio
async def test_broken_image_does_not_fail_thread(sample_config, fake_target):
    source = FakeSource(threads={"100.1": [
        Message(ts="100.1", thread_ts="100.1", text="Diagram", files=[image_attachment("F9")]),
    ]})
    pipeline = _pipeline(sample_config, source, fake_target)

    report = await pipeline.sync_all()

    assert report.media_failed == 1
    assert report.errors == []
    assert [r.fingerprint for r in report.created] == ["100.1"]


@pytest.mark.asyncio
async def test_run_progress_reaches_completion(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)
    run = pipeline.start_run()
    assert run.status == "starting"

    report = await pipeline.sync_all(run)

    assert run.status == "completed"
    assert run.is_terminal
    assert run.total_steps == FIXED_STEPS + 1
    assert run.step == run.total_steps
    assert run.finished_at is not None
    assert run.report is report
    assert pipeline.registry.latest("C123") is run


@pytest.mark.asyncio
async def test_access_error_aborts_run(sample_config, fake_source, fake_target):
    fake_source.channel_error = AccessError("channel_not_found")
    pipeline = _pipeline(sample_config, fake_source, fake_target)
    run = pipeline.start_run()

    with pytest.raises(AccessError):
        await pipeline.sync_all(run)

    assert run.status == "error"
    assert "channel_not_found" in run.message
    assert fake_target.created == []

    fake_source.channel_error = None
    report = await pipeline.sync_all()
    assert len(report.created) == 1


@pytest.mark.asyncio
async def test_concurrent_run_for_same_channel_is_refused(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)
    pipeline.start_run()

    with pytest.raises(SyncInProgressError):
        await pipeline.sync_all()


def test_registry_forgets_old_runs():
    registry = RunRegistry(retention_seconds=30)
    old = registry.start("C1")
    old.finish("completed", "done")
    old.finished_at = utcnow() - timedelta(seconds=60)
    fresh = registry.start("C2")

    assert registry.get(old.id) is None
    assert registry.get(fresh.id) is fresh
    assert registry.latest() is fresh


def test_registry_allows_new_run_after_finish():
    registry = RunRegistry()
    first = registry.start("C1")
    first.finish("error", "boom")

    second = registry.start("C1")

    assert second.id != first.id
    assert registry.get(first.id) is first


@pytest.mark.asyncio
async def test_sync_thread(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)

    result = await pipeline.sync_thread("100.1")
    assert result.action == "created"
    assert result.link == "https://blog.example.com/?p=101"

    again = await pipeline.sync_thread("100.1")
    assert again.action == "updated"
    assert again.document_id == 101


@pytest.mark.asyncio
async def test_sync_thread_rejects_bad_input(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)

    with pytest.raises(ValidationError):
        await pipeline.sync_thread("")
    with pytest.raises(ValidationError):
        await pipeline.sync_thread("999.9")


@pytest.mark.asyncio
async def test_get_prompt_unmapped_thread_is_not_stored(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)

    result = await pipeline.get_prompt("100.1")

    assert result.cached is False
    assert "Original Post:\nLaunch plan" in result.prompt
    assert pipeline.state.all_mappings() == {}


@pytest.mark.asyncio
async def test_get_prompt_cached_after_sync(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)
    await pipeline.sync_all()

    result = await pipeline.get_prompt("100.1")

    assert result.cached is True
    assert "Reply 1:\nLGTM" in result.prompt


@pytest.mark.asyncio
async def test_get_prompt_fills_missing_prompt(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)
    pipeline.state.upsert("100.1", 55, "Launch plan")

    first = await pipeline.get_prompt("100.1")
    second = await pipeline.get_prompt("100.1")

    assert first.cached is False
    assert second.cached is True
    assert pipeline.state.get_prompt("100.1") == first.prompt


@pytest.mark.asyncio
async def test_status_lists_mappings(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)
    assert pipeline.status() == {"total_mappings": 0, "mappings": []}

    await pipeline.sync_all()
    status = pipeline.status()

    assert status["total_mappings"] == 1
    entry = status["mappings"][0]
    assert entry["fingerprint"] == "100.1"
    assert entry["remoteDocumentId"] == 101
    assert entry["title"] == "Launch plan"


@pytest.mark.asyncio
async def test_connections_all_ok(sample_config, fake_source, fake_target):
    report = await _pipeline(sample_config, fake_source, fake_target).test_connections()

    assert (report.source, report.channel, report.publish) == (True, True, True)
    assert report.probe.username == "editor"
    assert report.errors == {}


@pytest.mark.asyncio
async def test_connections_without_target(sample_config, fake_source):
    fake_source.channel_error = AccessError("not_in_channel")

    report = await _pipeline(sample_config, fake_source, None).test_connections()

    assert report.source is True
    assert report.channel is False
    assert report.publish is False
    assert "not_in_channel" in report.errors["channel"]
    assert "publish" in report.errors


class BlockingSource(FakeSource):
    """Source whose reply fetch never returns until cancelled."""

    def __init__(self, threads):
        super().__init__(threads=threads)
        self.entered = asyncio.Event()

    async def list_messages(self, channel_id, thread_ts):
        self.entered.set()
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_cancelled_run_releases_channel(sample_config, launch_thread, fake_target):
    """A cancelled sync ends in a terminal state so the next run can start."""
    source = BlockingSource(threads={"100.1": launch_thread})
    pipeline = _pipeline(sample_config, source, fake_target)
    run = pipeline.start_run()

    task = asyncio.create_task(pipeline.sync_all(run))
    await source.entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert run.status == "error"
    assert run.is_terminal
    assert run.finished_at is not None
    next_run = pipeline.start_run()
    assert next_run.id != run.id


@pytest.mark.asyncio
async def test_failed_mapping_write_is_reported(sample_config, fake_source, fake_target, monkeypatch):
    """The remote post exists but the mapping was not saved."""
    pipeline = _pipeline(sample_config, fake_source, fake_target)

    def failing_save():
        raise StateError("disk full")

    monkeypatch.setattr(pipeline.state, "save", failing_save)

    report = await pipeline.sync_all()

    assert [(e.fingerprint, e.stage, e.error) for e in report.errors] == [
        ("100.1", "state", "disk full"),
    ]
    assert report.created == []
    assert len(fake_target.created) == 1

    on_disk = StateStore(sample_config["storage"]["state_file"])
    on_disk.load()
    assert not on_disk.is_mapped("100.1")


@pytest.mark.asyncio
async def test_failed_export_still_publishes(sample_config, launch_thread, fake_target, monkeypatch):
    """A thread whose transcript could not be written is reported and still published."""
    source = FakeSource(threads={
        "100.1": launch_thread,
        "200.1": [Message(ts="200.1", thread_ts="200.1", text="Retro")],
    })
    pipeline = _pipeline(sample_config, source, fake_target)
    export_thread = pipeline.exporter.export_thread

    async def flaky_export(messages, fingerprint, media=None, user_names=None):
        if fingerprint == "200.1":
            raise OSError("No space left on device")
        return await export_thread(messages, fingerprint, media, user_names)

    monkeypatch.setattr(pipeline.exporter, "export_thread", flaky_export)

    report = await pipeline.sync_all()

    assert report.transcripts_exported == 1
    assert [(e.fingerprint, e.stage) for e in report.errors] == [("200.1", "export")]
    assert "No space left" in report.errors[0].error
    assert [r.fingerprint for r in report.created] == ["100.1", "200.1"]
    assert not list(_posts(sample_config).glob("200-1-*"))


@pytest.mark.asyncio
async def test_progress_completes_when_threads_drop_out(sample_config, launch_thread, fake_target):
    source = FakeSource(
        threads={
            "100.1": launch_thread,
            "200.1": [Message(ts="200.1", text="Broken")],
            "300.1": [],
        },
        failing={"200.1"},
    )
    pipeline = _pipeline(sample_config, source, fake_target)
    run = pipeline.start_run()

    await pipeline.sync_all(run)

    assert run.status == "completed"
    assert run.total_steps == FIXED_STEPS + 1
    assert run.step == run.total_steps


@pytest.mark.asyncio
async def test_sync_thread_refused_during_full_sync(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)
    pipeline.start_run()

    with pytest.raises(SyncInProgressError):
        await pipeline.sync_thread("100.1")
    assert fake_target.created == []


@pytest.mark.asyncio
async def test_sync_thread_is_tracked_as_run(sample_config, fake_source, fake_target):
    pipeline = _pipeline(sample_config, fake_source, fake_target)

    with pytest.raises(ValidationError):
        await pipeline.sync_thread("999.9")
    failed = pipeline.registry.latest("C123")
    assert failed.status == "error"

    await pipeline.sync_thread("100.1")

    run = pipeline.registry.latest("C123")
    assert run is not failed
    assert run.status == "completed"
    assert run.step == run.total_steps
