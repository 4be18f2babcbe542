"""CLI entrypoint: python -m threadsync {sync|sync-thread|status|test|prompt|forget}."""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import os
import sys
from pathlib import Path

from threadsync.config import get_log_path, load_config


def setup_logging(config: dict) -> None:
    """Configure logging with console + rotating file output."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    # Rotate at 5MB, keep 3 backups
    log_file = Path(get_log_path(config))
    log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        str(log_file), maxBytes=5 * 1024 * 1024, backupCount=3,
    )
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


logger = logging.getLogger("threadsync")


def _pipeline(config: dict):
    from threadsync.pipeline import SyncPipeline

    pipeline = SyncPipeline(config)
    pipeline.init()
    return pipeline


def _thread_arg(args: list[str]) -> str:
    if not args:
        print("Error: a thread timestamp is required")
        sys.exit(1)
    return args[0]


async def cmd_sync(config: dict, args: list[str]) -> None:
    """Sync every thread of the configured channel."""
    report = await _pipeline(config).sync_all()

    print(f"Threads found:        {report.threads_found}")
    print(f"Transcripts saved:    {report.transcripts_exported}")
    print(f"Scaffolds created:    {report.scaffolds_created}")
    print(
        f"Images:               {report.media_downloaded} downloaded, "
        f"{report.media_cached} cached, {report.media_failed} failed"
    )
    print(
        f"Published:            {len(report.created)} created, "
        f"{len(report.updated)} updated, {len(report.skipped)} skipped"
    )
    if report.errors:
        print(f"\n{len(report.errors)} error(s):")
        for err in report.errors:
            print(f"  [{err.stage}] {err.fingerprint}: {err.error}")
        sys.exit(2)


async def cmd_sync_thread(config: dict, args: list[str]) -> None:
    """Sync one thread by its root timestamp."""
    result = await _pipeline(config).sync_thread(_thread_arg(args))
    print(f"Thread {result.fingerprint} {result.action}: {result.title} {result.link}".rstrip())


async def cmd_prompt(config: dict, args: list[str]) -> None:
    """Print the writing prompt for a thread."""
    result = await _pipeline(config).get_prompt(_thread_arg(args))
    print(result.prompt)


async def cmd_test(config: dict, args: list[str]) -> None:
    """Check the thread source and the publish target."""
    report = await _pipeline(config).test_connections()
    print(f"Source:   {'OK' if report.source else 'FAILED'}")
    print(f"Channel:  {'OK' if report.channel else 'FAILED'}")
    print(f"Publish:  {'OK' if report.publish else 'FAILED'}")
    for name, error in report.errors.items():
        print(f"\n[{name}] {error}")
    if not (report.source and report.channel and report.publish):
        sys.exit(1)


def cmd_status(config: dict, args: list[str]) -> None:
    """Show the thread -> document mappings."""
    status = _pipeline(config).status()
    if not status["total_mappings"]:
        print("No threads synced yet.")
        return

    print(f"{'Thread':<20} {'Document':>10} {'Updated':<27} Title")
    print("-" * 80)
    for m in status["mappings"]:
        print(
            f"{m['fingerprint']:<20} {str(m['remoteDocumentId']):>10} "
            f"{m['lastUpdatedAt']:<27} {m['title']}"
        )


def cmd_forget(config: dict, args: list[str]) -> None:
    """Remove the mapping of a thread so the next sync creates a new document."""
    fingerprint = _thread_arg(args)
    if _pipeline(config).state.remove(fingerprint):
        print(f"Removed mapping for {fingerprint}")
    else:
        print(f"No mapping for {fingerprint}")


COMMANDS = {
    "sync": cmd_sync,
    "sync-thread": cmd_sync_thread,
    "status": cmd_status,
    "test": cmd_test,
    "prompt": cmd_prompt,
    "forget": cmd_forget,
}


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        available = ", ".join(COMMANDS)
        print(f"Usage: python -m threadsync {{{available}}} [thread_ts]")
        sys.exit(1)

    command = sys.argv[1]
    config = load_config(os.environ.get("CONFIG_PATH", "config.yaml"))
    setup_logging(config)
    handler = COMMANDS[command]

    if asyncio.iscoroutinefunction(handler):
        asyncio.run(handler(config, sys.argv[2:]))
    else:
        handler(config, sys.argv[2:])


if __name__ == "__main__":
    main()
