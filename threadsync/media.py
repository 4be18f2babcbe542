"""Download and validate image attachments, cached by deterministic path."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from pathlib import Path

from threadsync.ingest.base import BaseThreadSource
from threadsync.models import (
    DownloadedMedia,
    Failed,
    MediaAsset,
    MediaResult,
    Message,
    MessageMedia,
    Ok,
)

logger = logging.getLogger(__name__)

# Anything smaller cannot be a real image; usually an error body
MIN_IMAGE_BYTES = 100

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
}

ERROR_MARKERS = ("<!DOCTYPE", "<html")
ERROR_WORDS = ("error", "unauthorized", "forbidden")


class MediaValidationError(Exception):
    """Downloaded bytes are not an image."""


def fingerprint_slug(value: str) -> str:
    return value.replace(".", "-")


def file_extension(mimetype: str, filename: str) -> str:
    """Extension from the filename, else from the mime type, else .jpg."""
    ext = os.path.splitext(filename or "")[1].lower()
    if ext:
        return ext
    return MIME_EXTENSIONS.get(mimetype, ".jpg")


def safe_stem(name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9.-]", "_", name)
    return re.sub(r"\.[^.]+$", "", cleaned)


def looks_like_error_page(data: bytes) -> bool:
    """True when leading bytes read like an HTML or auth error body."""
    text = data.decode("utf-8", errors="ignore")
    if any(marker in text for marker in ERROR_MARKERS):
        return True
    lowered = text.lower()
    return any(word in lowered for word in ERROR_WORDS)


def has_image_signature(header: bytes) -> bool:
    """Check JPEG, PNG, GIF and WebP magic bytes."""
    if header[:3] == b"\xff\xd8\xff":
        return True
    if header[:4] == b"\x89PNG":
        return True
    if header[:4] == b"GIF8":
        return True
    return header[:4] == b"RIFF" and header[8:12] == b"WEBP"


class MediaFetcher:
    """Fetch a thread's images into ``<media_dir>/<fingerprint>/``.

    Every download returns ``Ok(DownloadedMedia)`` or ``Failed``; nothing
    raises out of ``download`` so one broken asset never affects its
    siblings. A file already present at the computed path is reused
    without touching the network.
    """

    def __init__(
        self,
        source: BaseThreadSource,
        media_dir: str | Path,
        link_prefix: str = "../images",
        max_concurrency: int = 8,
    ) -> None:
        self.source = source
        self.media_dir = Path(media_dir)
        self.link_prefix = link_prefix.rstrip("/")
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @staticmethod
    def extract_assets(message: Message) -> list[MediaAsset]:
        """Image attachments of a message."""
        return [
            MediaAsset(
                id=f.id,
                name=f.name or f"image-{f.id}",
                mimetype=f.mimetype,
                url=f.download_url,
            )
            for f in message.files
            if f.mimetype and f.mimetype.startswith("image/")
        ]

    def local_path(self, asset: MediaAsset, fingerprint: str, message_ts: str, index: int) -> Path:
        ext = file_extension(asset.mimetype, asset.name)
        stem = safe_stem(asset.name or f"image-{asset.id}")
        filename = f"{fingerprint_slug(message_ts)}-{index}-{stem}{ext}"
        return self.media_dir / fingerprint_slug(fingerprint) / filename

    def _result(self, asset: MediaAsset, path: Path, fingerprint: str, cached: bool) -> DownloadedMedia:
        return DownloadedMedia(
            asset_id=asset.id,
            filename=path.name,
            local_path=str(path),
            relative_path=f"{self.link_prefix}/{fingerprint_slug(fingerprint)}/{path.name}",
            byte_size=path.stat().st_size,
            cached=cached,
        )

    async def download(
        self, asset: MediaAsset, fingerprint: str, message_ts: str, index: int = 0,
    ) -> MediaResult:
        path = self.local_path(asset, fingerprint, message_ts, index)
        try:
            if path.exists():
                logger.debug("Image already downloaded: %s", path.name)
                return Ok(self._result(asset, path, fingerprint, cached=True))

            path.parent.mkdir(parents=True, exist_ok=True)
            async with self._semaphore:
                await self._fetch_to(asset, path)
            result = self._result(asset, path, fingerprint, cached=False)
        except Exception as exc:
            logger.error("Image %s for thread %s failed: %s", asset.id, fingerprint, exc)
            return Failed(key=asset.id, reason=str(exc))

        logger.info(
            "Downloaded image %s (%.2f KB)", path.name, result.byte_size / 1024,
        )
        return Ok(result)

    async def _fetch_to(self, asset: MediaAsset, path: Path) -> None:
        """Stream an asset to a temp file, validate, then move it into place."""
        tmp_path = path.with_name(path.name + ".part")
        url = await self.source.resolve_download_url(asset)
        if not url:
            raise MediaValidationError(f"No download URL for file {asset.id}")

        try:
            async with self.source.open_download(url) as resp:
                content_type = resp.headers.get("content-type", "")
                if content_type and not (
                    content_type.startswith("image/")
                    or "octet-stream" in content_type
                    or "binary" in content_type
                ):
                    logger.warning(
                        "Content-Type for %s is %s, expected image/*",
                        asset.id, content_type,
                    )

                first_chunk = True
                with open(tmp_path, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        if first_chunk and chunk:
                            first_chunk = False
                            if looks_like_error_page(chunk[:50]):
                                preview = chunk[:100].decode("utf-8", errors="replace")
                                raise MediaValidationError(
                                    "Received an HTML error page instead of an image. "
                                    f"First bytes: {preview!r}. Check the token and "
                                    "the files:read scope."
                                )
                        f.write(chunk)

            self._validate(tmp_path, asset)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    @staticmethod
    def _validate(path: Path, asset: MediaAsset) -> None:
        size = path.stat().st_size
        if size < MIN_IMAGE_BYTES:
            raise MediaValidationError(
                f"Downloaded file is too small ({size} bytes), likely an error page",
            )

        with open(path, "rb") as f:
            head = f.read(100)
        if has_image_signature(head[:12]):
            return
        if looks_like_error_page(head):
            raise MediaValidationError(
                f"Downloaded file is not an image but an HTML error page "
                f"({size} bytes): {head.decode('utf-8', errors='replace')!r}"
            )
        logger.warning(
            "File %s does not match known image headers (%s), keeping it",
            asset.name, head[:12].hex(" "),
        )

    async def download_all_for_message(self, message: Message, fingerprint: str) -> list[MediaResult]:
        assets = self.extract_assets(message)
        if not assets:
            return []
        return list(await asyncio.gather(*[
            self.download(asset, fingerprint, message.ts, index)
            for index, asset in enumerate(assets)
        ]))

    async def download_all_for_thread(self, messages: list[Message], fingerprint: str) -> list[MessageMedia]:
        async def _one(message: Message) -> MessageMedia:
            results = await self.download_all_for_message(message, fingerprint)
            return MessageMedia(message_ts=message.ts, results=results)

        return list(await asyncio.gather(*[_one(m) for m in messages]))

    @staticmethod
    def image_markdown(result: MediaResult, alt_text: str = "") -> str:
        if not isinstance(result, Ok):
            return ""
        media = result.value
        return f"![{alt_text or media.filename or 'Image'}]({media.relative_path})"
