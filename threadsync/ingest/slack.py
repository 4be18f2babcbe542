"""Slack thread source using the Web API with a bot token."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx

from threadsync.errors import AccessError, ThreadFetchError, ThreadSyncError
from threadsync.ingest import register_source
from threadsync.ingest.base import BaseThreadSource
from threadsync.models import Attachment, MediaAsset, Message
from threadsync.retry import retry_async

logger = logging.getLogger(__name__)

SLACK_API = "https://slack.com/api/"
USER_AGENT = "threadsync/0.1"
REQUIRED_SCOPES = "channels:read, channels:history, files:read, users:read"

_ERROR_HINTS = {
    "channel_not_found": (
        "Channel not found or the bot has no access. Check that the channel "
        "ID is correct and that the bot was invited (/invite @YourBot)."
    ),
    "not_in_channel": (
        "The bot is not a member of the channel. "
        "Invite it with /invite @YourBot."
    ),
    "missing_scope": (
        f"The bot is missing required scopes. Add: {REQUIRED_SCOPES}."
    ),
    "invalid_auth": "The Slack bot token is invalid.",
    "not_authed": "No Slack bot token was provided.",
    "token_revoked": "The Slack bot token has been revoked.",
}


class SlackApiError(ThreadSyncError):
    """Slack answered with ok=false."""

    def __init__(self, method: str, code: str) -> None:
        self.method = method
        self.code = code
        hint = _ERROR_HINTS.get(code, "")
        message = f"Slack API error on {method}: {code}"
        super().__init__(f"{message}. {hint}" if hint else message)


def parse_message(raw: dict) -> Message:
    """Convert a Slack message payload into a Message."""
    files = [
        Attachment(
            id=f.get("id", ""),
            name=f.get("name") or f"image-{f.get('id', '')}",
            mimetype=f.get("mimetype", ""),
            url_private=f.get("url_private", ""),
            url_private_download=f.get("url_private_download", ""),
            size=f.get("size", 0) or 0,
        )
        for f in raw.get("files") or []
    ]
    return Message(
        ts=raw.get("ts", ""),
        text=raw.get("text", "") or "",
        user=raw.get("user") or raw.get("username") or raw.get("bot_id", ""),
        thread_ts=raw.get("thread_ts", ""),
        files=files,
    )


@register_source("slack")
class SlackSource(BaseThreadSource):
    """Read threads, replies, users and files from one Slack workspace."""

    def __init__(self, config: dict, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(config, transport)
        cfg = config.get("source", {}).get("slack", {})
        self.token = cfg.get("bot_token", "")
        self.history_limit = int(cfg.get("history_limit", 100))
        self.timeout = float(cfg.get("timeout", 30))
        self.download_timeout = float(cfg.get("download_timeout", 60))
        self.max_retries = int(cfg.get("max_retries", 2))
        self._user_cache: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "slack"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "User-Agent": USER_AGENT,
        }

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.timeout,
            follow_redirects=True,
            max_redirects=5,
            transport=self.transport,
        )

    async def _fetch(self, method: str, params: dict) -> dict:
        async with self._client() as client:
            resp = await client.get(
                SLACK_API + method, params=params, headers=self._headers(),
            )
            resp.raise_for_status()
            return resp.json()

    async def _call(self, method: str, **params) -> dict:
        """Call a Web API method, raising SlackApiError when ok is false."""
        if not self.token:
            raise AccessError("Slack bot_token is not configured")
        data = await retry_async(
            self._fetch, method, params,
            max_retries=self.max_retries, base_delay=1.0,
        )
        if not data.get("ok", False):
            raise SlackApiError(method, data.get("error", "unknown_error"))
        return data

    async def _paginate(self, method: str, key: str, limit: int, **params) -> list[dict]:
        items: list[dict] = []
        cursor = ""
        while len(items) < limit:
            page_params = dict(params, limit=min(limit - len(items), 200))
            if cursor:
                page_params["cursor"] = cursor
            data = await self._call(method, **page_params)
            items.extend(data.get(key, []))
            cursor = (data.get("response_metadata") or {}).get("next_cursor", "")
            if not cursor:
                break
        return items[:limit]

    async def test_auth(self) -> dict:
        try:
            return await self._call("auth.test")
        except SlackApiError as exc:
            raise AccessError(str(exc)) from exc

    async def list_channels(self) -> list[dict]:
        data = await self._call(
            "conversations.list",
            types="public_channel,private_channel",
            exclude_archived="true",
        )
        return [
            {
                "id": ch.get("id"),
                "name": ch.get("name"),
                "is_member": ch.get("is_member", False),
                "is_private": ch.get("is_private", False),
            }
            for ch in data.get("channels", [])
        ]

    async def validate_channel(self, channel_id: str) -> dict:
        if not channel_id:
            raise AccessError("Slack channel_id is not configured")
        try:
            data = await self._call("conversations.info", channel=channel_id)
        except SlackApiError as exc:
            raise AccessError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise AccessError(f"Slack is unreachable: {exc}") from exc
        return data.get("channel", {})

    async def list_threads(self, channel_id: str) -> list[Message]:
        try:
            raw = await self._paginate(
                "conversations.history", "messages", self.history_limit,
                channel=channel_id,
            )
        except (SlackApiError, httpx.HTTPError) as exc:
            raise AccessError(f"Cannot list threads in {channel_id}: {exc}") from exc

        messages = [parse_message(m) for m in raw]
        threads = [m for m in messages if m.is_thread_root]
        logger.info(
            "Slack returned %d messages, %d thread roots in %s",
            len(messages), len(threads), channel_id,
        )
        return threads

    async def list_messages(self, channel_id: str, thread_ts: str) -> list[Message]:
        try:
            raw = await self._paginate(
                "conversations.replies", "messages", 1000,
                channel=channel_id, ts=thread_ts,
            )
        except (SlackApiError, httpx.HTTPError) as exc:
            raise ThreadFetchError(
                f"Cannot fetch replies for thread {thread_ts}: {exc}",
            ) from exc
        return [parse_message(m) for m in raw]

    async def resolve_user_name(self, user_id: str) -> str:
        if not user_id:
            return "Unknown"
        if user_id in self._user_cache:
            return self._user_cache[user_id]

        name = user_id
        try:
            data = await self._call("users.info", user=user_id)
            user = data.get("user", {})
            profile = user.get("profile", {})
            name = (
                profile.get("display_name")
                or profile.get("real_name")
                or user.get("real_name")
                or user.get("name")
                or user_id
            )
        except (SlackApiError, httpx.HTTPError):
            logger.debug("Could not resolve Slack user %s", user_id)
        self._user_cache[user_id] = name
        return name

    async def resolve_download_url(self, asset: MediaAsset) -> str:
        try:
            data = await self._call("files.info", file=asset.id)
        except (SlackApiError, httpx.HTTPError) as exc:
            logger.warning(
                "Could not refresh URL for file %s, using original: %s",
                asset.id, exc,
            )
            return asset.url
        return data.get("file", {}).get("url_private_download") or asset.url

    @asynccontextmanager
    async def open_download(self, url: str) -> AsyncIterator[httpx.Response]:
        async with self._client(timeout=self.download_timeout) as client:
            async with client.stream("GET", url, headers=self._headers()) as resp:
                resp.raise_for_status()
                yield resp
