"""WordPress publish target via the REST API and application passwords."""

from __future__ import annotations

import logging

import httpx

from threadsync.config import get_target_config
from threadsync.deliver import register_target
from threadsync.deliver.base import BasePublishTarget
from threadsync.errors import (
    AuthenticationError,
    NotFoundError,
    PermissionDeniedError,
    PublishError,
)
from threadsync.models import PostContent, PublishProbe, RemoteDocument
from threadsync.retry import retry_async

logger = logging.getLogger(__name__)

PUBLISHING_ROLES = {"administrator", "editor", "author"}
PUBLISHING_CAPABILITIES = ("publish_posts", "edit_posts")

# WordPress sometimes answers 401 for role problems; these phrases tell them apart
PERMISSION_KEYWORDS = (
    "not authorized",
    "nicht berechtigt",
    "not berechtigt",
    "permission",
    "role",
    "capability",
    "cannot create",
    "cannot edit",
    "insufficient permissions",
)


def is_permission_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(keyword in lowered for keyword in PERMISSION_KEYWORDS)


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("message", ""))
    return ""


@register_target("wordpress")
class WordPressTarget(BasePublishTarget):
    """Create and update WordPress posts, one post per thread."""

    def __init__(self, config: dict, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(config, transport)
        cfg = get_target_config(config, "wordpress")
        self.url = str(cfg.get("url", "")).rstrip("/")
        self.api_base = f"{self.url}/wp-json/wp/v2"
        self.username = cfg.get("username", "")
        self.password = cfg.get("app_password", "")
        self.post_status = cfg.get("post_status", "draft")
        self.timeout = float(cfg.get("timeout", 30))
        self.max_retries = int(cfg.get("max_retries", 2))

    @property
    def name(self) -> str:
        return "wordpress"

    def format_error(self, resp: httpx.Response, operation: str) -> PublishError:
        """Map an HTTP error response to the publish error taxonomy."""
        status = resp.status_code
        message = _error_message(resp)

        if status == 401 and is_permission_message(message):
            return PermissionDeniedError(
                f"WordPress permission denied (401) while trying to {operation}. "
                f"The account needs the Author, Editor or Administrator role. "
                f"Details: {message}",
                status,
            )
        if status == 401:
            return AuthenticationError(
                f"WordPress authentication failed (401). Check the username "
                f"'{self.username}' and that the application password is valid "
                f"and not revoked. Details: {message}",
                status,
            )
        if status == 403:
            return PermissionDeniedError(
                f"WordPress permission denied (403): cannot {operation}. "
                f"Required roles: Administrator, Editor or Author.",
                status,
            )
        if status == 404:
            return NotFoundError(
                f"WordPress endpoint not found (404) while trying to {operation}. "
                f"Check the site URL: {self.url}",
                status,
            )
        return PublishError(f"WordPress API error ({status}): {message}", status)

    async def _send(self, method: str, path: str, **kwargs) -> dict:
        async with httpx.AsyncClient(
            timeout=self.timeout,
            auth=(self.username, self.password),
            transport=self.transport,
        ) as client:
            resp = await client.request(method, f"{self.api_base}{path}", **kwargs)
            resp.raise_for_status()
            return resp.json()

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> dict:
        if not self.url:
            raise PublishError("WordPress url is not configured")
        try:
            return await retry_async(
                self._send, method, path,
                max_retries=self.max_retries, base_delay=1.0, **kwargs,
            )
        except httpx.HTTPStatusError as exc:
            raise self.format_error(exc.response, operation) from exc
        except httpx.HTTPError as exc:
            raise PublishError(f"WordPress request failed ({operation}): {exc}") from exc

    @staticmethod
    def _to_document(data: dict) -> RemoteDocument:
        title = data.get("title", "")
        if isinstance(title, dict):
            title = title.get("rendered", "")
        return RemoteDocument(
            id=data["id"],
            title=title,
            link=data.get("link", ""),
            status=data.get("status", ""),
        )

    async def create_document(self, post: PostContent) -> RemoteDocument:
        data = await self._request(
            "POST", "/posts", "create posts",
            json={"title": post.title, "content": post.body, "status": self.post_status},
        )
        doc = self._to_document(data)
        logger.info("Created WordPress post %s: %s", doc.id, doc.title)
        return doc

    async def update_document(self, document_id: int | str, post: PostContent) -> RemoteDocument:
        data = await self._request(
            "PUT", f"/posts/{document_id}", "update posts",
            json={"title": post.title, "content": post.body},
        )
        doc = self._to_document(data)
        logger.info("Updated WordPress post %s: %s", doc.id, doc.title)
        return doc

    async def probe(self) -> PublishProbe:
        """Tell bad credentials apart from an account that may not publish."""
        try:
            user = await self._request(
                "GET", "/users/me", "check user role", params={"context": "edit"},
            )
        except PermissionDeniedError as exc:
            return PublishProbe(authenticated=True, can_publish=False, error=str(exc))
        except AuthenticationError as exc:
            return PublishProbe(authenticated=False, error=str(exc))

        roles = list(user.get("roles") or [])
        capabilities = user.get("capabilities") or {}
        can_publish = bool(
            any(capabilities.get(cap) for cap in PUBLISHING_CAPABILITIES)
            or PUBLISHING_ROLES.intersection(roles)
        )
        probe = PublishProbe(
            authenticated=True,
            can_publish=can_publish,
            username=user.get("username") or user.get("slug", ""),
            roles=roles,
        )
        if not can_publish:
            probe.error = (
                f"User '{probe.username}' has roles {roles or 'none'}; "
                f"publishing needs Author, Editor or Administrator"
            )
        logger.info(
            "WordPress user %s, roles: %s, can publish: %s",
            probe.username, ", ".join(roles) or "none", can_publish,
        )
        return probe
