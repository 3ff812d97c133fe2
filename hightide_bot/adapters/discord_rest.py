from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional
from urllib.parse import quote

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..models import AuditEntry, ChannelKey, Notification

logger = structlog.get_logger(__name__)

DISCORD_EPOCH_MS = 1_420_070_400_000
EMBED_COLOR = 0xE53935
FIELD_LIMIT = 1024
DEFAULT_RETRY_AFTER = 1.0
MAX_RATE_LIMIT_WAIT = 10.0

AUDIT_ACTIONS = {
    1: "GUILD_UPDATE",
    10: "CHANNEL_CREATE",
    11: "CHANNEL_UPDATE",
    12: "CHANNEL_DELETE",
    13: "CHANNEL_OVERWRITE_CREATE",
    14: "CHANNEL_OVERWRITE_UPDATE",
    15: "CHANNEL_OVERWRITE_DELETE",
    20: "MEMBER_KICK",
    21: "MEMBER_PRUNE",
    22: "MEMBER_BAN_ADD",
    23: "MEMBER_BAN_REMOVE",
    24: "MEMBER_UPDATE",
    25: "MEMBER_ROLE_UPDATE",
    26: "MEMBER_MOVE",
    27: "MEMBER_DISCONNECT",
    28: "BOT_ADD",
    30: "ROLE_CREATE",
    31: "ROLE_UPDATE",
    32: "ROLE_DELETE",
    40: "INVITE_CREATE",
    41: "INVITE_UPDATE",
    42: "INVITE_DELETE",
    50: "WEBHOOK_CREATE",
    51: "WEBHOOK_UPDATE",
    52: "WEBHOOK_DELETE",
    60: "EMOJI_CREATE",
    61: "EMOJI_UPDATE",
    62: "EMOJI_DELETE",
    72: "MESSAGE_DELETE",
    73: "MESSAGE_BULK_DELETE",
    74: "MESSAGE_PIN",
    75: "MESSAGE_UNPIN",
}


class DiscordAPIError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"Discord API error: {status_code} {message}")
        self.status_code = status_code


class DiscordServerError(DiscordAPIError):
    pass


class DiscordRateLimited(DiscordAPIError):
    def __init__(self, retry_after: float) -> None:
        super().__init__(429, f"rate limited, retry after {retry_after}s")
        self.retry_after = retry_after


def snowflake_time_ms(snowflake: str) -> int:
    return (int(snowflake) >> 22) + DISCORD_EPOCH_MS


def _retry_after(response: httpx.Response) -> float:
    """Seconds to wait from a 429 body, then the Retry-After header, then 1s."""
    try:
        value = response.json().get("retry_after")
    except (ValueError, AttributeError):
        value = None
    if value is None:
        value = response.headers.get("Retry-After")
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER


_backoff = wait_exponential(multiplier=0.5, min=0.5, max=5.0)


def _retry_wait(retry_state: RetryCallState) -> float:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    if isinstance(exc, DiscordRateLimited):
        return min(exc.retry_after, MAX_RATE_LIMIT_WAIT)
    return _backoff(retry_state)


def render_embed(notification: Notification) -> dict[str, Any]:
    return {
        "title": notification.title[:256],
        "color": EMBED_COLOR,
        "timestamp": datetime.fromtimestamp(notification.timestamp / 1000, tz=timezone.utc).isoformat(),
        "fields": [
            {"name": name[:256], "value": (value or "-")[:FIELD_LIMIT], "inline": False}
            for name, value in notification.fields.items()
        ],
        "footer": {"text": notification.kind.value},
    }


class DiscordRestAdapter:
    def __init__(
        self,
        token: str,
        *,
        base_url: str = "https://discord.com/api/v10",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers={"Authorization": f"Bot {token}"},
        )
        self._owns_client = client is None
        self._retry_sleep = retry_sleep

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        audit_reason: Optional[str] = None,
    ) -> Any:
        headers = {}
        if audit_reason:
            headers["X-Audit-Log-Reason"] = quote(audit_reason[:512], safe="")

        retry = AsyncRetrying(
            wait=_retry_wait,
            sleep=self._retry_sleep,
            stop=stop_after_attempt(4),
            retry=retry_if_exception_type(
                (httpx.TimeoutException, httpx.ReadError, DiscordServerError, DiscordRateLimited)
            ),
            reraise=True,
        )
        async for attempt in retry:
            with attempt:
                logger.debug(
                    "discord_request",
                    method=method,
                    path=path,
                    attempt=attempt.retry_state.attempt_number,
                )
                response = await self._client.request(
                    method, path, json=json, params=params, headers=headers
                )
                if response.status_code == 429:
                    raise DiscordRateLimited(_retry_after(response))
                if response.status_code >= 500:
                    raise DiscordServerError(response.status_code, response.text)
                if response.status_code >= 400:
                    raise DiscordAPIError(response.status_code, response.text)
                logger.debug("discord_response", path=path, status=response.status_code)
                if response.status_code == 204 or not response.content:
                    return None
                return response.json()
        raise DiscordAPIError(0, "Retry exhausted")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class DiscordRestClient(DiscordRestAdapter):
    """Role provider, audit feed and notification sink for a single guild."""

    def __init__(
        self,
        token: str,
        *,
        guild_id: str,
        role_id: str,
        channels: Mapping[ChannelKey, str],
        base_url: str = "https://discord.com/api/v10",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        super().__init__(
            token, base_url=base_url, timeout=timeout, client=client, retry_sleep=retry_sleep
        )
        self._guild_id = guild_id
        self._role_id = role_id
        self._channels = dict(channels)

    def _member_role_path(self, user_id: str) -> str:
        return f"/guilds/{self._guild_id}/members/{user_id}/roles/{self._role_id}"

    async def add_role(self, user_id: str, reason: str) -> None:
        await self.request("PUT", self._member_role_path(user_id), audit_reason=reason)
        logger.info("discord_role_added", user_id=user_id, role_id=self._role_id)

    async def remove_role(self, user_id: str, reason: str) -> None:
        await self.request("DELETE", self._member_role_path(user_id), audit_reason=reason)
        logger.info("discord_role_removed", user_id=user_id, role_id=self._role_id)

    async def has_role(self, user_id: str) -> bool:
        try:
            member = await self.request("GET", f"/guilds/{self._guild_id}/members/{user_id}")
        except DiscordAPIError as exc:
            if exc.status_code == 404:
                return False
            raise
        return self._role_id in (member or {}).get("roles", [])

    async def fetch_recent_entries(self, limit: int) -> list[AuditEntry]:
        data = await self.request(
            "GET", f"/guilds/{self._guild_id}/audit-logs", params={"limit": limit}
        )
        entries = []
        for raw in (data or {}).get("audit_log_entries", []):
            action_type = raw.get("action_type")
            entries.append(
                AuditEntry(
                    id=str(raw["id"]),
                    executor_id=raw.get("user_id"),
                    action=AUDIT_ACTIONS.get(action_type, f"ACTION_{action_type}"),
                    target_id=raw.get("target_id"),
                    timestamp=snowflake_time_ms(raw["id"]),
                    changes=raw.get("changes", []),
                    reason=raw.get("reason"),
                )
            )
        # the poller relies on newest-first order
        entries.sort(key=lambda entry: int(entry.id), reverse=True)
        return entries

    async def post_notification(self, channel: ChannelKey, notification: Notification) -> None:
        channel_id = self._channels.get(channel)
        if not channel_id:
            logger.warning("discord_channel_unconfigured", channel=channel.value)
            return
        await self.request(
            "POST",
            f"/channels/{channel_id}/messages",
            json={"embeds": [render_embed(notification)]},
        )
