from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..models import AuditEntry, ChannelKey, Notification


@runtime_checkable
class RoleProvider(Protocol):
    """Adds, removes and checks the special role on guild members."""

    async def add_role(self, user_id: str, reason: str) -> None:
        ...

    async def remove_role(self, user_id: str, reason: str) -> None:
        ...

    async def has_role(self, user_id: str) -> bool:
        ...


@runtime_checkable
class AuditFeed(Protocol):
    async def fetch_recent_entries(self, limit: int) -> list[AuditEntry]:
        """Return up to ``limit`` entries, newest first."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    async def post_notification(self, channel: ChannelKey, notification: Notification) -> None:
        ...
