from __future__ import annotations

import structlog

from ..adapters.base import AuditFeed
from ..grants.manager import GrantManager
from ..models import AuditEntry, BotState, ChannelKey, NotificationKind
from ..notifications.notifier import Notifier
from ..storage.records import RecordSet

logger = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 10


def _describe_changes(changes: list[dict]) -> str:
    lines = []
    for change in changes:
        key = change.get("key", "?")
        old = change.get("old_value", change.get("old"))
        new = change.get("new_value", change.get("new"))
        lines.append(f"{key}: {old!r} → {new!r}")
    return "\n".join(lines) or "none"


class AuditPoller:
    """Mirrors new guild audit-log entries made by elevated users.

    Each cycle fetches the newest ``batch_size`` entries and emits only those
    newer than the persisted cursor, oldest first. The very first cycle only
    records a baseline. If more than ``batch_size`` entries arrived between
    two cycles, the older ones are skipped.
    """

    def __init__(
        self,
        feed: AuditFeed,
        state: RecordSet[BotState],
        grants: GrantManager,
        notifier: Notifier,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._feed = feed
        self._state = state
        self._grants = grants
        self._notifier = notifier
        self._batch_size = batch_size

    async def poll_once(self) -> list[AuditEntry]:
        entries = await self._feed.fetch_recent_entries(self._batch_size)
        if not entries:
            return []

        newest_id = entries[0].id
        async with self._state.transaction() as state:
            cursor = state.last_audit_id
            state.last_audit_id = newest_id

        if cursor is None:
            logger.info("audit_cursor_initialized", last_audit_id=newest_id)
            return []

        fresh: list[AuditEntry] = []
        for entry in entries:
            if entry.id == cursor:
                break
            fresh.append(entry)
        else:
            logger.warning(
                "audit_cursor_gap",
                cursor=cursor,
                window=len(entries),
                oldest_fetched=entries[-1].id,
            )

        if not fresh:
            return []
        fresh.reverse()
        logger.debug("audit_entries_new", count=len(fresh), last_audit_id=newest_id)

        emitted: list[AuditEntry] = []
        for entry in fresh:
            if not entry.executor_id or not await self._grants.is_elevated(entry.executor_id):
                continue
            await self._notifier.notify(
                ChannelKey.SPECIAL_ACTIVITY_LOG,
                NotificationKind.AUDIT_ENTRY,
                f"Audit: {entry.action}",
                {
                    "Executor": f"<@{entry.executor_id}>",
                    "Target": entry.target_id or "n/a",
                    "Reason": entry.reason or "none",
                    "Changes": _describe_changes(entry.changes),
                    "Entry": entry.id,
                },
            )
            emitted.append(entry)
        if emitted:
            logger.info("audit_entries_mirrored", count=len(emitted))
        return emitted
