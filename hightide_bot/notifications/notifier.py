from __future__ import annotations

from typing import Mapping, Optional

import structlog

from ..adapters.base import NotificationSink
from ..models import ChannelKey, Notification, NotificationKind
from ..utils.clock import Clock, now_ms

logger = structlog.get_logger(__name__)


class Notifier:
    """Posts notifications to log channels; delivery failures are logged only."""

    def __init__(self, sink: NotificationSink, *, clock: Clock = now_ms) -> None:
        self._sink = sink
        self._clock = clock

    async def notify(
        self,
        channel: ChannelKey,
        kind: NotificationKind,
        title: str,
        fields: Optional[Mapping[str, object]] = None,
    ) -> None:
        notification = Notification(
            kind=kind,
            title=title,
            timestamp=self._clock(),
            fields={key: str(value) for key, value in (fields or {}).items()},
        )
        await self.post(channel, notification)

    async def post(self, channel: ChannelKey, notification: Notification) -> None:
        try:
            await self._sink.post_notification(channel, notification)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error(
                "notification_failed",
                channel=channel.value,
                kind=notification.kind.value,
                error=str(exc),
            )
