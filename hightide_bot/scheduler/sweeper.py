from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial

import structlog

from ..adapters.base import RoleProvider
from ..authcodes.manager import AuthCodeManager
from ..grants.manager import GrantManager
from ..models import ChannelKey, NotificationKind
from ..notifications.notifier import Notifier
from ..utils.clock import Clock, now_ms
from ..utils.concurrency import bounded_gather

logger = structlog.get_logger(__name__)

EXPIRY_REASON = "Temporary permissions expired"


@dataclass(slots=True)
class SweepReport:
    removed_codes: list[str] = field(default_factory=list)
    expired_users: list[str] = field(default_factory=list)
    role_removal_failures: list[str] = field(default_factory=list)


class ExpirySweeper:
    def __init__(
        self,
        codes: AuthCodeManager,
        grants: GrantManager,
        roles: RoleProvider,
        notifier: Notifier,
        *,
        concurrency: int = 4,
        clock: Clock = now_ms,
    ) -> None:
        self._codes = codes
        self._grants = grants
        self._roles = roles
        self._notifier = notifier
        self._concurrency = max(1, concurrency)
        self._clock = clock

    async def run_once(self) -> SweepReport:
        report = SweepReport()
        report.removed_codes = await self._codes.sweep_expired()
        self._grants.cache.prune()

        now = self._clock()
        expired = await self._grants.list_expired(now)
        if expired:
            logger.info("sweep_expired_grants", count=len(expired))
            await bounded_gather(
                (partial(self._expire_user, user_id, now, report) for user_id in expired),
                self._concurrency,
            )
        return report

    async def _expire_user(self, user_id: str, now: int, report: SweepReport) -> None:
        async with self._grants.user_lock(user_id):
            try:
                current = await self._grants.get(user_id)
                if current is None or current.is_live(now):
                    # renewed or revoked since it was listed
                    return
                role_removed = await self._remove_role(user_id)
                grant = await self._grants.expire(user_id, now)
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("sweep_expire_failed", user_id=user_id, error=str(exc))
                return
        if grant is None:
            return
        report.expired_users.append(user_id)
        if not role_removed:
            report.role_removal_failures.append(user_id)

        await self._notifier.notify(
            ChannelKey.PERM_LOG,
            NotificationKind.GRANT_EXPIRED,
            "Temporary permissions expired",
            {
                "User": f"<@{user_id}>",
                "Granted by": f"<@{grant.granted_by}>",
                "Reason": grant.reason,
                "Role removed": "yes" if role_removed else "no (removal failed)",
            },
        )

    async def _remove_role(self, user_id: str) -> bool:
        try:
            await self._roles.remove_role(user_id, EXPIRY_REASON)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("sweep_role_removal_failed", user_id=user_id, error=str(exc))
            return False
        return True
