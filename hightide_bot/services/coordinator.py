from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable, Mapping, Optional

import structlog

from ..adapters.base import AuditFeed, NotificationSink, RoleProvider
from ..adapters.discord_rest import DiscordRestClient
from ..audit.poller import AuditPoller
from ..authcodes.manager import AuthCodeManager
from ..config import BotSettings, StorageSettings
from ..errors import ExternalActionFailed, InvalidDuration, InvalidTargetId, MissingArgument, NotAuthorized
from ..grants.cache import ElevationCache
from ..grants.manager import GrantManager
from ..logging.events import setup_logging
from ..models import Actor, ChannelKey, Grant, NotificationKind
from ..notifications.notifier import Notifier
from ..scheduler.scheduler import PeriodicTask
from ..scheduler.sweeper import ExpirySweeper
from ..storage.base import StorageGateway
from ..storage.json_files import JsonFileStorage
from ..storage.records import RecordStore
from ..storage.sqlite import SQLiteStorage
from ..utils.clock import Clock, now_ms
from ..utils.duration import humanize_ms, parse_duration, pretty_duration

logger = structlog.get_logger(__name__)

USER_ID_RE = re.compile(r"^\d{17,20}$")


def build_storage(settings: StorageSettings) -> StorageGateway:
    if settings.backend == "sqlite":
        return SQLiteStorage(settings.sqlite_path)
    return JsonFileStorage(settings.data_dir)


def _require(name: str, value: Optional[str]) -> str:
    value = (value or "").strip()
    if not value:
        raise MissingArgument(name)
    return value


def _validate_user_id(value: str) -> str:
    if not USER_ID_RE.match(value):
        raise InvalidTargetId(value)
    return value


def _relative(timestamp_ms: int) -> str:
    return f"<t:{timestamp_ms // 1000}:R>"


class PermissionCoordinator:
    """Entry point for the three permission commands and the background tasks."""

    def __init__(
        self,
        settings: BotSettings,
        *,
        storage: Optional[StorageGateway] = None,
        roles: Optional[RoleProvider] = None,
        audit_feed: Optional[AuditFeed] = None,
        sink: Optional[NotificationSink] = None,
        clock: Clock = now_ms,
    ) -> None:
        log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)
        setup_logging(level=log_level, use_json=settings.logging.use_json)
        self._settings = settings
        self._clock = clock

        self._rest: Optional[DiscordRestClient] = None
        if roles is None or audit_feed is None or sink is None:
            self._rest = DiscordRestClient(
                settings.discord.token,
                guild_id=settings.discord.guild_id,
                role_id=settings.roles.special_role_id,
                channels={key: settings.channels.for_key(key) for key in ChannelKey},
                base_url=settings.discord.api_base_url,
                timeout=settings.discord.timeout_seconds,
            )
        self._roles: RoleProvider = roles or self._rest
        self._audit_feed: AuditFeed = audit_feed or self._rest
        self._storage = storage or build_storage(settings.storage)
        self._records = RecordStore(self._storage)
        self._notifier = Notifier(sink or self._rest, clock=clock)

        timing = settings.timing
        self._codes = AuthCodeManager(
            self._records.auth_codes, ttl_ms=timing.authcode_ttl_ms, clock=clock
        )
        self._grants = GrantManager(
            self._records.grants,
            self._roles,
            cache=ElevationCache(
                timing.elevation_cache_ttl_ms,
                max_entries=timing.elevation_cache_max_entries,
                clock=clock,
            ),
            clock=clock,
        )
        self._sweeper = ExpirySweeper(
            self._codes,
            self._grants,
            self._roles,
            self._notifier,
            concurrency=settings.sweep.concurrency,
            clock=clock,
        )
        self._poller = AuditPoller(
            self._audit_feed,
            self._records.state,
            self._grants,
            self._notifier,
            batch_size=settings.audit.batch_size,
        )
        self._sweep_task = PeriodicTask(
            "expiry_sweep",
            self._sweeper.run_once,
            timing.expiry_check_interval_ms / 1000,
            run_immediately=True,
        )
        self._audit_task = PeriodicTask(
            "audit_poll",
            self._poller.poll_once,
            timing.audit_poll_interval_ms / 1000,
        )
        self._ready = asyncio.Event()

    @property
    def codes(self) -> AuthCodeManager:
        return self._codes

    @property
    def grants(self) -> GrantManager:
        return self._grants

    @property
    def sweeper(self) -> ExpirySweeper:
        return self._sweeper

    @property
    def poller(self) -> AuditPoller:
        return self._poller

    async def start(self) -> None:
        await self._storage.connect()
        active = await self._grants.list_active()
        logger.info("grants_loaded", active=len(active))
        await self._sweep_task.start()
        await self._audit_task.start()
        self._ready.set()
        logger.info("permission_coordinator_started")

    async def shutdown(self) -> None:
        await self._audit_task.stop()
        await self._sweep_task.stop()
        await self._storage.disconnect()
        if self._rest is not None:
            await self._rest.close()
        self._ready.clear()
        logger.info("permission_coordinator_stopped")

    async def generate_code(self, actor: Actor, reason: str) -> str:
        reason = _require("reason", reason)
        self._authorize(
            actor, self._settings.roles.authcode_generator_role_ids, "generate authorization codes"
        )
        code = await self._codes.issue(actor.user_id, reason)
        await self._notifier.notify(
            ChannelKey.AUTH_LOG,
            NotificationKind.CODE_ISSUED,
            "Authorization code generated",
            {
                "Generated by": f"<@{actor.user_id}>",
                "Reason": reason,
                "Valid for": humanize_ms(self._codes.ttl_ms),
            },
        )
        return code

    async def grant_permissions(
        self,
        actor: Actor,
        user_id: str,
        code: str,
        reason: str,
        duration_text: str,
    ) -> Grant:
        user_id = _require("userid", user_id)
        code = _require("authcode", code)
        reason = _require("reason", reason)
        duration_text = _require("time", duration_text)
        _validate_user_id(user_id)
        self._authorize(
            actor, self._settings.roles.grant_operator_role_ids, "grant temporary permissions"
        )
        duration_ms = parse_duration(duration_text)
        if duration_ms is None or duration_ms <= 0:
            raise InvalidDuration(duration_text)
        max_duration_ms = self._settings.timing.max_grant_duration_ms
        if duration_ms > max_duration_ms:
            raise InvalidDuration(duration_text, limit=humanize_ms(max_duration_ms))

        await self._codes.consume(code, user_id)
        await self._notifier.notify(
            ChannelKey.AUTH_LOG,
            NotificationKind.CODE_USED,
            "Authorization code used",
            {
                "Used by": f"<@{actor.user_id}>",
                "Target": f"<@{user_id}>",
                "Reason": reason,
            },
        )

        async with self._grants.user_lock(user_id):
            try:
                await self._roles.add_role(user_id, f"Temporary permissions: {reason}")
            except Exception as exc:  # pylint: disable=broad-except
                logger.error("grant_role_assignment_failed", user_id=user_id, error=str(exc))
                raise ExternalActionFailed(f"Failed to assign the role to {user_id}: {exc}") from exc
            try:
                grant = await self._grants.grant(user_id, actor.user_id, duration_ms, reason, code)
            except Exception as exc:
                logger.error("grant_record_failed", user_id=user_id, error=str(exc))
                await self._rollback_role(user_id)
                raise

        await self._notifier.notify(
            ChannelKey.PERM_LOG,
            NotificationKind.GRANT_CREATED,
            "Temporary permissions granted",
            {
                "User": f"<@{user_id}>",
                "Granted by": f"<@{actor.user_id}>",
                "Reason": reason,
                "Duration": pretty_duration(duration_text),
                "Expires": _relative(grant.expires_at),
            },
        )
        return grant

    async def revoke_permissions(self, actor: Actor, user_id: str, reason: str) -> Optional[Grant]:
        user_id = _require("userid", user_id)
        reason = _require("reason", reason)
        _validate_user_id(user_id)
        self._authorize(
            actor, self._settings.roles.grant_operator_role_ids, "revoke temporary permissions"
        )

        async with self._grants.user_lock(user_id):
            role_removed = True
            try:
                await self._roles.remove_role(user_id, f"Permissions revoked: {reason}")
            except Exception as exc:  # pylint: disable=broad-except
                role_removed = False
                logger.warning("revoke_role_removal_failed", user_id=user_id, error=str(exc))
            removed = await self._grants.revoke(user_id)
        await self._notifier.notify(
            ChannelKey.PERM_LOG,
            NotificationKind.GRANT_REVOKED,
            "Temporary permissions revoked",
            {
                "User": f"<@{user_id}>",
                "Revoked by": f"<@{actor.user_id}>",
                "Reason": reason,
                "Active grant": "yes" if removed else "no",
                "Role removed": "yes" if role_removed else "no (removal failed)",
            },
        )
        return removed

    async def record_activity(
        self,
        user_id: str,
        title: str,
        fields: Optional[Mapping[str, object]] = None,
        *,
        has_role: Optional[bool] = None,
    ) -> bool:
        """Mirror an activity event to the special activity log if the user is elevated.

        ``has_role`` comes from the gateway member when the event carries one.
        """
        if not await self._grants.is_elevated(user_id, has_role=has_role):
            return False
        await self._notifier.notify(
            ChannelKey.SPECIAL_ACTIVITY_LOG,
            NotificationKind.ACTIVITY,
            title,
            {"User": f"<@{user_id}>", **(fields or {})},
        )
        return True

    async def _rollback_role(self, user_id: str) -> None:
        try:
            await self._roles.remove_role(user_id, "Temporary permissions: grant could not be recorded")
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("grant_role_rollback_failed", user_id=user_id, error=str(exc))

    def _authorize(self, actor: Actor, allowed_role_ids: Iterable[str], action: str) -> None:
        allowed = set(allowed_role_ids)
        if not allowed or allowed & actor.role_ids:
            return
        logger.warning("command_not_authorized", user_id=actor.user_id, action=action)
        raise NotAuthorized(f"You are not allowed to {action}.")
