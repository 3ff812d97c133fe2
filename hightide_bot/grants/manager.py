from __future__ import annotations

import asyncio
import weakref
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator, Optional

import structlog

from ..adapters.base import RoleProvider
from ..errors import InvalidDuration
from ..models import Grant
from ..storage.records import RecordSet
from ..utils.clock import Clock, now_ms
from .cache import ElevationCache

logger = structlog.get_logger(__name__)


class GrantManager:
    """Owns temporal grants of the special role, one record per user."""

    def __init__(
        self,
        records: RecordSet[dict[str, Grant]],
        roles: RoleProvider,
        *,
        cache: Optional[ElevationCache] = None,
        clock: Clock = now_ms,
    ) -> None:
        self._records = records
        self._roles = roles
        self._clock = clock
        self._cache = cache or ElevationCache(clock=clock)
        self._user_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def cache(self) -> ElevationCache:
        return self._cache

    @asynccontextmanager
    async def user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Serialize role changes and record changes for one user.

        Callers pairing an external role call with a record write hold this
        lock across both, so a sweep and a renewal for the same user never
        interleave. Not reentrant.
        """
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        async with lock:
            yield

    async def grant(
        self,
        user_id: str,
        granted_by: str,
        duration_ms: int,
        reason: str,
        authcode: str,
    ) -> Grant:
        if duration_ms <= 0:
            raise InvalidDuration(f"{duration_ms}ms")
        async with self._records.transaction() as grants:
            now = self._clock()
            previous = grants.get(user_id)
            record = Grant(
                user_id=user_id,
                granted_by=granted_by,
                reason=reason,
                granted_at=now,
                expires_at=now + duration_ms,
                authcode=authcode,
            )
            grants[user_id] = record
        logger.info(
            "grant_created",
            user_id=user_id,
            granted_by=granted_by,
            duration_ms=duration_ms,
            replaced=previous is not None,
        )
        return replace(record)

    async def revoke(self, user_id: str) -> Optional[Grant]:
        async with self._records.transaction() as grants:
            removed = grants.pop(user_id, None)
        if removed is not None:
            logger.info("grant_revoked", user_id=user_id)
        return removed

    async def expire(self, user_id: str, now: Optional[int] = None) -> Optional[Grant]:
        """Delete the grant only if it is still expired at ``now``.

        A grant renewed after it was listed as expired is left alone.
        """
        async with self._records.transaction() as grants:
            now = self._clock() if now is None else now
            grant = grants.get(user_id)
            if grant is None or grant.is_live(now):
                return None
            del grants[user_id]
        logger.info("grant_expired", user_id=user_id, expired_at=grant.expires_at)
        return grant

    async def get(self, user_id: str) -> Optional[Grant]:
        grants = await self._records.snapshot()
        return grants.get(user_id)

    async def list_expired(self, now: Optional[int] = None) -> list[str]:
        now = self._clock() if now is None else now
        grants = await self._records.snapshot()
        return [user_id for user_id, grant in grants.items() if not grant.is_live(now)]

    async def list_active(self, now: Optional[int] = None) -> list[Grant]:
        now = self._clock() if now is None else now
        grants = await self._records.snapshot()
        return sorted(
            (grant for grant in grants.values() if grant.is_live(now)),
            key=lambda grant: grant.expires_at,
        )

    async def is_elevated(self, user_id: str, *, has_role: Optional[bool] = None) -> bool:
        """True if a live grant exists or the role is held outside of any grant.

        ``has_role`` is the role flag from an already-fetched member object;
        when given, no role lookup is made and nothing is cached.
        """
        if has_role is not None:
            if has_role:
                return True
            grant = await self.get(user_id)
            return grant is not None and grant.is_live(self._clock())
        cached = self._cache.get(user_id)
        if cached is not None:
            return cached
        grant = await self.get(user_id)
        elevated = grant is not None and grant.is_live(self._clock())
        if not elevated:
            try:
                elevated = await self._roles.has_role(user_id)
            except Exception as exc:  # pylint: disable=broad-except
                # not cached, so the next call retries the lookup
                logger.warning("role_lookup_failed", user_id=user_id, error=str(exc))
                return False
        self._cache.put(user_id, elevated)
        return elevated
