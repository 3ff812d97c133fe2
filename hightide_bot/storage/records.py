from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Generic, Optional, TypeVar

import structlog

from ..models import AuthCode, BotState, Grant
from .base import StorageGateway

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RecordSet(Generic[T]):
    """Single in-process owner of one persisted record set.

    Reads and read-modify-write cycles run under one lock, so two coroutines
    can never interleave between loading a record set and writing it back.
    """

    def __init__(
        self,
        name: str,
        loader: Callable[[], Awaitable[T]],
        saver: Callable[[T], Awaitable[None]],
    ) -> None:
        self._name = name
        self._loader = loader
        self._saver = saver
        self._cache: Optional[T] = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._name

    async def snapshot(self) -> T:
        async with self._lock:
            return copy.deepcopy(await self._current())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[T]:
        """Yield a working copy and persist it if the block exits cleanly.

        An exception inside the block (or from the write itself) leaves the
        cached state at the last successfully persisted value.
        """
        async with self._lock:
            current = await self._current()
            working = copy.deepcopy(current)
            yield working
            if working == current:
                return
            await self._saver(working)
            self._cache = working
            logger.debug("record_set_persisted", record_set=self._name)

    def invalidate(self) -> None:
        self._cache = None

    async def _current(self) -> T:
        if self._cache is None:
            self._cache = await self._loader()
        return self._cache


class RecordStore:
    """The three record sets the bot persists, each behind its own owner."""

    def __init__(self, gateway: StorageGateway) -> None:
        self.gateway = gateway
        self.auth_codes: RecordSet[dict[str, AuthCode]] = RecordSet(
            "auth_codes", gateway.load_auth_codes, gateway.replace_auth_codes
        )
        self.grants: RecordSet[dict[str, Grant]] = RecordSet(
            "grants", gateway.load_grants, gateway.replace_grants
        )
        self.state: RecordSet[BotState] = RecordSet(
            "state", gateway.load_state, gateway.replace_state
        )
