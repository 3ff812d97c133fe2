from __future__ import annotations

import abc
from typing import Mapping

from ..models import AuthCode, BotState, Grant


class AuthCodeRepository(abc.ABC):
    @abc.abstractmethod
    async def load_auth_codes(self) -> dict[str, AuthCode]:
        ...

    @abc.abstractmethod
    async def replace_auth_codes(self, codes: Mapping[str, AuthCode]) -> None:
        ...


class GrantRepository(abc.ABC):
    @abc.abstractmethod
    async def load_grants(self) -> dict[str, Grant]:
        ...

    @abc.abstractmethod
    async def replace_grants(self, grants: Mapping[str, Grant]) -> None:
        ...


class StateRepository(abc.ABC):
    @abc.abstractmethod
    async def load_state(self) -> BotState:
        ...

    @abc.abstractmethod
    async def replace_state(self, state: BotState) -> None:
        ...


class StorageGateway(AuthCodeRepository, GrantRepository, StateRepository, abc.ABC):
    """Combined repository interface for convenience.

    Every ``replace_*`` call swaps the whole record set; callers go through
    :class:`~hightide_bot.storage.records.RecordSet` so writes are serialized.
    """

    @abc.abstractmethod
    async def connect(self) -> None:
        ...

    @abc.abstractmethod
    async def disconnect(self) -> None:
        ...
