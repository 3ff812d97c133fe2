from __future__ import annotations

import secrets
from dataclasses import replace
from typing import Optional

import structlog

from ..errors import CodeRejected, CodeRejection
from ..models import AuthCode
from ..storage.records import RecordSet
from ..utils.clock import Clock, now_ms

logger = structlog.get_logger(__name__)

DEFAULT_TTL_MS = 60_000
CODE_BYTES = 9


def _short(code: str) -> str:
    return f"{code[:4]}…" if len(code) > 4 else code


class AuthCodeManager:
    """Issues and consumes one-time authorization codes.

    Used codes stay in the record set as an audit trail; only codes that
    expired without being used are swept.
    """

    def __init__(
        self,
        records: RecordSet[dict[str, AuthCode]],
        *,
        ttl_ms: int = DEFAULT_TTL_MS,
        clock: Clock = now_ms,
    ) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")
        self._records = records
        self._ttl_ms = ttl_ms
        self._clock = clock

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    async def issue(self, created_by: str, reason: str) -> str:
        async with self._records.transaction() as codes:
            code = secrets.token_hex(CODE_BYTES)
            while code in codes:
                code = secrets.token_hex(CODE_BYTES)
            now = self._clock()
            codes[code] = AuthCode(
                code=code,
                created_by=created_by,
                reason=reason,
                created_at=now,
                expires_at=now + self._ttl_ms,
            )
        logger.info("authcode_issued", code=_short(code), created_by=created_by, ttl_ms=self._ttl_ms)
        return code

    async def consume(self, code: str, target_user_id: str) -> AuthCode:
        """Mark ``code`` used for ``target_user_id`` or raise :class:`CodeRejected`."""
        async with self._records.transaction() as codes:
            entry = codes.get(code)
            now = self._clock()
            if entry is None:
                rejection = CodeRejection.INVALID_CODE
            elif entry.used:
                rejection = CodeRejection.ALREADY_USED
            elif entry.is_expired(now):
                rejection = CodeRejection.EXPIRED
            else:
                rejection = None
                entry.used = True
                entry.used_at = now
                entry.used_for_user_id = target_user_id
            if rejection is not None:
                logger.warning(
                    "authcode_rejected",
                    code=_short(code),
                    target=target_user_id,
                    reason=rejection.value,
                )
                raise CodeRejected(rejection)
        logger.info("authcode_consumed", code=_short(code), target=target_user_id)
        return replace(entry)

    async def get(self, code: str) -> Optional[AuthCode]:
        codes = await self._records.snapshot()
        return codes.get(code)

    async def sweep_expired(self) -> list[str]:
        async with self._records.transaction() as codes:
            now = self._clock()
            removed = [
                code for code, entry in codes.items() if not entry.used and entry.is_expired(now)
            ]
            for code in removed:
                del codes[code]
        if removed:
            logger.info("authcodes_swept", count=len(removed))
        return removed
