from __future__ import annotations

from pathlib import Path
from typing import Mapping, Optional

import aiosqlite
import structlog

from ..models import AuthCode, BotState, Grant
from .base import StorageGateway

logger = structlog.get_logger(__name__)


CREATE_AUTH_CODES = """
CREATE TABLE IF NOT EXISTS auth_codes (
    code TEXT PRIMARY KEY,
    created_by TEXT NOT NULL,
    reason TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    used INTEGER NOT NULL DEFAULT 0,
    used_at INTEGER,
    used_for_user_id TEXT
)
"""


CREATE_GRANTS = """
CREATE TABLE IF NOT EXISTS grants (
    user_id TEXT PRIMARY KEY,
    granted_by TEXT NOT NULL,
    reason TEXT NOT NULL,
    granted_at INTEGER NOT NULL,
    expires_at INTEGER NOT NULL,
    authcode TEXT NOT NULL
)
"""


CREATE_STATE = """
CREATE TABLE IF NOT EXISTS bot_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_audit_id TEXT
)
"""


class SQLiteStorage(StorageGateway):
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._conn: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self._path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute(CREATE_AUTH_CODES)
        await self._conn.execute(CREATE_GRANTS)
        await self._conn.execute(CREATE_STATE)
        await self._conn.execute("INSERT OR IGNORE INTO bot_state (id, last_audit_id) VALUES (1, NULL)")
        await self._conn.commit()
        logger.info("sqlite_connected", path=str(self._path))

    async def disconnect(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def load_auth_codes(self) -> dict[str, AuthCode]:
        assert self._conn
        cursor = await self._conn.execute("SELECT * FROM auth_codes")
        rows = await cursor.fetchall()
        await cursor.close()
        return {
            row["code"]: AuthCode(
                code=row["code"],
                created_by=row["created_by"],
                reason=row["reason"],
                created_at=row["created_at"],
                expires_at=row["expires_at"],
                used=bool(row["used"]),
                used_at=row["used_at"],
                used_for_user_id=row["used_for_user_id"],
            )
            for row in rows
        }

    async def replace_auth_codes(self, codes: Mapping[str, AuthCode]) -> None:
        assert self._conn
        entries = [
            (
                entry.code,
                entry.created_by,
                entry.reason,
                entry.created_at,
                entry.expires_at,
                int(entry.used),
                entry.used_at,
                entry.used_for_user_id,
            )
            for entry in codes.values()
        ]
        try:
            await self._conn.execute("DELETE FROM auth_codes")
            await self._conn.executemany(
                """
                INSERT INTO auth_codes (
                    code, created_by, reason, created_at, expires_at,
                    used, used_at, used_for_user_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                entries,
            )
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise
        logger.debug("sqlite_replace_auth_codes", count=len(entries))

    async def load_grants(self) -> dict[str, Grant]:
        assert self._conn
        cursor = await self._conn.execute("SELECT * FROM grants")
        rows = await cursor.fetchall()
        await cursor.close()
        return {
            row["user_id"]: Grant(
                user_id=row["user_id"],
                granted_by=row["granted_by"],
                reason=row["reason"],
                granted_at=row["granted_at"],
                expires_at=row["expires_at"],
                authcode=row["authcode"],
            )
            for row in rows
        }

    async def replace_grants(self, grants: Mapping[str, Grant]) -> None:
        assert self._conn
        entries = [
            (
                grant.user_id,
                grant.granted_by,
                grant.reason,
                grant.granted_at,
                grant.expires_at,
                grant.authcode,
            )
            for grant in grants.values()
        ]
        try:
            await self._conn.execute("DELETE FROM grants")
            await self._conn.executemany(
                """
                INSERT INTO grants (
                    user_id, granted_by, reason, granted_at, expires_at, authcode
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                entries,
            )
            await self._conn.commit()
        except Exception:
            await self._conn.rollback()
            raise
        logger.debug("sqlite_replace_grants", count=len(entries))

    async def load_state(self) -> BotState:
        assert self._conn
        cursor = await self._conn.execute("SELECT last_audit_id FROM bot_state WHERE id = 1")
        row = await cursor.fetchone()
        await cursor.close()
        return BotState(last_audit_id=row["last_audit_id"] if row else None)

    async def replace_state(self, state: BotState) -> None:
        assert self._conn
        await self._conn.execute(
            """
            INSERT INTO bot_state (id, last_audit_id) VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET last_audit_id=excluded.last_audit_id
            """,
            (state.last_audit_id,),
        )
        await self._conn.commit()
