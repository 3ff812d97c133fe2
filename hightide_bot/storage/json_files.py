from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping

import structlog

from ..models import AuthCode, BotState, Grant
from ..utils.concurrency import run_blocking
from .base import StorageGateway

logger = structlog.get_logger(__name__)

AUTH_FILE = "authcodes.json"
GRANTS_FILE = "grants.json"
STATE_FILE = "state.json"

EMPTY_CONTENT = {
    AUTH_FILE: {"codes": {}},
    GRANTS_FILE: {"grants": {}},
    STATE_FILE: {"lastAuditId": None},
}


def _read_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _write_json(path: Path, data: dict[str, Any]) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonFileStorage(StorageGateway):
    """One JSON document per record set, each read whole and replaced whole."""

    def __init__(self, data_dir: str | Path) -> None:
        self._dir = Path(data_dir)

    def _path(self, name: str) -> Path:
        return self._dir / name

    async def connect(self) -> None:
        await run_blocking(self._ensure_files)
        logger.info("json_storage_connected", path=str(self._dir))

    async def disconnect(self) -> None:
        return None

    def _ensure_files(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        for name, content in EMPTY_CONTENT.items():
            path = self._path(name)
            if not path.exists():
                _write_json(path, content)
                logger.info("json_storage_file_created", file=name)

    async def load_auth_codes(self) -> dict[str, AuthCode]:
        data = await run_blocking(_read_json, self._path(AUTH_FILE))
        return {
            code: AuthCode.from_record(code, record)
            for code, record in data.get("codes", {}).items()
        }

    async def replace_auth_codes(self, codes: Mapping[str, AuthCode]) -> None:
        payload = {"codes": {code: entry.to_record() for code, entry in codes.items()}}
        await run_blocking(_write_json, self._path(AUTH_FILE), payload)

    async def load_grants(self) -> dict[str, Grant]:
        data = await run_blocking(_read_json, self._path(GRANTS_FILE))
        return {
            user_id: Grant.from_record(user_id, record)
            for user_id, record in data.get("grants", {}).items()
        }

    async def replace_grants(self, grants: Mapping[str, Grant]) -> None:
        payload = {"grants": {user_id: grant.to_record() for user_id, grant in grants.items()}}
        await run_blocking(_write_json, self._path(GRANTS_FILE), payload)

    async def load_state(self) -> BotState:
        data = await run_blocking(_read_json, self._path(STATE_FILE))
        return BotState.from_record(data)

    async def replace_state(self, state: BotState) -> None:
        await run_blocking(_write_json, self._path(STATE_FILE), state.to_record())
