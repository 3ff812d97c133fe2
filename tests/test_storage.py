from __future__ import annotations

import json

import pytest

from hightide_bot.models import AuthCode, BotState, Grant
from hightide_bot.storage.json_files import JsonFileStorage
from hightide_bot.storage.records import RecordStore
from hightide_bot.storage.sqlite import SQLiteStorage
from tests.factories import ADMIN_ID, START_MS, USER_ID, InMemoryStorage


def sample_code() -> AuthCode:
    return AuthCode(
        code="abc123",
        created_by=ADMIN_ID,
        reason="test",
        created_at=START_MS,
        expires_at=START_MS + 60_000,
        used=True,
        used_at=START_MS + 1_000,
        used_for_user_id=USER_ID,
    )


def sample_grant() -> Grant:
    return Grant(
        user_id=USER_ID,
        granted_by=ADMIN_ID,
        reason="incident",
        granted_at=START_MS,
        expires_at=START_MS + 3_600_000,
        authcode="abc123",
    )


@pytest.mark.asyncio
async def test_json_storage_creates_empty_documents(tmp_path) -> None:
    storage = JsonFileStorage(tmp_path / "data")
    await storage.connect()

    data_dir = tmp_path / "data"
    assert json.loads((data_dir / "authcodes.json").read_text()) == {"codes": {}}
    assert json.loads((data_dir / "grants.json").read_text()) == {"grants": {}}
    assert json.loads((data_dir / "state.json").read_text()) == {"lastAuditId": None}
    assert await storage.load_state() == BotState()


@pytest.mark.asyncio
async def test_json_storage_round_trips_across_reopen(tmp_path) -> None:
    storage = JsonFileStorage(tmp_path)
    await storage.connect()
    await storage.replace_auth_codes({"abc123": sample_code()})
    await storage.replace_grants({USER_ID: sample_grant()})
    await storage.replace_state(BotState(last_audit_id="1234"))

    reopened = JsonFileStorage(tmp_path)
    await reopened.connect()

    assert await reopened.load_auth_codes() == {"abc123": sample_code()}
    assert await reopened.load_grants() == {USER_ID: sample_grant()}
    assert (await reopened.load_state()).last_audit_id == "1234"

    on_disk = json.loads((tmp_path / "grants.json").read_text())
    assert on_disk["grants"][USER_ID]["expiresAt"] == START_MS + 3_600_000
    assert json.loads((tmp_path / "state.json").read_text()) == {"lastAuditId": "1234"}


@pytest.mark.asyncio
async def test_json_storage_reads_legacy_used_for_key(tmp_path) -> None:
    storage = JsonFileStorage(tmp_path)
    await storage.connect()
    record = {
        "createdBy": ADMIN_ID,
        "createdAt": START_MS,
        "expiresAt": START_MS + 60_000,
        "used": True,
        "usedAt": START_MS + 5,
        "usedFor": USER_ID,
        "reason": "old",
    }
    (tmp_path / "authcodes.json").write_text(json.dumps({"codes": {"legacy": record}}))

    codes = await storage.load_auth_codes()

    assert codes["legacy"].used_for_user_id == USER_ID


@pytest.mark.asyncio
async def test_json_storage_keeps_existing_files(tmp_path) -> None:
    (tmp_path / "state.json").write_text(json.dumps({"lastAuditId": "77"}))
    storage = JsonFileStorage(tmp_path)

    await storage.connect()

    assert (await storage.load_state()).last_audit_id == "77"


@pytest.mark.asyncio
async def test_sqlite_storage_round_trips(tmp_path) -> None:
    path = tmp_path / "bot.db"
    storage = SQLiteStorage(path)
    await storage.connect()
    try:
        assert await storage.load_state() == BotState()
        await storage.replace_auth_codes({"abc123": sample_code()})
        await storage.replace_grants({USER_ID: sample_grant()})
        await storage.replace_state(BotState(last_audit_id="42"))
    finally:
        await storage.disconnect()

    reopened = SQLiteStorage(path)
    await reopened.connect()
    try:
        assert await reopened.load_auth_codes() == {"abc123": sample_code()}
        assert await reopened.load_grants() == {USER_ID: sample_grant()}
        assert (await reopened.load_state()).last_audit_id == "42"

        await reopened.replace_grants({})
        assert await reopened.load_grants() == {}
    finally:
        await reopened.disconnect()


@pytest.mark.asyncio
async def test_transaction_persists_only_on_change() -> None:
    storage = InMemoryStorage()
    records = RecordStore(storage)

    async with records.grants.transaction():
        pass
    assert storage.writes["grants"] == 0

    async with records.grants.transaction() as grants:
        grants[USER_ID] = sample_grant()
    assert storage.writes["grants"] == 1
    assert storage.grants == {USER_ID: sample_grant()}


@pytest.mark.asyncio
async def test_transaction_error_discards_working_copy() -> None:
    storage = InMemoryStorage()
    records = RecordStore(storage)

    with pytest.raises(RuntimeError):
        async with records.grants.transaction() as grants:
            grants[USER_ID] = sample_grant()
            raise RuntimeError("boom")

    assert storage.writes["grants"] == 0
    assert await records.grants.snapshot() == {}


@pytest.mark.asyncio
async def test_failed_write_keeps_last_persisted_state() -> None:
    storage = InMemoryStorage()
    records = RecordStore(storage)
    async with records.state.transaction() as state:
        state.last_audit_id = "1"

    storage.fail_writes = True
    with pytest.raises(OSError):
        async with records.state.transaction() as state:
            state.last_audit_id = "2"

    assert (await records.state.snapshot()).last_audit_id == "1"


@pytest.mark.asyncio
async def test_snapshot_is_a_copy() -> None:
    storage = InMemoryStorage()
    records = RecordStore(storage)
    async with records.grants.transaction() as grants:
        grants[USER_ID] = sample_grant()

    snapshot = await records.grants.snapshot()
    snapshot[USER_ID].expires_at = 0

    assert (await records.grants.snapshot())[USER_ID].expires_at == START_MS + 3_600_000
