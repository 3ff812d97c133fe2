from __future__ import annotations

import asyncio

import pytest

from hightide_bot.authcodes.manager import AuthCodeManager
from hightide_bot.grants.manager import GrantManager
from hightide_bot.models import ChannelKey, NotificationKind
from hightide_bot.notifications.notifier import Notifier
from hightide_bot.scheduler.sweeper import ExpirySweeper
from hightide_bot.storage.records import RecordStore
from tests.factories import (
    ADMIN_ID,
    OTHER_USER_ID,
    USER_ID,
    FakeClock,
    FakeRoleProvider,
    InMemoryStorage,
    RecordingSink,
)


class SweepHarness:
    def __init__(self) -> None:
        self.clock = FakeClock()
        self.storage = InMemoryStorage()
        records = RecordStore(self.storage)
        self.roles = FakeRoleProvider()
        self.sink = RecordingSink()
        self.codes = AuthCodeManager(records.auth_codes, clock=self.clock)
        self.grants = GrantManager(records.grants, self.roles, clock=self.clock)
        self.sweeper = ExpirySweeper(
            self.codes,
            self.grants,
            self.roles,
            Notifier(self.sink, clock=self.clock),
            clock=self.clock,
        )

    async def grant(self, user_id: str, duration_ms: int) -> None:
        self.roles.holders.add(user_id)
        await self.grants.grant(user_id, ADMIN_ID, duration_ms, "reason", "code")


@pytest.mark.asyncio
async def test_sweep_revokes_expired_grants_and_notifies() -> None:
    harness = SweepHarness()
    await harness.grant(USER_ID, 10_000)
    await harness.grant(OTHER_USER_ID, 60_000)

    harness.clock.advance(10_000)
    report = await harness.sweeper.run_once()

    assert report.expired_users == [USER_ID]
    assert report.role_removal_failures == []
    assert set(harness.storage.grants) == {OTHER_USER_ID}
    assert harness.roles.holders == {OTHER_USER_ID}
    assert harness.sink.kinds(ChannelKey.PERM_LOG) == [NotificationKind.GRANT_EXPIRED.value]


@pytest.mark.asyncio
async def test_role_removal_failure_does_not_block_cleanup() -> None:
    harness = SweepHarness()
    await harness.grant(USER_ID, 10_000)
    await harness.grant(OTHER_USER_ID, 10_000)
    harness.roles.fail_remove.add(USER_ID)

    harness.clock.advance(10_000)
    report = await harness.sweeper.run_once()

    assert sorted(report.expired_users) == sorted([USER_ID, OTHER_USER_ID])
    assert report.role_removal_failures == [USER_ID]
    assert harness.storage.grants == {}
    assert OTHER_USER_ID not in harness.roles.holders
    assert len(harness.sink.posts) == 2
    failed = [n for _, n in harness.sink.posts if n.fields["User"] == f"<@{USER_ID}>"]
    assert failed[0].fields["Role removed"].startswith("no")


@pytest.mark.asyncio
async def test_sweep_removes_expired_codes_but_keeps_used_ones() -> None:
    harness = SweepHarness()
    unused = await harness.codes.issue(ADMIN_ID, "unused")
    used = await harness.codes.issue(ADMIN_ID, "used")
    await harness.codes.consume(used, USER_ID)

    harness.clock.advance(60_000)
    report = await harness.sweeper.run_once()

    assert report.removed_codes == [unused]
    assert set(harness.storage.codes) == {used}


@pytest.mark.asyncio
async def test_sweep_with_nothing_expired_writes_nothing() -> None:
    harness = SweepHarness()
    await harness.grant(USER_ID, 60_000)
    writes_before = dict(harness.storage.writes)

    report = await harness.sweeper.run_once()

    assert report.expired_users == []
    assert harness.storage.writes == writes_before
    assert harness.sink.posts == []


@pytest.mark.asyncio
async def test_notification_failure_does_not_abort_sweep() -> None:
    harness = SweepHarness()
    await harness.grant(USER_ID, 1_000)
    harness.sink.fail = True

    harness.clock.advance(1_000)
    report = await harness.sweeper.run_once()

    assert report.expired_users == [USER_ID]
    assert harness.storage.grants == {}


@pytest.mark.asyncio
async def test_role_is_removed_before_record_is_deleted() -> None:
    harness = SweepHarness()
    await harness.grant(USER_ID, 1_000)
    harness.clock.advance(1_000)
    harness.roles.remove_gate = asyncio.Event()

    sweep = asyncio.create_task(harness.sweeper.run_once())
    await asyncio.wait_for(harness.roles.remove_started.wait(), timeout=1)

    assert USER_ID in harness.storage.grants

    harness.roles.remove_gate.set()
    report = await asyncio.wait_for(sweep, timeout=1)
    assert report.expired_users == [USER_ID]
    assert harness.storage.grants == {}


@pytest.mark.asyncio
async def test_grant_renewed_after_listing_is_left_alone() -> None:
    harness = SweepHarness()
    await harness.grant(USER_ID, 1_000)
    harness.clock.advance(1_000)

    async with harness.grants.user_lock(USER_ID):
        sweep = asyncio.create_task(harness.sweeper.run_once())
        await asyncio.sleep(0.01)
        await harness.grants.grant(USER_ID, ADMIN_ID, 60_000, "renewed", "code-2")
    report = await asyncio.wait_for(sweep, timeout=1)

    assert report.expired_users == []
    assert harness.roles.calls == []
    assert harness.storage.grants[USER_ID].reason == "renewed"
    assert harness.sink.posts == []


@pytest.mark.asyncio
async def test_sweep_prunes_elevation_cache() -> None:
    harness = SweepHarness()
    for index in range(20):
        harness.grants.cache.put(str(index), False)
    harness.clock.advance(15_000)

    await harness.sweeper.run_once()

    assert len(harness.grants.cache) == 0
