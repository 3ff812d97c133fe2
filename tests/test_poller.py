from __future__ import annotations

import pytest

from hightide_bot.audit.poller import AuditPoller
from hightide_bot.grants.manager import GrantManager
from hightide_bot.models import ChannelKey, NotificationKind
from hightide_bot.notifications.notifier import Notifier
from hightide_bot.storage.records import RecordStore
from tests.factories import (
    OTHER_USER_ID,
    USER_ID,
    FakeAuditFeed,
    FakeClock,
    FakeRoleProvider,
    InMemoryStorage,
    RecordingSink,
    make_entry,
)


def make_poller(
    feed: FakeAuditFeed,
    *,
    elevated: set[str] | None = None,
    batch_size: int = 10,
) -> tuple[AuditPoller, InMemoryStorage, RecordingSink]:
    clock = FakeClock()
    storage = InMemoryStorage()
    records = RecordStore(storage)
    roles = FakeRoleProvider({USER_ID} if elevated is None else elevated)
    grants = GrantManager(records.grants, roles, clock=clock)
    sink = RecordingSink()
    poller = AuditPoller(feed, records.state, grants, Notifier(sink, clock=clock), batch_size=batch_size)
    return poller, storage, sink


def entry_ids(sink: RecordingSink) -> list[str]:
    return [notification.fields["Entry"] for _, notification in sink.posts]


@pytest.mark.asyncio
async def test_first_poll_sets_baseline_then_emits_new_entries_oldest_first() -> None:
    feed = FakeAuditFeed([make_entry("5"), make_entry("4"), make_entry("3")])
    poller, storage, sink = make_poller(feed)

    assert await poller.poll_once() == []
    assert sink.posts == []
    assert storage.state.last_audit_id == "5"

    feed.entries = [make_entry("7"), make_entry("6"), make_entry("5"), make_entry("4")]
    emitted = await poller.poll_once()

    assert [entry.id for entry in emitted] == ["6", "7"]
    assert entry_ids(sink) == ["6", "7"]
    assert {channel for channel, _ in sink.posts} == {ChannelKey.SPECIAL_ACTIVITY_LOG}
    assert {n.kind for _, n in sink.posts} == {NotificationKind.AUDIT_ENTRY}
    assert storage.state.last_audit_id == "7"


@pytest.mark.asyncio
async def test_poll_requests_batch_size() -> None:
    feed = FakeAuditFeed([make_entry("1")])
    poller, _, _ = make_poller(feed, batch_size=10)

    await poller.poll_once()

    assert feed.limits == [10]


@pytest.mark.asyncio
async def test_empty_feed_leaves_cursor_untouched() -> None:
    feed = FakeAuditFeed([])
    poller, storage, sink = make_poller(feed)

    assert await poller.poll_once() == []

    assert storage.state.last_audit_id is None
    assert storage.writes["state"] == 0
    assert sink.posts == []


@pytest.mark.asyncio
async def test_no_new_entries_emits_nothing() -> None:
    feed = FakeAuditFeed([make_entry("5"), make_entry("4")])
    poller, storage, sink = make_poller(feed)
    await poller.poll_once()

    assert await poller.poll_once() == []
    assert sink.posts == []
    assert storage.state.last_audit_id == "5"


@pytest.mark.asyncio
async def test_only_elevated_executors_are_mirrored() -> None:
    feed = FakeAuditFeed([make_entry("1")])
    poller, storage, sink = make_poller(feed, elevated={USER_ID})
    await poller.poll_once()

    feed.entries = [
        make_entry("4", executor_id=OTHER_USER_ID),
        make_entry("3", executor_id=USER_ID),
        make_entry("2", executor_id=None),
        make_entry("1"),
    ]
    emitted = await poller.poll_once()

    assert [entry.id for entry in emitted] == ["3"]
    assert entry_ids(sink) == ["3"]
    assert storage.state.last_audit_id == "4"


@pytest.mark.asyncio
async def test_cursor_outside_window_emits_whole_window() -> None:
    feed = FakeAuditFeed([make_entry("1")])
    poller, storage, sink = make_poller(feed, batch_size=3)
    await poller.poll_once()

    feed.entries = [make_entry(str(i)) for i in range(9, 1, -1)]
    emitted = await poller.poll_once()

    assert [entry.id for entry in emitted] == ["7", "8", "9"]
    assert storage.state.last_audit_id == "9"


@pytest.mark.asyncio
async def test_persisted_cursor_survives_new_poller() -> None:
    feed = FakeAuditFeed([make_entry("5")])
    poller, storage, sink = make_poller(feed)
    await poller.poll_once()

    records = RecordStore(storage)
    clock = FakeClock()
    grants = GrantManager(records.grants, FakeRoleProvider({USER_ID}), clock=clock)
    restarted = AuditPoller(feed, records.state, grants, Notifier(sink, clock=clock))
    feed.entries = [make_entry("6"), make_entry("5")]

    emitted = await restarted.poll_once()

    assert [entry.id for entry in emitted] == ["6"]
