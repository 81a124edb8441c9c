"""Tests for queue rebuilds, incremental syncs, cascades and due-item reads."""

from datetime import timedelta

import pytest

from cadence.reminders import repository
from cadence.reminders.errors import StoreError
from cadence.reminders.queue_service import QueueMaintenanceService
from cadence.reminders.schemas import (
    ChannelSpec,
    NotificationSetting,
    QueueEntry,
    ReminderCreate,
    ReminderStatus,
    ReminderUpdate,
)
from cadence.reminders.store import SqlDocumentStore, Upsert
from cadence.reminders.unified_models import NOTIFICATION_QUEUE, REMINDERS

from conftest import NOW

OWNER = "owner-1"


@pytest.fixture
def queue(store, settings):
    return QueueMaintenanceService(store, settings)


def _create(store, due_at, offsets=(0,), channel_spec=ChannelSpec.PUSH, owner_id=OWNER, **extra):
    data = ReminderCreate(
        title="Call mum",
        due_at=due_at,
        notifications=[NotificationSetting(offset_minutes=o, channel_spec=channel_spec) for o in offsets],
        **extra,
    )
    return repository.create_reminder(store, owner_id, data)


def _entry(entry_id, scheduled_at, owner_id=OWNER, **extra):
    data = dict(
        id=entry_id,
        owner_id=owner_id,
        reminder_id="rem-x",
        title="Old",
        scheduled_at=scheduled_at,
        due_at=scheduled_at,
        channel="push",
        notification_setting_id="n-x",
    )
    data.update(extra)
    return QueueEntry(**data)


def _unsent(store, owner_id=OWNER):
    return repository.list_unsent_entries(store, owner_id)


def test_rebuild_without_pending_reminders_empties_queue(store, queue):
    store.batch_write(upserts=repository.queue_upserts([_entry("stale-1", NOW + timedelta(hours=1))]))
    result = queue.rebuild_for_owner(OWNER, now=NOW)
    assert (result.queued, result.removed, result.reminders_scanned) == (0, 1, 0)
    assert _unsent(store) == []


def test_rebuild_queues_entries_inside_window(store, queue):
    _create(store, NOW + timedelta(hours=3), offsets=(0, 60), channel_spec=ChannelSpec.ALL)
    _create(store, NOW + timedelta(hours=72))  # beyond the 48h horizon
    done = _create(store, NOW + timedelta(hours=1))
    repository.toggle_status(store, OWNER, done.id)

    result = queue.rebuild_for_owner(OWNER, now=NOW)
    assert result.queued == 6
    assert result.reminders_scanned == 1
    assert {e.channel.value for e in _unsent(store)} == {"push", "sms", "email"}


def test_rebuild_drops_alerts_whose_fire_time_has_passed(store, queue):
    # due in 30 minutes but the alert fires an hour before due
    _create(store, NOW + timedelta(minutes=30), offsets=(60, 0))
    queue.rebuild_for_owner(OWNER, now=NOW)
    assert [e.scheduled_at for e in _unsent(store)] == [NOW + timedelta(minutes=30)]


def test_rebuild_keeps_recently_due_within_tolerance(store, queue):
    _create(store, NOW - timedelta(minutes=1))
    assert queue.rebuild_for_owner(OWNER, now=NOW).queued == 1


def test_rebuild_is_idempotent(store, queue):
    _create(store, NOW + timedelta(hours=2), offsets=(0, 15), channel_spec=ChannelSpec.BOTH)
    queue.rebuild_for_owner(OWNER, now=NOW)
    first = sorted(e.id for e in _unsent(store))
    second_result = queue.rebuild_for_owner(OWNER, now=NOW)
    assert sorted(e.id for e in _unsent(store)) == first
    assert second_result.removed == 0


def test_rebuild_does_not_requeue_sent_entries(store, queue):
    reminder = _create(store, NOW + timedelta(hours=1))
    queue.rebuild_for_owner(OWNER, now=NOW)
    [entry] = _unsent(store)
    repository.mark_entries_sent(store, [entry.id])

    queue.rebuild_for_owner(OWNER, now=NOW)
    assert _unsent(store) == []
    assert store.get(NOTIFICATION_QUEUE, entry.id)["sent"] is True
    assert repository.get_reminder(store, OWNER, reminder.id) is not None


def test_rebuild_purges_sent_entries_that_aged_out(store, queue):
    store.batch_write(upserts=repository.queue_upserts([_entry("old", NOW - timedelta(hours=5), sent=True)]))
    queue.rebuild_for_owner(OWNER, now=NOW)
    assert store.get(NOTIFICATION_QUEUE, "old") is None


def test_failed_rebuild_leaves_previous_queue(engine, settings):
    class FailingStore(SqlDocumentStore):
        fail = False

        def batch_write(self, upserts=(), deletes=()):
            if self.fail:
                raise StoreError("backend unavailable")
            return super().batch_write(upserts, deletes)

    from cadence.db.session import create_session_factory

    store = FailingStore(create_session_factory(engine))
    queue = QueueMaintenanceService(store, settings)
    store.batch_write(upserts=repository.queue_upserts([_entry("previous", NOW + timedelta(hours=1))]))

    store.fail = True
    with pytest.raises(StoreError):
        queue.rebuild_for_owner(OWNER, now=NOW)
    store.fail = False
    assert [e.id for e in _unsent(store)] == ["previous"]


def test_rebuild_all_isolates_owner_failures(store, queue, monkeypatch):
    _create(store, NOW + timedelta(hours=1), owner_id="good")
    original = queue.rebuild_for_owner

    def flaky(owner_id, now=None, horizon_hours=None):
        if owner_id == "bad":
            raise StoreError("boom")
        return original(owner_id, now=now, horizon_hours=horizon_hours)

    monkeypatch.setattr(queue, "rebuild_for_owner", flaky)
    bulk = queue.rebuild_all(["bad", "good"], now=NOW)
    assert set(bulk.failures) == {"bad"}
    assert bulk.results["good"].queued == 1
    assert bulk.succeeded == 1


def test_sync_reminder_tracks_edits_and_completion(store, queue):
    reminder = _create(store, NOW + timedelta(hours=1), offsets=(10,))
    assert queue.sync_reminder(OWNER, reminder.id, now=NOW).queued == 1

    repository.update_reminder(store, OWNER, reminder.id, ReminderUpdate(due_at=NOW + timedelta(hours=2)))
    result = queue.sync_reminder(OWNER, reminder.id, now=NOW)
    assert (result.queued, result.removed) == (1, 1)
    assert [e.scheduled_at for e in _unsent(store)] == [NOW + timedelta(hours=2, minutes=-10)]

    repository.update_reminder(store, OWNER, reminder.id, ReminderUpdate(status=ReminderStatus.DONE))
    result = queue.sync_reminder(OWNER, reminder.id, now=NOW)
    assert (result.queued, result.removed) == (0, 1)
    assert _unsent(store) == []


def test_sync_queues_long_offset_alert_beyond_rebuild_horizon(store, queue):
    # fires two days ahead of a reminder three days out
    reminder = _create(store, NOW + timedelta(days=3), offsets=(2880,))
    result = queue.sync_reminder(OWNER, reminder.id, now=NOW)
    assert (result.queued, result.removed) == (1, 0)
    assert [e.scheduled_at for e in _unsent(store)] == [NOW + timedelta(days=1)]


def test_rebuild_keeps_synced_alert_of_reminder_past_horizon(store, queue):
    reminder = _create(store, NOW + timedelta(days=3), offsets=(2880,))
    queue.sync_reminder(OWNER, reminder.id, now=NOW - timedelta(hours=6))

    result = queue.rebuild_for_owner(OWNER, now=NOW)
    assert (result.queued, result.removed) == (1, 0)
    assert [e.reminder_id for e in _unsent(store)] == [reminder.id]

    repository.toggle_status(store, OWNER, reminder.id)
    assert queue.rebuild_for_owner(OWNER, now=NOW).removed == 1
    assert _unsent(store) == []


def test_sync_still_drops_alerts_past_tolerance(store, queue):
    reminder = _create(store, NOW + timedelta(days=3), offsets=(4325,))
    assert queue.sync_reminder(OWNER, reminder.id, now=NOW).queued == 0


def test_sync_of_deleted_reminder_clears_its_entries(store, queue):
    reminder = _create(store, NOW + timedelta(hours=1))
    queue.sync_reminder(OWNER, reminder.id, now=NOW)
    repository.delete_reminder(store, OWNER, reminder.id)
    assert queue.sync_reminder(OWNER, reminder.id, now=NOW).removed == 1
    assert _unsent(store) == []


def test_remove_for_reminder(store, queue):
    reminder = _create(store, NOW + timedelta(hours=1), channel_spec=ChannelSpec.ALL)
    queue.sync_reminder(OWNER, reminder.id, now=NOW)
    assert queue.remove_for_reminder(OWNER, reminder.id) == 3
    assert _unsent(store) == []


def test_remove_for_routine_cascades(store, queue):
    store.batch_write(
        upserts=repository.queue_upserts(
            [
                _entry("r1", NOW + timedelta(hours=1), routine_id="routine-1"),
                _entry("r2", NOW + timedelta(hours=2), routine_id="routine-1"),
                _entry("other", NOW + timedelta(hours=1), routine_id="routine-2"),
            ]
        )
    )
    future = _create(store, NOW + timedelta(hours=3))
    past = _create(store, NOW - timedelta(hours=3))
    for reminder in (future, past):
        store.batch_write(upserts=[Upsert(REMINDERS, reminder.id, {"routine_id": "routine-1"}, merge=True)])

    assert queue.remove_for_routine(OWNER, "routine-1", now=NOW) == (2, 0)
    assert [e.id for e in _unsent(store)] == ["other"]

    assert queue.remove_for_routine(OWNER, "routine-1", delete_future_reminders=True, now=NOW) == (0, 1)
    assert repository.get_reminder(store, OWNER, future.id) is None
    assert repository.get_reminder(store, OWNER, past.id) is not None


def test_due_items_late_window(store, queue):
    store.batch_write(
        upserts=repository.queue_upserts(
            [
                _entry("five-ago", NOW - timedelta(minutes=5)),
                _entry("one-ago", NOW - timedelta(minutes=1)),
                _entry("future", NOW + timedelta(minutes=1)),
                _entry("someone-else", NOW, owner_id="owner-2"),
            ]
        )
    )
    assert [e.id for e in queue.due_items(OWNER, now=NOW, late_window_minutes=2)] == ["one-ago"]


def test_due_items_ordered_and_bounded(store, queue):
    store.batch_write(
        upserts=repository.queue_upserts(
            [_entry(f"e{i}", NOW - timedelta(seconds=10 * i)) for i in range(5)]
            + [_entry("sent", NOW, sent=True)]
        )
    )
    items = queue.due_items(OWNER, now=NOW, max_items=3)
    assert [e.id for e in items] == ["e4", "e3", "e2"]


def test_stale_entries(store, queue):
    store.batch_write(
        upserts=repository.queue_upserts(
            [_entry("ancient", NOW - timedelta(minutes=30)), _entry("fresh", NOW - timedelta(minutes=1))]
        )
    )
    assert [e.id for e in queue.stale_entries(OWNER, now=NOW)] == ["ancient"]
