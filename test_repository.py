"""Tests for reminder, routine and owner persistence helpers."""

from datetime import timedelta

from cadence.reminders import repository
from cadence.reminders.schemas import (
    EndCondition,
    Frequency,
    GenerationStatus,
    NotificationSetting,
    OwnerProfile,
    RecurrenceRule,
    ReminderCreate,
    ReminderStatus,
    ReminderUpdate,
    RoutineTemplate,
)

from conftest import NOW

OWNER = "owner-1"


def _create(store, due_at=NOW + timedelta(hours=1), owner_id=OWNER, **extra):
    data = ReminderCreate(title="Pay rent", due_at=due_at, notifications=[NotificationSetting(offset_minutes=5)], **extra)
    return repository.create_reminder(store, owner_id, data)


def test_one_off_reminder_has_no_chain_fields(store):
    reminder = _create(store)
    stored = repository.get_reminder(store, OWNER, reminder.id)
    assert stored.recurrence_rule is None and stored.generation_status is None
    assert stored.due_at == NOW + timedelta(hours=1)


def test_repeating_reminder_heads_a_new_chain(store):
    reminder = _create(
        store, timezone="Europe/Paris", recurrence_rule=RecurrenceRule(frequency=Frequency.WEEKLY, weekdays=[1, 3])
    )
    stored = repository.get_reminder(store, OWNER, reminder.id)
    assert stored.root_id == stored.id
    assert stored.origin_id is None
    assert stored.occurrence_index == 1
    assert stored.generation_status == GenerationStatus.PENDING
    assert stored.recurrence_rule.anchor_instant == stored.due_at
    assert stored.recurrence_rule.timezone == "Europe/Paris"


def test_explicit_rule_timezone_is_kept(store):
    rule = RecurrenceRule(timezone="Asia/Tokyo")
    reminder = _create(store, timezone="Europe/Paris", recurrence_rule=rule)
    assert repository.get_reminder(store, OWNER, reminder.id).recurrence_rule.timezone == "Asia/Tokyo"


def test_reminders_are_scoped_to_their_owner(store):
    reminder = _create(store)
    assert repository.get_reminder(store, "intruder", reminder.id) is None
    assert repository.update_reminder(store, "intruder", reminder.id, ReminderUpdate(title="x")) is None
    assert repository.delete_reminder(store, "intruder", reminder.id) is False
    assert repository.get_reminder(store, OWNER, reminder.id).title == "Pay rent"


def test_reschedule_reissues_sent_alerts(store):
    reminder = _create(store)
    setting_id = reminder.notifications[0].id
    assert repository.mark_notification_sent(store, OWNER, reminder.id, setting_id) is True
    assert repository.mark_notification_sent(store, OWNER, reminder.id, setting_id) is False

    updated = repository.update_reminder(store, OWNER, reminder.id, ReminderUpdate(due_at=NOW + timedelta(days=1)))
    [setting] = updated.notifications
    assert setting.id != setting_id
    assert setting.sent is False
    assert setting.offset_minutes == 5


def test_title_edit_keeps_sent_alerts(store):
    reminder = _create(store)
    repository.mark_notification_sent(store, OWNER, reminder.id, reminder.notifications[0].id)
    updated = repository.update_reminder(store, OWNER, reminder.id, ReminderUpdate(title="Pay rent now"))
    assert updated.notifications[0].sent is True
    assert updated.updated_at >= reminder.updated_at


def test_rule_edits_restart_or_clear_the_chain(store):
    reminder = _create(store)
    rule = RecurrenceRule(end_condition=EndCondition.after_count(3))
    updated = repository.update_reminder(store, OWNER, reminder.id, ReminderUpdate(recurrence_rule=rule))
    assert updated.generation_status == GenerationStatus.PENDING
    assert updated.root_id == reminder.id

    cleared = repository.update_reminder(store, OWNER, reminder.id, ReminderUpdate(recurrence_rule=None))
    assert cleared.recurrence_rule is None
    assert cleared.generation_status is None

    untouched = repository.update_reminder(store, OWNER, reminder.id, ReminderUpdate(notes="bring cheque"))
    assert untouched.recurrence_rule is None


def test_toggle_and_snooze(store):
    reminder = _create(store)
    assert repository.toggle_status(store, OWNER, reminder.id).status == ReminderStatus.DONE
    assert repository.toggle_status(store, OWNER, reminder.id).status == ReminderStatus.PENDING

    until = NOW + timedelta(hours=4)
    snoozed = repository.snooze_reminder(store, OWNER, reminder.id, until)
    assert snoozed.status == ReminderStatus.SNOOZED
    assert snoozed.due_at == until
    assert repository.get_reminder(store, OWNER, reminder.id).snoozed_until == until
    assert repository.snooze_reminder(store, OWNER, "missing", until) is None


def test_list_reminders_filters(store):
    early = _create(store, due_at=NOW + timedelta(hours=1))
    late = _create(store, due_at=NOW + timedelta(hours=5))
    _create(store, owner_id="owner-2")
    repository.toggle_status(store, OWNER, late.id)

    assert [r.id for r in repository.list_reminders(store, OWNER)] == [early.id, late.id]
    assert [r.id for r in repository.list_reminders(store, OWNER, status=["done"])] == [late.id]
    assert [r.id for r in repository.list_reminders(store, OWNER, end=NOW + timedelta(hours=2))] == [early.id]
    assert [r.id for r in repository.list_active_reminders_due_between(store, OWNER, NOW, NOW + timedelta(days=1))] == [
        early.id
    ]


def test_clear_helpers(store):
    open_one = _create(store)
    done_one = _create(store)
    repository.toggle_status(store, OWNER, done_one.id)
    _create(store, owner_id="owner-2")

    assert repository.clear_completed(store, OWNER) == [done_one.id]
    assert repository.clear_upcoming(store, OWNER) == [open_one.id]
    assert repository.clear_all(store, OWNER) == []
    assert len(repository.list_reminders(store, "owner-2")) == 1


def test_routines_newest_first_and_activation(store):
    older = repository.create_routine(store, RoutineTemplate(owner_id=OWNER, title="Morning", created_at=NOW))
    newer = repository.create_routine(
        store, RoutineTemplate(owner_id=OWNER, title="Evening", created_at=NOW + timedelta(minutes=1))
    )
    assert [r.id for r in repository.list_routines(store, OWNER)] == [newer.id, older.id]

    repository.set_routine_active(store, OWNER, older.id, False)
    assert [r.id for r in repository.list_routines(store, OWNER, active=True)] == [newer.id]
    assert repository.update_routine(store, "intruder", older.id, title="x") is None


def test_owner_profile_and_daily_claim(store):
    repository.ensure_owner(store, OWNER)
    assert repository.get_owner(store, OWNER).timezone == "UTC"

    assert repository.claim_daily_rebuild(store, OWNER, "2026-10-19") is True
    assert repository.claim_daily_rebuild(store, OWNER, "2026-10-19") is False

    # profile edits never reset the lock
    repository.upsert_owner(store, OwnerProfile(id=OWNER, timezone="Europe/Berlin"))
    assert repository.get_owner(store, OWNER).last_rebuild_date == "2026-10-19"
    assert repository.get_owner(store, OWNER).timezone == "Europe/Berlin"
    assert repository.claim_daily_rebuild(store, OWNER, "2026-10-20") is True
    assert repository.list_owner_ids(store) == [OWNER]
