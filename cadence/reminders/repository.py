from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel

from cadence.utils.timezone import coerce_instant, utc_now
from .schemas import (
    ACTIVE_STATUSES,
    GenerationStatus,
    NotificationSetting,
    OwnerProfile,
    QueueEntry,
    ReminderCreate,
    ReminderInstance,
    ReminderStatus,
    ReminderUpdate,
    RoutineTemplate,
)
from .store import Delete, DocumentStore, Range, Upsert, chunked
from .unified_models import NOTIFICATION_QUEUE, OWNERS, REMINDERS, ROUTINES


def dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def reissue_sent(notifications: Iterable[NotificationSetting]) -> List[NotificationSetting]:
    """Copy settings, giving already-sent ones a fresh id so a sent flag never reverts"""
    reissued = []
    for setting in notifications:
        if setting.sent:
            reissued.append(
                NotificationSetting(offset_minutes=setting.offset_minutes, channel_spec=setting.channel_spec)
            )
        else:
            reissued.append(setting)
    return reissued


# --- reminders ---

def get_reminder(store: DocumentStore, owner_id: str, reminder_id: str) -> Optional[ReminderInstance]:
    doc = store.get(REMINDERS, reminder_id)
    if doc is None or doc["owner_id"] != owner_id:
        return None
    return ReminderInstance.model_validate(doc)


def list_reminders(
    store: DocumentStore,
    owner_id: str,
    status: Optional[Sequence[str]] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[ReminderInstance]:
    equals: Dict[str, Any] = {"owner_id": owner_id}
    if status:
        equals["status"] = list(status)
    range_ = Range("due_at", gte=start, lte=end) if (start or end) else None
    docs = store.query(REMINDERS, equals=equals, range_=range_, order_by="due_at", limit=limit)
    return [ReminderInstance.model_validate(d) for d in docs]


def list_active_reminders_due_between(
    store: DocumentStore, owner_id: str, start: datetime, end: datetime
) -> List[ReminderInstance]:
    return list_reminders(store, owner_id, status=ACTIVE_STATUSES, start=start, end=end)


def list_active_reminders_by_ids(
    store: DocumentStore, owner_id: str, reminder_ids: Sequence[str]
) -> List[ReminderInstance]:
    reminders: List[ReminderInstance] = []
    for chunk in chunked(list(reminder_ids), store.batch_limit):
        docs = store.query(
            REMINDERS,
            equals={"owner_id": owner_id, "id": list(chunk), "status": list(ACTIVE_STATUSES)},
        )
        reminders.extend(ReminderInstance.model_validate(d) for d in docs)
    return reminders


def list_pending_generation(store: DocumentStore, owner_id: str) -> List[ReminderInstance]:
    """Repeat-chain members whose successor has not been materialized yet"""
    docs = store.query(
        REMINDERS,
        equals={"owner_id": owner_id, "generation_status": GenerationStatus.PENDING.value},
        order_by="due_at",
    )
    return [ReminderInstance.model_validate(d) for d in docs]


def save_reminder(store: DocumentStore, reminder: ReminderInstance) -> ReminderInstance:
    store.batch_write(upserts=[Upsert(REMINDERS, reminder.id, dump(reminder))])
    return reminder


def create_reminder(store: DocumentStore, owner_id: str, data: ReminderCreate) -> ReminderInstance:
    """Create a one-off or repeating reminder. A repeating one becomes the head of a new chain."""
    reminder = ReminderInstance(
        owner_id=owner_id,
        title=data.title,
        notes=data.notes,
        due_at=data.due_at,
        timezone=data.timezone,
        notifications=[s.model_copy(update={"sent": False}) for s in data.notifications],
    )
    if data.recurrence_rule is not None:
        reminder = start_chain(reminder, data.recurrence_rule)
    return save_reminder(store, reminder)


def start_chain(reminder: ReminderInstance, rule) -> ReminderInstance:
    """Make reminder the head of a fresh repeat chain driven by rule"""
    changes: Dict[str, Any] = {}
    if rule.anchor_instant is None:
        changes["anchor_instant"] = reminder.due_at
    if "timezone" not in rule.model_fields_set:
        changes["timezone"] = reminder.timezone
    if changes:
        rule = rule.model_copy(update=changes)
    return reminder.model_copy(
        update={
            "recurrence_rule": rule,
            "generation_status": GenerationStatus.PENDING,
            "root_id": reminder.id,
            "origin_id": None,
            "occurrence_index": 1,
        }
    )


def update_reminder(
    store: DocumentStore, owner_id: str, reminder_id: str, data: ReminderUpdate
) -> Optional[ReminderInstance]:
    reminder = get_reminder(store, owner_id, reminder_id)
    if reminder is None:
        return None

    changes: Dict[str, Any] = {}
    for field in ("title", "notes", "timezone", "status", "notifications"):
        value = getattr(data, field)
        if value is not None:
            changes[field] = value
    reminder = reminder.model_copy(update=changes)

    if data.due_at is not None and data.due_at != reminder.due_at:
        # Rescheduled: previously sent alerts must fire again under new ids
        reminder = reminder.model_copy(
            update={"due_at": data.due_at, "notifications": reissue_sent(reminder.notifications)}
        )

    if "recurrence_rule" in data.model_fields_set:
        if data.recurrence_rule is None:
            reminder = reminder.model_copy(update={"recurrence_rule": None, "generation_status": None})
        else:
            reminder = start_chain(reminder, data.recurrence_rule)

    reminder = ReminderInstance.model_validate({**reminder.model_dump(), "updated_at": utc_now()})
    return save_reminder(store, reminder)


def delete_reminder(store: DocumentStore, owner_id: str, reminder_id: str) -> bool:
    if get_reminder(store, owner_id, reminder_id) is None:
        return False
    store.batch_write(deletes=[Delete(REMINDERS, reminder_id)])
    return True


def toggle_status(store: DocumentStore, owner_id: str, reminder_id: str) -> Optional[ReminderInstance]:
    reminder = get_reminder(store, owner_id, reminder_id)
    if reminder is None:
        return None
    new_status = ReminderStatus.PENDING if reminder.status == ReminderStatus.DONE else ReminderStatus.DONE
    return update_reminder(store, owner_id, reminder_id, ReminderUpdate(status=new_status))


def snooze_reminder(
    store: DocumentStore, owner_id: str, reminder_id: str, until: datetime
) -> Optional[ReminderInstance]:
    """Snooze moves the reminder to `until`; its alerts re-fire relative to the new time"""
    reminder = update_reminder(
        store, owner_id, reminder_id, ReminderUpdate(status=ReminderStatus.SNOOZED, due_at=until)
    )
    if reminder is None:
        return None
    reminder = reminder.model_copy(update={"snoozed_until": coerce_instant(until)})
    return save_reminder(store, reminder)


def mark_notification_sent(store: DocumentStore, owner_id: str, reminder_id: str, setting_id: str) -> bool:
    reminder = get_reminder(store, owner_id, reminder_id)
    if reminder is None:
        return False
    changed = False
    notifications = []
    for setting in reminder.notifications:
        if setting.id == setting_id and not setting.sent:
            setting = setting.model_copy(update={"sent": True})
            changed = True
        notifications.append(setting)
    if changed:
        store.batch_write(
            upserts=[
                Upsert(
                    REMINDERS,
                    reminder_id,
                    {"notifications": [dump(s) for s in notifications], "updated_at": utc_now()},
                    merge=True,
                )
            ]
        )
    return changed


def clear_reminders(store: DocumentStore, owner_id: str, status: Optional[Sequence[str]] = None) -> List[str]:
    """Delete an owner's reminders (optionally only some statuses). Returns the deleted ids."""
    equals: Dict[str, Any] = {"owner_id": owner_id}
    if status:
        equals["status"] = list(status)
    ids = [doc["id"] for doc in store.query(REMINDERS, equals=equals)]
    store.write_chunked(deletes=[Delete(REMINDERS, doc_id) for doc_id in ids])
    return ids


def clear_upcoming(store: DocumentStore, owner_id: str) -> List[str]:
    return clear_reminders(store, owner_id, status=ACTIVE_STATUSES)


def clear_completed(store: DocumentStore, owner_id: str) -> List[str]:
    return clear_reminders(store, owner_id, status=[ReminderStatus.DONE.value])


def clear_all(store: DocumentStore, owner_id: str) -> List[str]:
    return clear_reminders(store, owner_id)


# --- routines ---

def save_routine(store: DocumentStore, routine: RoutineTemplate) -> RoutineTemplate:
    store.batch_write(upserts=[Upsert(ROUTINES, routine.id, dump(routine))])
    return routine


def create_routine(store: DocumentStore, routine: RoutineTemplate) -> RoutineTemplate:
    return save_routine(store, routine)


def get_routine(store: DocumentStore, owner_id: str, routine_id: str) -> Optional[RoutineTemplate]:
    doc = store.get(ROUTINES, routine_id)
    if doc is None or doc["owner_id"] != owner_id:
        return None
    return RoutineTemplate.model_validate(doc)


def list_routines(store: DocumentStore, owner_id: str, active: Optional[bool] = None) -> List[RoutineTemplate]:
    equals: Dict[str, Any] = {"owner_id": owner_id}
    if active is not None:
        equals["active"] = active
    docs = store.query(ROUTINES, equals=equals, order_by="-created_at")
    return [RoutineTemplate.model_validate(d) for d in docs]


def update_routine(store: DocumentStore, owner_id: str, routine_id: str, **changes) -> Optional[RoutineTemplate]:
    routine = get_routine(store, owner_id, routine_id)
    if routine is None:
        return None
    data = {**routine.model_dump(), **changes, "updated_at": utc_now()}
    return save_routine(store, RoutineTemplate.model_validate(data))


def set_routine_active(store: DocumentStore, owner_id: str, routine_id: str, active: bool) -> Optional[RoutineTemplate]:
    return update_routine(store, owner_id, routine_id, active=active)


def routine_run_upsert(routine_id: str, when: datetime) -> Upsert:
    return Upsert(ROUTINES, routine_id, {"last_run": when}, merge=True)


def delete_routine(store: DocumentStore, owner_id: str, routine_id: str) -> bool:
    if get_routine(store, owner_id, routine_id) is None:
        return False
    store.batch_write(deletes=[Delete(ROUTINES, routine_id)])
    return True


# --- owners ---

def get_owner(store: DocumentStore, owner_id: str) -> Optional[OwnerProfile]:
    doc = store.get(OWNERS, owner_id)
    return OwnerProfile.model_validate(doc) if doc else None


def upsert_owner(store: DocumentStore, owner: OwnerProfile) -> OwnerProfile:
    data = dump(owner)
    data.pop("last_rebuild_date")
    store.batch_write(upserts=[Upsert(OWNERS, owner.id, data, merge=True)])
    return owner


def ensure_owner(store: DocumentStore, owner_id: str) -> None:
    if store.get(OWNERS, owner_id) is None:
        upsert_owner(store, OwnerProfile(id=owner_id))


def list_owner_ids(store: DocumentStore) -> List[str]:
    return [doc["id"] for doc in store.query(OWNERS, order_by="id")]


def claim_daily_rebuild(store: DocumentStore, owner_id: str, day: str) -> bool:
    """Per-owner rebuild lock: True for exactly one caller per owner and day"""
    return store.set_if_changed(OWNERS, owner_id, "last_rebuild_date", day)


# --- notification queue ---

def list_unsent_entries(
    store: DocumentStore,
    owner_id: str,
    reminder_id: Optional[str] = None,
    routine_id: Optional[str] = None,
) -> List[QueueEntry]:
    equals: Dict[str, Any] = {"owner_id": owner_id, "sent": False}
    if reminder_id is not None:
        equals["reminder_id"] = reminder_id
    if routine_id is not None:
        equals["routine_id"] = routine_id
    return [QueueEntry.model_validate(d) for d in store.query(NOTIFICATION_QUEUE, equals=equals)]


def list_unsent_entries_between(
    store: DocumentStore,
    owner_id: str,
    start: Optional[datetime],
    end: Optional[datetime],
    limit: Optional[int] = None,
) -> List[QueueEntry]:
    docs = store.query(
        NOTIFICATION_QUEUE,
        equals={"owner_id": owner_id, "sent": False},
        range_=Range("scheduled_at", gte=start, lte=end),
        order_by="scheduled_at",
        limit=limit,
    )
    return [QueueEntry.model_validate(d) for d in docs]


def queue_upserts(entries: Iterable[QueueEntry]) -> List[Upsert]:
    return [Upsert(NOTIFICATION_QUEUE, e.id, dump(e)) for e in entries]


def queue_deletes(entries: Iterable[QueueEntry]) -> List[Delete]:
    return [Delete(NOTIFICATION_QUEUE, e.id) for e in entries]


def mark_entries_sent(store: DocumentStore, entry_ids: Sequence[str]) -> None:
    store.write_chunked(
        upserts=[Upsert(NOTIFICATION_QUEUE, entry_id, {"sent": True}, merge=True) for entry_id in entry_ids]
    )
