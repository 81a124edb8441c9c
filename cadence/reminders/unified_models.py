"""
Storage tables backing the document collections - one table per collection.

Nested structures (notification settings, recurrence rules, routine steps and
schedules) are kept as JSON documents on their parent row.
"""
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from cadence.db.base import Base
from cadence.utils.timezone import utc_now

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class ReminderRecord(Base):
    """Reminder instances: one-off, repeat-chain members and routine-generated"""
    __tablename__ = "reminders"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="Untitled")
    notes = Column(Text, nullable=False, default="")
    due_at = Column(DateTime(timezone=True), nullable=False, index=True)
    timezone = Column(String, nullable=False, default="UTC")
    status = Column(String, nullable=False, default="pending")
    snoozed_until = Column(DateTime(timezone=True), nullable=True)
    notifications = Column(JSONDocument, nullable=False, default=list)

    # Repeat chain fields (NULL for one-off reminders)
    recurrence_rule = Column(JSONDocument, nullable=True)
    generation_status = Column(String, nullable=True)
    origin_id = Column(String, nullable=True)
    root_id = Column(String, nullable=True)
    occurrence_index = Column(Integer, nullable=False, default=1)

    # Routine provenance
    routine_id = Column(String, nullable=True)
    routine_date = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_reminders_owner_status_due", "owner_id", "status", "due_at"),
        Index("ix_reminders_owner_generation", "owner_id", "generation_status"),
        Index("ix_reminders_owner_routine", "owner_id", "routine_id"),
    )


class RoutineRecord(Base):
    __tablename__ = "routines"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False, default="Untitled")
    active = Column(Boolean, nullable=False, default=True)
    timezone = Column(String, nullable=True)
    steps = Column(JSONDocument, nullable=False, default=list)
    schedule = Column(JSONDocument, nullable=False, default=dict)
    last_run = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

    __table_args__ = (
        Index("ix_routines_owner_active", "owner_id", "active"),
    )


class QueueEntryRecord(Base):
    """Denormalized notification queue, read by the dispatch worker without joins"""
    __tablename__ = "notification_queue"

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    reminder_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    notes = Column(Text, nullable=False, default="")
    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    due_at = Column(DateTime(timezone=True), nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    channel = Column(String, nullable=False)
    notification_setting_id = Column(String, nullable=False)
    sent = Column(Boolean, nullable=False, default=False)
    routine_id = Column(String, nullable=True)
    root_id = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_queue_owner_sent_scheduled", "owner_id", "sent", "scheduled_at"),
        Index("ix_queue_owner_reminder_sent", "owner_id", "reminder_id", "sent"),
        Index("ix_queue_owner_routine_sent", "owner_id", "routine_id", "sent"),
    )


class OwnerRecord(Base):
    """Owner profile plus the per-owner rebuild lock record"""
    __tablename__ = "owners"

    id = Column(String, primary_key=True)
    timezone = Column(String, nullable=False, default="UTC")
    email = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    sms_opt_in = Column(Boolean, nullable=False, default=False)
    last_rebuild_date = Column(String, nullable=True)


REMINDERS = "reminders"
ROUTINES = "routines"
NOTIFICATION_QUEUE = "notification_queue"
OWNERS = "owners"

COLLECTIONS = {
    REMINDERS: ReminderRecord,
    ROUTINES: RoutineRecord,
    NOTIFICATION_QUEUE: QueueEntryRecord,
    OWNERS: OwnerRecord,
}
