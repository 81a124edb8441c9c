"""
Domain schemas for reminders, routines and notification queue entries.

Every instant field goes through ``Instant`` so that the different wire shapes
(ISO strings, epoch seconds, Firestore-style second/nanosecond mappings, naive
datetimes) are normalized to UTC-aware datetimes on ingress.
"""
from datetime import date, datetime
from enum import Enum
import re
from typing import Annotated, List, Optional, Tuple
import uuid

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

from cadence.utils.timezone import coerce_instant, is_valid_timezone, utc_now
from .errors import InvalidRuleError


Instant = Annotated[datetime, BeforeValidator(coerce_instant)]

_HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def new_id() -> str:
    return uuid.uuid4().hex


class Frequency(str, Enum):
    """Recurrence frequencies"""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


class EndConditionType(str, Enum):
    NEVER = "never"
    ON_DATE = "on_date"
    AFTER_COUNT = "after_count"


class ReminderStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    SNOOZED = "snoozed"


ACTIVE_STATUSES = (ReminderStatus.PENDING.value, ReminderStatus.SNOOZED.value)


class GenerationStatus(str, Enum):
    """Whether the successor of a repeating reminder has been materialized"""
    PENDING = "pending"
    CREATED = "created"


class ChannelSpec(str, Enum):
    """Channel selection as stored on a notification setting"""
    PUSH = "push"
    SMS = "sms"
    EMAIL = "email"
    BOTH = "both"  # legacy alias of ALL
    ALL = "all"


class Channel(str, Enum):
    """A single concrete delivery channel"""
    PUSH = "push"
    SMS = "sms"
    EMAIL = "email"


class ScheduleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class EndCondition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: EndConditionType = EndConditionType.NEVER
    until: Optional[Instant] = None
    count: Optional[int] = None

    @model_validator(mode="after")
    def _check_shape(self) -> "EndCondition":
        if self.type == EndConditionType.ON_DATE and self.until is None:
            raise InvalidRuleError("on_date end condition requires 'until'")
        if self.type == EndConditionType.AFTER_COUNT and (self.count is None or self.count < 1):
            raise InvalidRuleError("after_count end condition requires count >= 1")
        return self

    @classmethod
    def never(cls) -> "EndCondition":
        return cls()

    @classmethod
    def on_date(cls, until: datetime) -> "EndCondition":
        return cls(type=EndConditionType.ON_DATE, until=until)

    @classmethod
    def after_count(cls, count: int) -> "EndCondition":
        return cls(type=EndConditionType.AFTER_COUNT, count=count)


class RecurrenceRule(BaseModel):
    """How a reminder repeats. Immutable: editing a rule starts a new chain."""
    model_config = ConfigDict(frozen=True)

    frequency: Frequency = Frequency.DAILY
    interval: int = 1
    weekdays: Tuple[int, ...] = Field(default=(), description="0=Sunday ... 6=Saturday")
    end_condition: EndCondition = Field(default_factory=EndCondition)
    skip_weekends: bool = False
    anchor_instant: Optional[Instant] = None
    timezone: str = "UTC"

    @field_validator("weekdays", mode="before")
    @classmethod
    def _normalize_weekdays(cls, value):
        if value is None:
            return ()
        days = []
        for day in value:
            day = int(day)
            if day < 0 or day > 6:
                raise InvalidRuleError(f"weekday {day} outside 0..6")
            days.append(day)
        return tuple(sorted(set(days)))

    @field_validator("interval")
    @classmethod
    def _check_interval(cls, value: int) -> int:
        if value < 1:
            raise InvalidRuleError(f"interval must be >= 1, got {value}")
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        if not is_valid_timezone(value):
            raise InvalidRuleError(f"unknown timezone {value!r}")
        return value

    @property
    def is_weekday_based(self) -> bool:
        """Weekday sets force weekly semantics whatever the nominal frequency"""
        return bool(self.weekdays)


class NotificationSetting(BaseModel):
    id: str = Field(default_factory=new_id)
    offset_minutes: int = Field(default=0, ge=0)
    channel_spec: ChannelSpec = ChannelSpec.PUSH
    sent: bool = False


class ReminderInstance(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    title: str = "Untitled"
    notes: str = ""
    due_at: Instant
    timezone: str = "UTC"
    status: ReminderStatus = ReminderStatus.PENDING
    snoozed_until: Optional[Instant] = None
    notifications: List[NotificationSetting] = Field(default_factory=list)

    # Repeat chain (NULL for one-off reminders)
    recurrence_rule: Optional[RecurrenceRule] = None
    generation_status: Optional[GenerationStatus] = None
    origin_id: Optional[str] = None
    root_id: Optional[str] = None
    occurrence_index: int = Field(default=1, ge=1)

    # Routine provenance
    routine_id: Optional[str] = None
    routine_date: Optional[str] = None

    created_at: Instant = Field(default_factory=utc_now)
    updated_at: Instant = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_chain_fields(self) -> "ReminderInstance":
        if (self.recurrence_rule is None) != (self.generation_status is None):
            raise ValueError("recurrence_rule and generation_status must be set together")
        return self

    @property
    def is_active(self) -> bool:
        return self.status.value in ACTIVE_STATUSES


class RoutineStep(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = "Untitled"
    notes: str = ""
    time: str = "00:00"
    notifications: List[NotificationSetting] = Field(default_factory=list)

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        match = _HHMM_RE.match(value.strip())
        if not match:
            raise InvalidRuleError(f"step time {value!r} is not HH:mm")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @property
    def hour_minute(self) -> Tuple[int, int]:
        hours, minutes = self.time.split(":")
        return int(hours), int(minutes)


class RoutineSchedule(BaseModel):
    type: ScheduleType = ScheduleType.DAILY
    days: Tuple[int, ...] = ()
    interval: int = 1
    starts_on: Optional[date] = None

    @field_validator("days", mode="before")
    @classmethod
    def _normalize_days(cls, value):
        if value is None:
            return ()
        days = sorted({int(d) for d in value})
        if any(d < 0 or d > 6 for d in days):
            raise InvalidRuleError("schedule days must be within 0..6")
        return tuple(days)

    @field_validator("interval")
    @classmethod
    def _check_interval(cls, value: int) -> int:
        if value < 1:
            raise InvalidRuleError(f"schedule interval must be >= 1, got {value}")
        return value

    def runs_on(self, local_day: date) -> bool:
        """Whether the schedule fires on a local calendar day"""
        if self.type == ScheduleType.DAILY:
            if self.interval > 1 and self.starts_on is not None:
                elapsed = (local_day - self.starts_on).days
                return elapsed >= 0 and elapsed % self.interval == 0
            return True
        # Sunday=0 numbering; date.weekday() is Monday=0
        return (local_day.weekday() + 1) % 7 in self.days


class RoutineTemplate(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    title: str = "Untitled"
    active: bool = True
    timezone: Optional[str] = None
    steps: List[RoutineStep] = Field(default_factory=list)
    schedule: RoutineSchedule = Field(default_factory=RoutineSchedule)
    last_run: Optional[Instant] = None
    created_at: Instant = Field(default_factory=utc_now)
    updated_at: Instant = Field(default_factory=utc_now)


class QueueEntry(BaseModel):
    """Denormalized, single-channel unit of pending notification work"""
    id: str
    owner_id: str
    reminder_id: str
    title: str
    notes: str = ""
    scheduled_at: Instant
    due_at: Instant
    timezone: str = "UTC"
    channel: Channel
    notification_setting_id: str
    sent: bool = False
    routine_id: Optional[str] = None
    root_id: Optional[str] = None


class OwnerProfile(BaseModel):
    id: str
    timezone: str = "UTC"
    email: Optional[str] = None
    phone_number: Optional[str] = None
    sms_opt_in: bool = False
    last_rebuild_date: Optional[str] = None


class ReminderCreate(BaseModel):
    """Schema for creating any type of reminder"""
    title: str = "Untitled"
    notes: str = ""
    due_at: Instant
    timezone: str = "UTC"
    notifications: List[NotificationSetting] = Field(default_factory=list)
    recurrence_rule: Optional[RecurrenceRule] = None


class ReminderUpdate(BaseModel):
    """Schema for updating reminders"""
    title: Optional[str] = None
    notes: Optional[str] = None
    due_at: Optional[Instant] = None
    timezone: Optional[str] = None
    status: Optional[ReminderStatus] = None
    notifications: Optional[List[NotificationSetting]] = None
    recurrence_rule: Optional[RecurrenceRule] = None
