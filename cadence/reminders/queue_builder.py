"""
Notification queue builder - turns a reminder into per-channel queue entries.

Pure transform: no store access. Queue entry ids are a stable hash of
(reminder, notification setting, channel, fire time), so rebuilding the same
reminder always yields the same identifiers.
"""
from datetime import datetime, timedelta
import hashlib
from typing import List, Tuple

from .schemas import Channel, ChannelSpec, QueueEntry, ReminderInstance

_ALL_CHANNELS: Tuple[Channel, ...] = (Channel.PUSH, Channel.SMS, Channel.EMAIL)

_CHANNEL_EXPANSION = {
    ChannelSpec.PUSH: (Channel.PUSH,),
    ChannelSpec.SMS: (Channel.SMS,),
    ChannelSpec.EMAIL: (Channel.EMAIL,),
    ChannelSpec.BOTH: _ALL_CHANNELS,
    ChannelSpec.ALL: _ALL_CHANNELS,
}


def expand_channels(channel_spec) -> Tuple[Channel, ...]:
    """Expand a stored channel spec to concrete channels; unknown values fall back to push"""
    try:
        spec = ChannelSpec(channel_spec)
    except ValueError:
        return (Channel.PUSH,)
    return _CHANNEL_EXPANSION[spec]


def queue_entry_id(reminder_id: str, setting_id: str, channel: Channel, scheduled_at: datetime) -> str:
    raw = f"{reminder_id}:{setting_id}:{channel.value}:{scheduled_at.isoformat()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


def build_entries(reminder: ReminderInstance) -> List[QueueEntry]:
    """Unsent queue entries for every not-yet-sent notification setting of a reminder"""
    entries: List[QueueEntry] = []
    for setting in reminder.notifications:
        if setting.sent:
            continue
        scheduled_at = reminder.due_at - timedelta(minutes=setting.offset_minutes)
        for channel in expand_channels(setting.channel_spec):
            entries.append(
                QueueEntry(
                    id=queue_entry_id(reminder.id, setting.id, channel, scheduled_at),
                    owner_id=reminder.owner_id,
                    reminder_id=reminder.id,
                    title=reminder.title or "Untitled",
                    notes=reminder.notes or "",
                    scheduled_at=scheduled_at,
                    due_at=reminder.due_at,
                    timezone=reminder.timezone or "UTC",
                    channel=channel,
                    notification_setting_id=setting.id,
                    sent=False,
                    routine_id=reminder.routine_id,
                    root_id=reminder.root_id,
                )
            )
    return entries
