from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple
from zoneinfo import ZoneInfoNotFoundError

from cadence.utils.timezone import coerce_instant, to_local, utc_now
from . import repository
from .config import ReminderSettings, settings as default_settings
from .errors import PermanentDeliveryError
from .metrics import dispatch_failed_total, dispatch_success_total
from .queue_service import QueueMaintenanceService
from .schemas import Channel, OwnerProfile, QueueEntry
from .store import DocumentStore

logger = logging.getLogger(__name__)

NOTES_PREVIEW_CHARS = 100


@dataclass(frozen=True)
class RenderedMessage:
    entry_id: str
    reminder_id: str
    channel: Channel
    subject: str
    body: str
    notes: str
    due_at_utc: str
    due_at_local: str


class DeliveryChannel(Protocol):
    """Transport for one channel. Raises DeliveryError, or PermanentDeliveryError when the endpoint is gone."""

    def send(self, owner: OwnerProfile, message: RenderedMessage) -> None:
        ...


def offset_prefix(offset_minutes: int) -> str:
    if offset_minutes >= 1440:
        return "Tomorrow:"
    if offset_minutes >= 60:
        return "In 1 hour:"
    if offset_minutes <= 0:
        return "Now:"
    if offset_minutes <= 5:
        return "In 5 min:"
    if offset_minutes <= 15:
        return "In 15 min:"
    if offset_minutes <= 30:
        return "In 30 min:"
    return "Reminder:"


def _format_time(local: datetime) -> str:
    # "9:05 AM"
    return local.strftime("%I:%M %p").lstrip("0")


def render_message(entry: QueueEntry) -> RenderedMessage:
    offset = int((entry.due_at - entry.scheduled_at).total_seconds() // 60)
    prefix = offset_prefix(offset)
    try:
        local = to_local(entry.due_at, entry.timezone)
    except ZoneInfoNotFoundError:
        local = coerce_instant(entry.due_at)
    notes = entry.notes or ""
    if len(notes) > NOTES_PREVIEW_CHARS:
        notes = notes[:NOTES_PREVIEW_CHARS] + "..."
    body = f'{prefix} "{entry.title}" is due at {_format_time(local)}.'
    if notes:
        body = f"{body}\n{notes}"
    return RenderedMessage(
        entry_id=entry.id,
        reminder_id=entry.reminder_id,
        channel=entry.channel,
        subject=f"{prefix} {entry.title}",
        body=body,
        notes=notes,
        due_at_utc=entry.due_at.isoformat(),
        due_at_local=local.isoformat(),
    )


@dataclass
class DispatchResult:
    owner_id: str
    sent: int = 0
    failed: int = 0
    duplicates: int = 0
    permanent_failures: List[Tuple[str, Channel]] = field(default_factory=list)


class Dispatcher:
    """
    Reads due queue entries, renders them and hands them to channel transports.
    Entries are marked sent whatever the outcome so a failing transport cannot
    cause a resend loop; the source notification setting is only marked sent
    after a successful delivery.
    """

    def __init__(
        self,
        store: DocumentStore,
        channels: Mapping[Channel, DeliveryChannel],
        settings: Optional[ReminderSettings] = None,
        queue: Optional[QueueMaintenanceService] = None,
    ):
        self.store = store
        self.channels = {Channel(k): v for k, v in channels.items()}
        self.settings = settings or default_settings
        self.queue = queue or QueueMaintenanceService(store, self.settings)

    def _deliver(self, owner: OwnerProfile, entry: QueueEntry, result: DispatchResult) -> bool:
        transport = self.channels.get(entry.channel)
        if transport is None:
            logger.warning(f"⚠️  [Dispatch] No transport registered for channel={entry.channel.value}")
            result.failed += 1
            dispatch_failed_total.inc()
            return False
        message = render_message(entry)
        try:
            transport.send(owner, message)
        except PermanentDeliveryError as exc:
            logger.warning(
                f"⚠️  [Dispatch] Permanent failure owner={owner.id} channel={entry.channel.value}: {exc!r}"
            )
            result.permanent_failures.append((entry.id, entry.channel))
            result.failed += 1
            dispatch_failed_total.inc()
            return False
        except Exception as exc:
            logger.error(f"❌ [Dispatch] Failed entry={entry.id} channel={entry.channel.value}: {exc!r}")
            result.failed += 1
            dispatch_failed_total.inc()
            return False
        result.sent += 1
        dispatch_success_total.inc()
        return True

    def dispatch_owner(self, owner_id: str, now: Optional[datetime] = None) -> DispatchResult:
        now = coerce_instant(now) if now is not None else utc_now()
        owner = repository.get_owner(self.store, owner_id) or OwnerProfile(id=owner_id)
        result = DispatchResult(owner_id=owner_id)

        seen: Set[Tuple[str, str, Channel]] = set()
        delivered_settings: Set[Tuple[str, str]] = set()
        for entry in self.queue.due_items(owner_id, now=now):
            key = (entry.reminder_id, entry.notification_setting_id, entry.channel)
            if key in seen:
                result.duplicates += 1
            else:
                seen.add(key)
                if self._deliver(owner, entry, result):
                    delivered_settings.add((entry.reminder_id, entry.notification_setting_id))
            repository.mark_entries_sent(self.store, [entry.id])

        for reminder_id, setting_id in delivered_settings:
            repository.mark_notification_sent(self.store, owner_id, reminder_id, setting_id)

        self.queue.stale_entries(owner_id, now=now)
        if result.sent or result.failed:
            logger.info(
                f"📨 [Dispatch] owner={owner_id} sent={result.sent} failed={result.failed} "
                f"duplicates={result.duplicates}"
            )
        return result

    def dispatch_all(self, owner_ids: Optional[Iterable[str]] = None, now: Optional[datetime] = None) -> Dict[str, DispatchResult]:
        now = coerce_instant(now) if now is not None else utc_now()
        owner_ids = list(owner_ids) if owner_ids is not None else repository.list_owner_ids(self.store)
        results: Dict[str, DispatchResult] = {}
        for owner_id in owner_ids:
            try:
                results[owner_id] = self.dispatch_owner(owner_id, now=now)
            except Exception as exc:
                logger.exception(f"❌ [Dispatch] Dispatch failed for owner={owner_id}: {exc!r}")
        return results


class LoggingChannel:
    """Transport that only logs; stands in until a real provider is registered"""

    def __init__(self, channel: Channel):
        self.channel = channel

    def send(self, owner: OwnerProfile, message: RenderedMessage) -> None:
        logger.info(f"🚀 [Dispatch] {self.channel.value} -> owner={owner.id}: {message.subject}")
