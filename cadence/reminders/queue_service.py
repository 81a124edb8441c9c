"""
Queue maintenance service - keeps the denormalized notification queue in step
with reminder documents, and serves due items to the dispatch worker.

The queue is a cache: everything here can be recomputed from reminders. A
full rebuild writes through ``DocumentStore.write_chunked`` so that, whenever
the change set fits in one batch, the old queue is swapped for the new one in
a single atomic write and a failed rebuild leaves the previous entries alone.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Dict, Iterable, List, Optional, Set, Tuple

from cadence.utils.timezone import coerce_instant, utc_now
from . import repository
from .config import ReminderSettings, settings as default_settings
from .metrics import (
    queue_entries_written_total,
    queue_rebuild_failures_total,
    queue_rebuilds_total,
    stale_queue_entries,
)
from .queue_builder import build_entries
from .schemas import ACTIVE_STATUSES, QueueEntry, ReminderInstance
from .store import Delete, DocumentStore, Range
from .unified_models import NOTIFICATION_QUEUE, REMINDERS

logger = logging.getLogger(__name__)


@dataclass
class RebuildResult:
    owner_id: str
    queued: int = 0
    removed: int = 0
    reminders_scanned: int = 0


@dataclass
class SyncResult:
    reminder_id: str
    queued: int = 0
    removed: int = 0


@dataclass
class BulkRebuildResult:
    results: Dict[str, RebuildResult] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.results)


class QueueMaintenanceService:
    """Full rebuilds, incremental syncs, cascade removal and due-item reads"""

    def __init__(self, store: DocumentStore, settings: Optional[ReminderSettings] = None):
        self.store = store
        self.settings = settings or default_settings

    # --- windows ---
    def _now(self, now: Optional[datetime]) -> datetime:
        return coerce_instant(now) if now is not None else utc_now()

    def _due_window(self, now: datetime, horizon_hours: Optional[float] = None) -> Tuple[datetime, datetime]:
        horizon = horizon_hours if horizon_hours is not None else self.settings.QUEUE_HORIZON_HOURS
        return now - timedelta(hours=self.settings.QUEUE_TRAILING_HOURS), now + timedelta(hours=horizon)

    def _fire_floor(self, now: datetime) -> datetime:
        return now - timedelta(minutes=self.settings.QUEUE_TOLERANCE_MINUTES)

    def _sent_entry_ids(self, owner_id: str, since: datetime) -> Set[str]:
        docs = self.store.query(
            NOTIFICATION_QUEUE,
            equals={"owner_id": owner_id, "sent": True},
            range_=Range("scheduled_at", gte=since),
        )
        return {doc["id"] for doc in docs}

    def _fresh_entries(
        self, reminders: Iterable[ReminderInstance], floor: datetime, already_sent: Set[str]
    ) -> Dict[str, QueueEntry]:
        fresh: Dict[str, QueueEntry] = {}
        for reminder in reminders:
            for entry in build_entries(reminder):
                if entry.scheduled_at < floor or entry.id in already_sent:
                    continue
                fresh[entry.id] = entry
        return fresh

    # --- full rebuild ---
    def rebuild_for_owner(
        self, owner_id: str, now: Optional[datetime] = None, horizon_hours: Optional[float] = None
    ) -> RebuildResult:
        """
        Recompute one owner's queue from their pending/snoozed reminders due in
        [now - trailing, now + horizon], plus any active reminder that already
        holds unsent entries. Entries firing more than the tolerance in
        the past are dropped. Unsent entries no longer produced are removed, and
        sent entries that have aged out of the window are purged.
        """
        now = self._now(now)
        start, end = self._due_window(now, horizon_hours)
        floor = self._fire_floor(now)

        existing = repository.list_unsent_entries(self.store, owner_id)
        reminders = repository.list_active_reminders_due_between(self.store, owner_id, start, end)
        # entries queued by an earlier sync may belong to reminders due past the horizon
        outside = {entry.reminder_id for entry in existing} - {reminder.id for reminder in reminders}
        if outside:
            reminders += repository.list_active_reminders_by_ids(self.store, owner_id, sorted(outside))
        fresh = self._fresh_entries(reminders, floor, self._sent_entry_ids(owner_id, floor))

        stale = [entry for entry in existing if entry.id not in fresh]
        expired_sent = self.store.query(
            NOTIFICATION_QUEUE,
            equals={"owner_id": owner_id, "sent": True},
            range_=Range("scheduled_at", lt=floor),
        )
        deletes = repository.queue_deletes(stale) + [Delete(NOTIFICATION_QUEUE, doc["id"]) for doc in expired_sent]

        try:
            self.store.write_chunked(upserts=repository.queue_upserts(fresh.values()), deletes=deletes)
        except Exception:
            queue_rebuild_failures_total.inc()
            raise

        queue_rebuilds_total.inc()
        queue_entries_written_total.inc(len(fresh))
        result = RebuildResult(
            owner_id=owner_id, queued=len(fresh), removed=len(stale), reminders_scanned=len(reminders)
        )
        logger.info(
            f"✅ [Queue] Rebuilt owner={owner_id} queued={result.queued} "
            f"removed={result.removed} scanned={result.reminders_scanned}"
        )
        return result

    def rebuild_all(self, owner_ids: Iterable[str], now: Optional[datetime] = None) -> BulkRebuildResult:
        """Rebuild owner by owner; one owner's failure is recorded and the rest continue"""
        now = self._now(now)
        bulk = BulkRebuildResult()
        for owner_id in owner_ids:
            try:
                bulk.results[owner_id] = self.rebuild_for_owner(owner_id, now=now)
            except Exception as exc:
                logger.exception(f"❌ [Queue] Rebuild failed for owner={owner_id}: {exc!r}")
                bulk.failures[owner_id] = repr(exc)
        return bulk

    # --- incremental ---
    def sync_reminder(self, owner_id: str, reminder_id: str, now: Optional[datetime] = None) -> SyncResult:
        """
        Replace the unsent entries of one reminder with what it currently produces.
        Not bounded by the rebuild horizon: an alert with a long offset on a
        far-off reminder is queued as soon as the reminder is written.
        """
        now = self._now(now)
        floor = self._fire_floor(now)

        existing = repository.list_unsent_entries(self.store, owner_id, reminder_id=reminder_id)
        reminder = repository.get_reminder(self.store, owner_id, reminder_id)

        fresh: Dict[str, QueueEntry] = {}
        if reminder is not None and reminder.is_active:
            fresh = self._fresh_entries([reminder], floor, self._sent_entry_ids(owner_id, floor))

        stale = [entry for entry in existing if entry.id not in fresh]
        self.store.write_chunked(
            upserts=repository.queue_upserts(fresh.values()), deletes=repository.queue_deletes(stale)
        )
        queue_entries_written_total.inc(len(fresh))
        logger.debug(f"[Queue] Synced reminder={reminder_id} queued={len(fresh)} removed={len(stale)}")
        return SyncResult(reminder_id=reminder_id, queued=len(fresh), removed=len(stale))

    def remove_for_reminder(self, owner_id: str, reminder_id: str) -> int:
        stale = repository.list_unsent_entries(self.store, owner_id, reminder_id=reminder_id)
        self.store.write_chunked(deletes=repository.queue_deletes(stale))
        return len(stale)

    def remove_for_routine(
        self,
        owner_id: str,
        routine_id: str,
        delete_future_reminders: bool = False,
        now: Optional[datetime] = None,
    ) -> Tuple[int, int]:
        """
        Cascade removal for a deleted or disabled routine. Returns
        (queue entries removed, reminder instances removed).
        """
        now = self._now(now)
        stale = repository.list_unsent_entries(self.store, owner_id, routine_id=routine_id)
        deletes: List[Delete] = repository.queue_deletes(stale)

        reminder_ids: List[str] = []
        if delete_future_reminders:
            docs = self.store.query(
                REMINDERS,
                equals={"owner_id": owner_id, "routine_id": routine_id, "status": list(ACTIVE_STATUSES)},
                range_=Range("due_at", gte=now),
            )
            reminder_ids = [doc["id"] for doc in docs]
            deletes.extend(Delete(REMINDERS, reminder_id) for reminder_id in reminder_ids)

        self.store.write_chunked(deletes=deletes)
        logger.info(
            f"🧹 [Queue] Routine cascade owner={owner_id} routine={routine_id} "
            f"entries={len(stale)} reminders={len(reminder_ids)}"
        )
        return len(stale), len(reminder_ids)

    # --- reads ---
    def due_items(
        self,
        owner_id: str,
        now: Optional[datetime] = None,
        late_window_minutes: Optional[float] = None,
        max_items: Optional[int] = None,
    ) -> List[QueueEntry]:
        """Unsent entries with scheduled_at in [now - late window, now], oldest first. Never future entries."""
        now = self._now(now)
        late = late_window_minutes if late_window_minutes is not None else self.settings.LATE_WINDOW_MINUTES
        limit = max_items if max_items is not None else self.settings.DUE_ITEMS_LIMIT
        return repository.list_unsent_entries_between(
            self.store, owner_id, now - timedelta(minutes=late), now, limit=limit
        )

    def stale_entries(
        self, owner_id: str, now: Optional[datetime] = None, late_window_minutes: Optional[float] = None
    ) -> List[QueueEntry]:
        """Unsent entries the dispatcher has fallen too far behind on"""
        now = self._now(now)
        late = late_window_minutes if late_window_minutes is not None else self.settings.LATE_WINDOW_MINUTES
        threshold = now - timedelta(minutes=late * self.settings.STALE_MULTIPLIER)
        stale = repository.list_unsent_entries_between(self.store, owner_id, None, threshold)
        stale_queue_entries.set(len(stale))
        if stale:
            logger.warning(
                f"⚠️  [Queue] owner={owner_id} has {len(stale)} unsent entries older than {threshold.isoformat()}"
            )
        return stale
