"""
Reminder service - repository writes paired with the queue sync they require.

Every mutation returns a ``MutationResult`` carrying the outcome of its queue
sync, so callers can see when a write landed but the queue has not caught up
(the next full rebuild repairs it).
"""
from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Callable, List, Optional

from . import repository
from .config import ReminderSettings, settings as default_settings
from .metrics import queue_sync_failures_total
from .queue_service import QueueMaintenanceService, SyncResult
from .routine_generator import RoutineService
from .schemas import ReminderCreate, ReminderInstance, ReminderUpdate, RoutineTemplate
from .store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    reminder: Optional[ReminderInstance]
    sync: Optional[SyncResult] = None
    sync_error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.reminder is not None

    @property
    def synced(self) -> bool:
        return self.sync_error is None


@dataclass
class ClearResult:
    deleted: List[str]
    entries_removed: int = 0


class ReminderService:
    """Service for managing one-off and repeating reminders and routines"""

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[ReminderSettings] = None,
        queue: Optional[QueueMaintenanceService] = None,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.queue = queue or QueueMaintenanceService(store, self.settings)
        self.routines = RoutineService(store, self.settings, queue=self.queue)

    def _synced(self, owner_id: str, reminder_id: str, reminder: Optional[ReminderInstance]) -> MutationResult:
        result = MutationResult(reminder=reminder)
        try:
            result.sync = self.queue.sync_reminder(owner_id, reminder_id)
        except Exception as exc:
            queue_sync_failures_total.inc()
            result.sync_error = repr(exc)
            logger.error(f"❌ [Reminders] Queue sync failed for reminder={reminder_id}: {exc!r}")
        return result

    # --- reminders ---
    def create_reminder(self, owner_id: str, data: ReminderCreate) -> MutationResult:
        repository.ensure_owner(self.store, owner_id)
        reminder = repository.create_reminder(self.store, owner_id, data)
        logger.info(f"✅ [Reminders] Created reminder={reminder.id} owner={owner_id}")
        return self._synced(owner_id, reminder.id, reminder)

    def get_reminder(self, owner_id: str, reminder_id: str) -> Optional[ReminderInstance]:
        return repository.get_reminder(self.store, owner_id, reminder_id)

    def list_reminders(self, owner_id: str, **filters: Any) -> List[ReminderInstance]:
        return repository.list_reminders(self.store, owner_id, **filters)

    def _mutate(self, owner_id: str, reminder_id: str, op: Callable[..., Optional[ReminderInstance]], *args) -> MutationResult:
        reminder = op(self.store, owner_id, reminder_id, *args)
        if reminder is None:
            return MutationResult(reminder=None)
        return self._synced(owner_id, reminder_id, reminder)

    def update_reminder(self, owner_id: str, reminder_id: str, data: ReminderUpdate) -> MutationResult:
        return self._mutate(owner_id, reminder_id, repository.update_reminder, data)

    def toggle_status(self, owner_id: str, reminder_id: str) -> MutationResult:
        return self._mutate(owner_id, reminder_id, repository.toggle_status)

    def snooze(self, owner_id: str, reminder_id: str, until: datetime) -> MutationResult:
        return self._mutate(owner_id, reminder_id, repository.snooze_reminder, until)

    def delete_reminder(self, owner_id: str, reminder_id: str) -> bool:
        if not repository.delete_reminder(self.store, owner_id, reminder_id):
            return False
        self.queue.remove_for_reminder(owner_id, reminder_id)
        return True

    def _clear(self, owner_id: str, clear: Callable[[DocumentStore, str], List[str]]) -> ClearResult:
        deleted = clear(self.store, owner_id)
        removed = sum(self.queue.remove_for_reminder(owner_id, reminder_id) for reminder_id in deleted)
        logger.info(f"🧹 [Reminders] Cleared {len(deleted)} reminders owner={owner_id} entries={removed}")
        return ClearResult(deleted=deleted, entries_removed=removed)

    def clear_upcoming(self, owner_id: str) -> ClearResult:
        return self._clear(owner_id, repository.clear_upcoming)

    def clear_completed(self, owner_id: str) -> ClearResult:
        return self._clear(owner_id, repository.clear_completed)

    def clear_all(self, owner_id: str) -> ClearResult:
        return self._clear(owner_id, repository.clear_all)

    # --- routines ---
    def create_routine(self, routine: RoutineTemplate):
        repository.ensure_owner(self.store, routine.owner_id)
        repository.create_routine(self.store, routine)
        generation = self.routines.run_for_owner(routine.owner_id) if routine.active else None
        return routine, generation

    def update_routine(self, owner_id: str, routine_id: str, **changes) -> Optional[RoutineTemplate]:
        """Edits replace the routine's queued alerts with ones from the new template"""
        routine = repository.update_routine(self.store, owner_id, routine_id, **changes)
        if routine is None:
            return None
        self.queue.remove_for_routine(owner_id, routine_id)
        if routine.active:
            self.routines.run_for_owner(owner_id)
        return routine

    def set_routine_active(self, owner_id: str, routine_id: str, active: bool) -> Optional[RoutineTemplate]:
        return self.routines.set_active(owner_id, routine_id, active)

    def delete_routine(self, owner_id: str, routine_id: str, delete_future_reminders: bool = True) -> bool:
        return self.routines.remove_routine(owner_id, routine_id, delete_future_reminders)
