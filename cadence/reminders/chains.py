"""
Repeat-chain catch-up.

A repeating reminder is a chain of concrete instances linked by origin_id and
root_id. Each member carries a generation status: "pending" until its
successor has been written, then "created". A periodic pass materializes the
successors of every pending member up to a horizon; there is no eager
generation when a reminder is created.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import hashlib
import logging
from typing import List, Optional

from cadence.utils.timezone import coerce_instant, utc_now
from . import repository
from .config import ReminderSettings, settings as default_settings
from .errors import InvalidTransitionError
from .metrics import chain_successors_created_total, queue_sync_failures_total
from .queue_service import QueueMaintenanceService
from .recurrence_models import expand_occurrences, rule_is_exhausted
from .schemas import GenerationStatus, ReminderInstance, ReminderStatus
from .store import DocumentStore, Upsert
from .unified_models import REMINDERS

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    GenerationStatus.PENDING: GenerationStatus.CREATED,
}


def advance_generation(reminder: ReminderInstance) -> ReminderInstance:
    """pending -> created; every other move raises InvalidTransitionError"""
    current = reminder.generation_status
    target = _TRANSITIONS.get(current) if current is not None else None
    if target is None:
        raise InvalidTransitionError(f"reminder {reminder.id}: no transition from generation status {current!r}")
    return reminder.model_copy(update={"generation_status": target})


def successor_id(root_id: str, occurrence_index: int) -> str:
    raw = f"{root_id}:{occurrence_index}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:20]


@dataclass
class ChainResult:
    owner_id: str
    scanned: int = 0
    successors_created: int = 0
    exhausted: int = 0
    new_reminder_ids: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    sync_failures: List[str] = field(default_factory=list)


class ChainService:
    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[ReminderSettings] = None,
        queue: Optional[QueueMaintenanceService] = None,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.queue = queue or QueueMaintenanceService(store, self.settings)

    def _successor(self, member: ReminderInstance, due_at: datetime, index: int, last: bool) -> ReminderInstance:
        root_id = member.root_id or member.id
        now = utc_now()
        status = GenerationStatus.PENDING
        if not last or rule_is_exhausted(member.recurrence_rule, due_at, index):
            status = GenerationStatus.CREATED
        return member.model_copy(
            update={
                "id": successor_id(root_id, index),
                "due_at": due_at,
                "status": ReminderStatus.PENDING,
                "snoozed_until": None,
                "notifications": [s.model_copy(update={"sent": False}) for s in member.notifications],
                "origin_id": member.id,
                "root_id": root_id,
                "occurrence_index": index,
                "generation_status": status,
                "created_at": now,
                "updated_at": now,
            }
        )

    def catch_up(self, member: ReminderInstance, now: datetime, horizon_hours: float) -> List[ReminderInstance]:
        """
        Successors of one pending chain member up to now + horizon, linked by
        origin_id. Occurrences already older than the trailing queue window are
        stepped over unless they are the newest one produced, which keeps the
        chain alive without back-filling missed history.
        """
        rule = member.recurrence_rule
        due_dates = expand_occurrences(
            rule,
            member.due_at,
            horizon_days=horizon_hours / 24.0,
            max_count=self.settings.EXPANSION_MAX_COUNT,
            now=now,
            start_index=member.occurrence_index,
        )
        floor = now - timedelta(hours=self.settings.QUEUE_TRAILING_HOURS)

        successors: List[ReminderInstance] = []
        previous = member
        for offset, due_at in enumerate(due_dates, start=1):
            last = offset == len(due_dates)
            if due_at < floor and not last:
                continue
            successor = self._successor(member, due_at, member.occurrence_index + offset, last)
            successor = successor.model_copy(update={"origin_id": previous.id})
            successors.append(successor)
            previous = successor
        return successors

    def _process_member(self, member: ReminderInstance, now: datetime, horizon_hours: float, result: ChainResult):
        successors = self.catch_up(member, now, horizon_hours)
        if not successors:
            if rule_is_exhausted(member.recurrence_rule, member.due_at, member.occurrence_index):
                advanced = advance_generation(member)
                self.store.batch_write(
                    upserts=[Upsert(REMINDERS, member.id, {"generation_status": advanced.generation_status}, merge=True)]
                )
                result.exhausted += 1
                logger.info(f"🏁 [Chains] Series ended at reminder={member.id}")
            return

        upserts: List[Upsert] = []
        for successor in successors:
            if self.store.get(REMINDERS, successor.id) is None:
                upserts.append(Upsert(REMINDERS, successor.id, repository.dump(successor)))
                result.new_reminder_ids.append(successor.id)
        advanced = advance_generation(member)
        upserts.append(Upsert(REMINDERS, member.id, {"generation_status": advanced.generation_status}, merge=True))
        self.store.write_chunked(upserts=upserts)

        created = len(upserts) - 1
        result.successors_created += created
        chain_successors_created_total.inc(created)

    def process_owner(
        self, owner_id: str, now: Optional[datetime] = None, horizon_hours: Optional[float] = None
    ) -> ChainResult:
        now = coerce_instant(now) if now is not None else utc_now()
        horizon = horizon_hours if horizon_hours is not None else self.settings.CHAIN_HORIZON_HOURS
        result = ChainResult(owner_id=owner_id)

        for member in repository.list_pending_generation(self.store, owner_id):
            result.scanned += 1
            try:
                self._process_member(member, now, horizon, result)
            except Exception as exc:
                result.failures.append(member.id)
                logger.error(f"❌ [Chains] Catch-up failed for reminder={member.id}: {exc!r}")

        for reminder_id in result.new_reminder_ids:
            try:
                self.queue.sync_reminder(owner_id, reminder_id, now=now)
            except Exception as exc:
                queue_sync_failures_total.inc()
                result.sync_failures.append(reminder_id)
                logger.error(f"❌ [Chains] Queue sync failed for reminder={reminder_id}: {exc!r}")

        logger.info(
            f"✅ [Chains] owner={owner_id} scanned={result.scanned} created={result.successors_created} "
            f"exhausted={result.exhausted} failures={len(result.failures)}"
        )
        return result
