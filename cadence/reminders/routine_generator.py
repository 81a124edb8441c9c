"""
Routine instance generator.

Expands a routine template (timed steps on a daily/weekly schedule) into
concrete reminder instances for a forward window from a reference instant.

Instance ids are SHA-256 of "routineId:stepId:YYYY-MM-DD" truncated to 20
chars, so re-running the generator (beat re-runs, re-enabling a routine,
simulate mode, "run now") never creates duplicates: every write is a
create-or-merge on that id.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
import hashlib
import logging
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfoNotFoundError

from cadence.utils.timezone import coerce_instant, get_zoneinfo, local_to_utc, to_utc_aware, utc_now
from . import repository
from .config import ReminderSettings, settings as default_settings
from .metrics import queue_sync_failures_total, routine_instances_created_total
from .queue_service import QueueMaintenanceService
from .schemas import NotificationSetting, ReminderInstance, RoutineTemplate
from .store import DocumentStore, Upsert
from .unified_models import REMINDERS

logger = logging.getLogger(__name__)


def deterministic_id(routine_id: str, step_id: str, date_str: str) -> str:
    raw = f"{routine_id}:{step_id}:{date_str}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:20]


@dataclass
class RoutinePlan:
    """Instances one routine expands to, plus how many steps were already past"""
    routine: RoutineTemplate
    instances: List[ReminderInstance] = field(default_factory=list)
    skipped_past: int = 0


@dataclass
class RoutineRunDetail:
    routine_id: str
    routine_title: str
    reminders_generated: int = 0
    skipped_past: int = 0


@dataclass
class RoutineGenerationResult:
    routines_processed: int = 0
    instances_created: int = 0
    instances_merged: int = 0
    details: List[RoutineRunDetail] = field(default_factory=list)
    reminder_ids: List[str] = field(default_factory=list)
    sync_failures: List[str] = field(default_factory=list)

    @property
    def reminders_generated(self) -> int:
        return self.instances_created + self.instances_merged


class RoutineInstanceGenerator:
    """Pure expansion of routine templates; no store access"""

    def __init__(self, window_hours: float = 24, default_timezone: str = "UTC"):
        self.window_hours = window_hours
        self.default_timezone = default_timezone

    def _resolve_timezone(self, routine: RoutineTemplate, fallback: Optional[str]) -> Tuple[str, bool]:
        """(zone name, usable). An unusable zone means local times are read as UTC."""
        name = routine.timezone or fallback or self.default_timezone
        try:
            get_zoneinfo(name)
        except ZoneInfoNotFoundError:
            logger.warning(
                f"⚠️  [Routines] Unknown timezone {name!r} on routine={routine.id}; treating step times as UTC"
            )
            return name, False
        return name, True

    def _step_instant(self, local_dt: datetime, tz_name: str, usable: bool, routine_id: str) -> datetime:
        if usable:
            try:
                return local_to_utc(local_dt, tz_name)
            except (ZoneInfoNotFoundError, ValueError, OverflowError) as exc:
                logger.warning(f"⚠️  [Routines] Conversion failed routine={routine_id} local={local_dt}: {exc!r}")
        return to_utc_aware(local_dt)

    def _expand(
        self,
        routine: RoutineTemplate,
        reference: datetime,
        days: int,
        window_end: Optional[datetime],
        fallback_timezone: Optional[str],
    ) -> RoutinePlan:
        plan = RoutinePlan(routine=routine)
        if not routine.active:
            return plan

        tz_name, usable = self._resolve_timezone(routine, fallback_timezone)
        local_now = reference.astimezone(get_zoneinfo(tz_name)) if usable else reference
        today = local_now.date()

        for offset in range(days):
            day: date = today + timedelta(days=offset)
            if not routine.schedule.runs_on(day):
                continue
            date_str = day.isoformat()
            for step in routine.steps:
                hours, minutes = step.hour_minute
                due_at = self._step_instant(datetime.combine(day, time(hours, minutes)), tz_name, usable, routine.id)
                if due_at <= reference:
                    plan.skipped_past += 1
                    continue
                if window_end is not None and due_at > window_end:
                    continue
                plan.instances.append(
                    ReminderInstance(
                        id=deterministic_id(routine.id, step.id, date_str),
                        owner_id=routine.owner_id,
                        title=step.title or "Untitled",
                        notes=step.notes or "",
                        due_at=due_at,
                        timezone=tz_name if usable else "UTC",
                        notifications=[
                            NotificationSetting(
                                id=s.id, offset_minutes=s.offset_minutes, channel_spec=s.channel_spec, sent=False
                            )
                            for s in step.notifications
                        ],
                        routine_id=routine.id,
                        routine_date=date_str,
                        root_id=routine.id,
                    )
                )
        return plan

    def plan(
        self, routine: RoutineTemplate, reference_instant: Any, default_timezone: Optional[str] = None
    ) -> RoutinePlan:
        """Today and tomorrow in the routine's local calendar, kept to (reference, reference + window]"""
        reference = coerce_instant(reference_instant)
        window_end = reference + timedelta(hours=self.window_hours)
        return self._expand(routine, reference, 2, window_end, default_timezone)

    def generate(
        self, routine: RoutineTemplate, reference_instant: Any, default_timezone: Optional[str] = None
    ) -> List[ReminderInstance]:
        return self.plan(routine, reference_instant, default_timezone).instances

    def window(
        self,
        routine: RoutineTemplate,
        reference_instant: Any,
        days: int = 30,
        default_timezone: Optional[str] = None,
    ) -> RoutinePlan:
        """Every scheduled local day of the next `days` days (the "run now" expansion)"""
        return self._expand(routine, coerce_instant(reference_instant), days, None, default_timezone)


class RoutineService:
    """Writes generator output to the store and keeps the queue in step with it"""

    def __init__(
        self,
        store: DocumentStore,
        settings: Optional[ReminderSettings] = None,
        queue: Optional[QueueMaintenanceService] = None,
    ):
        self.store = store
        self.settings = settings or default_settings
        self.queue = queue or QueueMaintenanceService(store, self.settings)
        self.generator = RoutineInstanceGenerator(
            window_hours=self.settings.ROUTINE_WINDOW_HOURS,
            default_timezone=self.settings.DEFAULT_TIMEZONE,
        )

    def _owner_timezone(self, owner_id: str) -> str:
        owner = repository.get_owner(self.store, owner_id)
        return owner.timezone if owner and owner.timezone else self.settings.DEFAULT_TIMEZONE

    def _merge_upsert(self, instance: ReminderInstance) -> Tuple[Upsert, bool]:
        """
        Create-or-merge one instance. A merge refreshes template-derived fields but
        keeps the stored status and the sent flag of any notification already sent.
        Returns (operation, created).
        """
        existing = self.store.get(REMINDERS, instance.id)
        if existing is None:
            return Upsert(REMINDERS, instance.id, repository.dump(instance)), True

        stored = ReminderInstance.model_validate(existing)
        sent_ids = {s.id for s in stored.notifications if s.sent}
        notifications = [
            s.model_copy(update={"sent": True}) if s.id in sent_ids else s for s in instance.notifications
        ]
        data: Dict[str, Any] = {
            "title": instance.title,
            "notes": instance.notes,
            "due_at": instance.due_at,
            "timezone": instance.timezone,
            "notifications": [repository.dump(s) for s in notifications],
            "routine_id": instance.routine_id,
            "routine_date": instance.routine_date,
            "root_id": instance.root_id,
            "updated_at": utc_now(),
        }
        return Upsert(REMINDERS, instance.id, data, merge=True), False

    def _write_plan(self, plan: RoutinePlan, reference: datetime, result: RoutineGenerationResult) -> None:
        upserts: List[Upsert] = []
        created = 0
        for instance in plan.instances:
            op, is_new = self._merge_upsert(instance)
            upserts.append(op)
            created += int(is_new)
        if plan.instances:
            upserts.append(repository.routine_run_upsert(plan.routine.id, reference))
        self.store.write_chunked(upserts=upserts)

        routine_instances_created_total.inc(created)
        result.routines_processed += 1
        result.instances_created += created
        result.instances_merged += len(plan.instances) - created
        result.reminder_ids.extend(instance.id for instance in plan.instances)
        result.details.append(
            RoutineRunDetail(
                routine_id=plan.routine.id,
                routine_title=plan.routine.title or "Untitled",
                reminders_generated=len(plan.instances),
                skipped_past=plan.skipped_past,
            )
        )

    def _sync_queue(self, owner_id: str, result: RoutineGenerationResult, now: datetime) -> None:
        for reminder_id in result.reminder_ids:
            try:
                self.queue.sync_reminder(owner_id, reminder_id, now=now)
            except Exception as exc:
                queue_sync_failures_total.inc()
                result.sync_failures.append(reminder_id)
                logger.error(f"❌ [Routines] Queue sync failed for reminder={reminder_id}: {exc!r}")

    def run_for_owner(self, owner_id: str, reference_instant: Optional[Any] = None) -> RoutineGenerationResult:
        """Expand every active routine of an owner for the next window and sync the queue"""
        reference = coerce_instant(reference_instant) if reference_instant is not None else utc_now()
        fallback = self._owner_timezone(owner_id)
        result = RoutineGenerationResult()

        for routine in repository.list_routines(self.store, owner_id, active=True):
            self._write_plan(self.generator.plan(routine, reference, fallback), reference, result)

        self._sync_queue(owner_id, result, reference)
        logger.info(
            f"✅ [Routines] owner={owner_id} routines={result.routines_processed} "
            f"created={result.instances_created} merged={result.instances_merged} "
            f"sync_failures={len(result.sync_failures)}"
        )
        return result

    def run_window(
        self, owner_id: str, routine_id: str, days: Optional[int] = None, now: Optional[Any] = None
    ) -> Optional[RoutineGenerationResult]:
        """Expand one routine over the next N local days. None when the routine does not exist."""
        routine = repository.get_routine(self.store, owner_id, routine_id)
        if routine is None:
            return None
        reference = coerce_instant(now) if now is not None else utc_now()
        days = days if days is not None else self.settings.ROUTINE_RUN_WINDOW_DAYS
        result = RoutineGenerationResult()
        plan = self.generator.window(routine, reference, days, self._owner_timezone(owner_id))
        self._write_plan(plan, reference, result)
        self._sync_queue(owner_id, result, reference)
        logger.info(f"✅ [Routines] Ran routine={routine_id} over {days} days: {result.reminders_generated} instances")
        return result

    def simulate(self, owner_id: str, reference_instant: Any):
        """Generate as if the clock read reference_instant, then rebuild the queue at that instant"""
        reference = coerce_instant(reference_instant)
        logger.info(f"🧪 [Routines] Simulating owner={owner_id} at {reference.isoformat()}")
        generation = self.run_for_owner(owner_id, reference)
        rebuild = self.queue.rebuild_for_owner(owner_id, now=reference)
        return generation, rebuild

    def set_active(self, owner_id: str, routine_id: str, active: bool) -> Optional[RoutineTemplate]:
        """Enabling expands immediately; disabling drops the routine's unsent queue entries"""
        routine = repository.set_routine_active(self.store, owner_id, routine_id, active)
        if routine is None:
            return None
        if active:
            self.run_for_owner(owner_id)
        else:
            self.queue.remove_for_routine(owner_id, routine_id)
        return routine

    def remove_routine(
        self, owner_id: str, routine_id: str, delete_future_reminders: bool = True, now: Optional[Any] = None
    ) -> bool:
        self.queue.remove_for_routine(
            owner_id, routine_id, delete_future_reminders=delete_future_reminders, now=now
        )
        return repository.delete_routine(self.store, owner_id, routine_id)
