from contextlib import contextmanager
from dataclasses import asdict
from typing import Dict, Iterator, Optional

from celery import shared_task
from celery.utils.log import get_logger

from cadence.db.session import create_db_engine, create_session_factory
from cadence.utils.timezone import coerce_instant, utc_now
from .celery_app import celery_app  # noqa: F401  (binds shared tasks to the reminders app)
from .config import settings
from .dispatcher import DeliveryChannel, Dispatcher, LoggingChannel
from .orchestration import DailyRebuildJob
from .queue_service import QueueMaintenanceService
from .routine_generator import RoutineService
from .schemas import Channel
from .store import SqlDocumentStore

logger = get_logger(__name__)

CHANNELS: Dict[Channel, DeliveryChannel] = {channel: LoggingChannel(channel) for channel in Channel}


def register_channel(channel: Channel, transport: DeliveryChannel) -> None:
    """Install the transport the dispatch task hands messages to for one channel"""
    CHANNELS[Channel(channel)] = transport


@contextmanager
def store_scope() -> Iterator[SqlDocumentStore]:
    """A store with its own engine for the duration of one task"""
    engine = create_db_engine(settings.DATABASE_URL, timeout_seconds=settings.STORE_TIMEOUT_SECONDS)
    try:
        yield SqlDocumentStore(create_session_factory(engine), batch_limit=settings.STORE_BATCH_LIMIT)
    finally:
        engine.dispose()


def _instant(value: Optional[str]):
    return coerce_instant(value) if value else utc_now()


@shared_task(name="reminders.daily_rebuild")
def daily_rebuild_task(now: Optional[str] = None) -> dict:
    """Routine generation, chain catch-up and queue rebuild for every owner. Returns counts."""
    with store_scope() as store:
        results = DailyRebuildJob(store, settings).run(now=_instant(now))
    summary = {
        "owners": len(results),
        "skipped": sum(1 for r in results if r.skipped),
        "failed": [r.owner_id for r in results if not r.ok],
    }
    logger.info(f"🕒 [Daily] daily_rebuild_task {summary}")
    return summary


@shared_task(name="reminders.dispatch_due")
def dispatch_due_task(now: Optional[str] = None) -> int:
    """Send every due queue entry. Returns number delivered."""
    with store_scope() as store:
        results = Dispatcher(store, CHANNELS, settings).dispatch_all(now=_instant(now))
    return sum(r.sent for r in results.values())


@shared_task(name="reminders.sync_reminder")
def sync_reminder_task(owner_id: str, reminder_id: str) -> dict:
    with store_scope() as store:
        result = QueueMaintenanceService(store, settings).sync_reminder(owner_id, reminder_id)
    return asdict(result)


@shared_task(name="reminders.rebuild_owner")
def rebuild_owner_task(owner_id: str, now: Optional[str] = None) -> dict:
    with store_scope() as store:
        result = QueueMaintenanceService(store, settings).rebuild_for_owner(owner_id, now=_instant(now))
    return asdict(result)


@shared_task(name="reminders.remove_routine")
def remove_routine_task(owner_id: str, routine_id: str, delete_future_reminders: bool = True) -> bool:
    with store_scope() as store:
        return RoutineService(store, settings).remove_routine(owner_id, routine_id, delete_future_reminders)


@shared_task(name="reminders.run_routine")
def run_routine_task(owner_id: str, routine_id: str, days: Optional[int] = None) -> Optional[dict]:
    with store_scope() as store:
        result = RoutineService(store, settings).run_window(owner_id, routine_id, days=days)
    return asdict(result) if result is not None else None


@shared_task(name="reminders.simulate_routines")
def simulate_routines_task(owner_id: str, reference: str) -> dict:
    """Developer mode: generate routines and rebuild the queue as if the clock read `reference`"""
    with store_scope() as store:
        generation, rebuild = RoutineService(store, settings).simulate(owner_id, coerce_instant(reference))
    return {"generation": asdict(generation), "rebuild": asdict(rebuild)}
