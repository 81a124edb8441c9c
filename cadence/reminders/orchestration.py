"""
Daily orchestration: routine generation, chain catch-up and queue rebuild for
every owner, once per owner per UTC day.
"""
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from cadence.utils.timezone import coerce_instant, utc_now
from . import repository
from .chains import ChainService
from .config import ReminderSettings, settings as default_settings
from .queue_service import QueueMaintenanceService
from .routine_generator import RoutineService
from .store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class OwnerRunResult:
    owner_id: str
    skipped: bool = False
    steps: Dict[str, Any] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class DailyRebuildJob:
    def __init__(self, store: DocumentStore, settings: Optional[ReminderSettings] = None):
        self.store = store
        self.settings = settings or default_settings
        self.queue = QueueMaintenanceService(store, self.settings)
        self.routines = RoutineService(store, self.settings, queue=self.queue)
        self.chains = ChainService(store, self.settings, queue=self.queue)

    def _step(self, result: OwnerRunResult, name: str, fn: Callable[[], Any]) -> None:
        try:
            result.steps[name] = fn()
        except Exception as exc:
            result.errors[name] = repr(exc)
            logger.exception(f"❌ [Daily] {name} failed for owner={result.owner_id}: {exc!r}")

    def run_owner(self, owner_id: str, now: datetime, force: bool = False) -> OwnerRunResult:
        result = OwnerRunResult(owner_id=owner_id)
        day = now.date().isoformat()
        if not force and not repository.claim_daily_rebuild(self.store, owner_id, day):
            logger.info(f"⏭️  [Daily] owner={owner_id} already rebuilt for {day}")
            result.skipped = True
            return result

        self._step(result, "routines", lambda: self.routines.run_for_owner(owner_id, now))
        self._step(result, "chains", lambda: self.chains.process_owner(owner_id, now=now))
        self._step(result, "queue", lambda: self.queue.rebuild_for_owner(owner_id, now=now))
        return result

    def run(self, now: Optional[datetime] = None, owner_ids: Optional[Iterable[str]] = None) -> List[OwnerRunResult]:
        now = coerce_instant(now) if now is not None else utc_now()
        owner_ids = list(owner_ids) if owner_ids is not None else repository.list_owner_ids(self.store)
        logger.info(f"🕒 [Daily] Rebuild run at {now.isoformat()} for {len(owner_ids)} owners")

        results: List[OwnerRunResult] = []
        for owner_id in owner_ids:
            try:
                results.append(self.run_owner(owner_id, now))
            except Exception as exc:
                # lock claim failed; nothing ran for this owner
                logger.exception(f"❌ [Daily] owner={owner_id} aborted: {exc!r}")
                results.append(OwnerRunResult(owner_id=owner_id, errors={"lock": repr(exc)}))

        failed = sum(1 for r in results if not r.ok)
        skipped = sum(1 for r in results if r.skipped)
        logger.info(f"✅ [Daily] Done owners={len(results)} skipped={skipped} failed={failed}")
        return results
