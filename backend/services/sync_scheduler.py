"""
Scheduler for account reconciliation.

Wraps the AccountReconciler with a periodic ticker, a single-flight guard,
run statistics and a rolling history of the most recent runs.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, Optional

from services.account_sync import AccountReconciler, ReconciliationResult, SyncSetupError
from utils.audit import audit
from utils.ticker import PeriodicTicker

logger = logging.getLogger(__name__)

MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 60

TRIGGER_SCHEDULED = "scheduled"
TRIGGER_MANUAL = "manual"


@dataclass
class ReconciliationRun:
    """One entry of the run history."""
    timestamp: datetime
    trigger: str
    success: bool
    duration_ms: float
    counts: Dict[str, int] = field(default_factory=dict)
    dry_run: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "trigger": self.trigger,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 1),
            "counts": dict(self.counts),
            "dry_run": self.dry_run,
            "error": self.error,
        }


@dataclass
class SyncOutcome:
    """What ``execute_sync`` did: either skipped, or ran and produced a result."""
    skipped: bool = False
    reason: Optional[str] = None
    result: Optional[ReconciliationResult] = None


class SyncScheduler:
    """
    Periodic and manual trigger for account reconciliation.

    States: Stopped/Running (the ticker) crossed with Idle/Syncing (a run is
    in flight). A trigger that arrives while Syncing is dropped, not queued.
    """

    def __init__(
        self,
        reconciler: AccountReconciler,
        interval_minutes: int = 15,
        delete_orphaned: bool = False,
        history_size: int = 10,
    ):
        if not MIN_INTERVAL_MINUTES <= interval_minutes <= MAX_INTERVAL_MINUTES:
            raise ValueError(
                f"interval_minutes must be between {MIN_INTERVAL_MINUTES} and {MAX_INTERVAL_MINUTES}"
            )
        self.reconciler = reconciler
        self.interval_minutes = interval_minutes
        self.delete_orphaned = delete_orphaned
        self.history: Deque[ReconciliationRun] = deque(maxlen=history_size)

        self.total_syncs = 0
        self.successful_syncs = 0
        self.failed_syncs = 0
        self.last_sync_time: Optional[datetime] = None
        self.last_error: Optional[str] = None

        self._syncing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._ticker = PeriodicTicker(
            "account-sync", interval_minutes * 60, self._scheduled_tick
        )

    @property
    def is_running(self) -> bool:
        return self._ticker.is_running

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    def start(self) -> bool:
        if not self._ticker.start():
            logger.warning("Sync scheduler is already running")
            return False
        logger.info(f"Sync scheduler started (every {self.interval_minutes} minutes)")
        audit.log_scheduler_change("start", interval_minutes=self.interval_minutes)
        return True

    def stop(self) -> bool:
        if not self._ticker.stop():
            logger.warning("Sync scheduler is not running")
            return False
        logger.info("Sync scheduler stopped")
        audit.log_scheduler_change("stop")
        return True

    def update_interval(self, minutes: int) -> bool:
        """Change the sync interval; restarts the ticker when it is running."""
        if not isinstance(minutes, int) or not MIN_INTERVAL_MINUTES <= minutes <= MAX_INTERVAL_MINUTES:
            logger.error(
                f"Invalid interval: {minutes}. Must be between "
                f"{MIN_INTERVAL_MINUTES} and {MAX_INTERVAL_MINUTES} minutes"
            )
            return False

        was_running = self.is_running
        if was_running:
            self._ticker.stop()
        self.interval_minutes = minutes
        self._ticker.reconfigure(minutes * 60)
        if was_running:
            self._ticker.start()

        logger.info(f"Sync interval updated to {minutes} minutes")
        audit.log_scheduler_change("interval", interval_minutes=minutes)
        return True

    async def _scheduled_tick(self) -> None:
        outcome = await self.execute_sync(TRIGGER_SCHEDULED, delete_orphaned=self.delete_orphaned)
        if outcome.skipped:
            logger.info(f"Scheduled sync skipped: {outcome.reason}")

    async def run_now(self, dry_run: bool = False, delete_orphaned: bool = False) -> SyncOutcome:
        """Manual trigger."""
        return await self.execute_sync(TRIGGER_MANUAL, dry_run=dry_run, delete_orphaned=delete_orphaned)

    async def execute_sync(
        self,
        trigger: str,
        dry_run: bool = False,
        delete_orphaned: bool = False,
    ) -> SyncOutcome:
        """
        Run one reconciliation unless another is in flight.

        Raises:
            SyncSetupError: recorded as a failed run, then re-raised
        """
        if self._syncing:
            logger.warning(f"{trigger.capitalize()} sync requested while a sync is in progress")
            return SyncOutcome(skipped=True, reason="Sync already in progress")

        self._syncing = True
        self._idle.clear()
        started = time.perf_counter()
        timestamp = datetime.now(timezone.utc)
        try:
            result = await self.reconciler.reconcile(dry_run=dry_run, delete_orphaned=delete_orphaned)
        except SyncSetupError as e:
            self._record(ReconciliationRun(
                timestamp=timestamp,
                trigger=trigger,
                success=False,
                duration_ms=(time.perf_counter() - started) * 1000,
                dry_run=dry_run,
                error=str(e),
            ))
            raise
        finally:
            self._syncing = False
            self._idle.set()

        self._record(ReconciliationRun(
            timestamp=timestamp,
            trigger=trigger,
            success=True,
            duration_ms=(time.perf_counter() - started) * 1000,
            counts=result.counts(),
            dry_run=dry_run,
        ))
        return SyncOutcome(result=result)

    async def sync_user(self, user_id: int, dry_run: bool = False) -> SyncOutcome:
        """
        Reconcile one user's account under the same in-flight guard as full runs.

        Single-user syncs are not recorded in the run history.

        Raises:
            UserNotEligibleError: the user does not exist or is not eligible
            SyncSetupError: the external account list could not be read
        """
        if self._syncing:
            logger.warning(f"Sync for user {user_id} requested while a sync is in progress")
            return SyncOutcome(skipped=True, reason="Sync already in progress")

        self._syncing = True
        self._idle.clear()
        try:
            result = await self.reconciler.sync_user(user_id, dry_run=dry_run)
        finally:
            self._syncing = False
            self._idle.set()
        return SyncOutcome(result=result)

    def _record(self, run: ReconciliationRun) -> None:
        self.total_syncs += 1
        self.last_sync_time = run.timestamp
        if run.success:
            self.successful_syncs += 1
        else:
            self.failed_syncs += 1
            self.last_error = run.error
        self.history.appendleft(run)

    def next_sync_time(self) -> Optional[datetime]:
        if not self.is_running:
            return None
        if self._ticker.next_run_at is not None:
            return self._ticker.next_run_at
        base = self.last_sync_time or datetime.now(timezone.utc)
        return base + timedelta(minutes=self.interval_minutes)

    def get_status(self) -> Dict[str, Any]:
        success_rate = (
            round(self.successful_syncs / self.total_syncs * 100, 2) if self.total_syncs else 0.0
        )
        next_sync = self.next_sync_time()
        return {
            "is_running": self.is_running,
            "is_syncing": self.is_syncing,
            "interval_minutes": self.interval_minutes,
            "delete_orphaned": self.delete_orphaned,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "next_sync_time": next_sync.isoformat() if next_sync else None,
            "last_error": self.last_error,
            "statistics": {
                "total_syncs": self.total_syncs,
                "successful_syncs": self.successful_syncs,
                "failed_syncs": self.failed_syncs,
                "success_rate": success_rate,
            },
            "last_run": self.history[0].to_dict() if self.history else None,
            "history": [run.to_dict() for run in self.history],
        }

    def reset_stats(self) -> None:
        self.total_syncs = 0
        self.successful_syncs = 0
        self.failed_syncs = 0
        self.last_error = None
        self.history.clear()
        logger.info("Sync statistics reset")
        audit.log_scheduler_change("reset")

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no run is in flight. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Stop ticking and wait (bounded) for the in-flight run."""
        if self.is_running:
            self.stop()
        drained = await self._ticker.drain(timeout)
        return drained and await self.wait_idle(timeout)
