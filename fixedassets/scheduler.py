"""
Depreciation tick source - polls the database-stored schedule once per minute
and runs catch-up depreciation when the schedule is due.
Uses APScheduler only as a fixed-interval clock; the real schedule lives in
the depreciation_schedule_settings table and is re-read on every tick.
"""
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core import trigger as trigger_settings
from core.trigger import evaluate, utc_now
from fixedassets.stores import RunLogStore, ScheduleStore
from services.depreciation_service import SCHEDULE_NAME, DepreciationRunner, RunMode, RunResult

logger = logging.getLogger(__name__)

TICK_JOB_ID = "depreciation_tick"


class DepreciationScheduler:
    """Once-per-minute evaluator of the automatic depreciation schedule."""

    def __init__(self, schedule_name: str = SCHEDULE_NAME, runner: Optional[DepreciationRunner] = None,
                 schedules: Optional[ScheduleStore] = None, run_log: Optional[RunLogStore] = None,
                 clock=utc_now):
        self.scheduler = AsyncIOScheduler()
        self.schedule_name = schedule_name
        self.schedules = schedules or ScheduleStore()
        self.run_log = run_log or RunLogStore()
        self.runner = runner or DepreciationRunner(
            schedules=self.schedules, run_log=self.run_log, schedule_name=schedule_name, clock=clock,
        )
        self.clock = clock

    def start(self):
        """Start polling. Must be called from a running event loop."""
        self._recover_stuck_runs()
        self.scheduler.add_job(
            self._tick_job,
            trigger=IntervalTrigger(seconds=trigger_settings.TICK_SECONDS),
            id=TICK_JOB_ID,
            name=f"Depreciation tick ({self.schedule_name})",
            replace_existing=True,
            misfire_grace_time=trigger_settings.MISFIRE_GRACE_SECONDS,
            coalesce=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(
            "[SCHEDULER] Started (schedule=%s, tick=%ss)", self.schedule_name, trigger_settings.TICK_SECONDS
        )

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Shutdown complete")

    def _recover_stuck_runs(self):
        """Runs left 'running' by a crash would otherwise look in-flight forever."""
        try:
            self.run_log.recover_stale_runs()
        except Exception as e:
            logger.error(f"[SCHEDULER] Failed to recover stale runs: {e}")

    def _tick_job(self):
        """APScheduler callback. Logs instead of raising so the interval job keeps running."""
        try:
            self.tick()
        except Exception:
            logger.exception("[SCHEDULER] Tick failed for schedule '%s'", self.schedule_name)

    def tick(self, now: Optional[datetime] = None) -> Optional[RunResult]:
        """
        One polling iteration: read the schedule, evaluate it, claim the window
        and run catch-up depreciation. Returns the RunResult, or None when no
        run happened.
        """
        now = now or self.clock()
        config = self.schedules.get_schedule(self.schedule_name)
        if config is None:
            logger.warning("[SCHEDULER] Schedule '%s' not found", self.schedule_name)
            return None

        decision = evaluate(config, now)
        if decision.error:
            logger.warning("[SCHEDULER] Schedule '%s' misconfigured, not running: %s", self.schedule_name, decision.error)
            return None
        if not decision.due:
            logger.debug("[SCHEDULER] Not due: %s", decision.reason)
            return None

        if not self.schedules.claim_window(self.schedule_name, decision.window_start, now):
            logger.info("[SCHEDULER] Window %s already claimed by another tick", decision.scheduled_at)
            return None

        logger.info("[SCHEDULER] Depreciation due (%s), starting catch-up run", decision.reason)
        result = self.runner.run_once(RunMode.CATCH_UP, trigger="scheduler")
        if result.success:
            logger.info(
                "[SCHEDULER] Run complete: %d period(s) for %d asset(s), %d failed",
                result.total_periods_processed, result.assets_with_new_entries, result.failed_assets,
            )
        else:
            logger.error("[SCHEDULER] Run failed: %s", result.error)
        return result

    def get_status(self) -> dict:
        job = self.scheduler.get_job(TICK_JOB_ID) if self.scheduler.running else None
        next_tick = job.next_run_time if job else None
        return {
            "running": self.scheduler.running,
            "schedule_name": self.schedule_name,
            "tick_seconds": trigger_settings.TICK_SECONDS,
            "next_tick": next_tick.isoformat() if next_tick else None,
        }


# Global instance
scheduler = DepreciationScheduler()
