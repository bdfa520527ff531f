"""
Schedule Management Service - lets operators and LLM tools inspect, edit,
toggle and manually trigger the automatic depreciation schedule.
"""
import logging
from dataclasses import asdict, replace
from typing import Any, Dict, Optional

from core.errors import ScheduleConfigError
from core.trigger import (
    ScheduleConfig, as_utc, describe_schedule, evaluate, next_run_at, utc_now, validate_schedule,
)
from fixedassets.stores import RunLogStore, ScheduleStore
from services.depreciation_service import SCHEDULE_NAME, DepreciationRunner, RunMode

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = {
    "frequency", "execution_time", "timezone", "day_of_week",
    "day_of_month", "cron_expression", "description", "is_active",
}


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _humanize_seconds(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    minutes, _ = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def schedule_to_dict(config: ScheduleConfig) -> Dict[str, Any]:
    data = asdict(config)
    data["last_run_at"] = _iso(config.last_run_at)
    data["next_run_at"] = _iso(config.next_run_at)
    data["schedule_description"] = describe_schedule(config)
    return data


class ScheduleService:
    @staticmethod
    def get_schedule(name: str = SCHEDULE_NAME):
        """Current schedule settings with a readable description."""
        try:
            config = ScheduleStore().get_schedule(name)
            if not config:
                return {"success": False, "error": f"Schedule '{name}' not found"}
            return {"success": True, "data": schedule_to_dict(config)}
        except Exception as e:
            logger.error(f"Get schedule error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def update_schedule(changes: Dict[str, Any], name: str = SCHEDULE_NAME):
        """
        Apply a partial update after validating the resulting schedule as a whole.
        The advisory next_run_at is recomputed; due-ness never depends on it.
        """
        try:
            store = ScheduleStore()
            current = store.get_schedule(name)
            if not current:
                return {"success": False, "error": f"Schedule '{name}' not found"}

            unknown = set(changes) - EDITABLE_FIELDS
            if unknown:
                return {"success": False, "error": f"Fields not editable: {', '.join(sorted(unknown))}"}

            candidate = replace(current, **changes)
            try:
                validate_schedule(candidate)
            except ScheduleConfigError as e:
                return {"success": False, "error": str(e)}

            updated = store.update_settings(name, {**changes, "next_run_at": next_run_at(candidate)})
            logger.info("[SCHEDULER] Schedule '%s' updated: %s", name, sorted(changes))
            return {
                "success": True,
                "data": schedule_to_dict(updated),
                "message": f"Schedule '{name}' updated",
            }
        except Exception as e:
            logger.error(f"Update schedule error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def toggle_schedule(active: Optional[bool] = None, name: str = SCHEDULE_NAME):
        """Enable or disable the schedule. Flips the flag when `active` is None."""
        try:
            store = ScheduleStore()
            current = store.get_schedule(name)
            if not current:
                return {"success": False, "error": f"Schedule '{name}' not found"}
            active = (not current.is_active) if active is None else bool(active)
            store.update_settings(name, {"is_active": active})
            logger.info("[SCHEDULER] Schedule '%s' %s", name, "enabled" if active else "disabled")
            return {
                "success": True,
                "schedule_name": name,
                "is_active": active,
                "message": f"Schedule '{name}' {'enabled' if active else 'disabled'}",
            }
        except Exception as e:
            logger.error(f"Toggle schedule error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def get_status(name: str = SCHEDULE_NAME, now=None):
        """Explain whether the schedule would fire right now, and when it fires next."""
        try:
            config = ScheduleStore().get_schedule(name)
            if not config:
                return {"success": False, "error": f"Schedule '{name}' not found"}

            now = as_utc(now or utc_now())
            decision = evaluate(config, now)
            upcoming = next_run_at(config, now)
            until = None
            if upcoming is not None:
                seconds = max(int((upcoming - now).total_seconds()), 0)
                until = {"seconds": seconds, "human": _humanize_seconds(seconds)}

            last_result = config.last_run_result or {}
            return {
                "success": True,
                "data": {
                    "schedule_name": name,
                    "is_active": config.is_active,
                    "schedule_description": describe_schedule(config),
                    "current_time": _iso(decision.local_now) or now.isoformat(),
                    "should_run_now": decision.due,
                    "reason": decision.reason,
                    "configuration_error": decision.error,
                    "last_run_at": _iso(config.last_run_at),
                    "next_run_at": _iso(upcoming),
                    "time_until_next_run": until,
                    "last_run_success": last_result.get("success"),
                    "last_run_error": last_result.get("error"),
                },
            }
        except Exception as e:
            logger.error(f"Schedule status error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def trigger_run(mode: str = RunMode.CATCH_UP.value, trigger: str = "manual", name: str = SCHEDULE_NAME):
        """Run depreciation now and return the full RunResult."""
        try:
            run_mode = RunMode(mode)
        except ValueError:
            allowed = ", ".join(m.value for m in RunMode)
            return {"success": False, "error": f"Invalid mode '{mode}'. Allowed: {allowed}"}

        result = DepreciationRunner(schedule_name=name).run_once(run_mode, trigger=trigger)
        return {"success": result.success, "data": result.to_dict(), "error": result.error}

    @staticmethod
    def get_run_history(limit: int = 10, name: str = SCHEDULE_NAME):
        """Recent depreciation runs, newest first."""
        try:
            runs = RunLogStore().list_runs(limit=limit, schedule_name=name)
            return {"success": True, "data": runs, "count": len(runs)}
        except Exception as e:
            logger.error(f"Run history error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def get_run(run_id: int):
        try:
            run = RunLogStore().get_run(run_id)
            if not run:
                return {"success": False, "error": f"Run {run_id} not found"}
            return {"success": True, "data": run}
        except Exception as e:
            logger.error(f"Get run error: {e}")
            return {"success": False, "error": str(e)}
