"""
Trigger evaluation for database-stored depreciation schedules.

The schedule row is passed in on every call and nothing is cached between
calls, so edits to frequency/time/timezone apply on the next tick.
"""
import calendar
import logging
import os
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from core.errors import ScheduleConfigError

logger = logging.getLogger(__name__)

TICK_SECONDS = int(os.environ.get("DEPRECIATION_TICK_SECONDS", "60"))
MISFIRE_GRACE_SECONDS = int(os.environ.get("DEPRECIATION_MISFIRE_GRACE_SECONDS", "60"))

FREQUENCIES = ("daily", "weekly", "monthly", "custom")
DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


@dataclass
class ScheduleConfig:
    """Detached copy of one depreciation schedule row."""
    name: str
    is_active: bool = True
    frequency: str = "daily"
    execution_time: Optional[str] = "00:05"
    timezone: Optional[str] = "UTC"
    day_of_week: Optional[int] = None          # 0 = Sunday
    day_of_month: Optional[int] = None
    cron_expression: Optional[str] = None
    last_run_at: Optional[datetime] = None     # naive UTC
    next_run_at: Optional[datetime] = None     # advisory only
    last_run_result: Optional[Dict[str, Any]] = None
    description: Optional[str] = None
    id: Optional[int] = None


@dataclass
class TriggerDecision:
    due: bool
    reason: str
    scheduled_at: Optional[datetime] = None
    local_now: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def window_start(self) -> Optional[datetime]:
        """Scheduled instant as naive UTC, the form last_run_at is stored in."""
        if self.scheduled_at is None:
            return None
        return self.scheduled_at.astimezone(timezone.utc).replace(tzinfo=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "due": self.due,
            "reason": self.reason,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "local_now": self.local_now.isoformat() if self.local_now else None,
            "error": self.error,
        }


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are treated as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def due_window() -> timedelta:
    return timedelta(seconds=TICK_SECONDS + MISFIRE_GRACE_SECONDS)


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    if not name:
        raise ScheduleConfigError("Timezone is not set")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleConfigError(f"Unknown timezone '{name}'") from e


def parse_execution_time(value: Any) -> time:
    """Accept 'HH:MM', 'HH:MM:SS' or a time object."""
    if isinstance(value, time):
        return value
    m = TIME_RE.match(str(value or "").strip())
    if not m:
        raise ScheduleConfigError(f"Malformed execution_time '{value}'. Expected HH:MM or HH:MM:SS")
    hour, minute, second = int(m.group(1)), int(m.group(2)), int(m.group(3) or 0)
    if hour > 23 or minute > 59 or second > 59:
        raise ScheduleConfigError(f"Malformed execution_time '{value}'. Out of range")
    return time(hour, minute, second)


def build_cron_trigger(expression: Optional[str], tz_name: str) -> CronTrigger:
    if not expression or not expression.strip():
        raise ScheduleConfigError("Custom frequency requires a cron_expression")
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone=tz_name)
    except ValueError as e:
        raise ScheduleConfigError(f"Invalid cron_expression '{expression}': {e}") from e


def validate_schedule(config: ScheduleConfig) -> ZoneInfo:
    """Check every field the evaluator depends on. Returns the resolved zone."""
    tz = resolve_timezone(config.timezone)
    if config.frequency not in FREQUENCIES:
        raise ScheduleConfigError(
            f"Unknown frequency '{config.frequency}'. Allowed: {', '.join(FREQUENCIES)}"
        )
    if config.frequency == "custom":
        build_cron_trigger(config.cron_expression, config.timezone)
        return tz

    parse_execution_time(config.execution_time)
    if config.frequency == "weekly":
        if config.day_of_week is None or not 0 <= int(config.day_of_week) <= 6:
            raise ScheduleConfigError("Weekly frequency requires day_of_week between 0 (Sunday) and 6")
    if config.frequency == "monthly":
        if config.day_of_month is None or not 1 <= int(config.day_of_month) <= 31:
            raise ScheduleConfigError("Monthly frequency requires day_of_month between 1 and 31")
    return tz


def _runs_on(config: ScheduleConfig, day: date) -> bool:
    if config.frequency == "daily":
        return True
    if config.frequency == "weekly":
        return (day.weekday() + 1) % 7 == int(config.day_of_week)
    if config.frequency == "monthly":
        last = calendar.monthrange(day.year, day.month)[1]
        return day.day == min(int(config.day_of_month), last)
    return False


def _instant(config: ScheduleConfig, day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, parse_execution_time(config.execution_time), tzinfo=tz)


def _window_start(config: ScheduleConfig, tz: ZoneInfo, local_now: datetime) -> Optional[datetime]:
    """Latest scheduled instant whose due window still contains `local_now`."""
    window = due_window()
    now_utc = local_now.astimezone(timezone.utc)

    if config.frequency == "custom":
        cron = build_cron_trigger(config.cron_expression, config.timezone)
        latest = None
        fire = cron.get_next_fire_time(None, local_now - window + timedelta(microseconds=1))
        while fire is not None and fire.astimezone(timezone.utc) <= now_utc:
            latest = fire
            fire = cron.get_next_fire_time(None, fire + timedelta(seconds=1))
        return latest.astimezone(tz) if latest else None

    for day in (local_now.date(), local_now.date() - timedelta(days=1)):
        if not _runs_on(config, day):
            continue
        scheduled = _instant(config, day, tz)
        scheduled_utc = scheduled.astimezone(timezone.utc)
        if scheduled_utc <= now_utc < scheduled_utc + window:
            return scheduled
    return None


def evaluate(config: ScheduleConfig, now: Optional[datetime] = None) -> TriggerDecision:
    """Decide whether `config` is due at `now`, with the reason."""
    if not config.is_active:
        return TriggerDecision(False, "Schedule is inactive")

    try:
        tz = validate_schedule(config)
    except ScheduleConfigError as e:
        return TriggerDecision(False, "Schedule is misconfigured", error=str(e))

    local_now = as_utc(now or utc_now()).astimezone(tz)
    scheduled = _window_start(config, tz, local_now)
    if scheduled is None:
        return TriggerDecision(False, "Outside the scheduled window", local_now=local_now)

    last_run = as_utc(config.last_run_at)
    if last_run is not None and last_run >= scheduled.astimezone(timezone.utc):
        return TriggerDecision(
            False,
            f"Already ran for the window starting {scheduled.isoformat()}",
            scheduled_at=scheduled,
            local_now=local_now,
        )

    return TriggerDecision(
        True,
        f"Scheduled for {scheduled.isoformat()}",
        scheduled_at=scheduled,
        local_now=local_now,
    )


def is_due(config: ScheduleConfig, now: Optional[datetime] = None) -> bool:
    return evaluate(config, now).due


def next_run_at(config: ScheduleConfig, now: Optional[datetime] = None) -> Optional[datetime]:
    """Next scheduled instant strictly after `now` (aware, in the schedule's zone)."""
    try:
        tz = validate_schedule(config)
    except ScheduleConfigError as e:
        logger.warning("[SCHEDULER] Cannot compute next run for '%s': %s", config.name, e)
        return None

    local_now = as_utc(now or utc_now()).astimezone(tz)
    now_utc = local_now.astimezone(timezone.utc)

    if config.frequency == "custom":
        cron = build_cron_trigger(config.cron_expression, config.timezone)
        fire = cron.get_next_fire_time(None, local_now + timedelta(microseconds=1))
        return fire.astimezone(tz) if fire else None

    day = local_now.date()
    for _ in range(400):
        if _runs_on(config, day):
            scheduled = _instant(config, day, tz)
            if scheduled.astimezone(timezone.utc) > now_utc:
                return scheduled
        day += timedelta(days=1)
    return None


def describe_schedule(config: ScheduleConfig) -> str:
    """Human readable summary, e.g. 'Every day at 00:05 (Asia/Jakarta)'."""
    try:
        validate_schedule(config)
    except ScheduleConfigError as e:
        return f"Invalid schedule ({e})"

    if config.frequency == "custom":
        return f"Custom: {config.cron_expression.strip()} ({config.timezone})"

    at = parse_execution_time(config.execution_time).strftime("%H:%M")
    if config.frequency == "daily":
        return f"Every day at {at} ({config.timezone})"
    if config.frequency == "weekly":
        return f"Every {DAY_NAMES[int(config.day_of_week)]} at {at} ({config.timezone})"
    return f"Every month on day {int(config.day_of_month)} at {at} ({config.timezone})"
