from dataclasses import replace
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from core import trigger as trigger_module
from core.trigger import ScheduleConfig, describe_schedule, evaluate, is_due, next_run_at

JAKARTA = ZoneInfo("Asia/Jakarta")


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _daily(**overrides):
    values = dict(name="auto_depreciation", frequency="daily", execution_time="00:05", timezone="Asia/Jakarta")
    values.update(overrides)
    return ScheduleConfig(**values)


def test_due_exactly_once_when_polled_every_minute():
    config = _daily()
    due_minutes = []
    # 2024-03-10 00:00..00:10 in Jakarta (UTC+7)
    for minute in range(0, 11):
        now = _utc(2024, 3, 9, 17, minute)
        if is_due(config, now):
            due_minutes.append(minute)
            config.last_run_at = now.replace(tzinfo=None)
    assert due_minutes == [5]


def test_not_due_again_after_restart_rereads_last_run():
    persisted_last_run = None
    for minute in range(0, 11):
        # a restart before every tick: only the persisted value survives
        config = _daily(last_run_at=persisted_last_run)
        now = _utc(2024, 3, 9, 17, minute)
        if is_due(config, now):
            assert minute == 5
            persisted_last_run = now.replace(tzinfo=None)
    assert persisted_last_run == datetime(2024, 3, 9, 17, 5)


def test_missed_tick_is_caught_on_next_tick():
    config = _daily()
    assert is_due(config, _utc(2024, 3, 9, 17, 6)) is True


def test_not_due_once_grace_window_passed():
    config = _daily()
    assert is_due(config, _utc(2024, 3, 9, 17, 7)) is False


def test_grace_window_follows_configuration(monkeypatch):
    monkeypatch.setattr(trigger_module, "MISFIRE_GRACE_SECONDS", 0)
    config = _daily()
    assert is_due(config, _utc(2024, 3, 9, 17, 5, 30)) is True
    assert is_due(config, _utc(2024, 3, 9, 17, 6)) is False


def test_previous_day_run_does_not_block_today():
    config = _daily(last_run_at=datetime(2024, 3, 8, 17, 5))
    assert is_due(config, _utc(2024, 3, 9, 17, 5)) is True


def test_inactive_schedule_is_never_due():
    decision = evaluate(_daily(is_active=False), _utc(2024, 3, 9, 17, 5))
    assert decision.due is False
    assert decision.reason == "Schedule is inactive"


@pytest.mark.parametrize("overrides,fragment", [
    ({"timezone": "Mars/Olympus"}, "Unknown timezone"),
    ({"timezone": ""}, "Timezone is not set"),
    ({"execution_time": "25:99"}, "execution_time"),
    ({"execution_time": "noon"}, "execution_time"),
    ({"frequency": "hourly"}, "Unknown frequency"),
    ({"frequency": "weekly", "day_of_week": None}, "day_of_week"),
    ({"frequency": "monthly", "day_of_month": 32}, "day_of_month"),
    ({"frequency": "custom", "cron_expression": "not a cron"}, "cron_expression"),
])
def test_misconfiguration_fails_closed(overrides, fragment):
    decision = evaluate(_daily(**overrides), _utc(2024, 3, 9, 17, 5))
    assert decision.due is False
    assert fragment in decision.error


def test_execution_time_with_seconds():
    config = _daily(execution_time="00:05:30")
    assert is_due(config, _utc(2024, 3, 9, 17, 5)) is False
    assert is_due(config, _utc(2024, 3, 9, 17, 6)) is True


def test_edit_to_execution_time_applies_on_next_tick():
    config = _daily(next_run_at=datetime(2024, 3, 9, 17, 5))
    edited = replace(config, execution_time="00:08")
    assert is_due(edited, _utc(2024, 3, 9, 17, 5)) is False
    assert is_due(edited, _utc(2024, 3, 9, 17, 8)) is True


def test_window_crossing_midnight():
    config = _daily(execution_time="23:59", timezone="UTC")
    assert is_due(config, _utc(2024, 3, 10, 0, 0)) is True


def test_weekly_runs_only_on_configured_weekday():
    # 2024-03-11 is a Monday
    config = _daily(frequency="weekly", day_of_week=1, execution_time="08:00", timezone="UTC")
    assert is_due(config, _utc(2024, 3, 11, 8, 0)) is True
    assert is_due(config, _utc(2024, 3, 12, 8, 0)) is False


def test_weekly_sunday_is_zero():
    config = _daily(frequency="weekly", day_of_week=0, execution_time="08:00", timezone="UTC")
    assert is_due(config, _utc(2024, 3, 10, 8, 0)) is True


def test_monthly_day_clamped_to_short_month():
    config = _daily(frequency="monthly", day_of_month=31, execution_time="09:30", timezone="UTC")
    assert is_due(config, _utc(2024, 2, 29, 9, 30)) is True
    assert is_due(config, _utc(2024, 2, 28, 9, 30)) is False
    assert is_due(config, _utc(2024, 3, 31, 9, 30)) is True
    assert is_due(config, _utc(2024, 3, 30, 9, 30)) is False


def test_custom_cron_schedule():
    config = _daily(frequency="custom", cron_expression="*/15 * * * *", timezone="UTC", execution_time=None)
    assert is_due(config, _utc(2024, 3, 11, 10, 15)) is True
    assert is_due(config, _utc(2024, 3, 11, 10, 16, 30)) is True
    assert is_due(config, _utc(2024, 3, 11, 10, 20)) is False

    config.last_run_at = datetime(2024, 3, 11, 10, 15)
    assert is_due(config, _utc(2024, 3, 11, 10, 16)) is False


def test_decision_exposes_window_start_as_naive_utc():
    decision = evaluate(_daily(), _utc(2024, 3, 9, 17, 5, 20))
    assert decision.due is True
    assert decision.window_start == datetime(2024, 3, 9, 17, 5)
    assert decision.local_now.tzinfo is not None
    assert decision.to_dict()["scheduled_at"] == "2024-03-10T00:05:00+07:00"


def test_naive_now_is_treated_as_utc():
    assert is_due(_daily(), datetime(2024, 3, 9, 17, 5)) is True


def test_next_run_at_daily():
    upcoming = next_run_at(_daily(), _utc(2024, 3, 9, 17, 6))
    assert upcoming == datetime(2024, 3, 11, 0, 5, tzinfo=JAKARTA)


def test_next_run_at_before_todays_instant():
    upcoming = next_run_at(_daily(), _utc(2024, 3, 9, 17, 0))
    assert upcoming == datetime(2024, 3, 10, 0, 5, tzinfo=JAKARTA)


def test_next_run_at_monthly_skips_to_next_month():
    config = _daily(frequency="monthly", day_of_month=15, execution_time="13:15", timezone="UTC")
    assert next_run_at(config, _utc(2024, 3, 16, 0, 0)) == _utc(2024, 4, 15, 13, 15)


def test_next_run_at_custom():
    config = _daily(frequency="custom", cron_expression="0 6 * * *", timezone="UTC")
    assert next_run_at(config, _utc(2024, 3, 11, 6, 0)) == _utc(2024, 3, 12, 6, 0)


def test_next_run_at_none_for_invalid_schedule():
    assert next_run_at(_daily(timezone="Nowhere/Land"), _utc(2024, 3, 9, 0, 0)) is None


@pytest.mark.parametrize("overrides,expected", [
    ({}, "Every day at 00:05 (Asia/Jakarta)"),
    ({"frequency": "weekly", "day_of_week": 1, "execution_time": "08:00:00"}, "Every Monday at 08:00 (Asia/Jakarta)"),
    ({"frequency": "monthly", "day_of_month": 15, "execution_time": "13:15"}, "Every month on day 15 at 13:15 (Asia/Jakarta)"),
    ({"frequency": "custom", "cron_expression": "*/15 * * * *"}, "Custom: */15 * * * * (Asia/Jakarta)"),
])
def test_describe_schedule(overrides, expected):
    assert describe_schedule(_daily(**overrides)) == expected


def test_describe_schedule_reports_invalid_configuration():
    assert describe_schedule(_daily(timezone="Bad/Zone")).startswith("Invalid schedule")
