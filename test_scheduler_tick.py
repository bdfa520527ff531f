from datetime import datetime, timezone
from unittest.mock import MagicMock

from conftest import FakeClock
from fixedassets.models import AssetDepreciation, DepreciationRun, DepreciationScheduleSetting
from fixedassets.scheduler import TICK_JOB_ID, DepreciationScheduler
from fixedassets.stores import RunLogStore, ScheduleStore


def _count(session_factory, model):
    session = session_factory()
    try:
        return session.query(model).count()
    finally:
        session.close()


def _jakarta_midnight_clock():
    # 2024-03-10 00:00 in Asia/Jakarta
    return FakeClock(datetime(2024, 3, 9, 17, 0, tzinfo=timezone.utc))


def test_tick_runs_once_inside_window(add_asset, add_schedule, session_factory):
    add_schedule()
    add_asset()
    clock = _jakarta_midnight_clock()
    tick_source = DepreciationScheduler(clock=clock)

    results = {}
    for minute in (4, 5, 6):
        clock.set(2024, 3, 9, 17, minute)
        results[minute] = tick_source.tick()

    assert results[4] is None
    assert results[6] is None
    assert results[5] is not None
    assert results[5].trigger == "scheduler"
    assert results[5].total_periods_processed == 2
    assert _count(session_factory, AssetDepreciation) == 2
    assert _count(session_factory, DepreciationRun) == 1


def test_restarted_tick_source_does_not_rerun_window(add_asset, add_schedule, session_factory):
    add_schedule()
    add_asset()
    clock = _jakarta_midnight_clock()

    clock.set(2024, 3, 9, 17, 5)
    assert DepreciationScheduler(clock=clock).tick() is not None

    # process restarts within the same window
    clock.set(2024, 3, 9, 17, 6)
    assert DepreciationScheduler(clock=clock).tick() is None
    assert _count(session_factory, DepreciationRun) == 1


def test_claim_window_is_exclusive(add_schedule, session_factory):
    add_schedule()
    store = ScheduleStore()
    window = datetime(2024, 3, 9, 17, 5)

    assert store.claim_window("auto_depreciation", window, datetime(2024, 3, 9, 17, 5, 1)) is True
    assert store.claim_window("auto_depreciation", window, datetime(2024, 3, 9, 17, 5, 2)) is False


def test_claim_window_refused_for_inactive_schedule(add_schedule, session_factory):
    add_schedule(is_active=False)
    assert ScheduleStore().claim_window("auto_depreciation", datetime(2024, 3, 9, 17, 5), datetime(2024, 3, 9, 17, 5)) is False


def test_get_active_schedule_hides_inactive_rows(add_schedule, session_factory):
    add_schedule(is_active=False)
    add_schedule(name="nightly")
    store = ScheduleStore()

    assert store.get_active_schedule("auto_depreciation") is None
    assert store.get_schedule("auto_depreciation").is_active is False
    assert store.get_active_schedule("nightly").name == "nightly"
    assert store.get_active_schedule("missing") is None


def test_misconfigured_schedule_never_runs(add_asset, add_schedule, session_factory):
    add_schedule(timezone="Mars/Olympus")
    add_asset()
    runner = MagicMock()
    clock = _jakarta_midnight_clock()
    clock.set(2024, 3, 9, 17, 5)

    assert DepreciationScheduler(runner=runner, clock=clock).tick() is None
    runner.run_once.assert_not_called()


def test_missing_schedule_row_is_skipped(session_factory):
    runner = MagicMock()
    assert DepreciationScheduler(runner=runner, clock=_jakarta_midnight_clock()).tick() is None
    runner.run_once.assert_not_called()


def test_inactive_schedule_does_not_tick(add_asset, add_schedule, session_factory):
    add_schedule(is_active=False)
    runner = MagicMock()
    clock = _jakarta_midnight_clock()
    clock.set(2024, 3, 9, 17, 5)

    assert DepreciationScheduler(runner=runner, clock=clock).tick() is None
    runner.run_once.assert_not_called()


def test_tick_job_swallows_errors():
    schedules = MagicMock()
    schedules.get_schedule.side_effect = RuntimeError("database unavailable")
    tick_source = DepreciationScheduler(schedules=schedules, runner=MagicMock(), run_log=MagicMock())

    tick_source._tick_job()

    schedules.get_schedule.assert_called_once()


def test_recover_stale_runs_marks_running_as_failed(session_factory):
    session = session_factory()
    try:
        session.add(DepreciationRun(
            schedule_name="auto_depreciation",
            trigger="scheduler",
            mode="catch_up",
            status="running",
            started_at=datetime(2024, 3, 9, 17, 5),
        ))
        session.commit()
    finally:
        session.close()

    assert RunLogStore().recover_stale_runs() == 1

    session = session_factory()
    try:
        run = session.query(DepreciationRun).one()
        assert run.status == "failed"
        assert run.finished_at is not None
    finally:
        session.close()


def test_edited_execution_time_takes_effect_without_restart(add_asset, add_schedule, session_factory):
    add_schedule()
    add_asset()
    clock = _jakarta_midnight_clock()
    tick_source = DepreciationScheduler(clock=clock)

    session = session_factory()
    try:
        row = session.query(DepreciationScheduleSetting).one()
        row.execution_time = "00:08"
        session.commit()
    finally:
        session.close()

    clock.set(2024, 3, 9, 17, 5)
    assert tick_source.tick() is None
    clock.set(2024, 3, 9, 17, 8)
    assert tick_source.tick() is not None


def test_status_before_start():
    status = DepreciationScheduler(schedules=MagicMock(), runner=MagicMock(), run_log=MagicMock()).get_status()
    assert status["running"] is False
    assert status["next_tick"] is None
    assert TICK_JOB_ID == "depreciation_tick"
