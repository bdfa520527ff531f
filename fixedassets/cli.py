#!/usr/bin/env python3
"""
Command line entry points for operators and external cron.

    python -m fixedassets.cli run [--mode catch_up|current_period_only]
    python -m fixedassets.cli check-schedule [--trigger]
    python -m fixedassets.cli tick
"""
import argparse
import json
import logging
import os
import sys

from fixedassets.database import init_db
from fixedassets.scheduler import scheduler
from services.depreciation_service import RunMode
from services.schedule_service import ScheduleService

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


def _print_result(result: dict) -> None:
    data = result.get("data") or {}
    print(f"  Success:            {data.get('success')}")
    print(f"  Assets considered:  {data.get('total_assets')}")
    print(f"  Periods processed:  {data.get('total_periods_processed')}")
    print(f"  Assets updated:     {data.get('assets_with_new_entries')}")
    print(f"  Assets failed:      {data.get('failed_assets')}")
    if data.get("error"):
        print(f"  Error:              {data['error']}")
    for detail in data.get("details", []):
        if detail.get("error"):
            print(f"    ⚠️  {detail['asset_tag']}: {detail['error']}")
        elif detail.get("periods_processed"):
            print(f"    ✓ {detail['asset_tag']}: {detail['message']}")


def cmd_run(args) -> int:
    print(f"Generating depreciation (mode={args.mode})...")
    result = ScheduleService.trigger_run(mode=args.mode, trigger="cli")
    if result.get("data") is None:
        print(f"  ✗ {result.get('error')}")
        return 2
    _print_result(result)
    if args.json:
        print(json.dumps(result["data"], indent=2, default=str))
    return 0 if result["success"] else 1


def cmd_check_schedule(args) -> int:
    status = ScheduleService.get_status()
    if not status["success"]:
        print(f"  ✗ {status['error']}")
        return 2

    data = status["data"]
    print("=" * 60)
    print("  Depreciation Schedule")
    print("=" * 60)
    print(f"  Schedule:         {data['schedule_description']}")
    print(f"  Active:           {data['is_active']}")
    print(f"  Current time:     {data['current_time']}")
    print(f"  Should run now:   {data['should_run_now']} ({data['reason']})")
    if data.get("configuration_error"):
        print(f"  Config error:     {data['configuration_error']}")
    print(f"  Last run at:      {data['last_run_at'] or 'never'}")
    print(f"  Next run at:      {data['next_run_at'] or '-'}")
    if data.get("time_until_next_run"):
        print(f"  Time until next:  {data['time_until_next_run']['human']}")

    if args.trigger:
        print("\nTriggering a catch-up run now...")
        result = ScheduleService.trigger_run(mode=RunMode.CATCH_UP.value, trigger="cli")
        _print_result(result)
        return 0 if result["success"] else 1
    return 0


def cmd_tick(args) -> int:
    result = scheduler.tick()
    if result is None:
        print("Not due.")
        return 0
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fixedassets", description="Asset depreciation engine")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Generate depreciation for all assets now")
    run.add_argument(
        "--mode",
        choices=[m.value for m in RunMode],
        default=RunMode.CATCH_UP.value,
        help="catch_up records every missed period; current_period_only records only the latest.",
    )
    run.add_argument("--json", action="store_true", help="Also print the full run result as JSON.")
    run.set_defaults(func=cmd_run)

    check = sub.add_parser("check-schedule", help="Show schedule configuration and whether it is due")
    check.add_argument("--trigger", action="store_true", help="Run a catch-up immediately after checking.")
    check.set_defaults(func=cmd_check_schedule)

    tick = sub.add_parser("tick", help="Run one scheduler tick (for use from an external cron)")
    tick.set_defaults(func=cmd_tick)
    return parser


def main(argv=None) -> int:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args(argv)
    init_db()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
