"""
Depreciation Service - generates monthly straight-line depreciation for all
assets, catching up on every period missed while the system was down, and
answers per-asset and fleet-wide depreciation queries.
"""
import enum
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.calculator import compute_amount, depreciation_date, monthly_amount, projected_schedule, to_money
from core.errors import DepreciationDataError, ScheduleConfigError
from core.periods import (
    AssetSnapshot, Period, horizon_period, month_sequence, outstanding_periods, validate_asset,
)
from core.trigger import next_run_at, resolve_timezone, utc_now
from fixedassets.stores import AssetRegistry, LedgerStore, RecordOutcome, RunLogStore, ScheduleStore

logger = logging.getLogger(__name__)

SCHEDULE_NAME = os.environ.get("DEPRECIATION_SCHEDULE_NAME", "auto_depreciation")


class RunMode(str, enum.Enum):
    CATCH_UP = "catch_up"
    CURRENT_PERIOD_ONLY = "current_period_only"


@dataclass
class AssetOutcome:
    asset_id: int
    asset_tag: str
    periods_processed: int = 0
    periods_pending: int = 0
    message: str = ""
    error: Optional[str] = None
    failed_at: Optional[str] = None


@dataclass
class RunResult:
    """Aggregate outcome of one run; persisted as the schedule's last_run_result."""
    mode: str
    trigger: str
    timestamp: str
    timezone: str = "UTC"
    total_assets: int = 0
    total_periods_processed: int = 0
    assets_with_new_entries: int = 0
    failed_assets: int = 0
    details: List[AssetOutcome] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None

    def add(self, outcome: AssetOutcome) -> None:
        self.details.append(outcome)
        self.total_periods_processed += outcome.periods_processed
        if outcome.periods_processed:
            self.assets_with_new_entries += 1
        if outcome.error:
            self.failed_assets += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _schedule_timezone(config) -> str:
    if config is None:
        return "UTC"
    try:
        resolve_timezone(config.timezone)
        return config.timezone
    except ScheduleConfigError:
        return "UTC"


class DepreciationRunner:
    """
    Run coordinator: enumerate assets, resolve outstanding periods, compute and
    record each period, then write the result back to the schedule row.
    """

    def __init__(
        self,
        assets: Optional[AssetRegistry] = None,
        ledger: Optional[LedgerStore] = None,
        schedules: Optional[ScheduleStore] = None,
        run_log: Optional[RunLogStore] = None,
        schedule_name: str = SCHEDULE_NAME,
        clock=utc_now,
    ):
        self.assets = assets or AssetRegistry()
        self.ledger = ledger or LedgerStore()
        self.schedules = schedules or ScheduleStore()
        self.run_log = run_log or RunLogStore()
        self.schedule_name = schedule_name
        self.clock = clock

    def run_once(self, mode: RunMode = RunMode.CATCH_UP, trigger: str = "manual") -> RunResult:
        """Process every depreciable asset. Always returns a RunResult, never raises."""
        mode = RunMode(mode)
        started = time.time()
        now = self.clock()
        result = RunResult(mode=mode.value, trigger=trigger, timestamp=now.isoformat())
        run_id = None

        try:
            config = self.schedules.get_schedule(self.schedule_name)
            result.timezone = _schedule_timezone(config)
            run_id = self.run_log.start_run(self.schedule_name, trigger, mode.value, now)
            as_of = now.astimezone(resolve_timezone(result.timezone)).date()

            assets = self.assets.list_depreciable_assets()
            result.total_assets = len(assets)
            logger.info(
                "[DEPRECIATION] Run started (mode=%s, trigger=%s, assets=%d, as_of=%s)",
                mode.value, trigger, len(assets), as_of,
            )
            for asset in assets:
                result.add(self.process_asset(asset, mode, as_of))

        except Exception as e:
            logger.exception("[DEPRECIATION] Run aborted: %s", e)
            result.success = False
            result.error = str(e)

        logger.info(
            "[DEPRECIATION] Run finished: success=%s, assets=%d, periods=%d, failed=%d, duration=%.1fs",
            result.success, result.total_assets, result.total_periods_processed,
            result.failed_assets, time.time() - started,
        )
        self._persist(result, now, run_id)
        return result

    def process_asset(self, asset: AssetSnapshot, mode: RunMode, as_of: date) -> AssetOutcome:
        """Record every outstanding period of one asset. Data errors stay inside the outcome."""
        outcome = AssetOutcome(asset_id=asset.id, asset_tag=asset.asset_tag)
        period = None
        try:
            periods = outstanding_periods(asset, as_of)
            if mode is RunMode.CURRENT_PERIOD_ONLY:
                periods = periods[-1:]
            outcome.periods_pending = len(periods)

            for period in periods:
                amount = compute_amount(asset, period)
                recorded = self.ledger.record_entry(
                    asset.id,
                    period,
                    amount,
                    month_sequence=month_sequence(asset, period),
                    asset_value=asset.value,
                    depreciation_date=depreciation_date(asset, period),
                )
                if recorded is RecordOutcome.CREATED:
                    outcome.periods_processed += 1
                outcome.periods_pending -= 1

            if not periods:
                outcome.message = "Up to date"
            else:
                outcome.message = f"Processed {outcome.periods_processed} period(s) through {periods[-1]}"
        except DepreciationDataError as e:
            outcome.error = str(e)
            outcome.failed_at = utc_now().isoformat()
            outcome.message = f"Failed at period {period}" if period else "Failed"
            logger.error("[DEPRECIATION] Asset %s (%s) failed: %s", asset.id, asset.asset_tag, e)
        return outcome

    def _persist(self, result: RunResult, now: datetime, run_id: Optional[int]) -> None:
        payload = result.to_dict()
        try:
            config = self.schedules.get_schedule(self.schedule_name)
            upcoming = next_run_at(config, now) if config is not None else None
            if not self.schedules.update_run_metadata(self.schedule_name, now, upcoming, payload):
                logger.warning("[DEPRECIATION] Schedule '%s' not found; run result not stored", self.schedule_name)
            if run_id is not None:
                self.run_log.finish_run(run_id, payload, self.clock())
        except Exception as e:
            logger.exception("[DEPRECIATION] Could not persist run result: %s", e)


def _money(value) -> str:
    return str(to_money(value))


class DepreciationService:
    @staticmethod
    def _status_for(asset: AssetSnapshot, entries: List[Dict[str, Any]], as_of: date) -> Dict[str, Any]:
        validate_asset(asset)
        value = to_money(asset.value)
        accumulated = sum((e["depreciation_amount"] for e in entries), Decimal("0.00"))
        pending = outstanding_periods(asset, as_of)
        horizon = horizon_period(asset)
        depreciated_months = len(entries)
        remaining_months = max(asset.useful_life - depreciated_months, 0)
        fully = asset.status == "Fully Depreciated" or (
            asset.last_depreciated_period is not None and asset.last_depreciated_period >= horizon
        )
        next_period = None
        if not fully and asset.is_depreciable:
            candidate = (asset.last_depreciated_period or Period.containing(asset.purchase_date)).next()
            if candidate <= horizon:
                next_period = candidate
        return {
            "asset_id": asset.id,
            "asset_tag": asset.asset_tag,
            "name": asset.name,
            "status": asset.status,
            "value": _money(value),
            "monthly_depreciation": _money(monthly_amount(asset)),
            "accumulated_depreciation": _money(accumulated),
            "current_value": _money(value - accumulated),
            "useful_life": asset.useful_life,
            "depreciated_months": depreciated_months,
            "remaining_months": remaining_months,
            "pending_months": len(pending),
            "pending_periods": [str(p) for p in pending],
            "completion_percentage": round(depreciated_months * 100.0 / asset.useful_life, 2),
            "last_depreciated_period": str(asset.last_depreciated_period) if asset.last_depreciated_period else None,
            "next_depreciation_date": depreciation_date(asset, next_period).isoformat() if next_period else None,
            "is_fully_depreciated": fully,
        }

    @staticmethod
    def get_asset_summary(asset_id: int, as_of: Optional[date] = None):
        """Depreciation status and history for one asset."""
        try:
            asset = AssetRegistry().get_asset(asset_id)
            if not asset:
                return {"success": False, "error": f"Asset {asset_id} not found"}
            entries = LedgerStore().list_entries(asset_id)
            data = DepreciationService._status_for(asset, entries, as_of or date.today())
            data["history"] = [
                {**e, **{k: _money(e[k]) for k in ("depreciation_amount", "accumulated_depreciation", "current_value")}}
                for e in entries
            ]
            return {"success": True, "data": data}
        except DepreciationDataError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"Asset depreciation summary error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def preview_asset(asset_id: int):
        """Projected schedule of the periods not yet recorded, without saving anything."""
        try:
            asset = AssetRegistry().get_asset(asset_id)
            if not asset:
                return {"success": False, "error": f"Asset {asset_id} not found"}
            start = asset.last_depreciated_period.next() if asset.last_depreciated_period else None
            rows = projected_schedule(asset, start=start) if asset.is_depreciable else []
            for row in rows:
                for key in ("depreciation_amount", "accumulated_depreciation", "current_value"):
                    row[key] = _money(row[key])
            return {
                "success": True,
                "asset_id": asset.id,
                "asset_tag": asset.asset_tag,
                "data": rows,
                "count": len(rows),
            }
        except DepreciationDataError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"Depreciation preview error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def generate_for_asset(asset_id: int, mode: str = RunMode.CATCH_UP.value):
        """Record outstanding periods for a single asset outside the scheduled run."""
        try:
            asset = AssetRegistry().get_asset(asset_id)
            if not asset:
                return {"success": False, "error": f"Asset {asset_id} not found"}
            runner = DepreciationRunner()
            config = runner.schedules.get_schedule(runner.schedule_name)
            tz = resolve_timezone(_schedule_timezone(config))
            outcome = runner.process_asset(asset, RunMode(mode), utc_now().astimezone(tz).date())
            return {"success": outcome.error is None, "data": asdict(outcome), "error": outcome.error}
        except ValueError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            logger.error(f"Generate asset depreciation error: {e}")
            return {"success": False, "error": str(e)}

    @staticmethod
    def get_system_summary(as_of: Optional[date] = None):
        """Fleet-wide counts: assets, pending months and total depreciated."""
        try:
            as_of = as_of or date.today()
            registry = AssetRegistry()
            by_status = registry.count_by_status()
            assets = registry.list_depreciable_assets()
            with_pending = 0
            total_pending = 0
            invalid = []
            for asset in assets:
                try:
                    pending = len(outstanding_periods(asset, as_of))
                except DepreciationDataError as e:
                    invalid.append({"asset_id": asset.id, "asset_tag": asset.asset_tag, "error": str(e)})
                    continue
                if pending:
                    with_pending += 1
                    total_pending += pending
            totals = LedgerStore().totals()
            return {
                "success": True,
                "data": {
                    "total_assets": sum(by_status.values()),
                    "assets_by_status": by_status,
                    "depreciable_assets": len(assets),
                    "assets_with_pending": with_pending,
                    "total_pending_months": total_pending,
                    "invalid_assets": invalid,
                    "ledger_entries": totals["entries"],
                    "total_depreciated": _money(totals["total_depreciated"]),
                    "as_of": as_of.isoformat(),
                },
            }
        except Exception as e:
            logger.error(f"System depreciation summary error: {e}")
            return {"success": False, "error": str(e)}
