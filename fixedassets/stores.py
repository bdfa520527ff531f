"""
SQLAlchemy-backed collaborators of the depreciation engine: asset registry,
ledger, schedule settings and run log.

Every method opens its own short-lived session and returns detached values,
so callers never hold a session across assets or ticks.
"""
import enum
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from core.calculator import to_money
from core.periods import AssetSnapshot, NON_DEPRECIABLE_STATUSES, Period
from core.trigger import ScheduleConfig
from fixedassets.database import SessionLocal
from fixedassets.models import Asset, AssetDepreciation, DepreciationRun, DepreciationScheduleSetting

logger = logging.getLogger(__name__)


class RecordOutcome(str, enum.Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to the naive UTC form stored in DateTime columns."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def asset_snapshot(row: Asset) -> AssetSnapshot:
    marker = None
    invalid_marker = None
    if row.last_depreciated_period:
        try:
            marker = Period.parse(row.last_depreciated_period)
        except ValueError:
            invalid_marker = row.last_depreciated_period
    return AssetSnapshot(
        id=row.id,
        asset_tag=row.asset_tag,
        name=row.name,
        value=Decimal(row.value) if row.value is not None else None,
        purchase_date=row.purchase_date,
        useful_life=row.useful_life,
        status=row.status,
        last_depreciated_period=marker,
        invalid_marker=invalid_marker,
    )


def schedule_config(row: DepreciationScheduleSetting) -> ScheduleConfig:
    return ScheduleConfig(
        id=row.id,
        name=row.name,
        is_active=bool(row.is_active),
        frequency=row.frequency,
        execution_time=row.execution_time,
        timezone=row.timezone,
        day_of_week=row.day_of_week,
        day_of_month=row.day_of_month,
        cron_expression=row.cron_expression,
        last_run_at=row.last_run_at,
        next_run_at=row.next_run_at,
        last_run_result=row.last_run_result,
        description=row.description,
    )


def _advance_marker(session, asset_id: int, period: Period) -> bool:
    """Move last_depreciated_period forward only; never backward."""
    value = str(period)
    result = session.execute(
        update(Asset)
        .where(
            Asset.id == asset_id,
            or_(Asset.last_depreciated_period.is_(None), Asset.last_depreciated_period < value),
        )
        .values(last_depreciated_period=value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class _Store:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _session(self):
        return (self._session_factory or SessionLocal)()


class AssetRegistry(_Store):
    """Read access to assets plus the last-depreciated-period marker."""

    def list_depreciable_assets(self) -> List[AssetSnapshot]:
        session = self._session()
        try:
            rows = session.query(Asset).filter(
                Asset.status.notin_(NON_DEPRECIABLE_STATUSES)
            ).order_by(Asset.id.asc()).all()
            return [asset_snapshot(row) for row in rows]
        finally:
            session.close()

    def get_asset(self, asset_id: int) -> Optional[AssetSnapshot]:
        session = self._session()
        try:
            row = session.query(Asset).filter(Asset.id == asset_id).first()
            return asset_snapshot(row) if row else None
        finally:
            session.close()

    def advance_last_depreciated_period(self, asset_id: int, period: Period) -> bool:
        session = self._session()
        try:
            moved = _advance_marker(session, asset_id, period)
            session.commit()
            return moved
        finally:
            session.close()

    def count_by_status(self) -> Dict[str, int]:
        session = self._session()
        try:
            rows = session.query(Asset.status, func.count(Asset.id)).group_by(Asset.status).all()
            return {status: count for status, count in rows}
        finally:
            session.close()


class LedgerStore(_Store):
    """Append-only depreciation ledger keyed on (asset, period)."""

    def record_entry(
        self,
        asset_id: int,
        period: Period,
        amount: Decimal,
        *,
        month_sequence: int,
        asset_value: Decimal,
        depreciation_date: date,
    ) -> RecordOutcome:
        """
        Insert one entry and advance the asset marker in the same transaction.

        Accumulated depreciation and book value are summed from the entries
        already recorded for earlier periods, while the insert holds the write
        lock, so a skipped period never shows up in the running totals.

        A duplicate (asset, period) is not an error: the existing entry wins and
        the marker is repaired in case an earlier write stopped halfway.
        """
        session = self._session()
        try:
            entry = AssetDepreciation(
                asset_id=asset_id,
                period=str(period),
                month_sequence=month_sequence,
                depreciation_amount=amount,
                accumulated_depreciation=amount,
                current_value=to_money(asset_value) - amount,
                depreciation_date=depreciation_date,
                computed_at=datetime.utcnow(),
            )
            session.add(entry)
            session.flush()

            prior = session.query(
                func.coalesce(func.sum(AssetDepreciation.depreciation_amount), 0)
            ).filter(
                AssetDepreciation.asset_id == asset_id,
                AssetDepreciation.period < str(period),
            ).scalar()
            entry.accumulated_depreciation = to_money(prior) + amount
            entry.current_value = to_money(asset_value) - entry.accumulated_depreciation
            _advance_marker(session, asset_id, period)
            session.commit()
            return RecordOutcome.CREATED
        except IntegrityError:
            session.rollback()
            exists = session.query(AssetDepreciation.id).filter(
                AssetDepreciation.asset_id == asset_id,
                AssetDepreciation.period == str(period),
            ).first()
            if not exists:
                raise
            _advance_marker(session, asset_id, period)
            session.commit()
            logger.info("[DEPRECIATION] Entry for asset %s period %s already exists", asset_id, period)
            return RecordOutcome.ALREADY_EXISTS
        finally:
            session.close()

    def list_entries(self, asset_id: int) -> List[Dict[str, Any]]:
        session = self._session()
        try:
            rows = session.query(AssetDepreciation).filter(
                AssetDepreciation.asset_id == asset_id
            ).order_by(AssetDepreciation.month_sequence.asc()).all()
            return [
                {
                    "period": row.period,
                    "month_sequence": row.month_sequence,
                    "depreciation_date": row.depreciation_date.isoformat(),
                    "depreciation_amount": Decimal(row.depreciation_amount),
                    "accumulated_depreciation": Decimal(row.accumulated_depreciation),
                    "current_value": Decimal(row.current_value),
                    "computed_at": str(row.computed_at),
                }
                for row in rows
            ]
        finally:
            session.close()

    def totals(self) -> Dict[str, Any]:
        session = self._session()
        try:
            count, total = session.query(
                func.count(AssetDepreciation.id),
                func.coalesce(func.sum(AssetDepreciation.depreciation_amount), 0),
            ).one()
            return {"entries": count, "total_depreciated": Decimal(str(total))}
        finally:
            session.close()


class ScheduleStore(_Store):
    """Schedule settings rows, read fresh on every call."""

    def get_schedule(self, name: str) -> Optional[ScheduleConfig]:
        session = self._session()
        try:
            row = session.query(DepreciationScheduleSetting).filter(
                DepreciationScheduleSetting.name == name
            ).first()
            return schedule_config(row) if row else None
        finally:
            session.close()

    def get_active_schedule(self, name: str) -> Optional[ScheduleConfig]:
        config = self.get_schedule(name)
        if config is None or not config.is_active:
            return None
        return config

    def claim_window(self, name: str, window_start: datetime, claimed_at: datetime) -> bool:
        """
        Compare-and-swap on last_run_at. Only one caller per window gets True,
        even with several tick sources polling the same database.
        """
        window_start = naive_utc(window_start)
        session = self._session()
        try:
            result = session.execute(
                update(DepreciationScheduleSetting)
                .where(
                    DepreciationScheduleSetting.name == name,
                    DepreciationScheduleSetting.is_active.is_(True),
                    or_(
                        DepreciationScheduleSetting.last_run_at.is_(None),
                        DepreciationScheduleSetting.last_run_at < window_start,
                    ),
                )
                .values(last_run_at=naive_utc(claimed_at))
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1
        finally:
            session.close()

    def update_run_metadata(
        self,
        name: str,
        last_run_at: Optional[datetime],
        next_run_at: Optional[datetime],
        last_run_result: Optional[Dict[str, Any]],
    ) -> bool:
        session = self._session()
        try:
            row = session.query(DepreciationScheduleSetting).filter(
                DepreciationScheduleSetting.name == name
            ).first()
            if not row:
                return False
            last_run_at = naive_utc(last_run_at)
            if last_run_at is not None and (row.last_run_at is None or last_run_at > row.last_run_at):
                row.last_run_at = last_run_at
            row.next_run_at = naive_utc(next_run_at)
            row.last_run_result = last_run_result
            session.commit()
            return True
        finally:
            session.close()

    def update_settings(self, name: str, changes: Dict[str, Any]) -> Optional[ScheduleConfig]:
        """Apply administrative edits (frequency, time, timezone, active flag...)."""
        session = self._session()
        try:
            row = session.query(DepreciationScheduleSetting).filter(
                DepreciationScheduleSetting.name == name
            ).first()
            if not row:
                return None
            for key, value in changes.items():
                if key in {"last_run_at", "last_run_result", "id", "name"}:
                    continue
                if key == "next_run_at":
                    value = naive_utc(value)
                setattr(row, key, value)
            session.commit()
            return schedule_config(row)
        finally:
            session.close()

    def create_schedule(self, name: str, **fields) -> ScheduleConfig:
        """Insert a schedule row unless one with this name exists."""
        session = self._session()
        try:
            row = session.query(DepreciationScheduleSetting).filter(
                DepreciationScheduleSetting.name == name
            ).first()
            if not row:
                row = DepreciationScheduleSetting(name=name, **fields)
                session.add(row)
                session.commit()
            return schedule_config(row)
        finally:
            session.close()


class RunLogStore(_Store):
    """One DepreciationRun row per coordinator invocation."""

    def start_run(self, schedule_name: str, trigger: str, mode: str, started_at: datetime) -> int:
        session = self._session()
        try:
            run = DepreciationRun(
                schedule_name=schedule_name,
                trigger=trigger,
                mode=mode,
                status="running",
                started_at=naive_utc(started_at),
            )
            session.add(run)
            session.commit()
            return run.id
        finally:
            session.close()

    def finish_run(self, run_id: int, result: Dict[str, Any], finished_at: datetime) -> None:
        session = self._session()
        try:
            run = session.query(DepreciationRun).filter(DepreciationRun.id == run_id).first()
            if not run:
                logger.error("[DEPRECIATION] Run %s not found when finishing", run_id)
                return
            run.finished_at = naive_utc(finished_at)
            run.status = "success" if result.get("success") else "failed"
            run.duration_seconds = round((run.finished_at - run.started_at).total_seconds(), 2)
            run.total_assets = result.get("total_assets")
            run.periods_processed = result.get("total_periods_processed")
            run.failed_assets = result.get("failed_assets")
            run.error = result.get("error")
            run.result = result
            session.commit()
        finally:
            session.close()

    def recover_stale_runs(self) -> int:
        """Close runs left 'running' by a crash or restart."""
        session = self._session()
        try:
            stale_runs = session.query(DepreciationRun).filter(
                DepreciationRun.status == "running",
                DepreciationRun.finished_at.is_(None),
            ).all()

            now = datetime.utcnow()
            for run in stale_runs:
                run.status = "failed"
                run.finished_at = now
                run.error = "Recovered as failed on scheduler startup"

            if stale_runs:
                session.commit()
                logger.warning("[SCHEDULER] Recovered %d stale running depreciation runs", len(stale_runs))
            return len(stale_runs)
        finally:
            session.close()

    def list_runs(self, limit: int = 20, schedule_name: Optional[str] = None) -> List[Dict[str, Any]]:
        session = self._session()
        try:
            query = session.query(DepreciationRun)
            if schedule_name:
                query = query.filter(DepreciationRun.schedule_name == schedule_name)
            runs = query.order_by(DepreciationRun.started_at.desc(), DepreciationRun.id.desc()).limit(limit).all()
            return [self._run_dict(run, include_result=False) for run in runs]
        finally:
            session.close()

    def get_run(self, run_id: int) -> Optional[Dict[str, Any]]:
        session = self._session()
        try:
            run = session.query(DepreciationRun).filter(DepreciationRun.id == run_id).first()
            return self._run_dict(run, include_result=True) if run else None
        finally:
            session.close()

    @staticmethod
    def _run_dict(run: DepreciationRun, include_result: bool) -> Dict[str, Any]:
        data = {
            "id": run.id,
            "schedule_name": run.schedule_name,
            "trigger": run.trigger,
            "mode": run.mode,
            "status": run.status,
            "started_at": str(run.started_at),
            "finished_at": str(run.finished_at) if run.finished_at else None,
            "duration_seconds": run.duration_seconds,
            "total_assets": run.total_assets,
            "periods_processed": run.periods_processed,
            "failed_assets": run.failed_assets,
            "error": run.error,
        }
        if include_result:
            data["result"] = run.result
        return data
