"""
SQLAlchemy models for assets, the depreciation ledger, schedule settings and run log.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, Date, Numeric,
    Boolean, ForeignKey, UniqueConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


# ============================================================================
# Asset Registry
# ============================================================================

class Asset(Base):
    """A capitalized fixed asset."""
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_tag = Column(String(50), nullable=False, unique=True)    # e.g. IT-2024-0001
    name = Column(String(200), nullable=False)
    category = Column(String(100))
    location = Column(String(200))
    value = Column(Numeric(15, 2), nullable=False, default=0)
    purchase_date = Column(Date)
    useful_life = Column(Integer)                                   # months
    status = Column(String(30), nullable=False, default="In Use")  # In Use, In Repair, Disposed, Lost, Fully Depreciated
    last_depreciated_period = Column(String(7))                     # YYYY-MM
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    depreciations = relationship(
        "AssetDepreciation", back_populates="asset", cascade="all, delete-orphan",
        order_by="AssetDepreciation.month_sequence",
    )

    __table_args__ = (
        Index("ix_assets_status", "status"),
    )

    def __repr__(self):
        return f"<Asset {self.asset_tag} (value={self.value}, life={self.useful_life})>"


class AssetDepreciation(Base):
    """One immutable ledger entry: depreciation recognized for an asset in one month."""
    __tablename__ = "asset_depreciations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(Integer, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False)
    period = Column(String(7), nullable=False)                      # YYYY-MM
    month_sequence = Column(Integer, nullable=False)                # 1 = first month after acquisition
    depreciation_amount = Column(Numeric(15, 2), nullable=False)
    accumulated_depreciation = Column(Numeric(15, 2), nullable=False)
    current_value = Column(Numeric(15, 2), nullable=False)          # book value after this entry
    depreciation_date = Column(Date, nullable=False)
    computed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    asset = relationship("Asset", back_populates="depreciations")

    __table_args__ = (
        UniqueConstraint("asset_id", "period", name="uq_asset_depreciation_period"),
        UniqueConstraint("asset_id", "month_sequence", name="uq_asset_depreciation_sequence"),
        Index("ix_asset_depreciations_date", "depreciation_date"),
    )

    def __repr__(self):
        return f"<AssetDepreciation asset={self.asset_id} period={self.period} amount={self.depreciation_amount}>"


# ============================================================================
# Scheduling
# ============================================================================

class DepreciationScheduleSetting(Base):
    """Database-stored schedule that decides when automatic depreciation runs."""
    __tablename__ = "depreciation_schedule_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)        # e.g. auto_depreciation
    is_active = Column(Boolean, default=True, nullable=False)
    frequency = Column(String(20), nullable=False, default="daily")  # daily, weekly, monthly, custom
    execution_time = Column(String(8), default="00:05")             # HH:MM or HH:MM:SS, local to timezone
    timezone = Column(String(60), default="Asia/Jakarta")
    cron_expression = Column(String(100))                           # custom frequency only
    day_of_week = Column(Integer)                                   # 0 = Sunday
    day_of_month = Column(Integer)                                  # 1-31, clamped to month end
    last_run_at = Column(DateTime)                                  # UTC
    next_run_at = Column(DateTime)                                  # UTC, advisory
    last_run_result = Column(JSON)
    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<DepreciationScheduleSetting {self.name} ({self.frequency} {self.execution_time} {self.timezone})>"


class DepreciationRun(Base):
    """Execution log for one depreciation run."""
    __tablename__ = "depreciation_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    schedule_name = Column(String(100), nullable=False)
    trigger = Column(String(20), default="scheduler")              # scheduler, manual, cli, mcp
    mode = Column(String(30), default="catch_up")                   # catch_up, current_period_only
    status = Column(String(20), default="running")                  # running, success, failed
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime)
    duration_seconds = Column(Float)
    total_assets = Column(Integer)
    periods_processed = Column(Integer)
    failed_assets = Column(Integer)
    error = Column(Text)
    result = Column(JSON)

    __table_args__ = (
        Index("ix_depreciation_runs_status", "schedule_name", "status"),
        Index("ix_depreciation_runs_started", "started_at"),
    )
