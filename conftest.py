from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import fixedassets.stores as stores_module
from fixedassets.models import Asset, Base, DepreciationScheduleSetting


class FakeClock:
    """Settable clock; always returns an aware UTC datetime."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self):
        return self.now

    def set(self, *args):
        self.now = datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def session_factory(monkeypatch):
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    monkeypatch.setattr(stores_module, "SessionLocal", factory)
    yield factory
    engine.dispose()


@pytest.fixture
def add_asset(session_factory):
    counter = {"n": 0}

    def _add(value="600000", useful_life=6, purchase_date=date(2024, 1, 10),
             status="In Use", last_depreciated_period=None, asset_tag=None):
        counter["n"] += 1
        session = session_factory()
        try:
            asset = Asset(
                asset_tag=asset_tag or f"AST-{counter['n']:04d}",
                name=f"Asset {counter['n']}",
                value=Decimal(value),
                useful_life=useful_life,
                purchase_date=purchase_date,
                status=status,
                last_depreciated_period=last_depreciated_period,
            )
            session.add(asset)
            session.commit()
            return asset.id
        finally:
            session.close()

    return _add


@pytest.fixture
def add_schedule(session_factory):
    def _add(name="auto_depreciation", **fields):
        values = {
            "is_active": True,
            "frequency": "daily",
            "execution_time": "00:05",
            "timezone": "Asia/Jakarta",
        }
        values.update(fields)
        session = session_factory()
        try:
            session.add(DepreciationScheduleSetting(name=name, **values))
            session.commit()
        finally:
            session.close()
        return name

    return _add


@pytest.fixture
def clock():
    # 2024-06-15 10:00 in Asia/Jakarta
    return FakeClock(datetime(2024, 6, 15, 3, 0, tzinfo=timezone.utc))
