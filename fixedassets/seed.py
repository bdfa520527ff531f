#!/usr/bin/env python3
"""
Seed script - Initializes the database, registers the automatic depreciation
schedule and optionally loads a handful of demo assets.
Run with: python -m fixedassets.seed
"""
import argparse
from datetime import date
from decimal import Decimal

from fixedassets.database import init_db, SessionLocal
from fixedassets.models import Asset
from fixedassets.stores import ScheduleStore
from services.depreciation_service import SCHEDULE_NAME


DEFAULT_SCHEDULE = {
    "is_active": True,
    "frequency": "daily",
    "execution_time": "00:05",
    "timezone": "Asia/Jakarta",
    "description": "Automatic monthly depreciation with catch-up of missed periods",
}

DEMO_ASSETS = [
    {
        "asset_tag": "IT-LAP-0001",
        "name": "Laptop Engineering",
        "category": "IT Equipment",
        "location": "Head Office",
        "value": Decimal("18000000.00"),
        "useful_life": 36,
        "months_ago": 7,
    },
    {
        "asset_tag": "FUR-DSK-0001",
        "name": "Standing Desk",
        "category": "Furniture",
        "location": "Head Office",
        "value": Decimal("4500000.00"),
        "useful_life": 60,
        "months_ago": 2,
    },
    {
        "asset_tag": "VEH-CAR-0001",
        "name": "Operational Car",
        "category": "Vehicle",
        "location": "Warehouse",
        "value": Decimal("250000000.00"),
        "useful_life": 96,
        "months_ago": 14,
    },
]


def _months_ago(today: date, months: int) -> date:
    index = today.year * 12 + (today.month - 1) - months
    return date(index // 12, index % 12 + 1, 1)


def seed_schedule(store: ScheduleStore = None):
    store = store or ScheduleStore()
    return store.create_schedule(SCHEDULE_NAME, **DEFAULT_SCHEDULE)


def seed_demo_assets(today: date = None) -> int:
    today = today or date.today()
    session = SessionLocal()
    try:
        created = 0
        for item in DEMO_ASSETS:
            data = dict(item)
            months = data.pop("months_ago")
            if session.query(Asset).filter_by(asset_tag=data["asset_tag"]).first():
                print(f"  → Unchanged: {data['asset_tag']}")
                continue
            session.add(Asset(purchase_date=_months_ago(today, months), status="In Use", **data))
            created += 1
            print(f"  ✓ Registered: {data['asset_tag']} ({data['name']}, life={data['useful_life']} months)")
        session.commit()
        return created
    finally:
        session.close()


def main():
    parser = argparse.ArgumentParser(description="Initialize the depreciation database")
    parser.add_argument(
        "--demo-assets",
        action="store_true",
        help="Also insert a few demo assets with backlog to catch up.",
    )
    args = parser.parse_args()

    print("=" * 60)
    print("  Fixed Assets - Seed Script")
    print("=" * 60)

    print("\n[1/3] Initializing database...")
    init_db()
    print("  ✓ Tables created")

    print("\n[2/3] Registering depreciation schedule...")
    config = seed_schedule()
    print(f"  ✓ {config.name}: {config.frequency} at {config.execution_time} ({config.timezone})")

    if args.demo_assets:
        print("\n[3/3] Loading demo assets...")
        created = seed_demo_assets()
        print(f"  ✓ Demo assets loaded (created={created})")
    else:
        print("\n[3/3] Demo assets skipped (use --demo-assets).")


if __name__ == "__main__":
    main()
