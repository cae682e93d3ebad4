"""CLI script that marks active loans past their due date as overdue.
Run it from cron (or any scheduler) at whatever cadence the school needs.
Usage: python scripts/sweep_overdue.py [--now 2026-01-31T08:00:00]
"""
import sys
import argparse
import logging
import pathlib
from datetime import datetime
from typing import Optional
# Ensure `backend/` is on sys.path so `schoollib` imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from schoollib.config import settings
from schoollib.database import engine, create_db_and_tables
from schoollib.schemas import naive_utc
from schoollib import services
from schoollib.utils.cache import TTLCache


def main(now: Optional[datetime] = None) -> int:
    """Run one overdue sweep and print how many loans changed.

    `now` defaults to the current UTC time; passing it explicitly is
    useful for replaying a missed run.
    """
    create_db_and_tables()
    with Session(engine) as session:
        # the API process keeps its own cache; entries there expire on their TTL
        svc = services.LoanService(session, TTLCache(default_ttl=settings.CACHE_TTL_SECONDS))
        changed = svc.sweep_overdue(now=naive_utc(now))
    print(f'Marked {changed} loan(s) as overdue')
    return changed


if __name__ == '__main__':
    logging.basicConfig(level=settings.LOG_LEVEL)
    parser = argparse.ArgumentParser()
    parser.add_argument('--now', type=datetime.fromisoformat, help='Reference time (ISO 8601), defaults to now')
    args = parser.parse_args()
    main(now=args.now)
