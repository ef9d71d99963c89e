"""
Historical backfill - Checkpointed, resumable ingestion per source

Usage:
    python scripts/backfill.py --source shopify --start 2024-01-01 --end 2024-03-31
    python scripts/backfill.py --days 30            # all sources, last 30 days
"""
import asyncio
import logging
import argparse
import sys
from datetime import date, datetime, timedelta

from commercehub.core import settings, SessionLocal, engine, Base
from commercehub.core.errors import IngestError
from commercehub.core.logging_config import setup_logging
from commercehub.integrations.registry import build_source_registry, SOURCE_NAMES
from commercehub.services.aggregate_service import AggregateRefresher
from commercehub.services.backfill_service import BackfillOrchestrator

logger = logging.getLogger("backfill")


async def backfill_source(sources, name: str, start: date, end: date, window_days: int, resume: bool):
    # One session per source so sources can run side by side
    db = SessionLocal()
    try:
        orchestrator = BackfillOrchestrator(db, sources[name], window_days=window_days)
        stats = await orchestrator.run(start, end, resume=resume)
        logger.info(f"[{name}] {stats.to_dict()}")
        return True
    except IngestError as e:
        logger.error(f"[{name}] Backfill aborted: {e}")
        return False
    finally:
        db.close()


async def main():
    parser = argparse.ArgumentParser(description="Backfill orders and bookings into the warehouse")
    parser.add_argument("--source", type=str, default="all", choices=list(SOURCE_NAMES) + ["all"])
    parser.add_argument("--start", type=str, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=str, help="End date (YYYY-MM-DD), default yesterday")
    parser.add_argument("--days", type=int, default=settings.BACKFILL_LOOKBACK_DAYS, help="Days to look back when --start is omitted")
    parser.add_argument("--window-days", type=int, default=settings.BACKFILL_WINDOW_DAYS)
    parser.add_argument("--no-resume", action="store_true", help="Ignore checkpoints and start from --start")
    parser.add_argument("--skip-aggregates", action="store_true")
    args = parser.parse_args()

    setup_logging(log_file="backfill.log")
    Base.metadata.create_all(bind=engine)

    end = datetime.strptime(args.end, "%Y-%m-%d").date() if args.end else datetime.utcnow().date() - timedelta(days=1)
    start = datetime.strptime(args.start, "%Y-%m-%d").date() if args.start else end - timedelta(days=args.days - 1)
    names = list(SOURCE_NAMES) if args.source == "all" else [args.source]

    logger.info(f"Backfill range: {start} to {end} for {', '.join(names)}")

    sources = build_source_registry(settings)
    try:
        results = await asyncio.gather(*[
            backfill_source(sources, name, start, end, args.window_days, not args.no_resume)
            for name in names
        ])
    finally:
        await sources.aclose()

    if not args.skip_aggregates and any(results):
        db = SessionLocal()
        try:
            AggregateRefresher(db).refresh()
        finally:
            db.close()

    if not all(results):
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
