"""
Reconciliation - Compare source totals with the warehouse and check integrity

Exit codes: 0 all match, 1 mismatches or source errors, 2 integrity violation.
"""
import asyncio
import logging
import argparse
import sys
from datetime import datetime, timedelta

from commercehub.core import settings, SessionLocal
from commercehub.core.logging_config import setup_logging
from commercehub.integrations.registry import build_source_registry, SOURCE_NAMES
from commercehub.services.reconciliation_service import ReconciliationService, ReconciliationReport
from commercehub.services.resync_service import HttpResyncDispatcher, resync_day

logger = logging.getLogger("reconcile")


def print_report(report: ReconciliationReport):
    print()
    print(f"{'SOURCE':<10} {'DATE':<12} {'STATUS':<9} {'SRC#':>6} {'WH#':>6} {'SRC REV':>12} {'WH REV':>12} {'DIFF':>10}")
    print("-" * 82)
    for r in report.results:
        print(
            f"{r.source:<10} {r.start_date.isoformat():<12} {r.status:<9} {r.source_count:>6} "
            f"{r.warehouse_count:>6} {r.source_revenue:>12} {r.warehouse_revenue:>12} {r.revenue_diff:>10}"
        )
        if r.error:
            print(f"    error: {r.error}")
    print("-" * 82)
    print(f"Mismatches: {len(report.mismatches)}  Errors: {len(report.errors)}  Resyncs dispatched: {len(report.dispatched)}")
    if report.integrity:
        print(f"Integrity: {'OK' if report.integrity.ok else 'VIOLATION'} {report.integrity.to_dict()}")


async def main():
    parser = argparse.ArgumentParser(description="Reconcile sources against the warehouse")
    parser.add_argument("--days", type=int, default=settings.RECONCILE_LOOKBACK_DAYS, help="Days to look back")
    parser.add_argument("--platform", type=str, choices=list(SOURCE_NAMES), help="Specific source")
    parser.add_argument("--fix", action="store_true", help="Resync mismatched days")
    parser.add_argument("--remote", action="store_true", help="Dispatch resyncs to the running API instead of in process")
    args = parser.parse_args()

    setup_logging(log_file="reconcile.log")

    end = datetime.utcnow().date() - timedelta(days=1)
    start = end - timedelta(days=args.days - 1)
    logger.info(f"Reconciliation range: {start} to {end}")

    sources = build_source_registry(settings)
    db = SessionLocal()
    try:
        if args.remote:
            dispatcher = HttpResyncDispatcher()
        else:
            async def dispatcher(source, day):
                resync_db = SessionLocal()
                try:
                    return await resync_day(resync_db, sources, source, day)
                finally:
                    resync_db.close()

        service = ReconciliationService(db, sources, dispatcher=dispatcher if args.fix else None)
        report = await service.run(
            start, end, sources=[args.platform] if args.platform else None, auto_fix=args.fix,
        )
    finally:
        db.close()
        await sources.aclose()

    print_report(report)
    if args.fix and report.dispatched:
        print("Re-run without --fix to confirm the resynced days now match.")

    if report.integrity and not report.integrity.ok:
        sys.exit(2)
    if report.mismatches or report.errors:
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
