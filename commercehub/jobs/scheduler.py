"""
Ingest Scheduler - Periodic aggregate refresh, daily reconciliation and one-shot resync jobs
"""
from datetime import datetime, date, timedelta
from typing import Optional
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from commercehub.core.config import settings
from commercehub.core.database import SessionLocal
from commercehub.integrations.registry import SourceRegistry
from commercehub.services.aggregate_service import AggregateRefresher
from commercehub.services.reconciliation_service import ReconciliationService
from commercehub.services.resync_service import resync_day

logger = logging.getLogger(__name__)

# Global scheduler instance
_scheduler = None


class IngestScheduler:
    """
    Manages scheduled jobs for the ingestion core.
    Resync jobs are queued one-shot so reconciliation never calls ingestion directly.
    """

    def __init__(self, sources: SourceRegistry):
        self.sources = sources
        self.scheduler = AsyncIOScheduler()
        self.is_running = False

    def start(self):
        """Start the scheduler"""
        if self.is_running:
            return
        self.scheduler.start()
        self.is_running = True

        self.scheduler.add_job(
            func=self._refresh_aggregates,
            trigger=IntervalTrigger(minutes=settings.AGGREGATE_REFRESH_MINUTES),
            id="refresh_aggregates",
            name="Refresh kpi_daily",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.add_job(
            func=self._run_reconciliation,
            trigger=CronTrigger(hour=settings.RECONCILE_HOUR, minute=0),
            id="daily_reconciliation",
            name="Daily reconciliation",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(
            f"Ingest scheduler started: aggregates every {settings.AGGREGATE_REFRESH_MINUTES}m, "
            f"reconciliation at {settings.RECONCILE_HOUR:02d}:00"
        )

    def stop(self):
        """Stop the scheduler"""
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Ingest scheduler stopped")

    def dispatch_resync(self, source: str, day: date) -> str:
        """Queue a one-day resync and return immediately"""
        job_id = f"resync_{source}_{day.isoformat()}"
        self.scheduler.add_job(
            func=self._run_resync,
            trigger="date",
            run_date=datetime.now(),
            id=job_id,
            kwargs={"source": source, "day": day},
            replace_existing=True,
        )
        logger.info(f"Queued resync job {job_id}")
        return job_id

    async def _run_resync(self, source: str, day: date):
        db = SessionLocal()
        try:
            result = await resync_day(db, self.sources, source, day)
            logger.info(f"Resync job finished {source} {day}: {result['results']}")
        except Exception as e:
            logger.error(f"Resync job failed {source} {day}: {e}")
        finally:
            db.close()

    def _refresh_aggregates(self):
        db = SessionLocal()
        try:
            AggregateRefresher(db).refresh()
        except Exception as e:
            logger.error(f"Aggregate refresh failed: {e}")
        finally:
            db.close()

    async def _run_reconciliation(self):
        db = SessionLocal()
        try:
            end = datetime.utcnow().date() - timedelta(days=1)
            start = end - timedelta(days=settings.RECONCILE_LOOKBACK_DAYS - 1)
            service = ReconciliationService(
                db,
                self.sources,
                dispatcher=self.dispatch_resync if settings.RECONCILE_AUTO_FIX else None,
            )
            report = await service.run(start, end, auto_fix=settings.RECONCILE_AUTO_FIX)
            if report.integrity and not report.integrity.ok:
                logger.critical(f"Integrity violation found by daily reconciliation: {report.integrity.to_dict()}")
            logger.info(
                f"Daily reconciliation {start}..{end}: {len(report.mismatches)} mismatches, "
                f"{len(report.errors)} errors, {len(report.dispatched)} resyncs queued"
            )
        except Exception as e:
            logger.error(f"Daily reconciliation failed: {e}")
        finally:
            db.close()


# ========== Global Functions ==========

def get_scheduler() -> Optional[IngestScheduler]:
    """Running scheduler, if any"""
    return _scheduler


def start_scheduler(sources: SourceRegistry) -> IngestScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = IngestScheduler(sources)
    _scheduler.start()
    return _scheduler


def stop_scheduler():
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None
