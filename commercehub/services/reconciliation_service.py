"""
Reconciliation Service - Compare live source totals with warehouse totals and check integrity
"""
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional, List, Dict, Any, Callable, Awaitable, Tuple
import inspect
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from commercehub.core.config import settings
from commercehub.core.errors import SourceError, CriticalIntegrityViolation
from commercehub.core.logging_config import sanitize_message
from commercehub.core.money import ZERO, to_money, money_str
from commercehub.integrations.base import BaseSourceClient, CanonicalOrder
from commercehub.models.audit import AuditStatus, AuditType
from commercehub.models.warehouse import FactOrder, FactOrderLine, FactEvent
from commercehub.services import audit_service

logger = logging.getLogger(__name__)

MATCH = "match"
MISMATCH = "mismatch"
ERROR = "error"

# (source, day) -> fire-and-forget resync command
ResyncDispatcher = Callable[[str, date], Optional[Awaitable[Any]]]


@dataclass
class ReconciliationResult:
    source: str
    start_date: date
    end_date: date
    status: str
    source_count: int = 0
    warehouse_count: int = 0
    source_revenue: Decimal = ZERO
    warehouse_revenue: Decimal = ZERO
    error: Optional[str] = None

    @property
    def count_diff(self) -> int:
        return self.warehouse_count - self.source_count

    @property
    def revenue_diff(self) -> Decimal:
        return self.warehouse_revenue - self.source_revenue

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "status": self.status,
            "source_count": self.source_count,
            "warehouse_count": self.warehouse_count,
            "source_revenue": money_str(self.source_revenue),
            "warehouse_revenue": money_str(self.warehouse_revenue),
            "count_diff": self.count_diff,
            "revenue_diff": money_str(self.revenue_diff),
            "error": self.error,
        }


@dataclass
class IntegrityReport:
    orphan_lines: int = 0
    duplicate_orders: List[str] = field(default_factory=list)
    duplicate_events: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.orphan_lines or self.duplicate_orders or self.duplicate_events)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "orphan_lines": self.orphan_lines,
            "duplicate_orders": self.duplicate_orders,
            "duplicate_events": self.duplicate_events,
        }


@dataclass
class ReconciliationReport:
    results: List[ReconciliationResult] = field(default_factory=list)
    dispatched: List[Tuple[str, date]] = field(default_factory=list)
    integrity: Optional[IntegrityReport] = None

    @property
    def mismatches(self) -> List[ReconciliationResult]:
        return [r for r in self.results if r.status == MISMATCH]

    @property
    def errors(self) -> List[ReconciliationResult]:
        return [r for r in self.results if r.status == ERROR]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "mismatches": len(self.mismatches),
            "errors": len(self.errors),
            "dispatched": [{"source": s, "date": d.isoformat()} for s, d in self.dispatched],
            "integrity": self.integrity.to_dict() if self.integrity else None,
        }


class ReconciliationService:
    """
    Detects drift between each source and the warehouse.
    Auto-fix is opt-in and only dispatches one-shot resync commands; callers re-run
    reconciliation to confirm convergence.
    """

    def __init__(
        self,
        db: Session,
        sources: Dict[str, BaseSourceClient],
        epsilon: Optional[Decimal] = None,
        dispatcher: Optional[ResyncDispatcher] = None,
    ):
        self.db = db
        self.sources = sources
        self.epsilon = epsilon if epsilon is not None else Decimal(settings.RECONCILE_REVENUE_EPSILON)
        self.dispatcher = dispatcher

    # ========== Totals ==========

    @staticmethod
    def record_revenue(record) -> Decimal:
        if isinstance(record, CanonicalOrder):
            return record.net_total
        return record.revenue + record.add_on_sales

    async def source_totals(self, client: BaseSourceClient, start: date, end: date) -> Tuple[int, Decimal]:
        """Re-fetch the live source for the window and total it with the same normalization as ingestion"""
        count = 0
        revenue = ZERO
        seen = set()
        cursor = None
        while True:
            records, cursor = await client.fetch_by_date_range(start, end, cursor)
            for raw in records:
                record = client.normalize(raw)
                if record.external_id in seen:
                    continue
                seen.add(record.external_id)
                count += 1
                revenue += self.record_revenue(record)
            if not cursor:
                break
        return count, to_money(revenue)

    def warehouse_totals(self, client: BaseSourceClient, start: date, end: date) -> Tuple[int, Decimal]:
        lower = datetime.combine(start, time.min)
        upper = datetime.combine(end + timedelta(days=1), time.min)

        if client.RECORD_KIND == "event":
            count, revenue = self.db.query(
                func.count(FactEvent.id),
                func.coalesce(func.sum(FactEvent.revenue + FactEvent.add_on_sales), 0),
            ).filter(
                FactEvent.channel_id == client.SOURCE_NAME,
                FactEvent.starts_at >= lower,
                FactEvent.starts_at < upper,
            ).one()
        else:
            count, revenue = self.db.query(
                func.count(FactOrder.id),
                func.coalesce(func.sum(FactOrder.net_total), 0),
            ).filter(
                FactOrder.channel_id == client.SOURCE_NAME,
                FactOrder.created_at >= lower,
                FactOrder.created_at < upper,
            ).one()
        return int(count or 0), to_money(revenue)

    # ========== Reconcile ==========

    async def reconcile(self, source: str, start: date, end: date) -> ReconciliationResult:
        client = self.sources[source]
        result = ReconciliationResult(source=source, start_date=start, end_date=end, status=ERROR)

        try:
            result.source_count, result.source_revenue = await self.source_totals(client, start, end)
        except SourceError as e:
            result.error = sanitize_message(str(e))
            logger.error(f"[{source}] Reconciliation fetch failed {start}..{end}: {e}")
            return result

        result.warehouse_count, result.warehouse_revenue = self.warehouse_totals(client, start, end)

        if result.count_diff == 0 and abs(result.revenue_diff) < self.epsilon:
            result.status = MATCH
        else:
            result.status = MISMATCH
            logger.warning(
                f"[{source}] Mismatch {start}..{end}: count {result.source_count} vs {result.warehouse_count}, "
                f"revenue {result.source_revenue} vs {result.warehouse_revenue}"
            )
        return result

    async def reconcile_daily(self, source: str, start: date, end: date) -> List[ReconciliationResult]:
        results = []
        day = start
        while day <= end:
            results.append(await self.reconcile(source, day, day))
            day += timedelta(days=1)
        return results

    async def auto_fix(self, results: List[ReconciliationResult]) -> List[Tuple[str, date]]:
        """Dispatch one resync command per mismatched (source, day). Never loops."""
        if self.dispatcher is None:
            raise ValueError("Auto-fix requires a resync dispatcher")

        targets = []
        for result in results:
            if result.status != MISMATCH:
                continue
            day = result.start_date
            while day <= result.end_date:
                if (result.source, day) not in targets:
                    targets.append((result.source, day))
                day += timedelta(days=1)

        for source, day in targets:
            logger.info(f"Dispatching resync for {source} {day}")
            outcome = self.dispatcher(source, day)
            if inspect.isawaitable(outcome):
                await outcome
        return targets

    async def run(
        self,
        start: date,
        end: date,
        sources: Optional[List[str]] = None,
        daily: bool = True,
        auto_fix: bool = False,
        check_integrity: bool = True,
    ) -> ReconciliationReport:
        report = ReconciliationReport()
        for source in sources or list(self.sources):
            if daily:
                report.results.extend(await self.reconcile_daily(source, start, end))
            else:
                report.results.append(await self.reconcile(source, start, end))

        if auto_fix and report.mismatches:
            report.dispatched = await self.auto_fix(report.mismatches)

        if check_integrity:
            report.integrity = self.check_integrity(raise_on_violation=False)

        has_problems = bool(report.mismatches or report.errors) or (report.integrity and not report.integrity.ok)
        audit_service.record_audit(
            self.db,
            source="system",
            audit_type=AuditType.RECONCILIATION.value,
            status=AuditStatus.FAILED.value if has_problems else AuditStatus.SUCCESS.value,
            payload={"start": start.isoformat(), "end": end.isoformat(), **report.to_dict()},
            error=f"{len(report.mismatches)} mismatches, {len(report.errors)} errors" if has_problems else None,
        )
        return report

    # ========== Integrity ==========

    def check_integrity(self, raise_on_violation: bool = True) -> IntegrityReport:
        """
        Orphaned lines and duplicate external ids break persistence contracts.
        They are critical and never reported as plain mismatches.
        """
        report = IntegrityReport()

        report.orphan_lines = self.db.query(func.count(FactOrderLine.order_id)).filter(
            ~FactOrderLine.order_id.in_(self.db.query(FactOrder.id))
        ).scalar() or 0

        report.duplicate_orders = [
            row[0] for row in self.db.query(FactOrder.id)
            .group_by(FactOrder.id).having(func.count(FactOrder.id) > 1).all()
        ]
        report.duplicate_events = [
            row[0] for row in self.db.query(FactEvent.id)
            .group_by(FactEvent.id).having(func.count(FactEvent.id) > 1).all()
        ]

        if not report.ok:
            logger.critical(f"Warehouse integrity violation: {report.to_dict()}")
            if raise_on_violation:
                raise CriticalIntegrityViolation("Warehouse integrity violation", report.to_dict())
        return report
