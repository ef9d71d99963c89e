import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import text

from commercehub.core.errors import CriticalIntegrityViolation, TransientSourceError
from commercehub.models import FactOrderLine, IngestAudit
from commercehub.services.reconciliation_service import ReconciliationService, MATCH, MISMATCH, ERROR
from commercehub.services.warehouse_service import WarehouseService

DAY = date(2024, 3, 1)


def seed(db, source, orders):
    WarehouseService(db).persist_batch([source.normalize(raw) for raw in orders])


class TestReconcile:
    def test_missing_order_is_a_mismatch(self, db, fake_source_factory, order_factory):
        orders = order_factory(10, total="100.00")
        source = fake_source_factory([orders[:5], orders[5:]])
        seed(db, source, orders[:9])

        service = ReconciliationService(db, {"fake": source}, epsilon=Decimal("0.01"))
        result = asyncio.run(service.reconcile("fake", DAY, DAY))

        assert result.status == MISMATCH
        assert result.source_count == 10
        assert result.source_revenue == Decimal("1000.00")
        assert result.warehouse_count == 9
        assert result.count_diff == -1
        assert result.revenue_diff == Decimal("-100.00")

    def test_complete_warehouse_matches(self, db, fake_source_factory, order_factory):
        orders = order_factory(3)
        source = fake_source_factory([orders])
        seed(db, source, orders)

        result = asyncio.run(ReconciliationService(db, {"fake": source}).reconcile("fake", DAY, DAY))
        assert result.status == MATCH
        assert result.to_dict()["revenue_diff"] == "0.00"

    def test_revenue_drift_with_equal_counts(self, db, fake_source_factory, order_factory):
        orders = order_factory(2)
        source = fake_source_factory([orders])
        seed(db, source, orders)
        WarehouseService(db).record_refund("fake_order_1", "r1", Decimal("0.05"))

        result = asyncio.run(ReconciliationService(db, {"fake": source}).reconcile("fake", DAY, DAY))
        assert result.count_diff == 0
        assert result.status == MISMATCH

    def test_source_failure_is_an_error_not_a_mismatch(self, db, fake_source_factory, order_factory):
        source = fake_source_factory([order_factory(2)])

        async def broken(start, end, page_token=None):
            raise TransientSourceError("timeout", "fake")

        source.fetch_by_date_range = broken
        result = asyncio.run(ReconciliationService(db, {"fake": source}).reconcile("fake", DAY, DAY))
        assert result.status == ERROR
        assert "timeout" in result.error


class TestAutoFix:
    def test_dispatches_once_per_mismatched_day(self, db, fake_source_factory, order_factory):
        orders = order_factory(2)
        source = fake_source_factory([orders])
        dispatched = []

        service = ReconciliationService(db, {"fake": source}, dispatcher=lambda s, d: dispatched.append((s, d)))
        report = asyncio.run(service.run(DAY, DAY, auto_fix=True))

        assert len(report.mismatches) == 1
        assert dispatched == [("fake", DAY)]
        assert report.dispatched == [("fake", DAY)]

    def test_async_dispatcher_is_awaited(self, db, fake_source_factory, order_factory):
        source = fake_source_factory([order_factory(1)])
        dispatched = []

        async def dispatcher(s, d):
            dispatched.append((s, d))

        service = ReconciliationService(db, {"fake": source}, dispatcher=dispatcher)
        asyncio.run(service.run(DAY, DAY, auto_fix=True))
        assert dispatched == [("fake", DAY)]

    def test_auto_fix_needs_dispatcher(self, db, fake_source_factory, order_factory):
        service = ReconciliationService(db, {"fake": fake_source_factory([order_factory(1)])})
        results = asyncio.run(service.reconcile_daily("fake", DAY, DAY))
        with pytest.raises(ValueError):
            asyncio.run(service.auto_fix(results))

    def test_run_writes_audit_row(self, db, fake_source_factory, order_factory):
        orders = order_factory(2)
        source = fake_source_factory([orders])
        seed(db, source, orders)

        report = asyncio.run(ReconciliationService(db, {"fake": source}).run(DAY, DAY))
        assert [r.status for r in report.results] == [MATCH]

        audit = db.query(IngestAudit).filter(IngestAudit.type == "reconciliation").one()
        assert audit.status == "success"
        assert audit.source == "system"


class TestIntegrity:
    def test_clean_warehouse(self, db, fake_source_factory, order_factory):
        source = fake_source_factory([order_factory(2)])
        seed(db, source, order_factory(2))
        report = ReconciliationService(db, {}).check_integrity()
        assert report.ok

    def test_orphan_line_is_critical(self, db):
        db.add(FactOrderLine(order_id="shopify_order_gone", external_id="x", product_title="Gin", qty=1, line_total=1))
        db.commit()

        service = ReconciliationService(db, {})
        with pytest.raises(CriticalIntegrityViolation) as exc:
            service.check_integrity()
        assert exc.value.details["orphan_lines"] == 1

        report = service.check_integrity(raise_on_violation=False)
        assert not report.ok

    def test_duplicate_event_id_is_critical(self, engine, db):
        # Rebuild fact_event without its primary key so a double write can land
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE fact_event"))
            conn.execute(text("CREATE TABLE fact_event (id VARCHAR(128) NOT NULL)"))
            conn.execute(text(
                "INSERT INTO fact_event (id) VALUES ('anyroad_booking_42'), ('anyroad_booking_42'), ('anyroad_booking_7')"
            ))

        service = ReconciliationService(db, {})
        with pytest.raises(CriticalIntegrityViolation) as exc:
            service.check_integrity()
        assert exc.value.details["duplicate_events"] == ["anyroad_booking_42"]
        assert exc.value.details["duplicate_orders"] == []
