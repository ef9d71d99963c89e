from datetime import datetime
from decimal import Decimal

from commercehub.integrations.base import CanonicalEvent, CanonicalOrderLine, CustomerIdentityRef
from commercehub.models import FactOrder, FactOrderLine, FactEvent, CustomerIdentity
from commercehub.services.warehouse_service import WarehouseService, CREATED, UPDATED, SKIPPED


def snapshot(db):
    db.expire_all()
    orders = [
        (o.id, o.gross_total, o.net_total, o.refunds_total, o.updated_at, o.customer_hash)
        for o in db.query(FactOrder).order_by(FactOrder.id)
    ]
    lines = [
        (l.order_id, l.external_id, l.sku, l.product_title, l.qty, l.line_total)
        for l in db.query(FactOrderLine).order_by(FactOrderLine.order_id, FactOrderLine.external_id)
    ]
    return orders, lines


class TestUpsertOrder:
    def test_upsert_twice_is_idempotent(self, db, order_builder):
        service = WarehouseService(db)
        order = order_builder()

        assert service.upsert_order(order) == CREATED
        first = snapshot(db)
        assert service.upsert_order(order) == UPDATED
        assert snapshot(db) == first
        assert len(first[0]) == 1 and len(first[1]) == 1

    def test_lines_are_replaced_not_merged(self, db, order_builder):
        service = WarehouseService(db)
        service.upsert_order(order_builder(lines=[
            CanonicalOrderLine("a", "Gin", 1, Decimal("60.00"), sku="GIN"),
            CanonicalOrderLine("b", "Rum", 1, Decimal("40.00"), sku="RUM"),
        ]))
        service.upsert_order(order_builder(updated="2024-03-01T11:00:00", lines=[
            CanonicalOrderLine("a", "Gin", 2, Decimal("100.00"), sku="GIN"),
        ]))

        lines = db.query(FactOrderLine).all()
        assert [(l.external_id, l.qty, l.line_total) for l in lines] == [("a", 2, Decimal("100.00"))]

    def test_net_equals_gross_minus_refunds(self, db, order_builder):
        service = WarehouseService(db)
        service.upsert_order(order_builder(gross="150.00", refunds="30.50"))
        order = db.get(FactOrder, "shopify_order_1")
        assert order.net_total == order.gross_total - order.refunds_total == Decimal("119.50")

    def test_stale_update_is_skipped(self, db, order_builder):
        service = WarehouseService(db)
        service.upsert_order(order_builder(gross="100.00", updated="2024-03-01T12:00:00"))
        result = service.upsert_order(order_builder(gross="50.00", updated="2024-03-01T11:00:00"))

        assert result == SKIPPED
        assert db.get(FactOrder, "shopify_order_1").gross_total == Decimal("100.00")

    def test_same_line_id_in_different_orders(self, db, order_builder):
        service = WarehouseService(db)
        line = CanonicalOrderLine("square_lineitem_1", "Flight", 1, Decimal("10.00"))
        service.upsert_order(order_builder(external_id="square_order_A", lines=[line]))
        service.upsert_order(order_builder(external_id="square_order_B", lines=[line]))
        assert db.query(FactOrderLine).count() == 2


class TestRefunds:
    def test_refund_is_recorded_once(self, db, order_builder):
        service = WarehouseService(db)
        service.upsert_order(order_builder())

        service.record_refund("shopify_order_1", "r1", Decimal("20.00"))
        service.record_refund("shopify_order_1", "r1", Decimal("20.00"))
        order = service.record_refund("shopify_order_1", "r2", Decimal("5.00"))

        assert order.refunds_total == Decimal("25.00")
        assert order.net_total == Decimal("75.00")

    def test_older_snapshot_does_not_drop_recorded_refund(self, db, order_builder):
        service = WarehouseService(db)
        service.upsert_order(order_builder())
        service.record_refund("shopify_order_1", "r1", Decimal("20.00"))

        # Same order redelivered without the refund
        service.upsert_order(order_builder())
        order = db.get(FactOrder, "shopify_order_1")
        assert order.refunds_total == Decimal("20.00")
        assert order.net_total == Decimal("80.00")

    def test_refund_for_unknown_order(self, db):
        assert WarehouseService(db).record_refund("shopify_order_404", "r1", Decimal("1.00")) is None


class TestEvents:
    def make_event(self, revenue="50.00", raw=None, updated=None):
        return CanonicalEvent(
            external_id="anyroad_booking_1",
            channel_id="anyroad",
            event_type="tour",
            starts_at=datetime(2024, 3, 1, 14),
            updated_at=updated,
            attendees=2,
            revenue=Decimal(revenue),
            raw=raw or {"id": 1},
        )

    def test_raw_is_merged(self, db):
        service = WarehouseService(db)
        service.upsert_event(self.make_event(raw={"id": 1, "note": "first"}))
        service.annotate_event("anyroad_booking_1", {"completed": True})
        service.upsert_event(self.make_event(raw={"id": 1, "status": "confirmed"}))

        event = db.get(FactEvent, "anyroad_booking_1")
        assert event.raw == {"id": 1, "note": "first", "completed": True, "status": "confirmed"}

    def test_cancellation_is_sticky(self, db):
        service = WarehouseService(db)
        service.upsert_event(self.make_event())
        service.annotate_event("anyroad_booking_1", {"cancelled": True}, zero_revenue=True)
        service.upsert_event(self.make_event(revenue="50.00"))

        event = db.get(FactEvent, "anyroad_booking_1")
        assert event.revenue == Decimal("0.00")
        assert event.raw["cancelled"] is True

    def test_annotate_missing_event(self, db):
        assert WarehouseService(db).annotate_event("anyroad_booking_404", {"completed": True}) is None


class TestIdentityMerge:
    def test_channels_fill_their_own_field(self, db, order_builder):
        service = WarehouseService(db)
        service.upsert_order(order_builder(
            customer_hash="h1", identity=CustomerIdentityRef("shopify_customer_id", "shopify_customer_7"),
        ))
        service.upsert_customer_identity("h1", "square_customer_id", "square_customer_9")
        service.upsert_customer_identity("h1", "shopify_customer_id", None)

        identity = db.get(CustomerIdentity, "h1")
        assert identity.shopify_customer_id == "shopify_customer_7"
        assert identity.square_customer_id == "square_customer_9"
        assert identity.anyroad_guest_id is None

    def test_no_hash_no_identity(self, db):
        assert WarehouseService(db).upsert_customer_identity(None, "square_customer_id", "x") is None
        assert db.query(CustomerIdentity).count() == 0


class TestBatch:
    def test_one_failure_does_not_abort_batch(self, db, order_builder):
        bad = order_builder(external_id="shopify_order_2", lines=[
            CanonicalOrderLine("bad", None, 1, Decimal("1.00")),  # product_title is NOT NULL
        ])
        result = WarehouseService(db).persist_batch([
            order_builder(external_id="shopify_order_1"),
            bad,
            order_builder(external_id="shopify_order_3"),
        ])

        assert result.created == 2
        assert result.failed == 1
        assert result.errors[0]["external_id"] == "shopify_order_2"
        assert {o.id for o in db.query(FactOrder)} == {"shopify_order_1", "shopify_order_3"}
