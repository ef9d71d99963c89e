import json
from decimal import Decimal

import httpx
import pytest

from commercehub.integrations.anyroad import AnyRoadClient
from commercehub.integrations.shopify import ShopifyClient
from commercehub.integrations.square import SquareClient
from commercehub.models import FactOrder, FactEvent, IngestAudit
from commercehub.services.warehouse_service import WarehouseService

SQUARE_URL = "https://hub.example.com/api/webhooks/square"


def shopify_order_payload(order_id=555, total="100.00"):
    return {
        "id": order_id,
        "created_at": "2024-03-01T10:00:00Z",
        "updated_at": "2024-03-01T10:05:00Z",
        "total_price": total,
        "total_tax": "0.00",
        "customer": None,
        "line_items": [{"id": 1, "name": "Gin 70cl", "sku": "GIN-70", "price": "50.00", "quantity": 2}],
    }


def refund_payload(refund_id=9001, order_id=555, amount="20.00"):
    return {
        "id": refund_id,
        "order_id": order_id,
        "transactions": [{"kind": "refund", "status": "success", "amount": amount}],
    }


def shopify_graphql_node(order_id):
    return {
        "id": f"gid://shopify/Order/{order_id}",
        "createdAt": "2024-03-01T10:00:00Z",
        "updatedAt": "2024-03-01T10:05:00Z",
        "totalPriceSet": {"shopMoney": {"amount": "60.00"}},
        "totalRefundedSet": {"shopMoney": {"amount": "0.00"}},
        "customer": None,
        "lineItems": {"edges": [
            {"node": {"id": "gid://shopify/LineItem/5", "name": "Tonic", "sku": "TONIC", "quantity": 3,
                      "originalTotalSet": {"shopMoney": {"amount": "60.00"}}, "product": None}},
        ]},
        "transactions": [],
    }


def square_order(order_id="ORD1"):
    return {
        "id": order_id,
        "location_id": "L1",
        "created_at": "2024-03-01T12:00:00Z",
        "updated_at": "2024-03-01T12:01:00Z",
        "total_money": {"amount": 2550, "currency": "USD"},
        "line_items": [{"uid": "u1", "name": "Flight", "quantity": "1", "total_money": {"amount": 2550}}],
        "tenders": [{"id": "T1", "payment_id": "P1"}],
    }


def square_payment(**overrides):
    payment = {
        "id": "P1",
        "order_id": "ORD1",
        "status": "COMPLETED",
        "amount_money": {"amount": 2550},
        "updated_at": "2024-03-01T12:01:00Z",
    }
    payment.update(overrides)
    return payment


def booking(**overrides):
    data = {
        "id": 42,
        "event_date": "2024-03-02",
        "start_time": "14:00:00",
        "end_time": "15:30:00",
        "status": "confirmed",
        "total_price": "120.00",
        "add_ons_total": "15.50",
        "guests_count": 4,
        "updated_at": "2024-03-01T09:00:00Z",
        "experience": {"name": "Distillery Tour"},
    }
    data.update(overrides)
    return data


@pytest.fixture
def graphql_calls():
    return []


@pytest.fixture
def sources(identity, graphql_calls):
    def shopify_api(request: httpx.Request) -> httpx.Response:
        variables = json.loads(request.content)["variables"]
        graphql_calls.append(variables)
        order_id = variables["id"].rsplit("/", 1)[-1]
        return httpx.Response(200, json={"data": {"order": shopify_graphql_node(order_id)}})

    def square_api(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v2/orders/ORD1":
            return httpx.Response(200, json={"order": square_order()})
        if request.url.path == "/v2/payments/P1":
            return httpx.Response(200, json={"payment": square_payment()})
        return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})

    return {
        "shopify": ShopifyClient(
            store_domain="test.myshopify.com", access_token="tok", webhook_secret="shp-secret",
            identity=identity, max_retries=1,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(shopify_api)),
        ),
        "square": SquareClient(
            access_token="sq-tok", webhook_secret="sq-secret", identity=identity, webhook_url=SQUARE_URL,
            max_retries=1, http_client=httpx.AsyncClient(transport=httpx.MockTransport(square_api)),
        ),
        "anyroad": AnyRoadClient(api_key="ar-key", webhook_secret="ar-secret", identity=identity),
    }


@pytest.fixture
def client(api_client, sources):
    return api_client(sources)


@pytest.fixture
def post_shopify(client, signers):
    def post(topic, payload, signature=None):
        body = json.dumps(payload).encode()
        headers = {"X-Shopify-Topic": topic}
        headers["X-Shopify-Hmac-Sha256"] = signature if signature is not None else signers["base64"]("shp-secret", body)
        return client.post("/api/webhooks/shopify", content=body, headers=headers)
    return post


@pytest.fixture
def post_square(client, signers):
    def post(payload):
        body = json.dumps(payload).encode()
        signature = signers["base64"]("sq-secret", SQUARE_URL.encode() + body)
        return client.post("/api/webhooks/square", content=body, headers={"X-Square-HmacSha256-Signature": signature})
    return post


@pytest.fixture
def post_anyroad(client, signers):
    def post(payload):
        body = json.dumps(payload).encode()
        return client.post("/api/webhooks/anyroad", content=body,
                           headers={"X-AnyRoad-Signature": signers["hex"]("ar-secret", body)})
    return post


class TestSignatureRejection:
    def test_altered_body_returns_401_without_side_effects(self, client, db, signers):
        body = json.dumps(shopify_order_payload()).encode()
        signature = signers["base64"]("shp-secret", body)
        tampered = body.replace(b"100.00", b"900.00")

        response = client.post("/api/webhooks/shopify", content=tampered, headers={
            "X-Shopify-Hmac-Sha256": signature, "X-Shopify-Topic": "orders/create",
        })

        assert response.status_code == 401
        assert response.json()["status"] == "auth_error"
        assert db.query(IngestAudit).count() == 0
        assert db.query(FactOrder).count() == 0

    def test_missing_signature_returns_401(self, client):
        response = client.post("/api/webhooks/anyroad", content=b'{"event_type":"booking.created"}')
        assert response.status_code == 401

    def test_invalid_json_with_valid_signature_is_permanent(self, client, db, signers):
        body = b"not json"
        response = client.post("/api/webhooks/anyroad", content=body,
                               headers={"X-AnyRoad-Signature": signers["hex"]("ar-secret", body)})
        assert response.status_code == 422
        audit = db.query(IngestAudit).one()
        assert audit.type == "malformed_payload"
        assert audit.status == "failed"


class TestShopifyWebhooks:
    def test_order_then_refund(self, post_shopify, db):
        created = post_shopify("orders/create", shopify_order_payload())
        assert created.status_code == 200
        assert created.json()["data"]["action"] == "created"

        refunded = post_shopify("refunds/create", refund_payload())
        assert refunded.status_code == 200
        assert refunded.json()["data"]["net_total"] == "80.00"

        orders = db.query(FactOrder).all()
        assert [o.id for o in orders] == ["shopify_order_555"]
        assert orders[0].refunds_total == Decimal("20.00")
        assert orders[0].net_total == Decimal("80.00")
        assert orders[0].gross_total - orders[0].refunds_total == orders[0].net_total

        audit_types = {a.type for a in db.query(IngestAudit)}
        assert audit_types == {"webhook_orders/create", "webhook_refunds/create"}

    def test_refund_redelivery_is_idempotent(self, post_shopify, db):
        post_shopify("orders/create", shopify_order_payload())
        post_shopify("refunds/create", refund_payload())
        again = post_shopify("refunds/create", refund_payload())

        assert again.status_code == 200
        order = db.get(FactOrder, "shopify_order_555")
        db.refresh(order)
        assert order.refunds_total == Decimal("20.00")
        assert order.net_total == Decimal("80.00")
        assert list(order.refund_ledger) == ["9001"]

    def test_refund_before_order_fetches_the_order(self, post_shopify, db, graphql_calls):
        response = post_shopify("refunds/create", refund_payload(refund_id=9100, order_id=777, amount="15.00"))

        assert response.status_code == 200
        assert graphql_calls == [{"id": "gid://shopify/Order/777"}]
        order = db.get(FactOrder, "shopify_order_777")
        assert order.gross_total == Decimal("60.00")
        assert order.refunds_total == Decimal("15.00")
        assert order.net_total == Decimal("45.00")

    def test_unknown_topic_is_acknowledged(self, post_shopify):
        response = post_shopify("customers/create", {"id": 1})
        assert response.status_code == 200
        assert response.json()["data"]["ignored"] is True

    def test_malformed_order_is_permanent(self, post_shopify, db):
        payload = shopify_order_payload()
        del payload["created_at"]
        response = post_shopify("orders/create", payload)

        assert response.status_code == 422
        assert response.json()["status"] == "permanent_error"
        audit = db.query(IngestAudit).one()
        assert audit.status == "failed"
        assert db.query(FactOrder).count() == 0


class TestSquareWebhooks:
    def test_order_then_payment_update(self, post_square, db):
        order_event = {"merchant_id": "M1", "type": "order.updated", "event_id": "e1",
                       "data": {"type": "order", "id": "ORD1", "object": {}}}
        assert post_square(order_event).status_code == 200

        order = db.get(FactOrder, "square_order_ORD1")
        assert order.gross_total == Decimal("25.50")
        assert order.refunds_total == Decimal("0.00")

        refunded = square_payment(refunded_money={"amount": 550}, updated_at="2024-03-01T13:00:00Z")
        payment_event = {"merchant_id": "M1", "type": "payment.updated", "event_id": "e2",
                         "data": {"type": "payment", "id": "P1", "object": {"payment": refunded}}}
        response = post_square(payment_event)

        assert response.status_code == 200
        assert response.json()["data"]["refunds_total"] == "5.50"
        db.refresh(order)
        assert order.net_total == Decimal("20.00")
        assert [p["id"] for p in order.raw["payments"]] == ["P1"]

    def test_payment_without_order_is_ignored(self, post_square, db):
        payment = square_payment()
        del payment["order_id"]
        event = {"type": "payment.created", "data": {"type": "payment", "id": "P1", "object": {"payment": payment}}}
        response = post_square(event)
        assert response.status_code == 200
        assert response.json()["data"]["ignored"] is True
        assert db.query(FactOrder).count() == 0

    def test_unknown_order_is_transient(self, post_square):
        event = {"type": "order.created", "data": {"type": "order", "id": "MISSING", "object": {}}}
        response = post_square(event)
        assert response.status_code == 503
        assert response.json()["status"] == "transient_error"

    def test_non_object_payment_fails_the_audit(self, post_square, db):
        event = {"type": "payment.updated", "data": {"type": "payment", "id": "P1", "object": {"payment": "oops"}}}
        response = post_square(event)

        assert response.status_code == 422
        assert response.json()["status"] == "permanent_error"
        audit = db.query(IngestAudit).one()
        assert audit.status == "failed"
        assert db.query(FactOrder).count() == 0

    def test_unexpected_handler_error_fails_the_audit(self, post_square, db, monkeypatch):
        def explode(self, order, lines=None):
            raise RuntimeError("disk full")

        monkeypatch.setattr(WarehouseService, "upsert_order", explode)
        event = {"type": "order.updated", "data": {"type": "order", "id": "ORD1", "object": {}}}
        response = post_square(event)

        assert response.status_code == 422
        audit = db.query(IngestAudit).one()
        assert audit.status == "failed"
        assert "disk full" in audit.error


class TestAnyRoadWebhooks:
    def test_cancel_before_create_keeps_zero_revenue(self, post_anyroad, db):
        cancelled = post_anyroad({
            "event_type": "booking.cancelled",
            "data": {"booking": booking(cancellation_reason="weather")},
            "timestamp": "2024-03-01T10:00:00Z",
        })
        assert cancelled.status_code == 200

        event = db.get(FactEvent, "anyroad_booking_42")
        assert event.revenue == Decimal("0.00")
        assert event.raw["cancelled"] is True
        assert event.raw["cancellationReason"] == "weather"

        # A later non-cancelled update does not bring revenue back
        post_anyroad({"event_type": "booking.updated", "data": {"booking": booking(updated_at="2024-03-01T11:00:00Z")}})
        db.refresh(event)
        assert event.revenue == Decimal("0.00")
        assert event.raw["cancelled"] is True

    def test_completed_annotation(self, post_anyroad, db):
        post_anyroad({"event_type": "booking.created", "data": {"booking": booking()}})
        response = post_anyroad({
            "type": "booking.completed",
            "data": {"booking": booking(actual_guests_count=3)},
            "timestamp": "2024-03-02T16:00:00Z",
        })

        assert response.status_code == 200
        event = db.get(FactEvent, "anyroad_booking_42")
        assert event.revenue == Decimal("120.00")
        assert event.raw["completed"] is True
        assert event.raw["actualAttendees"] == 3

    def test_experience_events_are_ignored(self, post_anyroad, db):
        response = post_anyroad({"event_type": "experience.updated", "data": {"id": 1}})
        assert response.status_code == 200
        assert db.query(FactEvent).count() == 0
