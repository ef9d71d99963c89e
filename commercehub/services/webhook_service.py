"""
Webhook Service - Verify, parse, dispatch and audit source notifications

Handlers never let an exception escape: every outcome is returned as a tagged
WebhookResult that the router maps to a status code.
"""
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Mapping
import enum
import json
import logging

from pydantic import ValidationError
from sqlalchemy.orm import Session

from commercehub.core.errors import (
    MalformedPayload,
    PermanentSourceError,
    PersistenceConflict,
    RateLimited,
    TransientSourceError,
)
from commercehub.core.logging_config import mask_sensitive_data, sanitize_message
from commercehub.core.money import money_str
from commercehub.integrations.anyroad import AnyRoadClient, booking_external_id
from commercehub.integrations.base import BaseSourceClient
from commercehub.integrations.shopify import ShopifyClient
from commercehub.integrations.square import SquareClient
from commercehub.models.audit import AuditStatus, AuditType
from commercehub.models.warehouse import FactOrder, FactEvent
from commercehub.schemas.webhooks import ShopifyRefundWebhook, SquareWebhookEvent, AnyRoadWebhookEvent
from commercehub.services import audit_service
from commercehub.services.payment_service import PaymentReconciler
from commercehub.services.warehouse_service import WarehouseService

logger = logging.getLogger(__name__)


class WebhookOutcome(str, enum.Enum):
    OK = "ok"
    AUTH_ERROR = "auth_error"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


HTTP_STATUS = {
    WebhookOutcome.OK: 200,
    WebhookOutcome.AUTH_ERROR: 401,
    # Sources redeliver on 5xx
    WebhookOutcome.TRANSIENT_ERROR: 503,
    WebhookOutcome.PERMANENT_ERROR: 422,
}

TRANSIENT_ERRORS = (RateLimited, TransientSourceError, PersistenceConflict)
PERMANENT_ERRORS = (MalformedPayload, PermanentSourceError, ValidationError)


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    source: str
    event_type: Optional[str] = None
    detail: Optional[str] = None
    audit_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.outcome]

    @property
    def ok(self) -> bool:
        return self.outcome == WebhookOutcome.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.outcome.value,
            "source": self.source,
            "event_type": self.event_type,
            "detail": self.detail,
            "audit_id": self.audit_id,
            "data": self.data,
        }


class WebhookHandler:
    """verify -> parse -> audit -> dispatch -> close audit"""

    TOPIC_HEADER: Optional[str] = None

    def __init__(self, db: Session, client: BaseSourceClient):
        self.db = db
        self.client = client
        self.source = client.SOURCE_NAME
        self.warehouse = WarehouseService(db)

    async def handle(self, raw_body: bytes, headers: Mapping[str, str], url: Optional[str] = None) -> WebhookResult:
        signature = headers.get(self.client.SIGNATURE_HEADER)
        if not self.client.verify_webhook_signature(raw_body, signature, url):
            logger.warning(f"[{self.source}] Webhook rejected: invalid or missing signature")
            return WebhookResult(WebhookOutcome.AUTH_ERROR, self.source, detail="Invalid signature")

        try:
            payload = json.loads(raw_body)
            if not isinstance(payload, dict):
                raise ValueError("body is not a JSON object")
        except (ValueError, UnicodeDecodeError) as e:
            audit = audit_service.record_audit(
                self.db,
                source=self.source,
                audit_type=AuditType.MALFORMED_PAYLOAD.value,
                status=AuditStatus.FAILED.value,
                payload={"body": raw_body[:1000].decode("utf-8", errors="replace")},
                error=f"Undecodable webhook body: {e}",
            )
            return WebhookResult(
                WebhookOutcome.PERMANENT_ERROR, self.source, detail="Body is not valid JSON", audit_id=str(audit.id),
            )

        topic = headers.get(self.TOPIC_HEADER) if self.TOPIC_HEADER else None
        event_type = self.client.webhook_event_type(payload, topic)
        audit = audit_service.start_audit(
            self.db, source=self.source, audit_type=f"webhook_{event_type}", payload=mask_sensitive_data(payload),
        )
        result = WebhookResult(WebhookOutcome.OK, self.source, event_type=event_type, audit_id=str(audit.id))

        try:
            result.data = await self.dispatch(event_type, payload) or {}
        except TRANSIENT_ERRORS as e:
            result.outcome = WebhookOutcome.TRANSIENT_ERROR
            result.detail = sanitize_message(str(e))
        except PERMANENT_ERRORS as e:
            result.outcome = WebhookOutcome.PERMANENT_ERROR
            result.detail = sanitize_message(str(e))
        except (KeyError, TypeError, ValueError) as e:
            result.outcome = WebhookOutcome.PERMANENT_ERROR
            result.detail = f"Unexpected {event_type} payload: {e!r}"
        except Exception as e:
            logger.exception(f"[{self.source}] Webhook {event_type} handler crashed")
            result.outcome = WebhookOutcome.PERMANENT_ERROR
            result.detail = sanitize_message(f"Unhandled {event_type} failure: {e!r}")

        if result.ok:
            audit_service.complete_audit(self.db, audit, {"result": result.data})
            logger.info(f"[{self.source}] Webhook {event_type} processed: {result.data}")
        else:
            audit_service.fail_audit(self.db, audit, result.detail)
            logger.error(f"[{self.source}] Webhook {event_type} {result.outcome.value}: {result.detail}")
        return result

    async def dispatch(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    @staticmethod
    def ignored(event_type: str) -> Dict[str, Any]:
        return {"ignored": True, "reason": f"Unhandled event type {event_type}"}


# ========== Shopify ==========

class ShopifyWebhookHandler(WebhookHandler):
    TOPIC_HEADER = ShopifyClient.TOPIC_HEADER
    ORDER_TOPICS = ("orders/create", "orders/updated", "orders/paid", "orders/cancelled")
    client: ShopifyClient

    async def dispatch(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if event_type in self.ORDER_TOPICS:
            order = self.client.normalize(self.client.webhook_to_node(payload))
            action = self.warehouse.upsert_order(order)
            return {"external_id": order.external_id, "action": action}

        if event_type == "refunds/create":
            return await self.handle_refund(payload)

        return self.ignored(event_type)

    async def handle_refund(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        refund = ShopifyRefundWebhook.model_validate(payload)
        external_id = f"shopify_order_{refund.order_id}"
        amount = self.client.refund_amount(refund.as_refund())

        order = self.warehouse.record_refund(external_id, str(refund.id), amount, payload)
        if order is None:
            # Refund arrived before its order; pull the order, then apply the refund
            node = await self.client.fetch_order(str(refund.order_id))
            if node is None:
                raise TransientSourceError(f"Shopify order {refund.order_id} not visible yet", self.source)
            self.warehouse.upsert_order(self.client.normalize(node))
            order = self.warehouse.record_refund(external_id, str(refund.id), amount, payload)
            if order is None:
                raise PersistenceConflict(f"Order {external_id} missing after fetch", external_id)

        return {
            "external_id": external_id,
            "refund_id": str(refund.id),
            "amount": money_str(amount),
            "refunds_total": money_str(order.refunds_total),
            "net_total": money_str(order.net_total),
        }


# ========== Square ==========

class SquareWebhookHandler(WebhookHandler):
    client: SquareClient

    async def dispatch(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        event = SquareWebhookEvent.model_validate(payload)
        if event_type.startswith("payment."):
            return await self.handle_payment(event)
        if event_type.startswith("order."):
            return await self.handle_order(event)
        return self.ignored(event_type)

    def _stored_raw(self, order_id: str) -> Optional[Dict[str, Any]]:
        existing = self.db.get(FactOrder, f"square_order_{order_id}")
        if existing is None or not (existing.raw or {}).get("order"):
            return None
        return existing.raw

    async def _fetch_bundle(self, order_id: str) -> Dict[str, Any]:
        bundle = await self.client.fetch_order_bundle(order_id)
        if bundle is None:
            raise TransientSourceError(f"Square order {order_id} not visible yet", self.source)
        return bundle

    def _persist(self, record: Dict[str, Any]) -> Dict[str, Any]:
        order = self.client.normalize(record)
        action = self.warehouse.upsert_order(order)
        return {
            "external_id": order.external_id,
            "action": action,
            "refunds_total": money_str(order.refunds_total),
            "fees": order.raw.get("fees"),
        }

    async def handle_payment(self, event: SquareWebhookEvent) -> Dict[str, Any]:
        payment = event.data.object.get("payment")
        if not isinstance(payment, dict) or not payment.get("id"):
            raise MalformedPayload("Square payment event without a payment object", self.source, event.model_dump())

        order_id = payment.get("order_id")
        if not order_id:
            return {"ignored": True, "reason": f"Payment {payment['id']} has no order"}

        stored = self._stored_raw(order_id)
        if stored is not None:
            record = {"order": stored["order"], "payments": stored.get("payments") or []}
        else:
            record = await self._fetch_bundle(order_id)

        # Merge by payment id; totals are recomputed from the full set on normalize
        record["payments"] = PaymentReconciler.merge_payment(record.get("payments") or [], payment)
        return self._persist(record)

    async def handle_order(self, event: SquareWebhookEvent) -> Dict[str, Any]:
        order_id = event.data.id
        bundle = await self._fetch_bundle(order_id)

        stored = self._stored_raw(order_id)
        payments = list((stored or {}).get("payments") or [])
        for payment in bundle.get("payments") or []:
            payments = PaymentReconciler.merge_payment(payments, payment)
        return self._persist({"order": bundle["order"], "payments": payments})


# ========== AnyRoad ==========

class AnyRoadWebhookHandler(WebhookHandler):
    client: AnyRoadClient

    async def dispatch(self, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if event_type.startswith("experience."):
            # Experience catalog changes carry no revenue
            return {"ignored": True, "reason": "Experience events are informational"}

        event = AnyRoadWebhookEvent.model_validate(payload)
        booking = event.data.get("booking") or event.data

        if event_type in ("booking.created", "booking.updated"):
            record = self.client.normalize(booking)
            return {"external_id": record.external_id, "action": self.warehouse.upsert_event(record)}

        if event_type == "booking.cancelled":
            return self.handle_cancelled(booking, event.timestamp)

        if event_type == "booking.completed":
            return self.handle_completed(booking, event.timestamp)

        return self.ignored(event_type)

    def _ensure_event(self, booking: Dict[str, Any]) -> str:
        external_id = booking_external_id(booking["id"])
        if self.db.get(FactEvent, external_id) is None:
            self.warehouse.upsert_event(self.client.normalize(booking))
        return external_id

    def handle_cancelled(self, booking: Dict[str, Any], timestamp: Optional[str]) -> Dict[str, Any]:
        external_id = self._ensure_event({**booking, "status": "cancelled"})
        self.warehouse.annotate_event(
            external_id,
            {
                "cancelled": True,
                "cancelledAt": booking.get("cancelled_at") or timestamp,
                "cancellationReason": booking.get("cancellation_reason"),
            },
            zero_revenue=True,
        )
        return {"external_id": external_id, "action": "cancelled"}

    def handle_completed(self, booking: Dict[str, Any], timestamp: Optional[str]) -> Dict[str, Any]:
        external_id = self._ensure_event(booking)
        self.warehouse.annotate_event(external_id, {
            "completed": True,
            "completedAt": booking.get("completed_at") or timestamp,
            "actualAttendees": booking.get("actual_guests_count", booking.get("guests_count")),
        })
        return {"external_id": external_id, "action": "completed"}


HANDLERS = {
    "shopify": ShopifyWebhookHandler,
    "square": SquareWebhookHandler,
    "anyroad": AnyRoadWebhookHandler,
}


def get_webhook_handler(db: Session, client: BaseSourceClient) -> WebhookHandler:
    return HANDLERS[client.SOURCE_NAME](db, client)
