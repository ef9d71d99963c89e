"""
Warehouse Service - Idempotent persistence of canonical orders, events and customer identities
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, List, Dict, Any, Iterable
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from commercehub.core.errors import PersistenceConflict
from commercehub.core.money import ZERO, to_money, money_str
from commercehub.integrations.base import (
    CanonicalOrder,
    CanonicalOrderLine,
    CanonicalEvent,
    CustomerIdentityRef,
)
from commercehub.models.warehouse import FactOrder, FactOrderLine, FactEvent, CustomerIdentity

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


@dataclass
class BatchResult:
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def count(self, action: str):
        self.processed += 1
        if action == CREATED:
            self.created += 1
        elif action == UPDATED:
            self.updated += 1
        else:
            self.skipped += 1

    def merge(self, other: "BatchResult"):
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors[:20],
        }


def ledger_total(ledger: Optional[Dict[str, str]]) -> Decimal:
    return sum((to_money(amount) for amount in (ledger or {}).values()), ZERO)


class WarehouseService:
    """
    Upserts keyed by deterministic external id.
    Each public upsert is its own transaction; a failure raises PersistenceConflict.
    """

    def __init__(self, db: Session):
        self.db = db

    # ========== Orders ==========

    def upsert_order(self, order: CanonicalOrder, lines: Optional[List[CanonicalOrderLine]] = None) -> str:
        """
        Upsert the order row, delete all its lines, insert the current line set.
        Returns created / updated / skipped (older source update than stored).
        """
        lines = order.lines if lines is None else lines
        try:
            existing = self.db.get(FactOrder, order.external_id)

            if existing is not None and existing.updated_at and order.updated_at < existing.updated_at:
                logger.info(
                    f"Skipping stale update for {order.external_id}: "
                    f"{order.updated_at.isoformat()} < {existing.updated_at.isoformat()}"
                )
                return SKIPPED

            if order.identity and order.customer_hash:
                self._merge_identity(order.customer_hash, order.identity)

            if existing is None:
                existing = FactOrder(id=order.external_id, refund_ledger={})
                self.db.add(existing)
                action = CREATED
            else:
                action = UPDATED

            # Refunds recorded by refund webhooks survive a snapshot that predates them
            refunds_total = max(order.refunds_total, ledger_total(existing.refund_ledger))

            existing.channel_id = order.channel_id
            existing.location_id = order.location_id
            existing.created_at = order.created_at
            existing.updated_at = order.updated_at
            existing.customer_hash = order.customer_hash
            existing.gross_total = order.gross_total
            existing.tax_total = order.tax_total
            existing.discount_total = order.discount_total
            existing.refunds_total = refunds_total
            existing.net_total = order.gross_total - refunds_total
            existing.tenders = list(order.tenders)
            existing.raw = dict(order.raw)

            self.db.query(FactOrderLine).filter(
                FactOrderLine.order_id == order.external_id
            ).delete(synchronize_session="fetch")

            seen = set()
            for line in lines:
                if line.external_id in seen:
                    continue
                seen.add(line.external_id)
                self.db.add(FactOrderLine(
                    order_id=order.external_id,
                    external_id=line.external_id,
                    sku=line.sku,
                    product_title=line.product_title,
                    category=line.category,
                    qty=line.qty,
                    line_total=line.line_total,
                ))

            self.db.commit()
            logger.debug(f"Order {order.external_id} {action} with {len(seen)} lines")
            return action

        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceConflict(f"Failed to upsert order {order.external_id}: {e}", order.external_id) from e

    def record_refund(
        self,
        order_external_id: str,
        refund_id: str,
        amount: Decimal,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[FactOrder]:
        """
        Record a refund against an existing order, keyed by refund id.
        Redelivery of the same refund does not change totals.
        Returns None when the order is not in the warehouse.
        """
        try:
            order = self.db.get(FactOrder, order_external_id)
            if order is None:
                return None

            ledger = dict(order.refund_ledger or {})
            ledger[str(refund_id)] = money_str(amount)
            refunds_total = max(to_money(order.refunds_total), ledger_total(ledger))

            order.refund_ledger = ledger
            order.refunds_total = refunds_total
            order.net_total = to_money(order.gross_total) - refunds_total
            raw = dict(order.raw or {})
            if payload is not None:
                raw["last_refund"] = payload
            order.raw = raw

            self.db.commit()
            logger.info(f"Refund {refund_id} recorded on {order_external_id}: refunds={refunds_total} net={order.net_total}")
            return order

        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceConflict(f"Failed to record refund on {order_external_id}: {e}", order_external_id) from e

    # ========== Events ==========

    def upsert_event(self, event: CanonicalEvent) -> str:
        """
        Upsert by external id. raw is merged so earlier annotations are never dropped;
        a cancelled event keeps zero revenue.
        """
        try:
            existing = self.db.get(FactEvent, event.external_id)

            if (
                existing is not None and existing.updated_at and event.updated_at
                and event.updated_at < existing.updated_at
            ):
                logger.info(f"Skipping stale update for {event.external_id}")
                return SKIPPED

            if event.identity and event.customer_hash:
                self._merge_identity(event.customer_hash, event.identity)

            if existing is None:
                existing = FactEvent(id=event.external_id)
                self.db.add(existing)
                action = CREATED
                raw = dict(event.raw)
            else:
                action = UPDATED
                raw = {**(existing.raw or {}), **event.raw}

            cancelled = bool(raw.get("cancelled"))

            existing.channel_id = event.channel_id
            existing.event_type = event.event_type
            existing.starts_at = event.starts_at
            existing.ends_at = event.ends_at
            existing.updated_at = event.updated_at or existing.updated_at
            existing.attendees = event.attendees
            existing.revenue = ZERO if cancelled else event.revenue
            existing.add_on_sales = ZERO if cancelled else event.add_on_sales
            existing.customer_hash = event.customer_hash or existing.customer_hash
            existing.raw = raw

            self.db.commit()
            return action

        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceConflict(f"Failed to upsert event {event.external_id}: {e}", event.external_id) from e

    def annotate_event(
        self,
        external_id: str,
        annotations: Dict[str, Any],
        zero_revenue: bool = False,
    ) -> Optional[FactEvent]:
        """Merge annotations into raw (cancellation, completion). Returns None if the event is missing."""
        try:
            event = self.db.get(FactEvent, external_id)
            if event is None:
                return None
            event.raw = {**(event.raw or {}), **annotations}
            if zero_revenue:
                event.revenue = ZERO
                event.add_on_sales = ZERO
            self.db.commit()
            return event

        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceConflict(f"Failed to annotate event {external_id}: {e}", external_id) from e

    # ========== Customer Identity ==========

    def _merge_identity(self, customer_hash: str, ref: CustomerIdentityRef) -> CustomerIdentity:
        if ref.channel_field not in CustomerIdentity.CHANNEL_FIELDS:
            raise ValueError(f"Unknown identity field: {ref.channel_field}")

        identity = self.db.get(CustomerIdentity, customer_hash)
        if identity is None:
            identity = CustomerIdentity(customer_hash=customer_hash)
            self.db.add(identity)
        # Each channel writes only its own field and never clears it
        if ref.native_id is not None:
            setattr(identity, ref.channel_field, ref.native_id)
        return identity

    def upsert_customer_identity(
        self,
        customer_hash: Optional[str],
        channel_field: str,
        value: Optional[str],
    ) -> Optional[CustomerIdentity]:
        if not customer_hash:
            return None
        try:
            identity = self._merge_identity(customer_hash, CustomerIdentityRef(channel_field, value))
            self.db.commit()
            return identity
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceConflict(f"Failed to upsert identity {customer_hash}: {e}", customer_hash) from e

    # ========== Batches ==========

    def upsert_record(self, record) -> str:
        if isinstance(record, CanonicalOrder):
            return self.upsert_order(record)
        return self.upsert_event(record)

    def persist_batch(self, records: Iterable) -> BatchResult:
        """Persist records independently; one failure never aborts the batch"""
        result = BatchResult()
        for record in records:
            try:
                result.count(self.upsert_record(record))
            except PersistenceConflict as e:
                result.failed += 1
                result.errors.append({"external_id": record.external_id, "error": str(e)})
                logger.error(f"Persist failed for {record.external_id}: {e}")
        return result
