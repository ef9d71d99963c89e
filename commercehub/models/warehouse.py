"""
Warehouse Models - Order, order line, event and customer identity facts
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from commercehub.core.database import Base
from .base import JSONType, TimestampMixin

Money = Numeric(14, 2, asdecimal=True)


class FactOrder(Base):
    """
    One purchase transaction from any channel.
    Primary key is the deterministic external id, e.g. shopify_order_123.
    """
    __tablename__ = "fact_order"

    id = Column(String(128), primary_key=True)
    channel_id = Column(String(30), nullable=False, index=True)
    location_id = Column(String(128))

    # Source timestamps (naive UTC)
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)

    # Weak reference to bridge_customer_identity, never a cascade owner
    customer_hash = Column(String(64), index=True)

    gross_total = Column(Money, nullable=False, default=0)
    net_total = Column(Money, nullable=False, default=0)
    tax_total = Column(Money, nullable=False, default=0)
    discount_total = Column(Money, nullable=False, default=0)
    refunds_total = Column(Money, nullable=False, default=0)

    tenders = Column(JSONType, default=list)
    raw = Column(JSONType, default=dict)
    # refund id -> amount, recorded from refund webhooks
    refund_ledger = Column(JSONType, default=dict)

    ingested_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lines = relationship(
        "FactOrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="FactOrderLine.external_id",
    )

    __table_args__ = (
        Index("ix_fact_order_channel_created", "channel_id", "created_at"),
    )

    def __repr__(self):
        return f"<FactOrder {self.id} net={self.net_total}>"


class FactOrderLine(Base):
    """
    One line item of an order. Replaced as a full set on every re-ingestion.
    """
    __tablename__ = "fact_order_line"

    # Square line uids are only unique inside their order
    order_id = Column(String(128), ForeignKey("fact_order.id", ondelete="CASCADE"), primary_key=True)
    external_id = Column(String(160), primary_key=True)

    sku = Column(String(128))
    product_title = Column(String(500), nullable=False)
    category = Column(String(200))
    qty = Column(Integer, nullable=False)
    line_total = Column(Money, nullable=False, default=0)

    order = relationship("FactOrder", back_populates="lines")

    def __repr__(self):
        return f"<FactOrderLine {self.external_id} x{self.qty}>"


class FactEvent(Base):
    """
    One booking or experience occurrence.
    Cancellation and completion are attribute updates, rows are never deleted by business events.
    """
    __tablename__ = "fact_event"

    id = Column(String(128), primary_key=True)
    channel_id = Column(String(30), nullable=False, default="anyroad", index=True)
    event_type = Column(String(100), nullable=False)
    starts_at = Column(DateTime, nullable=False, index=True)
    ends_at = Column(DateTime)
    attendees = Column(Integer, nullable=False, default=0)
    revenue = Column(Money, nullable=False, default=0)
    add_on_sales = Column(Money, nullable=False, default=0)
    customer_hash = Column(String(64), index=True)
    raw = Column(JSONType, default=dict)

    updated_at = Column(DateTime)
    ingested_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<FactEvent {self.id} {self.event_type}>"


class CustomerIdentity(TimestampMixin, Base):
    """
    Cross-channel customer bridge. Holds the keyed PII hash and opaque native ids only.
    """
    __tablename__ = "bridge_customer_identity"

    customer_hash = Column(String(64), primary_key=True)
    shopify_customer_id = Column(String(128))
    square_customer_id = Column(String(128))
    anyroad_guest_id = Column(String(128))

    # Channel field names a merge may write
    CHANNEL_FIELDS = ("shopify_customer_id", "square_customer_id", "anyroad_guest_id")

    def __repr__(self):
        return f"<CustomerIdentity {self.customer_hash}>"
