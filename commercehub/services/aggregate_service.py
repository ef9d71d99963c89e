"""
Aggregate Service - Recompute the kpi_daily rollup from warehouse facts
"""
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import List, Dict, Any, Tuple
import logging
import time

from sqlalchemy import func
from sqlalchemy.orm import Session

from commercehub.core.money import ZERO, to_money, money_str
from commercehub.models.aggregate import KpiDaily
from commercehub.models.audit import AuditStatus, AuditType
from commercehub.models.warehouse import FactOrder, FactOrderLine
from commercehub.services import audit_service

logger = logging.getLogger(__name__)

TOP_ITEMS = 10
TOP_CATEGORIES = 5
UNCATEGORIZED = "Uncategorized"

Key = Tuple[date, str, str]


def _as_date(value) -> date:
    # func.date() returns a string on SQLite and a date on PostgreSQL
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class AggregateRefresher:
    """
    Builds the whole rollup with read-only queries first, then swaps rows in one
    short transaction so readers keep seeing the previous rollup until commit.
    """

    def __init__(self, db: Session):
        self.db = db

    def compute(self) -> List[Dict[str, Any]]:
        day = func.date(FactOrder.created_at)
        location = func.coalesce(FactOrder.location_id, "")

        rows: Dict[Key, Dict[str, Any]] = {}

        # Orders: sales, txns, unique customers
        for d, channel, loc, sales, txns, customers in self.db.query(
            day, FactOrder.channel_id, location,
            func.sum(FactOrder.net_total),
            func.count(FactOrder.id),
            func.count(func.distinct(FactOrder.customer_hash)),
        ).group_by(day, FactOrder.channel_id, location).all():
            key = (_as_date(d), channel, loc)
            rows[key] = {
                "sales": to_money(sales),
                "txns": int(txns or 0),
                "customers": int(customers or 0),
                "units": 0,
                "line_count": 0,
                "items": [],
                "markets": [],
            }

        # Lines: units and line counts
        for d, channel, loc, units, line_count in self.db.query(
            day, FactOrder.channel_id, location,
            func.sum(FactOrderLine.qty),
            func.count(FactOrderLine.external_id),
        ).join(FactOrderLine, FactOrderLine.order_id == FactOrder.id).group_by(
            day, FactOrder.channel_id, location
        ).all():
            key = (_as_date(d), channel, loc)
            if key in rows:
                rows[key]["units"] = int(units or 0)
                rows[key]["line_count"] = int(line_count or 0)

        # Items by revenue (lines with a SKU only)
        items: Dict[Key, List[Dict[str, Any]]] = defaultdict(list)
        for d, channel, loc, sku, title, qty, revenue in self.db.query(
            day, FactOrder.channel_id, location,
            FactOrderLine.sku, FactOrderLine.product_title,
            func.sum(FactOrderLine.qty), func.sum(FactOrderLine.line_total),
        ).join(FactOrderLine, FactOrderLine.order_id == FactOrder.id).filter(
            FactOrderLine.sku.isnot(None)
        ).group_by(
            day, FactOrder.channel_id, location, FactOrderLine.sku, FactOrderLine.product_title
        ).all():
            items[(_as_date(d), channel, loc)].append({
                "sku": sku, "product_title": title, "qty": int(qty or 0), "revenue": to_money(revenue),
            })

        # Categories by revenue
        category = func.coalesce(FactOrderLine.category, UNCATEGORIZED)
        markets: Dict[Key, List[Dict[str, Any]]] = defaultdict(list)
        for d, channel, loc, cat, units, revenue in self.db.query(
            day, FactOrder.channel_id, location, category,
            func.sum(FactOrderLine.qty), func.sum(FactOrderLine.line_total),
        ).join(FactOrderLine, FactOrderLine.order_id == FactOrder.id).group_by(
            day, FactOrder.channel_id, location, category
        ).all():
            markets[(_as_date(d), channel, loc)].append({
                "category": cat, "units": int(units or 0), "revenue": to_money(revenue),
            })

        result = []
        for key in sorted(rows):
            d, channel, loc = key
            row = rows[key]
            top_items = sorted(items.get(key, []), key=lambda i: (-i["revenue"], i["sku"]))[:TOP_ITEMS]
            top_markets = sorted(markets.get(key, []), key=lambda m: (-m["revenue"], m["category"]))[:TOP_CATEGORIES]
            result.append({
                "date": d,
                "channel_id": channel,
                "location_id": loc,
                "sales": row["sales"],
                "txns": row["txns"],
                "units": row["units"],
                "aov": to_money(row["sales"] / row["txns"]) if row["txns"] else ZERO,
                "items_per_customer": (
                    to_money(Decimal(row["line_count"]) / row["customers"]) if row["customers"] else ZERO
                ),
                "top_items": [{**i, "revenue": money_str(i["revenue"])} for i in top_items],
                "top_markets": [{**m, "revenue": money_str(m["revenue"])} for m in top_markets],
            })
        return result

    def refresh(self) -> Dict[str, Any]:
        """Idempotent full recompute"""
        started = time.monotonic()
        rows = self.compute()
        refreshed_at = datetime.utcnow()

        self.db.query(KpiDaily).delete(synchronize_session=False)
        self.db.add_all([KpiDaily(refreshed_at=refreshed_at, **row) for row in rows])
        self.db.commit()

        duration_ms = int((time.monotonic() - started) * 1000)
        summary = {"rows": len(rows), "duration_ms": duration_ms}
        audit_service.record_audit(
            self.db,
            source="system",
            audit_type=AuditType.AGGREGATE_REFRESH.value,
            status=AuditStatus.SUCCESS.value,
            payload=summary,
        )
        logger.info(f"kpi_daily refreshed: {len(rows)} rows in {duration_ms}ms")
        return summary
