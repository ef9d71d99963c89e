
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from commercehub.core.money import ZERO, to_money, money_str
from commercehub.models.aggregate import KpiDaily


class KpiService:
    """Read-only queries over the kpi_daily rollup"""

    @staticmethod
    def _range(db: Session, start: date, end: date, channel_id: Optional[str] = None):
        query = db.query(KpiDaily).filter(KpiDaily.date >= start, KpiDaily.date <= end)
        if channel_id:
            query = query.filter(KpiDaily.channel_id == channel_id)
        return query

    @staticmethod
    def get_range_totals(db: Session, start: date, end: date, channel_id: Optional[str] = None) -> Dict[str, Any]:
        sales, txns, units = KpiService._range(db, start, end, channel_id).with_entities(
            func.coalesce(func.sum(KpiDaily.sales), 0),
            func.coalesce(func.sum(KpiDaily.txns), 0),
            func.coalesce(func.sum(KpiDaily.units), 0),
        ).one()
        sales = to_money(sales)
        txns = int(txns or 0)
        return {
            "start": start.isoformat(),
            "end": end.isoformat(),
            "channel_id": channel_id,
            "sales": money_str(sales),
            "txns": txns,
            "units": int(units or 0),
            "aov": money_str(to_money(sales / txns) if txns else ZERO),
        }

    @staticmethod
    def get_channel_performance(db: Session, start: date, end: date) -> List[Dict[str, Any]]:
        rows = KpiService._range(db, start, end).with_entities(
            KpiDaily.channel_id,
            func.sum(KpiDaily.sales),
            func.sum(KpiDaily.txns),
            func.sum(KpiDaily.units),
        ).group_by(KpiDaily.channel_id).all()

        total = sum((to_money(r[1]) for r in rows), ZERO)
        result = []
        for channel_id, sales, txns, units in rows:
            sales = to_money(sales)
            txns = int(txns or 0)
            share = to_money(sales * 100 / total) if total else ZERO
            result.append({
                "channel_id": channel_id,
                "sales": money_str(sales),
                "txns": txns,
                "units": int(units or 0),
                "aov": money_str(to_money(sales / txns) if txns else ZERO),
                "percent_of_total": money_str(share),
            })
        return sorted(result, key=lambda r: Decimal(r["sales"]), reverse=True)

    @staticmethod
    def get_top_items(db: Session, start: date, end: date, limit: int = 10,
                      channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        # Merge the per-day top lists; a SKU outside a day's top 10 is not counted for that day
        totals = defaultdict(lambda: {"qty": 0, "revenue": ZERO, "product_title": None})
        for row in KpiService._range(db, start, end, channel_id).all():
            for item in row.top_items or []:
                entry = totals[item["sku"]]
                entry["qty"] += int(item.get("qty", 0))
                entry["revenue"] += to_money(item.get("revenue", 0))
                entry["product_title"] = entry["product_title"] or item.get("product_title")

        ranked = sorted(totals.items(), key=lambda kv: (-kv[1]["revenue"], kv[0]))[:limit]
        return [
            {"sku": sku, "product_title": v["product_title"], "qty": v["qty"], "revenue": money_str(v["revenue"])}
            for sku, v in ranked
        ]

    @staticmethod
    def get_top_categories(db: Session, start: date, end: date, limit: int = 5,
                           channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        totals = defaultdict(lambda: {"units": 0, "revenue": ZERO})
        for row in KpiService._range(db, start, end, channel_id).all():
            for market in row.top_markets or []:
                entry = totals[market["category"]]
                entry["units"] += int(market.get("units", 0))
                entry["revenue"] += to_money(market.get("revenue", 0))

        ranked = sorted(totals.items(), key=lambda kv: (-kv[1]["revenue"], kv[0]))[:limit]
        return [
            {"category": category, "units": v["units"], "revenue": money_str(v["revenue"])}
            for category, v in ranked
        ]

    @staticmethod
    def get_daily_trend(db: Session, start: date, end: date, channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        rows = KpiService._range(db, start, end, channel_id).with_entities(
            KpiDaily.date,
            func.sum(KpiDaily.sales),
            func.sum(KpiDaily.txns),
            func.sum(KpiDaily.units),
        ).group_by(KpiDaily.date).order_by(KpiDaily.date).all()

        return [
            {
                "date": d.isoformat(),
                "sales": money_str(to_money(sales)),
                "txns": int(txns or 0),
                "units": int(units or 0),
            }
            for d, sales, txns, units in rows
        ]
