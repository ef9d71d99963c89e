"""
Daily KPI rollup per (date, channel, location)
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, Date, DateTime, Numeric, UniqueConstraint

from commercehub.core.database import Base
from .base import JSONType


class KpiDaily(Base):
    __tablename__ = "kpi_daily"

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, index=True)
    channel_id = Column(String(30), nullable=False, index=True)
    # '' stands for "no location" so the unique key stays usable
    location_id = Column(String(128), nullable=False, default="")

    sales = Column(Numeric(14, 2), nullable=False, default=0)
    txns = Column(Integer, nullable=False, default=0)
    units = Column(Integer, nullable=False, default=0)
    aov = Column(Numeric(14, 2), nullable=False, default=0)
    items_per_customer = Column(Numeric(14, 2), nullable=False, default=0)
    top_items = Column(JSONType, default=list)
    top_markets = Column(JSONType, default=list)

    refreshed_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("date", "channel_id", "location_id", name="uq_kpi_daily_key"),
    )

    def __repr__(self):
        return f"<KpiDaily {self.date} {self.channel_id}/{self.location_id} sales={self.sales}>"
