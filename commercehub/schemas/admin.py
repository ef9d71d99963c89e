"""
Admin Schemas
"""
from pydantic import BaseModel
from typing import Optional, Literal
from datetime import date

ResyncSource = Literal["shopify", "square", "anyroad", "all"]


class ResyncRequest(BaseModel):
    source: ResyncSource = "all"
    date: date


class ReconcileRequest(BaseModel):
    start_date: date
    end_date: Optional[date] = None
    source: ResyncSource = "all"
    auto_fix: bool = False
