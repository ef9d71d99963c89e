"""
Reporting API - Aggregate refresh trigger and KPI queries over kpi_daily
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from datetime import date
from typing import Optional

from commercehub.core.database import get_db
from commercehub.services.aggregate_service import AggregateRefresher
from commercehub.services.kpi_service import KpiService
from .deps import require_cron_secret

refresh_router = APIRouter(tags=["Reporting"])
router = APIRouter(prefix="/kpi", tags=["Reporting"])


@refresh_router.get("/refresh-views", dependencies=[Depends(require_cron_secret)])
@refresh_router.post("/refresh-views", dependencies=[Depends(require_cron_secret)])
async def refresh_views(db: Session = Depends(get_db)):
    """Recompute the daily rollup. Safe to call repeatedly."""
    summary = await run_in_threadpool(AggregateRefresher(db).refresh)
    return {"success": True, **summary}


@router.get("/totals")
def get_totals(
    start: date = Query(..., description="Start date (YYYY-MM-DD)"),
    end: date = Query(..., description="End date (YYYY-MM-DD)"),
    channel: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return KpiService.get_range_totals(db, start, end, channel)


@router.get("/channels")
def get_channels(
    start: date = Query(...),
    end: date = Query(...),
    db: Session = Depends(get_db),
):
    return {"channels": KpiService.get_channel_performance(db, start, end)}


@router.get("/top-items")
def get_top_items(
    start: date = Query(...),
    end: date = Query(...),
    limit: int = Query(10, ge=1, le=50),
    channel: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return {"items": KpiService.get_top_items(db, start, end, limit, channel)}


@router.get("/top-categories")
def get_top_categories(
    start: date = Query(...),
    end: date = Query(...),
    limit: int = Query(5, ge=1, le=50),
    channel: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return {"categories": KpiService.get_top_categories(db, start, end, limit, channel)}


@router.get("/trend")
def get_daily_trend(
    start: date = Query(...),
    end: date = Query(...),
    channel: Optional[str] = None,
    db: Session = Depends(get_db),
):
    return {"trend": KpiService.get_daily_trend(db, start, end, channel)}
