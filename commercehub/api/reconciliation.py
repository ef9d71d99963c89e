"""
Reconciliation API - Source vs warehouse drift checks
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import logging

from commercehub.core.database import get_db
from commercehub.integrations.registry import SourceRegistry
from commercehub.jobs.scheduler import get_scheduler
from commercehub.schemas.admin import ReconcileRequest
from commercehub.services.reconciliation_service import ReconciliationService
from commercehub.services.resync_service import HttpResyncDispatcher
from .deps import get_sources, require_admin_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"], dependencies=[Depends(require_admin_secret)])


@router.post("/run")
async def run_reconciliation(
    request: ReconcileRequest,
    db: Session = Depends(get_db),
    sources: SourceRegistry = Depends(get_sources),
):
    """
    Compare each source with the warehouse, day by day.
    With auto_fix, mismatched days are queued for a one-day resync; run again to confirm.
    """
    end = request.end_date or request.start_date
    if end < request.start_date:
        raise HTTPException(status_code=400, detail="end_date is before start_date")
    if request.source != "all" and request.source not in sources:
        raise HTTPException(status_code=400, detail=f"Unknown source: {request.source}")

    dispatcher = None
    if request.auto_fix:
        scheduler = get_scheduler()
        dispatcher = scheduler.dispatch_resync if scheduler else HttpResyncDispatcher()

    service = ReconciliationService(db, sources, dispatcher=dispatcher)
    report = await service.run(
        request.start_date,
        end,
        sources=None if request.source == "all" else [request.source],
        auto_fix=request.auto_fix,
    )
    return report.to_dict()
