"""
Admin API - Manual resync and audit inspection
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Optional
import logging

from commercehub.core.database import get_db
from commercehub.integrations.registry import SourceRegistry
from commercehub.schemas.admin import ResyncRequest
from commercehub.services import audit_service
from commercehub.services.reconciliation_service import ReconciliationService
from commercehub.services.resync_service import resync_day, RESYNC_TYPES
from .deps import get_sources, require_admin_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_secret)])


@router.post("/resync")
async def trigger_resync(
    request: ResyncRequest,
    db: Session = Depends(get_db),
    sources: SourceRegistry = Depends(get_sources),
):
    """Re-ingest one day for one source or all of them, then refresh aggregates"""
    if request.source != "all" and request.source not in sources:
        raise HTTPException(status_code=400, detail=f"Unknown source: {request.source}")

    logger.info(f"Admin resync requested: {request.source} {request.date}")
    result = await resync_day(db, sources, request.source, request.date)
    return {"success": True, **result}


@router.get("/resync")
async def recent_resyncs(
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    audits = audit_service.get_recent_audits(db, limit=limit, types=RESYNC_TYPES)
    return {"audits": [a.to_dict() for a in audits]}


@router.get("/audit")
async def recent_audits(
    source: Optional[str] = Query(None),
    type: Optional[str] = Query(None, description="Audit type, e.g. webhook_orders/create"),
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    audits = audit_service.get_recent_audits(
        db, limit=limit, source=source, types=[type] if type else None, status=status,
    )
    return {"audits": [a.to_dict() for a in audits], "count": len(audits)}


@router.get("/integrity")
async def integrity_check(
    db: Session = Depends(get_db),
    sources: SourceRegistry = Depends(get_sources),
):
    report = ReconciliationService(db, sources).check_integrity(raise_on_violation=False)
    return report.to_dict()
