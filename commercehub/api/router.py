"""
API Router - JSON Endpoints
"""
from fastapi import APIRouter
from datetime import datetime

from commercehub import __version__
from .webhooks import webhook_router
from .admin import router as admin_router
from .reconciliation import router as reconciliation_router
from .reporting import router as kpi_router, refresh_router

api_router = APIRouter(tags=["API"])

api_router.include_router(webhook_router)
api_router.include_router(admin_router)
api_router.include_router(reconciliation_router)
api_router.include_router(kpi_router)
api_router.include_router(refresh_router)


# ===================== HEALTH & STATUS =====================

@api_router.get("/status")
async def api_status():
    return {"status": "ok", "version": __version__, "timestamp": datetime.utcnow().isoformat()}
