"""
Resync Service - One-day re-ingestion per source, used by admin resync and reconciliation auto-fix
"""
from datetime import date
from typing import Optional, List, Dict, Any
import logging

import httpx
from sqlalchemy.orm import Session

from commercehub.core.config import settings
from commercehub.core.errors import IngestError
from commercehub.core.logging_config import sanitize_message
from commercehub.integrations.base import BaseSourceClient
from commercehub.models.audit import AuditStatus
from commercehub.services import audit_service
from commercehub.services.aggregate_service import AggregateRefresher
from commercehub.services.backfill_service import BackfillOrchestrator

logger = logging.getLogger(__name__)

RESYNC_TYPES = ("resync_shopify", "resync_square", "resync_anyroad")


def resolve_sources(sources: Dict[str, BaseSourceClient], source: str) -> List[str]:
    if source == "all":
        return list(sources)
    if source not in sources:
        raise ValueError(f"Unknown source: {source}")
    return [source]


async def resync_day(
    db: Session,
    sources: Dict[str, BaseSourceClient],
    source: str,
    day: date,
    refresh_aggregates: bool = True,
) -> Dict[str, Any]:
    """
    Re-ingest one day for the requested source(s).
    Each source runs independently; one failure does not stop the others.
    """
    results = {}
    for name in resolve_sources(sources, source):
        audit = audit_service.start_audit(db, source=name, audit_type=f"resync_{name}", payload={"date": day.isoformat()})
        orchestrator = BackfillOrchestrator(db, sources[name], window_days=1, audit_prefix="resync")
        try:
            stats = await orchestrator.run(day, day, resume=False)
        except IngestError as e:
            error = sanitize_message(str(e))
            audit_service.fail_audit(db, audit, error)
            results[name] = {"status": AuditStatus.FAILED.value, "processed": 0, "error": error}
            continue
        except Exception as e:
            logger.exception(f"[{name}] Resync {day} crashed")
            error = sanitize_message(f"Unexpected resync failure: {e!r}")
            audit_service.fail_audit(db, audit, error)
            results[name] = {"status": AuditStatus.FAILED.value, "processed": 0, "error": error}
            continue

        audit_service.complete_audit(db, audit, stats.to_dict())
        results[name] = {
            "status": AuditStatus.SUCCESS.value,
            "processed": stats.processed,
            "created": stats.batch.created,
            "updated": stats.batch.updated,
            "failed": stats.batch.failed,
        }
        logger.info(f"[{name}] Resync {day} processed {stats.processed} records")

    if refresh_aggregates and any(r["status"] == AuditStatus.SUCCESS.value for r in results.values()):
        AggregateRefresher(db).refresh()

    return {"date": day.isoformat(), "results": results}


class HttpResyncDispatcher:
    """Dispatch resync commands to a running API instance through the admin endpoint"""

    def __init__(self, url: Optional[str] = None, admin_secret: Optional[str] = None, timeout: float = 120.0):
        self.url = url or settings.RESYNC_URL or f"http://127.0.0.1:{settings.APP_PORT}/api/admin/resync"
        self.admin_secret = admin_secret or settings.ADMIN_SECRET or ""
        self.timeout = timeout

    async def __call__(self, source: str, day: date) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                self.url,
                json={"source": source, "date": day.isoformat()},
                headers={"x-admin-secret": self.admin_secret},
            )
        if response.status_code >= 400:
            logger.error(f"Resync dispatch {source} {day} failed: {response.status_code} {response.text[:200]}")
            return {"status": "failed", "status_code": response.status_code}
        return response.json()
