"""
Audit Service - Create and close ingest audit rows
"""
from typing import Optional, List, Dict, Any, Iterable
import logging

from sqlalchemy.orm import Session

from commercehub.models.audit import IngestAudit, AuditStatus

logger = logging.getLogger(__name__)


def start_audit(
    db: Session,
    source: str,
    audit_type: str,
    payload: Optional[Dict[str, Any]] = None,
) -> IngestAudit:
    """Open a unit of work in processing state"""
    audit = IngestAudit(
        source=source,
        type=audit_type,
        status=AuditStatus.PROCESSING.value,
        payload=payload or {},
    )
    db.add(audit)
    db.commit()
    db.refresh(audit)
    return audit


def complete_audit(db: Session, audit: IngestAudit, payload: Optional[Dict[str, Any]] = None) -> IngestAudit:
    audit.mark_success(payload)
    db.commit()
    return audit


def fail_audit(
    db: Session,
    audit: IngestAudit,
    error: str,
    payload: Optional[Dict[str, Any]] = None,
) -> IngestAudit:
    # The failed unit of work may have left the session mid-transaction
    db.rollback()
    audit.mark_failed(error, payload)
    db.commit()
    logger.warning(f"Audit {audit.source}/{audit.type} failed: {error}")
    return audit


def record_audit(
    db: Session,
    source: str,
    audit_type: str,
    status: str,
    payload: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> IngestAudit:
    """Write a row that is already terminal (checkpoints, completions, run summaries)"""
    audit = IngestAudit(source=source, type=audit_type, status=AuditStatus.PROCESSING.value, payload=payload or {})
    if status == AuditStatus.FAILED.value:
        audit.mark_failed(error or "unknown error")
    else:
        audit.mark_success()
    db.add(audit)
    db.commit()
    return audit


def get_recent_audits(
    db: Session,
    limit: int = 20,
    source: Optional[str] = None,
    types: Optional[Iterable[str]] = None,
    status: Optional[str] = None,
) -> List[IngestAudit]:
    query = db.query(IngestAudit)
    if source:
        query = query.filter(IngestAudit.source == source)
    if types:
        query = query.filter(IngestAudit.type.in_(list(types)))
    if status:
        query = query.filter(IngestAudit.status == status)
    return query.order_by(IngestAudit.timestamp.desc()).limit(limit).all()
