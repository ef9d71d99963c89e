"""
Ingest Audit - Append-only record of webhooks, backfill pages, resyncs and reconciliation runs
"""
from datetime import datetime
import enum

from sqlalchemy import Column, String, Text, DateTime, Index

from commercehub.core.database import Base
from .base import UUIDMixin, JSONType


class AuditStatus(str, enum.Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class AuditType(str, enum.Enum):
    BACKFILL_CHECKPOINT = "backfill_checkpoint"
    BACKFILL_ERROR = "backfill_error"
    BACKFILL_COMPLETE = "backfill_complete"
    MALFORMED_PAYLOAD = "malformed_payload"
    RECONCILIATION = "reconciliation"
    AGGREGATE_REFRESH = "aggregate_refresh"


class IngestAudit(UUIDMixin, Base):
    """
    One ingestion unit of work. Created as processing, updated once to a terminal status.
    Checkpoint rows carry resumable cursor state in payload.
    """
    __tablename__ = "ingest_audit"

    source = Column(String(30), nullable=False)  # shopify, square, anyroad, system
    type = Column(String(80), nullable=False)
    status = Column(String(20), nullable=False, default=AuditStatus.PROCESSING.value)
    payload = Column(JSONType, default=dict)
    error = Column(Text)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    finished_at = Column(DateTime)

    __table_args__ = (
        Index("ix_ingest_audit_source_type_ts", "source", "type", "timestamp"),
    )

    def __repr__(self):
        return f"<IngestAudit {self.source}/{self.type} {self.status}>"

    def mark_success(self, payload: dict = None):
        self.status = AuditStatus.SUCCESS.value
        self.finished_at = datetime.utcnow()
        if payload is not None:
            self.payload = {**(self.payload or {}), **payload}

    def mark_failed(self, error: str, payload: dict = None):
        self.status = AuditStatus.FAILED.value
        self.finished_at = datetime.utcnow()
        self.error = error
        if payload is not None:
            self.payload = {**(self.payload or {}), **payload}

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "source": self.source,
            "type": self.type,
            "status": self.status,
            "payload": self.payload or {},
            "error": self.error,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
