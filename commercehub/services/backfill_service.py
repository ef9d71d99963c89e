"""
Backfill Service - Checkpointed, resumable historical ingestion per source and date window
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional, List, Dict, Any
import enum
import logging

from sqlalchemy.orm import Session

from commercehub.core.config import settings
from commercehub.core.errors import MalformedPayload
from commercehub.core.logging_config import mask_sensitive_data, sanitize_message
from commercehub.integrations.base import BaseSourceClient
from commercehub.models.audit import IngestAudit, AuditStatus, AuditType
from commercehub.services import audit_service
from commercehub.services.warehouse_service import WarehouseService, BatchResult

logger = logging.getLogger(__name__)


class BackfillState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    PERSISTING = "persisting"
    CHECKPOINTING = "checkpointing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class BackfillStats:
    source: str
    start: date
    end: date
    windows: int = 0
    pages: int = 0
    fetched: int = 0
    malformed: int = 0
    resumed_from: Optional[Dict[str, Any]] = None
    # Records processed by the interrupted run this one resumed
    resumed_processed: int = 0
    batch: BatchResult = field(default_factory=BatchResult)

    @property
    def processed(self) -> int:
        return self.batch.processed

    @property
    def total_processed(self) -> int:
        return self.resumed_processed + self.batch.processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "windows": self.windows,
            "pages": self.pages,
            "fetched": self.fetched,
            "malformed": self.malformed,
            "resumed_from": self.resumed_from,
            "total_processed": self.total_processed,
            **self.batch.to_dict(),
        }


class BackfillOrchestrator:
    """
    Drives one source across [start, end] in date windows:
    fetching -> normalizing -> persisting -> checkpointing, page by page.

    A checkpoint audit row is written after every persisted page, so an interrupted
    run resumes from the last checkpoint and re-fetches at most one page.
    """

    def __init__(
        self,
        db: Session,
        client: BaseSourceClient,
        window_days: Optional[int] = None,
        audit_prefix: str = "backfill",
    ):
        self.db = db
        self.client = client
        self.source = client.SOURCE_NAME
        self.window_days = max(1, window_days or settings.BACKFILL_WINDOW_DAYS)
        self.checkpoint_type = f"{audit_prefix}_checkpoint"
        self.error_type = f"{audit_prefix}_error"
        self.complete_type = f"{audit_prefix}_complete"
        self.warehouse = WarehouseService(db)
        self.state = BackfillState.IDLE
        self._page_seq = 0

    def _set_state(self, state: BackfillState):
        self.state = state
        logger.debug(f"[{self.source}] backfill state -> {state.value}")

    # ========== Checkpoints ==========

    def load_checkpoint(self, start: date, end: date) -> Optional[Dict[str, Any]]:
        """
        Latest checkpoint written for exactly this [start, end] range after the last
        completed run. Checkpoints from other ranges are ignored so a wider run never
        skips days a narrower run did not cover. Completed runs are not resumed.
        """
        last_complete = (
            self.db.query(IngestAudit)
            .filter(IngestAudit.source == self.source, IngestAudit.type == self.complete_type)
            .order_by(IngestAudit.timestamp.desc())
            .first()
        )
        query = self.db.query(IngestAudit).filter(
            IngestAudit.source == self.source,
            IngestAudit.type == self.checkpoint_type,
            IngestAudit.status == AuditStatus.SUCCESS.value,
        )
        if last_complete is not None:
            query = query.filter(IngestAudit.timestamp > last_complete.timestamp)

        candidates = []
        for row in query.order_by(IngestAudit.timestamp.desc()).limit(200).all():
            payload = row.payload or {}
            if payload.get("range_start") != start.isoformat() or payload.get("range_end") != end.isoformat():
                continue
            try:
                window_start = date.fromisoformat(payload["window_start"])
                window_end = date.fromisoformat(payload["window_end"])
            except (KeyError, TypeError, ValueError):
                continue
            if start <= window_start and window_end <= end:
                candidates.append((row.timestamp, window_start, payload.get("page_seq", 0), payload))

        if not candidates:
            return None
        return max(candidates, key=lambda c: (c[0], c[1], c[2]))[3]

    def save_checkpoint(
        self,
        start: date,
        end: date,
        window_start: date,
        window_end: date,
        cursor: Optional[str],
        processed_count: int,
    ) -> IngestAudit:
        self._page_seq += 1
        return audit_service.record_audit(
            self.db,
            source=self.source,
            audit_type=self.checkpoint_type,
            status=AuditStatus.SUCCESS.value,
            payload={
                "range_start": start.isoformat(),
                "range_end": end.isoformat(),
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
                "cursor": cursor,
                "window_done": cursor is None,
                "processed_count": processed_count,
                "page_seq": self._page_seq,
            },
        )

    # ========== Run ==========

    async def run(self, start: date, end: date, resume: bool = True) -> BackfillStats:
        if start > end:
            raise ValueError(f"start {start} is after end {end}")

        stats = BackfillStats(source=self.source, start=start, end=end)
        window_start = start
        cursor = None

        checkpoint = self.load_checkpoint(start, end) if resume else None
        if checkpoint:
            stats.resumed_from = checkpoint
            self._page_seq = int(checkpoint.get("page_seq", 0))
            stats.resumed_processed = int(checkpoint.get("processed_count") or 0)
            if checkpoint.get("window_done"):
                window_start = date.fromisoformat(checkpoint["window_end"]) + timedelta(days=1)
            else:
                window_start = date.fromisoformat(checkpoint["window_start"])
                cursor = checkpoint.get("cursor")
            logger.info(f"[{self.source}] Resuming backfill at {window_start} (cursor={cursor})")

        logger.info(f"[{self.source}] Backfill {start}..{end} in {self.window_days}-day windows")

        while window_start <= end:
            window_end = min(window_start + timedelta(days=self.window_days - 1), end)
            await self.run_window(start, end, window_start, window_end, cursor, stats)
            stats.windows += 1
            cursor = None
            window_start = window_end + timedelta(days=1)

        self._set_state(BackfillState.DONE)
        audit_service.record_audit(
            self.db,
            source=self.source,
            audit_type=self.complete_type,
            status=AuditStatus.SUCCESS.value,
            payload=stats.to_dict(),
        )
        logger.info(
            f"[{self.source}] Backfill complete: pages={stats.pages} processed={stats.processed} "
            f"created={stats.batch.created} updated={stats.batch.updated} failed={stats.batch.failed}"
        )
        return stats

    async def run_window(
        self,
        start: date,
        end: date,
        window_start: date,
        window_end: date,
        cursor: Optional[str],
        stats: BackfillStats,
    ):
        """Page through one window. Any failure is audited and re-raised."""
        try:
            while True:
                self._set_state(BackfillState.FETCHING)
                records, next_cursor = await self.client.fetch_by_date_range(window_start, window_end, cursor)
                stats.pages += 1
                stats.fetched += len(records)

                self._set_state(BackfillState.NORMALIZING)
                canonical = self._normalize_page(records, stats)

                self._set_state(BackfillState.PERSISTING)
                stats.batch.merge(self.warehouse.persist_batch(canonical))

                self._set_state(BackfillState.CHECKPOINTING)
                self.save_checkpoint(start, end, window_start, window_end, next_cursor, stats.total_processed)

                if not next_cursor:
                    break
                cursor = next_cursor

        except Exception as e:
            self._set_state(BackfillState.FAILED)
            self.db.rollback()
            audit_service.record_audit(
                self.db,
                source=self.source,
                audit_type=self.error_type,
                status=AuditStatus.FAILED.value,
                payload={
                    "window_start": window_start.isoformat(),
                    "window_end": window_end.isoformat(),
                    "cursor": cursor,
                    "processed_count": stats.total_processed,
                },
                error=sanitize_message(str(e)),
            )
            logger.error(f"[{self.source}] Backfill window {window_start}..{window_end} failed: {e}")
            raise

    def _normalize_page(self, records: List[Dict[str, Any]], stats: BackfillStats) -> list:
        canonical = []
        for raw in records:
            try:
                canonical.append(self.client.normalize(raw))
            except MalformedPayload as e:
                stats.malformed += 1
                logger.error(f"[{self.source}] Malformed record skipped: {e}")
                audit_service.record_audit(
                    self.db,
                    source=self.source,
                    audit_type=AuditType.MALFORMED_PAYLOAD.value,
                    status=AuditStatus.FAILED.value,
                    payload={"raw": mask_sensitive_data(raw)},
                    error=str(e),
                )
        return canonical
