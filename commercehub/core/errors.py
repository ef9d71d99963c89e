"""
Ingestion Errors - Failure taxonomy shared by adapters, persistence and reconciliation
"""
from typing import Optional, Dict, Any


class IngestError(Exception):
    """Base class for every ingestion failure"""
    retryable: bool = False

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)


class AuthenticationError(IngestError):
    """Bad webhook signature or bad admin credential. Never retried."""


# ========== Source Errors ==========

class SourceError(IngestError):
    """Failure talking to an external source"""

    def __init__(self, message: str, source: Optional[str] = None, status_code: int = 0):
        self.status_code = status_code
        super().__init__(message, source)


class RateLimited(SourceError):
    """Source kept throttling after the retry cap was spent"""
    retryable = True


class TransientSourceError(SourceError):
    """Network failure, timeout or 5xx after the retry cap was spent"""
    retryable = True


class PermanentSourceError(SourceError):
    """Bad credentials or a request the source will never accept"""


class MalformedPayload(PermanentSourceError):
    """
    Raw record or webhook body that cannot be normalized.
    Carries the raw payload so it can be logged for manual inspection.
    """

    def __init__(self, message: str, source: Optional[str] = None, raw: Any = None):
        self.raw = raw
        super().__init__(message, source)


# ========== Persistence Errors ==========

class PersistenceConflict(IngestError):
    """Single record upsert failed. Batches count it and continue."""

    def __init__(self, message: str, external_id: Optional[str] = None):
        self.external_id = external_id
        super().__init__(message)


class CriticalIntegrityViolation(IngestError):
    """Duplicate external ids or orphaned lines in the warehouse"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)
