# Models Package
from .base import UUIDMixin, TimestampMixin, JSONType
from .warehouse import FactOrder, FactOrderLine, FactEvent, CustomerIdentity
from .audit import IngestAudit, AuditStatus, AuditType
from .aggregate import KpiDaily

__all__ = [
    "UUIDMixin", "TimestampMixin", "JSONType",
    "FactOrder", "FactOrderLine", "FactEvent", "CustomerIdentity",
    "IngestAudit", "AuditStatus", "AuditType",
    "KpiDaily",
]
