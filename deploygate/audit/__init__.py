from deploygate.audit.reader import AuditQuery, AuditReader
from deploygate.audit.recorder import AuditRecorder, verify_audit_chain
from deploygate.audit.types import AuditEntry, AuditFilters

__all__ = [
    "AuditEntry",
    "AuditFilters",
    "AuditQuery",
    "AuditReader",
    "AuditRecorder",
    "verify_audit_chain",
]
