"""Query audit log."""

from chatbi.audit.store import AuditEvent, AuditLogStore

__all__ = ["AuditEvent", "AuditLogStore"]
