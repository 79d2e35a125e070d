"""
Audit logging infrastructure for credential lifecycle tracking.

Every token refresh outcome and every admin breaker reset is recorded here.
"""

from syncwatch.infrastructure.audit.audit_logger import AuditLogger, audit_logger

__all__ = ["AuditLogger", "audit_logger"]
