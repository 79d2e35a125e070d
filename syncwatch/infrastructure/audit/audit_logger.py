"""
AuditLogger - append-only audit trail for credential and breaker operations.

Usage:
    from syncwatch.infrastructure.audit import audit_logger

    await audit_logger.log_token_refresh(
        user_id="user-123",
        integration_type="calendar",
        outcome="refreshed",
    )

Design Principles:
- Write to both database (immutable) and structured logs (searchable)
- Never fail the caller if audit logging fails
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from psycopg.types.json import Jsonb

from syncwatch.db.pool import db_pool
from syncwatch.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class AuditLogger:
    """
    Centralized audit logging service.

    Logs sensitive operations to:
    1. Database (audit_logs table) - Immutable, queryable
    2. Structured logs (stdout) - Real-time monitoring
    """

    @staticmethod
    async def log(
        user_id: str | UUID,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        request_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """
        Log an audit event to database and structured logs.

        Args:
            user_id: User the action applies to (required)
            action: Action name (e.g., "token_refreshed", "breaker_reset")
            resource_type: Type of resource (e.g., "integration_credentials")
            resource_id: Specific resource ID (e.g., integration type)
            request_id: Request correlation ID for tracing
            metadata: Additional context (JSON-serializable dict)

        Returns:
            True if logged successfully, False if failed (never raises)
        """
        if isinstance(user_id, UUID):
            user_id = str(user_id)

        logger.info(
            "Audit event",
            audit_action=action,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            request_id=request_id,
        )

        try:
            async with db_pool.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO audit_logs (
                        user_id, action, resource_type, resource_id,
                        request_id, metadata, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        action,
                        resource_type,
                        resource_id,
                        request_id,
                        Jsonb(metadata) if metadata is not None else None,
                        datetime.now(UTC),
                    ),
                )

            return True

        except Exception as e:
            # NEVER fail the caller due to audit logging failure
            logger.error(
                "CRITICAL: Failed to write audit log to database",
                error=str(e),
                error_type=type(e).__name__,
                action=action,
                user_id=user_id,
                fallback_data={
                    "user_id": user_id,
                    "action": action,
                    "resource_type": resource_type,
                    "resource_id": resource_id,
                    "metadata": metadata,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
            return False

    @staticmethod
    async def log_token_refresh(
        user_id: str | UUID,
        integration_type: str,
        outcome: str,
        error: str | None = None,
        expires_at: datetime | None = None,
    ) -> bool:
        """
        Record one token refresh attempt.

        Args:
            user_id: Owner of the integration
            integration_type: "calendar" or "contacts"
            outcome: "refreshed", "missing_refresh_token" or "refresh_failed"
            error: Failure description, if any
            expires_at: New access token expiry on success
        """
        metadata: dict[str, Any] = {"outcome": outcome}
        if error:
            metadata["error"] = error
        if expires_at:
            metadata["expires_at"] = expires_at.isoformat()

        return await AuditLogger.log(
            user_id=user_id,
            action=f"token_{outcome}",
            resource_type="integration_credentials",
            resource_id=integration_type,
            metadata=metadata,
        )

    @staticmethod
    async def log_breaker_reset(
        user_id: str | UUID,
        integration_type: str,
        admin_id: str,
        request_id: str | None = None,
    ) -> bool:
        """Record an admin forcing a circuit breaker closed."""
        return await AuditLogger.log(
            user_id=user_id,
            action="breaker_reset",
            resource_type="circuit_breaker",
            resource_id=integration_type,
            request_id=request_id,
            metadata={"admin_id": admin_id},
        )


# Global singleton instance
audit_logger = AuditLogger()
