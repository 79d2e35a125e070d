"""
Error taxonomy for sync orchestration.

API client failures are raised as TokenInvalidError or TransientApiError
and converted into a recorded SyncJobRun at the job boundary; only
RateLimitedError and TokenInvalidError are ever shown to a user.
"""


class SyncError(Exception):
    """Base exception for sync orchestration operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class TokenInvalidError(SyncError):
    """Credential is expired, revoked or needs re-authentication."""

    def __init__(self, message: str, operation: str | None = None, status: str | None = None):
        super().__init__(message, operation=operation, recoverable=False)
        self.status = status


class TransientApiError(SyncError):
    """Network failure, timeout or 5xx from the provider."""

    def __init__(
        self, message: str, operation: str | None = None, status_code: int | None = None
    ):
        super().__init__(message, operation=operation, recoverable=True)
        self.status_code = status_code


class BreakerOpenError(SyncError):
    def __init__(self, message: str = "Circuit breaker is open", retry_at=None):
        super().__init__(message, operation="may_proceed", recoverable=True)
        self.retry_at = retry_at


class RateLimitedError(SyncError):
    """Manual trigger rejected; not retried automatically."""

    def __init__(self, retry_after: int, limit: int = 1, window_seconds: int = 60):
        super().__init__(
            f"Manual sync limited to {limit} per {window_seconds}s, retry in {retry_after}s",
            operation="manual_sync",
            recoverable=False,
        )
        self.retry_after = retry_after
        self.limit = limit
        self.window_seconds = window_seconds


class WebhookValidationError(SyncError):
    def __init__(self, message: str, channel_id: str | None = None):
        super().__init__(message, operation="handle_notification", recoverable=False)
        self.channel_id = channel_id


class SubscriptionRenewalError(SyncError):
    def __init__(self, message: str, channel_id: str | None = None):
        super().__init__(message, operation="renew_watch", recoverable=False)
        self.channel_id = channel_id


class IntegrationBusyError(SyncError):
    """Another process holds the integration lease, or the lease store is unreachable."""

    def __init__(self, message: str, integration_key: str | None = None):
        super().__init__(message, operation="acquire_lease", recoverable=True)
        self.integration_key = integration_key
