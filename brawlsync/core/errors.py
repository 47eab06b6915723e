"""
brawlsync error hierarchy for clear classification in logs and API responses.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class BrawlSyncError(Exception):
    """Base class for all sync worker errors."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def as_dict(self) -> Dict[str, Any]:
        """Serializable representation for logs/API."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class RemoteApiError(BrawlSyncError):
    """Raised when the provider answers with a status we do not retry."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.endpoint = endpoint
        self.status_code = status_code
        if endpoint is not None:
            self.details["endpoint"] = endpoint
        if status_code is not None:
            self.details["status_code"] = status_code


class RemoteThrottledError(RemoteApiError):
    """Provider kept answering 429 after the bounded retries."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs) -> None:
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class RemoteNotFoundError(RemoteApiError):
    """Provider returned 404 for the requested resource."""

    def __init__(self, message: str, **kwargs) -> None:
        super().__init__(message, status_code=404, **kwargs)


class RemoteTransientError(RemoteApiError):
    """5xx, timeout or network failure that survived the retry."""


class QuotaExhaustedError(BrawlSyncError):
    """Remaining request budget is below what an operation needs."""

    def __init__(self, message: str, *, remaining: int, required: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.remaining = remaining
        self.required = required
        self.details.update({"remaining": remaining, "required": required})


class StoreUnavailableError(BrawlSyncError):
    """Shared limiter/lock/cursor/queue store could not be reached."""

    def __init__(self, message: str, *, operation: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.operation = operation
        if operation is not None:
            self.details["operation"] = operation


class LockLostError(BrawlSyncError):
    """The lease was taken over by another owner while the body was running."""

    def __init__(self, message: str, *, key: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.key = key
        if key is not None:
            self.details["key"] = key


class JobRetryExhaustedError(BrawlSyncError):
    """A refresh job failed on every attempt."""

    def __init__(self, message: str, *, job_key: str, attempts: int, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.job_key = job_key
        self.attempts = attempts
        self.details.update({"job_key": job_key, "attempts": attempts})


class ConfigError(BrawlSyncError):
    """Raised on missing/invalid configuration values."""

    def __init__(self, message: str, *, key: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.key = key
        if key is not None:
            self.details["key"] = key
