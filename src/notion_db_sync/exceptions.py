"""
Custom exception classes for the Notion database sync tool.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base exception for migration errors."""


class LinkStoreError(MigrationError):
    """Base exception for link ledger errors."""


class LinkNotFoundError(LinkStoreError):
    """Raised when no link exists for a (source id, link type) pair."""


class LinkParseError(LinkStoreError):
    """Raised when a persisted link cannot be parsed."""


class MediaError(MigrationError):
    """Base exception for media download/upload errors."""


class DownloadError(MediaError):
    """Raised when a media file cannot be fetched."""


class UploadFailedError(MediaError):
    """Raised when Notion reports a file upload as failed or expired."""


class UploadTimeoutError(MediaError):
    """Raised when a file upload does not reach the 'uploaded' state in time."""


class RateLimitTimeoutError(MigrationError):
    """Raised when the rate limiter cannot admit a request within its maximum delay."""


class TransformError(MigrationError):
    """Raised when a source page cannot be converted into a target payload."""


class MissingHookError(TransformError):
    """Raised when a mapping refers to a hook that is not registered."""

    hook_name: str

    def __init__(self, hook_name: str) -> None:
        super().__init__(f"No hook registered under '{hook_name}'")
        self.hook_name = hook_name


class SkipPageError(MigrationError):
    """Raised by a transform step to skip a page deliberately.

    This is not a failure: the reconciler counts it as skipped and it does not
    feed the circuit breaker.
    """


class CircuitBreakerTrippedError(MigrationError):
    """Raised when repeated record failures abort a sync run."""
