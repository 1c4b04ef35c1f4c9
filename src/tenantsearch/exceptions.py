"""Custom exception hierarchy for tenantsearch.

These exceptions allow callers to discriminate error categories
(fatal configuration, caller mistakes, retryable backend outages)
and handle them appropriately while preserving the original context.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tenantsearch.indexing import BatchReport


class TenantSearchError(Exception):
    """Base class for all tenantsearch exceptions."""


class ConfigurationError(TenantSearchError):
    """Raised for fatal setup problems: unset default tenant, unusable app id, bad settings."""


class ValidationError(TenantSearchError):
    """Raised when the caller passes an object or argument that cannot be processed."""


class BackendUnavailable(TenantSearchError):
    """Raised on transient backend or network failures. Safe to retry."""


class SearchError(TenantSearchError):
    """Raised when the backend rejects a request for a non-transient reason."""


class HydrationFailure(TenantSearchError):
    """Raised when a raw backend record cannot be mapped back to the requested model."""


class PartialBatchFailure(TenantSearchError):
    """Raised on request when some entries of a batch operation failed."""

    def __init__(self, report: BatchReport) -> None:
        self.report = report
        keys = ", ".join(f.key for f in report.failures[:10])
        more = "" if len(report.failures) <= 10 else f" (+{len(report.failures) - 10} more)"
        super().__init__(f"{len(report.failures)} batch entries failed: {keys}{more}")
