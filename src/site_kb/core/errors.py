"""
Error Taxonomy & Global Error Handling

This module defines the exception hierarchy shared by the pipeline
components and the application-wide exception handlers for the API.

Design Goals
------------
- One exception type per recoverable / fatal condition in the pipeline
- Never leak internal exception details to clients
- Always return deterministic, machine-readable error responses
- Log full stack traces internally for debugging
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, TYPE_CHECKING

from fastapi import Request
from fastapi.responses import JSONResponse

if TYPE_CHECKING:
    from ..jobs.models import IndexingJob

logger = logging.getLogger("kb.errors")


# ---------------------------------------------------------------------
# Exception Hierarchy
# ---------------------------------------------------------------------

class SiteKBError(Exception):
    """Base class for all knowledge-base errors."""


class InvalidTenantError(SiteKBError):
    """Raised when a tenant or collection identifier is missing or malformed."""


class FetchError(SiteKBError):
    """A single page could not be fetched. Recovered: the page is skipped."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class ContentTooShort(SiteKBError):
    """A page's cleaned content is below the minimum length. Recovered: the page is dropped."""

    def __init__(self, url: str, length: int, minimum: int) -> None:
        super().__init__(f"{url}: content length {length} below minimum {minimum}")
        self.url = url
        self.length = length
        self.minimum = minimum


class EmbeddingProviderError(SiteKBError):
    """Raised when the embedding provider fails or returns malformed output."""


class VectorIndexError(SiteKBError):
    """Raised when a vector or metadata store operation fails."""


class TenantIsolationViolation(SiteKBError):
    """
    Data belonging to one tenant was about to cross into another tenant's scope.

    Never recovered: the operation is aborted.
    """


class DuplicateJobError(SiteKBError):
    """
    A non-terminal job already exists for the (tenant, collection) key.

    Not a failure: single-flight hands the existing job back to the caller.
    """

    def __init__(self, existing: "IndexingJob") -> None:
        super().__init__(f"Job {existing.job_id} is already {existing.status.value}")
        self.existing = existing


class JobCancelled(SiteKBError):
    """Raised inside a running job when cancellation has been requested."""


class JobConflictError(SiteKBError):
    """The operation is not allowed while an indexing job is active."""


class InvalidJobTransition(SiteKBError):
    """A job status change would move the state machine backwards."""


class NotIndexedError(SiteKBError):
    """No indexing job has ever run for the requested collection."""


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

_STATUS_BY_ERROR = (
    (InvalidTenantError, 400, "invalid_tenant"),
    (NotIndexedError, 404, "not_indexed"),
    (JobConflictError, 409, "job_conflict"),
    (EmbeddingProviderError, 503, "embedding_unavailable"),
    (VectorIndexError, 503, "index_unavailable"),
)


def _error_payload(code: str, detail: str) -> Dict[str, Any]:
    return {"error": code, "detail": detail}


async def site_kb_exception_handler(
    request: Request,
    exc: SiteKBError,
) -> JSONResponse:
    """
    Map known knowledge-base errors to deterministic HTTP responses.

    Isolation violations are deliberately reported as a generic 500 so no
    hint about another tenant's data reaches the client.
    """
    if isinstance(exc, TenantIsolationViolation):
        logger.critical(
            "Tenant isolation violation during %s %s: %s",
            request.method,
            request.url.path,
            exc,
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload("internal_server_error", "Internal server error"),
        )

    for error_type, status_code, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            logger.warning(
                "%s during %s %s: %s",
                type(exc).__name__,
                request.method,
                request.url.path,
                exc,
            )
            return JSONResponse(
                status_code=status_code,
                content=_error_payload(code, str(exc)),
            )

    return await unhandled_exception_handler(request, exc)


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions.

    Behavior
    --------
    - Logs the full exception stack trace for internal diagnostics.
    - Returns a generic 500 error to the client with no internal details.
    - Ensures consistent error response format across the entire API.
    """

    # Log full traceback internally (never returned to client)
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )

    return JSONResponse(
        status_code=500,
        content=_error_payload("internal_server_error", "Internal server error"),
    )


def describe_error(exc: Optional[BaseException]) -> Optional[str]:
    """
    Human-readable one-line description stored on failed jobs.
    """
    if exc is None:
        return None
    message = str(exc).strip()
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__
