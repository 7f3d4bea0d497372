"""
Exception taxonomy for the rendering pipeline.

Every error raised across a component boundary derives from
TechPackRenderError and carries the HTTP status the API layer maps it to.
Only a subset ever reaches callers:

- InvalidSnapshotError / PageOutOfRangeError: malformed input, never retried
- InvalidOptionsError: unparseable render options
- DocumentNotFoundError: the persistence layer has no such document
- AdmissionRejectedError: request budget exhausted, carries a retry-after hint
- PoolSaturatedError: no render slot became free in time (transient)
- RenderTimeoutError: a render job exceeded its budget and was terminated
- RenderFailedError: the renderer crashed or produced no output
- RenderCancelledError: the caller went away before the render finished

CacheUnavailableError is internal to the artifact cache and is always
converted into a cache miss.
"""

from __future__ import annotations

from typing import Optional, Sequence


class TechPackRenderError(RuntimeError):
    """Base class for all rendering pipeline failures."""

    status_code: int = 500
    code: str = "render_error"

    def __init__(self, message: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after


class InvalidSnapshotError(TechPackRenderError):
    """Raised when a Document Snapshot is malformed or incomplete."""

    status_code = 422
    code = "invalid_snapshot"

    def __init__(self, message: str, *, errors: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class PageOutOfRangeError(InvalidSnapshotError):
    """Raised when a preview asks for a page the plan does not contain."""

    code = "page_out_of_range"


class InvalidOptionsError(TechPackRenderError):
    """Raised when render options cannot be parsed."""

    status_code = 400
    code = "invalid_options"


class DocumentNotFoundError(TechPackRenderError):
    """Raised when the persistence layer has no snapshot for a document id."""

    status_code = 404
    code = "document_not_found"


class AdmissionRejectedError(TechPackRenderError):
    """Raised when a caller exceeds the budget of a request class."""

    status_code = 429
    code = "admission_rejected"

    def __init__(self, message: str, *, identity: str, request_class: str, retry_after: float) -> None:
        super().__init__(message, retry_after=retry_after)
        self.identity = identity
        self.request_class = request_class


class PoolSaturatedError(TechPackRenderError):
    """Raised when no render slot frees up within the submission timeout."""

    status_code = 503
    code = "pool_saturated"


class RenderTimeoutError(TechPackRenderError):
    """Raised when a single render job exceeds its render budget."""

    status_code = 504
    code = "render_timeout"


class RenderFailedError(TechPackRenderError):
    """Raised when the renderer process crashed or returned no artifact."""

    status_code = 502
    code = "render_failed"


class RenderCancelledError(TechPackRenderError):
    """Raised when the caller cancelled a render before it completed."""

    status_code = 499
    code = "render_cancelled"


class CacheUnavailableError(TechPackRenderError):
    """Raised by artifact stores when the backing store cannot be reached."""

    status_code = 503
    code = "cache_unavailable"
