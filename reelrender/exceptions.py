"""Custom exceptions for the render engine.

Every fatal error carries a machine-readable code, a human-readable detail and
the job id of the render it belongs to, so callers can cross-reference the
progress stream with the final error.
"""

from typing import Any

from reelrender.constants.error_codes import get_error_spec
from reelrender.schemas.envelope import ErrorInfo


class RenderEngineError(Exception):
    """Base exception for all render engine errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        job_id: str | None = None,
        details: dict[str, Any] | None = None,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.job_id = job_id
        self.details = details
        super().__init__(self.message)

    def with_job(self, job_id: str | None) -> "RenderEngineError":
        """Attach the job id if the raiser did not know it."""
        if self.job_id is None:
            self.job_id = job_id
        return self

    def to_error_info(self) -> ErrorInfo:
        """Convert exception to ErrorInfo for API response."""
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            message=self.message,
            job_id=self.job_id,
            retryable=spec.get("retryable", False),
            suggested_fix=spec.get("suggested_fix"),
            details=self.details,
        )


# =============================================================================
# Caller errors (400/403/404)
# =============================================================================


class InvalidArgumentError(RenderEngineError):
    """Missing or malformed scene/asset references."""

    code = "INVALID_ARGUMENT"
    status_code = 400
    message = "Missing required fields for rendering"


class ForbiddenError(RenderEngineError):
    """Operator-only operation attempted outside dev mode."""

    code = "FORBIDDEN"
    status_code = 403
    message = "Operation not allowed"


class AssetNotFoundError(RenderEngineError):
    """An expected input is missing in the asset store."""

    code = "ASSET_NOT_FOUND"
    status_code = 404
    message = "Asset not found"

    def __init__(self, reference: str | None = None, **kwargs: Any):
        self.reference = reference
        message = f"Asset not found: {reference}" if reference else None
        details = kwargs.pop("details", None) or ({"reference": reference} if reference else None)
        super().__init__(message, details=details, **kwargs)


class JobNotFoundError(RenderEngineError):
    code = "JOB_NOT_FOUND"
    status_code = 404
    message = "Job not found"


# =============================================================================
# Operator errors (500)
# =============================================================================


class ConfigurationError(RenderEngineError):
    """Required engine credentials or model identifiers are absent."""

    code = "CONFIG"
    status_code = 500
    message = "Render engine is not configured"


# =============================================================================
# Engine errors (500/502)
# =============================================================================


class CompositorFailureError(RenderEngineError):
    """The deterministic filter-graph/encode pipeline failed."""

    code = "COMPOSITOR_FAILURE"
    status_code = 500
    message = "FFmpeg failed to render the video"

    def __init__(self, message: str | None = None, *, stage: str | None = None, stderr: str | None = None, **kwargs: Any):
        self.stage = stage
        details = kwargs.pop("details", None) or {}
        if stage:
            details["stage"] = stage
        if stderr:
            # Only the tail of ffmpeg's stderr is useful
            details["stderr"] = stderr[-2000:]
        super().__init__(message, details=details or None, **kwargs)


class GenerativeEngineError(RenderEngineError):
    """Remote model submit/poll/fetch failed, timed out, or exhausted all candidates."""

    code = "GENERATIVE_ENGINE_FAILURE"
    status_code = 502
    message = "Remote video generation failed"


class StorageError(RenderEngineError):
    """Upload, download or signing failed after retries."""

    code = "STORAGE_FAILURE"
    status_code = 500
    message = "Storage error"


class CacheWriteError(RenderEngineError):
    """Writing a render cache entry failed. Never surfaced to callers."""

    code = "CACHE_WRITE_FAILURE"
    status_code = 500
    message = "Render cache write failed"
