"""Error codes dictionary for the render engine API.

This is the single source of truth for all error codes, their retryability,
and suggested recovery hints. Used by exception handlers to generate
machine-readable error responses.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Caller errors (never retried)
    # ==========================================================================
    "INVALID_ARGUMENT": {
        "retryable": False,
        "suggested_fix": "Provide scenes, a narration audio reference and a caption track "
        "(or set no_subtitles=true).",
    },
    "FORBIDDEN": {
        "retryable": False,
        "suggested_fix": "This operation is only available when DEV_MODE is enabled.",
    },
    "ASSET_NOT_FOUND": {
        "retryable": False,
        "suggested_fix": "Upload the missing asset to the project prefix and re-submit.",
    },
    "JOB_NOT_FOUND": {
        "retryable": False,
    },
    # ==========================================================================
    # Operator errors
    # ==========================================================================
    "CONFIG": {
        "retryable": False,
        "suggested_fix": "Set the required engine credentials or model identifiers.",
    },
    # ==========================================================================
    # Engine errors (caller may re-submit; cache is re-checked)
    # ==========================================================================
    "COMPOSITOR_FAILURE": {
        "retryable": True,
        "suggested_fix": "Re-submit the render. Inspect the ffmpeg detail if it keeps failing.",
    },
    "GENERATIVE_ENGINE_FAILURE": {
        "retryable": True,
        "suggested_fix": "Re-submit later or fall back to the deterministic engine.",
    },
    "STORAGE_FAILURE": {
        "retryable": True,
    },
    "CACHE_WRITE_FAILURE": {
        "retryable": False,
    },
    "INTERNAL_ERROR": {
        "retryable": True,
    },
    # ==========================================================================
    # HTTP-level errors
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
        "suggested_fix": "Fix the request body fields named in the message.",
    },
    "NOT_FOUND": {
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification for a code, or an empty spec if unknown."""
    return ERROR_CODES.get(code, {})


def is_retryable(code: str) -> bool:
    return get_error_spec(code).get("retryable", False)
