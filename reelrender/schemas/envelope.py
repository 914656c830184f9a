from typing import Any

from pydantic import BaseModel


class ErrorInfo(BaseModel):
    code: str
    message: str
    job_id: str | None = None
    retryable: bool = False
    suggested_fix: str | None = None  # Human-readable fix suggestion
    details: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ErrorInfo
    request_id: str | None = None
