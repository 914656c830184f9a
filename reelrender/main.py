import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from reelrender.api import render, storage
from reelrender.api.deps import RenderServiceDep
from reelrender.config import get_settings
from reelrender.constants.error_codes import get_error_spec
from reelrender.exceptions import RenderEngineError
from reelrender.middleware.request_context import create_request_context, request_id_middleware
from reelrender.schemas.envelope import ErrorInfo, ErrorResponse

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.middleware("http")(request_id_middleware)


def _http_error_code(status_code: int) -> str:
    mapping = {
        400: "BAD_REQUEST",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        422: "VALIDATION_ERROR",
        500: "INTERNAL_ERROR",
    }
    return mapping.get(status_code, "HTTP_ERROR")


def _error_response(request: Request, status_code: int, error: ErrorInfo) -> JSONResponse:
    context = create_request_context(request)
    body = ErrorResponse(error=error, request_id=context.request_id)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body.model_dump(exclude_none=True)),
    )


@app.exception_handler(RenderEngineError)
async def render_engine_exception_handler(request: Request, exc: RenderEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[API] {request.url.path} failed: {exc.code} {exc.message} (job {exc.job_id})")
    return _error_response(request, exc.status_code, exc.to_error_info())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request validation errors (422) in the error envelope."""
    spec = get_error_spec("VALIDATION_ERROR")

    # Build a human-readable message from validation errors
    errors = exc.errors()
    if errors:
        first_error = errors[0]
        loc = " -> ".join(str(x) for x in first_error.get("loc", []))
        msg = first_error.get("msg", "Validation error")
        message = f"{loc}: {msg}" if loc else msg
    else:
        message = "Request validation failed"

    error = ErrorInfo(
        code="VALIDATION_ERROR",
        message=message,
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return _error_response(request, 422, error)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    error_code = _http_error_code(exc.status_code)
    spec = get_error_spec(error_code)
    error = ErrorInfo(
        code=error_code,
        message=str(exc.detail),
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return _error_response(request, exc.status_code, error)


# Global exception handler to ensure errors return proper JSON
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled exception: {exc}")
    spec = get_error_spec("INTERNAL_ERROR")
    error = ErrorInfo(
        code="INTERNAL_ERROR",
        message="Internal server error",
        retryable=spec.get("retryable", False),
        suggested_fix=spec.get("suggested_fix"),
    )
    return _error_response(request, 500, error)


# Routers
app.include_router(render.router, prefix="/api", tags=["render"])
app.include_router(storage.router, prefix="/api/storage", tags=["storage"])


@app.get("/health")
async def health_check(service: RenderServiceDep) -> dict:
    return {
        "status": "healthy",
        "version": settings.app_version,
        "git_hash": settings.git_hash,
        "buckets": {
            "input": service.input_storage.bucket_name,
            "output": service.output_storage.bucket_name,
        },
        "engine": settings.render_engine or "ffmpeg",
        "fal_model": settings.fal_render_model or None,
        "fal_configured": service.generative.configured,
    }
