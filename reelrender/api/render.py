"""Render API endpoints."""

import logging

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse, StreamingResponse

from reelrender.api.deps import BroadcasterDep, RenderServiceDep
from reelrender.exceptions import JobNotFoundError
from reelrender.schemas.render import (
    CacheClearRequest,
    CacheClearResponse,
    CacheStatusResponse,
    GenerateClipRequest,
    GenerateClipResponse,
    JobProgressResponse,
    ProjectCacheStatusResponse,
    RenderAccepted,
    RenderRequest,
    RenderResponse,
    SignedClipsResponse,
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post(
    "/render",
    response_model=RenderResponse,
    responses={202: {"model": RenderAccepted}},
)
async def render_video(render_request: RenderRequest, service: RenderServiceDep):
    """
    Render a project's video.

    Blocks until the artifact URL is ready. With `async_mode`, returns 202
    and a job id immediately; follow it on /progress-stream or /jobs/{job_id}.
    """
    if render_request.async_mode:
        job_id = service.start_background(render_request)
        accepted = RenderAccepted(job_id=job_id, progress_url=f"/api/progress-stream?job_id={job_id}")
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.model_dump())

    result = await service.render(render_request)
    return RenderResponse(**result.to_dict())


@router.post("/generate-clip", response_model=GenerateClipResponse)
async def generate_clip(clip_request: GenerateClipRequest, service: RenderServiceDep) -> GenerateClipResponse:
    """Generate the motion clip of a single scene from its image."""
    model, key, url = await service.generate_clip(clip_request)
    return GenerateClipResponse(model=model, clip_path=key, clip_url=url)


@router.get("/progress-stream")
async def progress_stream(broadcaster: BroadcasterDep, job_id: str = Query(..., min_length=1)) -> StreamingResponse:
    """Server-sent events for one job, ending after the terminal record."""
    return StreamingResponse(
        broadcaster.sse_stream(job_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/jobs/{job_id}", response_model=JobProgressResponse)
async def get_job(job_id: str, broadcaster: BroadcasterDep) -> JobProgressResponse:
    record = broadcaster.get(job_id)
    if record is None:
        raise JobNotFoundError(f"Job not found: {job_id}", job_id=job_id)
    return JobProgressResponse(**record.to_dict())


@router.get("/cache-status", response_model=CacheStatusResponse)
async def cache_status(service: RenderServiceDep) -> CacheStatusResponse:
    return CacheStatusResponse(**service.cache_status())


@router.get("/cache-status/{project_id}", response_model=ProjectCacheStatusResponse)
async def project_cache_status(project_id: str, service: RenderServiceDep) -> ProjectCacheStatusResponse:
    return ProjectCacheStatusResponse(**await service.project_cache_status(project_id))


@router.get("/signed-clips/{project_id}", response_model=SignedClipsResponse)
async def signed_clips(project_id: str, service: RenderServiceDep) -> SignedClipsResponse:
    return SignedClipsResponse(**await service.signed_clips(project_id))


@router.post("/cache-clear", response_model=CacheClearResponse)
async def cache_clear(clear_request: CacheClearRequest, service: RenderServiceDep) -> CacheClearResponse:
    """Delete a render cache entry and/or a project's artifact (dev mode only)."""
    deleted = await service.clear_cache(project_id=clear_request.project_id, cache_id=clear_request.cache_id)
    return CacheClearResponse(deleted=deleted)
