"""Local storage API endpoints for development."""

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from reelrender.api.deps import get_input_storage, get_output_storage
from reelrender.config import get_settings

router = APIRouter()

MEDIA_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".srt": "application/x-subrip",
}


@router.get("/files/{bucket}/{storage_key:path}")
async def get_file(bucket: str, storage_key: str) -> FileResponse:
    """Serve objects of the local input/output buckets."""
    if not get_settings().use_local_storage:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )

    storage = next((s for s in (get_input_storage(), get_output_storage()) if s.bucket_name == bucket), None)
    if storage is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Bucket not found")

    file_path = storage.get_file_path(storage_key)
    if not file_path.is_file():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    return FileResponse(
        path=str(file_path),
        media_type=MEDIA_TYPES.get(file_path.suffix.lower(), "application/octet-stream"),
        filename=file_path.name,
    )
