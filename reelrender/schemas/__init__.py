from reelrender.schemas.envelope import ErrorInfo, ErrorResponse
from reelrender.schemas.render import (
    GenerateClipRequest,
    GenerateClipResponse,
    JobProgressResponse,
    RenderAccepted,
    RenderRequest,
    RenderResponse,
    SceneSpec,
)

__all__ = [
    "ErrorInfo",
    "ErrorResponse",
    "SceneSpec",
    "RenderRequest",
    "RenderResponse",
    "RenderAccepted",
    "GenerateClipRequest",
    "GenerateClipResponse",
    "JobProgressResponse",
]
