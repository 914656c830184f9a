from dataclasses import dataclass
from time import perf_counter
from uuid import uuid4

from fastapi import Request

REQUEST_ID_HEADER = "X-Request-ID"


@dataclass
class RequestContext:
    request_id: str
    start_time: float

    @property
    def elapsed_ms(self) -> int:
        return int((perf_counter() - self.start_time) * 1000)


def create_request_context(request: Request | None = None) -> RequestContext:
    """Reuse the caller's X-Request-ID when present, else mint one."""
    request_id = None
    if request is not None:
        request_id = getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)
    return RequestContext(request_id=request_id or str(uuid4()), start_time=perf_counter())


async def request_id_middleware(request: Request, call_next):
    context = create_request_context(request)
    request.state.request_id = context.request_id
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = context.request_id
    return response
