from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from reelrender.config import get_settings
from reelrender.render.generative import GenerativeEngine
from reelrender.services.metrics import RenderMetrics
from reelrender.services.plan_service import FirestorePlanLookup, PlanLookup
from reelrender.services.progress import JobProgressBroadcaster
from reelrender.services.render_service import RenderService
from reelrender.services.storage_service import StorageService, create_storage_service


@lru_cache
def get_input_storage() -> StorageService:
    return create_storage_service(get_settings().input_bucket_name)


@lru_cache
def get_output_storage() -> StorageService:
    return create_storage_service(get_settings().output_bucket_name)


@lru_cache
def get_metrics() -> RenderMetrics:
    return RenderMetrics()


@lru_cache
def get_broadcaster() -> JobProgressBroadcaster:
    return JobProgressBroadcaster()


@lru_cache
def get_plan_lookup() -> PlanLookup | None:
    """Firestore-backed plan lookup when enabled; otherwise requests carry their plan."""
    if get_settings().use_firestore_plans:
        return FirestorePlanLookup()
    return None


@lru_cache
def get_render_service() -> RenderService:
    metrics = get_metrics()
    return RenderService(
        input_storage=get_input_storage(),
        output_storage=get_output_storage(),
        broadcaster=get_broadcaster(),
        metrics=metrics,
        plan_lookup=get_plan_lookup(),
        generative=GenerativeEngine(metrics=metrics),
    )


def reset_dependencies() -> None:
    """Drop cached singletons (settings changes in tests)."""
    for provider in (
        get_input_storage,
        get_output_storage,
        get_metrics,
        get_broadcaster,
        get_plan_lookup,
        get_render_service,
    ):
        provider.cache_clear()


RenderServiceDep = Annotated[RenderService, Depends(get_render_service)]
BroadcasterDep = Annotated[JobProgressBroadcaster, Depends(get_broadcaster)]
