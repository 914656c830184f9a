"""Plan tiers, resolution ceilings and plan lookup.

The plan tier decides the encode resolution ceiling for both engines, the
per-tier scene limits, and whether the free-tier watermark is burned in.
"""

import logging
from dataclasses import dataclass
from typing import Protocol

from reelrender.config import get_settings
from reelrender.render.models import Resolution, Scene

logger = logging.getLogger(__name__)

DEFAULT_TIER = "free"

PRICE_ID_TO_TIER = {
    "price_plus": "plus",
    "price_pro": "pro",
    "price_studio": "studio",
}


@dataclass(frozen=True)
class PlanConfig:
    tier: str
    max_width: int
    max_height: int
    max_scenes: int
    max_scene_duration: float
    watermark: bool = False

    @property
    def max_resolution(self) -> Resolution:
        return Resolution(self.max_width, self.max_height)


PLAN_CONFIGS: dict[str, PlanConfig] = {
    "free": PlanConfig("free", 854, 480, max_scenes=3, max_scene_duration=15, watermark=True),
    "plus": PlanConfig("plus", 1280, 720, max_scenes=8, max_scene_duration=20),
    "pro": PlanConfig("pro", 1920, 1080, max_scenes=15, max_scene_duration=30),
    "studio": PlanConfig("studio", 3840, 2160, max_scenes=50, max_scene_duration=30),
}


def map_plan_id_to_tier(plan_id: str | None) -> str:
    """Map a billing plan id (or tier name) to a plan tier."""
    if not plan_id:
        return DEFAULT_TIER
    normalized = str(plan_id).strip().lower()
    if normalized in PLAN_CONFIGS:
        return normalized
    return PRICE_ID_TO_TIER.get(normalized, DEFAULT_TIER)


def get_plan_config(tier: str | None) -> PlanConfig:
    return PLAN_CONFIGS.get(map_plan_id_to_tier(tier), PLAN_CONFIGS[DEFAULT_TIER])


def _even(value: float) -> int:
    # H.264 with yuv420p needs even dimensions
    rounded = int(round(value))
    return max(2, rounded - (rounded % 2))


def clamp_resolution(tier: str | None, width: int | None = None, height: int | None = None) -> Resolution:
    """Resolve the encode resolution for a tier.

    Without an explicit target the tier ceiling is used. An explicit target is
    clamped to the ceiling while keeping its aspect ratio: width first, then
    height.
    """
    plan = get_plan_config(tier)
    if not width or not height:
        return plan.max_resolution

    aspect = width / height
    out_w, out_h = float(width), float(height)
    if out_w > plan.max_width:
        out_w = plan.max_width
        out_h = out_w / aspect
    if out_h > plan.max_height:
        out_h = plan.max_height
        out_w = out_h * aspect
    res_w, res_h = _even(out_w), _even(out_h)
    # Aspect rounding can land a couple of pixels short of the ceiling
    if width >= plan.max_width and plan.max_width - res_w <= 2:
        res_w = plan.max_width
    if height >= plan.max_height and plan.max_height - res_h <= 2:
        res_h = plan.max_height
    return Resolution(min(res_w, plan.max_width), min(res_h, plan.max_height))


def optimize_scenes(scenes: list[Scene], tier: str | None) -> list[Scene]:
    """Apply the tier's scene-count and per-scene duration limits."""
    plan = get_plan_config(tier)
    optimized = scenes[: plan.max_scenes]
    if len(optimized) < len(scenes):
        logger.info(f"[PLAN] Dropped {len(scenes) - len(optimized)} scenes over the {plan.tier} limit")
    for scene in optimized:
        scene.duration = min(scene.duration, plan.max_scene_duration)
    return optimized


# =============================================================================
# Plan lookup collaborators
# =============================================================================


class PlanLookup(Protocol):
    def get_plan(self, user_id: str) -> str: ...


class StaticPlanLookup:
    """Fixed user -> plan mapping (development and tests)."""

    def __init__(self, plans: dict[str, str] | None = None, default: str = DEFAULT_TIER) -> None:
        self._plans = plans or {}
        self._default = default

    def get_plan(self, user_id: str) -> str:
        return map_plan_id_to_tier(self._plans.get(user_id, self._default))


class FirestorePlanLookup:
    """Reads `users/{uid}` and maps `subscription.planId` (or `plan`) to a tier."""

    def __init__(self) -> None:
        import firebase_admin
        from firebase_admin import firestore

        settings = get_settings()
        if not firebase_admin._apps:
            options = {"projectId": settings.firebase_project_id} if settings.firebase_project_id else None
            firebase_admin.initialize_app(options=options)
        self._db = firestore.client()

    def get_plan(self, user_id: str) -> str:
        try:
            doc = self._db.collection("users").document(user_id).get()
        except Exception as e:
            logger.warning(f"[PLAN] Plan lookup failed for {user_id}; defaulting to free: {e}")
            return DEFAULT_TIER
        if not doc.exists:
            return DEFAULT_TIER
        data = doc.to_dict() or {}
        plan_id = (data.get("subscription") or {}).get("planId") or data.get("plan")
        return map_plan_id_to_tier(plan_id)
