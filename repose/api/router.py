"""
Main API router. Mounts all sub-routers.
"""

from fastapi import APIRouter, Depends

from ..core.dependencies import require_internal

router = APIRouter()


# ── Health (no auth) ─────────────────────────────────────────────────

@router.get("/health")
async def health():
    return {"status": "ok", "service": "repose"}


# ── Auth config (no auth) ───────────────────────────────────────────

@router.get("/auth/config")
async def auth_config():
    from ..core.config import get_settings
    from ..core.flags import get_flags

    if not get_flags().use_auth0:
        return {"auth_enabled": False, "message": "Dev mode, no auth required"}

    settings = get_settings()
    return {
        "auth_enabled": True,
        "domain": settings.auth0_domain,
        "audience": settings.auth0_audience,
    }


# ── V1 routes (auth required) ───────────────────────────────────────

from .batches import batches_router
from .catalog import catalog_router
from .curation import curation_router
from .export import export_router
from .files import files_router
from .generation import generation_router
from .jobs import jobs_router
from .projects import projects_router
from .realtime import realtime_router

for _router in (
    projects_router,
    catalog_router,
    batches_router,
    generation_router,
    curation_router,
    export_router,
    jobs_router,
    realtime_router,
):
    router.include_router(_router, prefix="/v1", dependencies=[Depends(require_internal)])

# Stored images are loaded by <img> tags, which carry no bearer token
router.include_router(files_router, prefix="/v1")
