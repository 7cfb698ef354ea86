from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.metrics import generate_metrics_payload, metrics_content_type
from app.pipelines.api import router as pipelines_router, sheets_router, webhook_router

router = APIRouter()
# static prefixes first so they are not captured by /api/pipelines/{pipeline_id}
router.include_router(sheets_router)
router.include_router(webhook_router)
router.include_router(pipelines_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, object]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "sheet_sync": {
            "enabled": settings.sheet_sync_enabled,
            "backend": settings.sheets_backend,
            "inline_jobs": settings.auto_run_jobs,
        },
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, object]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "pipeline_permissions": sorted(role for role in user.roles if role.startswith("pipelines.")),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
