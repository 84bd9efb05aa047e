from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse

from ...schemas.requests import FillCacheRequest
from ...services.fill_service import FillCacheService
from ..deps import get_service


router = APIRouter(prefix="/api", tags=["fill-cache"])


@router.post("/fill-cache")
def fill_cache(
    request: FillCacheRequest,
    background_tasks: BackgroundTasks,
    service: FillCacheService = Depends(get_service),
):
    status_code, payload = service.fill(request)
    if status_code == 202 and request.start_immediately:
        background_tasks.add_task(service.orchestrate_in_background, payload["jobId"])
        payload["message"] += " - first batch starting automatically"
    return JSONResponse(status_code=status_code, content=payload)
