"""API routes for driving and inspecting batch fill jobs."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ...schemas.requests import JobControlRequest, OrchestrateRequest
from ...services.fill_service import FillCacheService
from ..deps import get_service


router = APIRouter(prefix="/api", tags=["batch-jobs"])


@router.get("/fill-cache-batch-status")
def batch_status(
    jobId: str,
    detailed: bool = False,
    service: FillCacheService = Depends(get_service),
):
    """Progress snapshot of one job; ``detailed`` adds per-ticker failures."""
    return JSONResponse(status_code=200, content=service.job_status(jobId, detailed))


@router.post("/fill-cache-batch-orchestrator")
def orchestrate_batch(
    request: OrchestrateRequest,
    service: FillCacheService = Depends(get_service),
):
    """Run the next batch of a job within this invocation's time budget."""
    return JSONResponse(status_code=200, content=service.orchestrate(request.job_id))


@router.post("/fill-cache-batch-control")
def control_batch(
    request: JobControlRequest,
    service: FillCacheService = Depends(get_service),
):
    return JSONResponse(
        status_code=200, content=service.control_job(request.job_id, request.action)
    )


@router.get("/fill-cache-batch-jobs")
def list_batch_jobs(
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    service: FillCacheService = Depends(get_service),
):
    jobs = service.list_jobs(status=status, limit=limit, offset=offset)
    return JSONResponse(
        status_code=200,
        content={"jobs": jobs, "limit": limit, "offset": offset},
    )


@router.post("/fill-cache-batch-jobs/purge")
def purge_batch_jobs(service: FillCacheService = Depends(get_service)):
    """Delete jobs older than the configured expiry."""
    deleted = service.purge_expired_jobs()
    return JSONResponse(status_code=200, content={"deleted": deleted})
