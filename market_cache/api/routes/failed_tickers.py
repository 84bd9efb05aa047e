"""API routes for managing tickers the provider could not serve."""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from fastapi.responses import JSONResponse

from ...schemas.requests import RetryFailedRequest
from ...services.fill_service import FillCacheService
from ..deps import get_service


router = APIRouter(prefix="/api", tags=["failed-tickers"])


@router.get("/failed-tickers")
def list_failed_tickers(
    limit: int = 50,
    offset: int = 0,
    service: FillCacheService = Depends(get_service),
):
    """List failed tickers, most recently attempted first."""
    failures = service.list_failed(limit=limit, offset=offset)
    return JSONResponse(
        status_code=200,
        content={
            "failures": [failure.model_dump() for failure in failures],
            "total": service.count_failed(),
            "limit": limit,
            "offset": offset,
        },
    )


@router.delete("/failed-tickers/{ticker}")
def remove_failed_ticker(
    ticker: str,
    service: FillCacheService = Depends(get_service),
):
    if not service.clear_failed(ticker):
        raise HTTPException(status_code=404, detail="Failed ticker not found")
    return JSONResponse(
        status_code=200, content={"ticker": ticker.upper(), "removed": True}
    )


@router.post("/failed-tickers/retry")
def retry_failed_tickers(
    request: RetryFailedRequest,
    background_tasks: BackgroundTasks,
    service: FillCacheService = Depends(get_service),
):
    """Queue a forced refetch using an alternate symbol suffix."""
    job = service.retry_with_suffix(request.tickers, request.suffix)
    if request.start_immediately:
        background_tasks.add_task(service.orchestrate_in_background, job.job_id)
    return JSONResponse(
        status_code=202,
        content={
            "jobId": job.job_id,
            "status": job.status,
            "lookupSuffix": job.lookup_suffix,
            "totalBatches": job.total_batches,
            "tickers": job.tickers,
        },
    )
