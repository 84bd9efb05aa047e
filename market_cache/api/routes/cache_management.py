from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from ...schemas.requests import CacheManagementRequest
from ...services.fill_service import FillCacheService
from ..deps import get_service


router = APIRouter(prefix="/api", tags=["cache-management"])


@router.get("/cache-management")
def cache_statistics(service: FillCacheService = Depends(get_service)):
    return JSONResponse(status_code=200, content=service.cache_stats())


@router.post("/cache-management")
def manage_cache(
    request: CacheManagementRequest,
    service: FillCacheService = Depends(get_service),
):
    return JSONResponse(status_code=200, content=service.manage_cache(request))


@router.get("/cache-data")
def cached_data(
    tickers: str = Query(..., description="Comma separated tickers"),
    years: str | None = Query(None, description="Comma separated years"),
    service: FillCacheService = Depends(get_service),
):
    try:
        year_list = [int(year) for year in years.split(",") if year.strip()] if years else None
    except ValueError:
        raise HTTPException(status_code=400, detail="years must be comma separated integers")
    return JSONResponse(
        status_code=200,
        content=service.cached_data(tickers.split(","), year_list),
    )
