from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

from ..core.errors import (
    ConfirmationRequiredError,
    JobNotFoundError,
    JobStateError,
    JobValidationError,
    MarketCacheError,
    StoreUnavailableError,
)
from .routes.batch_jobs import router as batch_jobs_router
from .routes.cache_management import router as cache_management_router
from .routes.failed_tickers import router as failed_tickers_router
from .routes.fill_cache import router as fill_cache_router


ERROR_STATUS_CODES: dict[type[MarketCacheError], int] = {
    JobNotFoundError: 404,
    JobValidationError: 400,
    JobStateError: 409,
    ConfirmationRequiredError: 400,
    StoreUnavailableError: 503,
}


def create_app() -> FastAPI:
    app = FastAPI(title="Market Cache")

    logger = logging.getLogger(__name__)

    @app.exception_handler(StarletteHTTPException)
    async def custom_http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ):
        logger.warning("HTTP error %s: %s", exc.status_code, exc.detail)
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        logger.warning("Validation error: %s", exc.errors())
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(MarketCacheError)
    async def market_cache_exception_handler(request: Request, exc: MarketCacheError):
        for error_type, status_code in ERROR_STATUS_CODES.items():
            if isinstance(exc, error_type):
                logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
                return JSONResponse(
                    status_code=status_code,
                    content={"detail": str(exc), "error": type(exc).__name__},
                )
        logger.exception("Unhandled market cache error")
        return JSONResponse(
            status_code=500, content={"detail": "Internal server error"}
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error")
        return JSONResponse(
            status_code=500, content={"detail": "Internal server error"}
        )

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    app.include_router(fill_cache_router)
    app.include_router(batch_jobs_router)
    app.include_router(cache_management_router)
    app.include_router(failed_tickers_router)
    return app


app = create_app()
