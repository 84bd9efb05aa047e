from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from ..config import Settings
from ..core.errors import (
    ConfirmationRequiredError,
    JobStateError,
    JobValidationError,
    RepositoryError,
    StoreUnavailableError,
)
from ..db.repository import CacheRepository
from ..schemas.batch_job import BatchJob
from ..schemas.cache_record import FailedTicker
from ..schemas.requests import CacheManagementRequest, FillCacheRequest, clean_tickers
from .batch_processor import BatchProcessor, UpstreamProvider
from .job_state import JobStateManager, status_message
from .tiered_cache import TieredCache


T = TypeVar("T")

CONFIRMATION_CODES = {
    "clear_market_data": "CLEAR_MARKET_DATA",
    "clear_by_ticker": "CLEAR_TICKER_DATA",
    "clear_everything": "NUCLEAR_CLEAR_EVERYTHING",
}


def job_summary(job: BatchJob) -> dict:
    return {
        "processed": job.processed,
        "total": len(job.tickers),
        "percentage": job.percentage,
        "successful": job.successful,
        "failed": job.failed,
    }


class FillCacheService:
    """Entry points behind the HTTP surface: fill, validate, orchestrate and admin.

    The orchestrator is stateless between calls: every invocation loads the
    job from the store, runs at most ``max_batches_per_invocation`` batches
    within the invocation budget and persists the outcome before returning.
    """

    def __init__(
        self,
        repository: CacheRepository,
        provider: UpstreamProvider,
        settings: Settings,
        job_state: JobStateManager | None = None,
        monotonic: Callable[[], float] | None = None,
    ):
        self.repository = repository
        self.provider = provider
        self.settings = settings
        self.job_state = job_state or JobStateManager(repository, settings)
        self.monotonic = monotonic or time.monotonic

    def new_processor(self) -> BatchProcessor:
        return BatchProcessor(
            TieredCache(self.repository),
            self.provider,
            self.settings,
            monotonic=self.monotonic,
        )

    def _store_call(self, operation: Callable[[], T]) -> T:
        attempts = self.settings.store_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except RepositoryError as exc:
                if attempt == attempts:
                    raise StoreUnavailableError(f"Cache store unavailable: {exc}") from exc
                logger.warning(
                    "Job store operation failed (attempt %s/%s): %s", attempt, attempts, exc
                )
                time.sleep(0.05 * attempt)
        raise StoreUnavailableError("Cache store unavailable")

    # -- orchestration -------------------------------------------------

    def orchestrate(self, job_id: str) -> dict:
        started = self.monotonic()
        deadline = started + self.settings.invocation_budget_seconds
        job = self._store_call(lambda: self.job_state.load_job(job_id))

        if job.status == "completed":
            return self._orchestrate_response(job, started, 0, "Batch job already completed")
        if job.status == "failed":
            raise JobStateError("Cannot continue a failed batch job")
        if job.status == "paused":
            return self._orchestrate_response(job, started, 0, status_message(job))

        batches_processed = 0
        message = ""
        try:
            if job.status == "pending":
                job = self._store_call(lambda: self.job_state.start_job(job_id))
            processor = self.new_processor()

            while (
                job.status == "running"
                and job.remaining_batches > 0
                and batches_processed < self.settings.max_batches_per_invocation
            ):
                if processor.remaining(deadline) <= self.settings.safety_margin_seconds:
                    message = "Invocation budget exhausted; re-trigger to continue"
                    break

                batch_index = job.current_batch_index
                tickers = self.job_state.batch_tickers(job, batch_index)
                logger.info(
                    "Job %s: running batch %s/%s (%s tickers)",
                    job_id,
                    batch_index + 1,
                    job.total_batches,
                    len(tickers),
                )
                result = processor.run_batch(
                    tickers,
                    deadline,
                    batch_index=batch_index,
                    force=job.force,
                    retry_delisted=job.retry_delisted,
                    lookup_suffix=job.lookup_suffix,
                    fresh_since=job.processing_started_at,
                )
                if not result.complete:
                    message = (
                        f"Batch {batch_index + 1} of {job.total_batches} interrupted: "
                        f"{result.message}. Re-trigger to continue."
                    )
                    job = self._store_call(lambda: self.job_state.annotate(job_id, message))
                    break

                job = self._store_call(lambda: self.job_state.advance_job(job_id, result))
                batches_processed += 1
        except StoreUnavailableError as exc:
            logger.error("Job %s: store unavailable, marking failed", job_id)
            try:
                self.job_state.mark_failed(job_id, str(exc))
            except RepositoryError:
                logger.exception("Could not mark job %s as failed", job_id)
            raise

        return self._orchestrate_response(
            job, started, batches_processed, message or job.message or status_message(job)
        )

    def orchestrate_in_background(self, job_id: str) -> None:
        try:
            self.orchestrate(job_id)
        except Exception:
            logger.exception("Background orchestration of job %s failed", job_id)

    def _orchestrate_response(
        self, job: BatchJob, started: float, batches_processed: int, message: str
    ) -> dict:
        return {
            "jobId": job.job_id,
            "status": job.status,
            "completed": job.status == "completed",
            "batchesProcessed": batches_processed,
            "currentBatch": job.current_batch_index,
            "totalBatches": job.total_batches,
            "progress": job_summary(job),
            "message": message,
            "duration": round(self.monotonic() - started, 3),
        }

    # -- fill / validate -----------------------------------------------

    def validate(self, tickers: list[str]) -> dict:
        cleaned = clean_tickers(tickers)
        cached = self.repository.cached_tickers(cleaned)
        previously_failed = self.repository.get_failed_tickers(cleaned)
        missing: list[str] = []
        failed: list[dict] = []
        for ticker in cleaned:
            if ticker in cached:
                continue
            if ticker in previously_failed:
                failed.append({"ticker": ticker, "error": previously_failed[ticker].error})
            else:
                missing.append(ticker)
        return {
            "cached": [ticker for ticker in cleaned if ticker in cached],
            "missing": missing,
            "failed": failed,
            "summary": {
                "total": len(cleaned),
                "cached": len(cached),
                "missing": len(missing),
                "failed": len(failed),
            },
        }

    def fill(self, request: FillCacheRequest) -> tuple[int, dict]:
        """Validate or fill; returns an HTTP status code and a JSON payload."""
        if len(request.tickers) > self.settings.max_tickers:
            raise JobValidationError(
                f"Too many tickers: {len(request.tickers)} (max {self.settings.max_tickers})"
            )
        if request.action == "validate":
            return 200, self.validate(request.tickers)

        if request.use_batch or len(request.tickers) > self.settings.sync_fill_limit:
            return 202, self.start_fill_job(request)

        started = self.monotonic()
        processor = self.new_processor()
        result = processor.run_batch(
            request.tickers,
            started + self.settings.invocation_budget_seconds,
            retry_delisted=request.retry_delisted,
        )
        payload = {
            "results": {
                "successful": result.successful,
                "errors": [
                    {"ticker": failure.ticker, "error": failure.error}
                    for failure in result.failed
                ],
                "warnings": [warning.model_dump() for warning in result.warnings],
                "skipped": result.skipped,
            },
            "complete": result.complete,
            "message": result.message,
            "duration": round(self.monotonic() - started, 3),
        }
        if result.failed and not result.successful:
            return 400, payload
        if result.failed or not result.complete:
            return 207, payload
        return 200, payload

    def start_fill_job(self, request: FillCacheRequest) -> dict:
        coverage = self.validate(request.tickers)
        job = self.job_state.create_job(
            request.tickers,
            request.batch_size or self.settings.batch_size,
            retry_delisted=request.retry_delisted,
        )
        return {
            "jobId": job.job_id,
            "status": job.status,
            "message": f"Batch job created with {job.total_batches} batches",
            "batchInfo": {
                "totalTickers": len(job.tickers),
                "tickersToProcess": len(coverage["missing"]),
                "totalBatches": job.total_batches,
                "batchSize": job.batch_size,
            },
        }

    # -- job status and control ----------------------------------------

    def job_status(self, job_id: str, detailed: bool = False) -> dict:
        job = self.job_state.load_job(job_id)
        payload = {
            "jobId": job.job_id,
            "status": job.status,
            "progress": job_summary(job),
            "batches": {
                "current": min(job.current_batch_index + 1, job.total_batches),
                "total": job.total_batches,
                "completed": job.current_batch_index,
                "remaining": job.remaining_batches,
            },
            "message": job.message or status_message(job),
            "startTime": job.created_at,
            "processingStartTime": job.processing_started_at,
            "lastUpdate": job.last_update_at,
        }
        if detailed:
            payload["failedTickers"] = [
                failure.model_dump() for failure in job.failed_tickers
            ]
            payload["options"] = {
                "force": job.force,
                "retryDelisted": job.retry_delisted,
                "lookupSuffix": job.lookup_suffix,
            }
        return payload

    def control_job(self, job_id: str, action: str) -> dict:
        if action == "pause":
            job = self.job_state.pause_job(job_id)
        elif action == "resume":
            job = self.job_state.resume_job(job_id)
        else:
            raise JobValidationError(f"Unknown job action: {action}")
        return self.job_status(job.job_id)

    def list_jobs(
        self,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict]:
        jobs = self.job_state.list_jobs(status=status, limit=limit, offset=offset)
        return [
            {
                "jobId": job.job_id,
                "status": job.status,
                "progress": job_summary(job),
                "totalBatches": job.total_batches,
                "currentBatch": job.current_batch_index,
                "startTime": job.created_at,
                "lastUpdate": job.last_update_at,
            }
            for job in jobs
        ]

    # -- failed tickers ------------------------------------------------

    def list_failed(
        self, limit: int | None = None, offset: int | None = None
    ) -> list[FailedTicker]:
        return self.repository.list_failed_tickers(limit=limit, offset=offset)

    def count_failed(self) -> int:
        return self.repository.count_failed_tickers()

    def clear_failed(self, ticker: str) -> bool:
        cleaned = ticker.strip().upper()
        removed = self.repository.delete_failed_tickers([cleaned]) > 0
        if removed:
            logger.info("Removed %s from failed tickers", cleaned)
        return removed

    def retry_with_suffix(self, tickers: list[str], suffix: str | None = None) -> BatchJob:
        """Queue a forced refetch of failed tickers using an alternate symbol suffix."""
        lookup_suffix = suffix or self.settings.delisted_suffix
        job = self.job_state.create_job(
            tickers,
            self.settings.batch_size,
            force=True,
            lookup_suffix=lookup_suffix,
        )
        logger.info(
            "Queued retry job %s for %s tickers with suffix %s",
            job.job_id,
            len(job.tickers),
            lookup_suffix,
        )
        return job

    # -- cache management ----------------------------------------------

    def manage_cache(self, request: CacheManagementRequest) -> dict:
        action = request.action
        expected_code = CONFIRMATION_CODES.get(action)
        if expected_code and request.confirmation_code != expected_code:
            raise ConfirmationRequiredError(
                f"Action {action} requires confirmationCode {expected_code}"
            )

        if action == "remove_failed_ticker":
            if not request.ticker:
                raise JobValidationError("ticker is required")
            removed = self.clear_failed(request.ticker)
            return {
                "action": action,
                "ticker": request.ticker,
                "removed": removed,
                "message": f"Removed {request.ticker} from failed tickers"
                if removed
                else f"{request.ticker} was not in failed tickers",
            }

        if action == "clear_market_data":
            deleted = self.repository.delete_cache_records()
            logger.warning("Cleared all market data (%s records)", deleted)
            return {
                "action": action,
                "deletedRecords": deleted,
                "message": f"Cleared {deleted} cached records",
            }

        if action == "clear_by_ticker":
            tickers = request.tickers or ([request.ticker] if request.ticker else [])
            if not tickers:
                raise JobValidationError("tickers are required")
            deleted = self.repository.delete_cache_records(tickers)
            failed_deleted = self.repository.delete_failed_tickers(tickers)
            logger.warning(
                "Cleared cache for %s tickers (%s records)", len(tickers), deleted
            )
            return {
                "action": action,
                "tickers": tickers,
                "deletedRecords": deleted,
                "deletedFailedTickers": failed_deleted,
                "message": f"Cleared {deleted} cached records for {len(tickers)} tickers",
            }

        deleted = self.repository.delete_cache_records()
        failed_deleted = self.repository.delete_failed_tickers()
        jobs_deleted = self.repository.delete_jobs()
        logger.warning(
            "Cleared everything: %s records, %s failed tickers, %s jobs",
            deleted,
            failed_deleted,
            jobs_deleted,
        )
        return {
            "action": action,
            "deletedRecords": deleted,
            "deletedFailedTickers": failed_deleted,
            "deletedJobs": jobs_deleted,
            "message": "Cleared all cache data, failed tickers and jobs",
        }

    def cache_stats(self) -> dict:
        stats = self.repository.get_cache_stats()
        return {
            "uniqueTickers": stats["ticker_count"],
            "totalDataPoints": stats["record_count"],
            "averageYearsPerTicker": stats["average_years_per_ticker"],
            "yearRange": {"min": stats["min_year"], "max": stats["max_year"]},
            "failedTickers": self.repository.count_failed_tickers(),
            "jobs": self.repository.count_jobs_by_status(),
        }

    def cached_data(self, tickers: list[str], years: list[int] | None = None) -> dict:
        """Cached records per ticker, keyed by year; all cached years when ``years`` is empty."""
        cleaned = clean_tickers(tickers)
        if not cleaned:
            raise JobValidationError("At least one ticker is required")
        if len(cleaned) > self.settings.max_tickers:
            raise JobValidationError(
                f"Too many tickers: {len(cleaned)} (max {self.settings.max_tickers})"
            )
        cache = TieredCache(self.repository)
        if years:
            found = cache.batch_get((ticker, year) for ticker in cleaned for year in years)
            by_ticker: dict[str, dict] = {ticker: {} for ticker in cleaned}
            for (ticker, year), record in sorted(found.items()):
                by_ticker[ticker][year] = record
        else:
            by_ticker = {ticker: cache.get_ticker(ticker) for ticker in cleaned}
        return {
            "data": {
                ticker: {
                    str(year): record.model_dump(exclude={"ticker"})
                    for year, record in records.items()
                }
                for ticker, records in by_ticker.items()
            },
            "missing": [ticker for ticker in cleaned if not by_ticker[ticker]],
        }

    def purge_expired_jobs(self) -> int:
        return self.job_state.purge_expired()


logger = logging.getLogger(__name__)
