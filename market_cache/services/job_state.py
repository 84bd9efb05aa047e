from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Callable

from ..config import Settings
from ..core.clock import to_iso, utc_now
from ..core.errors import JobNotFoundError, JobStateError, JobValidationError
from ..db.repository import CacheRepository
from ..schemas.batch_job import BatchJob, BatchResult, TickerFailure
from ..schemas.requests import clean_tickers


JOB_ID_PREFIX = "batch_job"


def status_message(job: BatchJob) -> str:
    if job.status == "pending":
        return "Batch job created and waiting to start"
    if job.status == "running":
        return (
            f"Processing batch {job.current_batch_index + 1} of {job.total_batches}. "
            f"{job.remaining_batches} batches remaining."
        )
    if job.status == "completed":
        return (
            f"Batch job completed! Processed {job.successful} tickers successfully, "
            f"{job.failed} failed."
        )
    if job.status == "failed":
        return (
            f"Batch job failed. Processed {job.processed} of {len(job.tickers)} "
            "tickers before failure."
        )
    return f"Batch job paused at batch {job.current_batch_index + 1} of {job.total_batches}."


class JobStateManager:
    """Persistent lifecycle of batch jobs.

    Every operation reads and writes the store; nothing about a job is kept
    in memory between calls, so any process can pick a job up where another
    left off. Mutations run in one ``BEGIN IMMEDIATE`` transaction each.
    """

    def __init__(
        self,
        repository: CacheRepository,
        settings: Settings,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repository = repository
        self.settings = settings
        self.clock = clock or utc_now

    def _now(self) -> str:
        return to_iso(self.clock())

    def create_job(
        self,
        tickers: list[str],
        batch_size: int | None = None,
        *,
        force: bool = False,
        retry_delisted: bool = False,
        lookup_suffix: str | None = None,
    ) -> BatchJob:
        cleaned = clean_tickers(tickers)
        if not cleaned:
            raise JobValidationError("Ticker list must not be empty")
        if len(cleaned) > self.settings.max_tickers:
            raise JobValidationError(
                f"Too many tickers: {len(cleaned)} (max {self.settings.max_tickers})"
            )
        size = batch_size or self.settings.batch_size
        if size < 1 or size > self.settings.max_batch_size:
            raise JobValidationError(
                f"Batch size must be between 1 and {self.settings.max_batch_size}"
            )

        now = self._now()
        job = BatchJob(
            job_id=f"{JOB_ID_PREFIX}_{uuid.uuid4().hex}",
            tickers=cleaned,
            batch_size=size,
            total_batches=math.ceil(len(cleaned) / size),
            created_at=now,
            last_update_at=now,
            force=force,
            retry_delisted=retry_delisted,
            lookup_suffix=lookup_suffix,
        )
        job.message = status_message(job)
        self.repository.create_job(job)
        logger.info(
            "Created batch job %s: %s tickers in %s batches of %s",
            job.job_id,
            len(cleaned),
            job.total_batches,
            size,
        )
        return job

    def load_job(self, job_id: str) -> BatchJob:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"No batch job found with ID: {job_id}")
        return job

    def batch_tickers(self, job: BatchJob, batch_index: int) -> list[str]:
        if batch_index < 0 or batch_index >= job.total_batches:
            return []
        start = batch_index * job.batch_size
        return job.tickers[start : start + job.batch_size]

    def start_job(self, job_id: str) -> BatchJob:
        with self.repository.transaction():
            job = self.load_job(job_id)
            if job.status != "pending":
                return job
            now = self._now()
            job.status = "running"
            if job.processing_started_at is None:
                job.processing_started_at = now
            job.last_update_at = now
            job.message = status_message(job)
            self.repository.save_job(job)
        logger.info("Batch job %s started processing", job_id)
        return job

    def advance_job(self, job_id: str, result: BatchResult) -> BatchJob:
        """Merge one completed batch into the job exactly once."""
        if result.batch_index is None:
            raise JobValidationError("Batch result has no batch index")
        if not result.complete:
            raise JobValidationError("Incomplete batch results cannot be merged")

        batch_index = result.batch_index
        with self.repository.transaction():
            job = self.load_job(job_id)
            if job.is_terminal or batch_index < job.current_batch_index:
                logger.info(
                    "Ignoring batch %s for job %s (status %s, next batch %s)",
                    batch_index,
                    job_id,
                    job.status,
                    job.current_batch_index,
                )
                return job
            if batch_index > job.current_batch_index:
                raise JobStateError(
                    f"Batch {batch_index} is ahead of job {job_id} "
                    f"(next batch is {job.current_batch_index})"
                )

            now = self._now()
            if not self.repository.insert_batch_outcome(job_id, batch_index, result, now):
                return job

            members = set(self.batch_tickers(job, batch_index))
            successful = {ticker for ticker in result.successful if ticker in members}
            failures: dict[str, TickerFailure] = {}
            for failure in result.failed:
                if failure.ticker in members and failure.ticker not in successful:
                    failures.setdefault(
                        failure.ticker,
                        TickerFailure(
                            ticker=failure.ticker,
                            error=failure.error,
                            batch_index=batch_index,
                        ),
                    )

            job.successful += len(successful)
            job.failed += len(failures)
            job.processed = job.successful + job.failed
            job.failed_tickers.extend(failures.values())
            job.current_batch_index = batch_index + 1
            if job.current_batch_index >= job.total_batches:
                job.status = "completed"
            elif job.status == "pending":
                job.status = "running"
            if job.processing_started_at is None:
                job.processing_started_at = now
            job.last_update_at = now
            job.message = status_message(job)
            self.repository.save_job(job)

        if job.status == "completed":
            logger.info(
                "Batch job %s completed: %s successful, %s failed",
                job_id,
                job.successful,
                job.failed,
            )
        return job

    def mark_failed(self, job_id: str, reason: str) -> BatchJob:
        with self.repository.transaction():
            job = self.load_job(job_id)
            if job.is_terminal:
                return job
            job.status = "failed"
            job.last_update_at = self._now()
            job.message = f"{status_message(job)} {reason}".strip()
            self.repository.save_job(job)
        logger.error("Marked batch job %s as failed: %s", job_id, reason)
        return job

    def pause_job(self, job_id: str) -> BatchJob:
        with self.repository.transaction():
            job = self.load_job(job_id)
            if job.status == "paused":
                return job
            if job.status not in ("pending", "running"):
                raise JobStateError(f"Cannot pause a {job.status} job")
            job.status = "paused"
            job.last_update_at = self._now()
            job.message = status_message(job)
            self.repository.save_job(job)
        logger.info("Paused batch job %s", job_id)
        return job

    def resume_job(self, job_id: str) -> BatchJob:
        with self.repository.transaction():
            job = self.load_job(job_id)
            if job.status == "running":
                return job
            if job.status != "paused":
                raise JobStateError(f"Cannot resume a {job.status} job")
            now = self._now()
            job.status = "running"
            if job.processing_started_at is None:
                job.processing_started_at = now
            job.last_update_at = now
            job.message = status_message(job)
            self.repository.save_job(job)
        logger.info("Resumed batch job %s", job_id)
        return job

    def annotate(self, job_id: str, message: str) -> BatchJob:
        with self.repository.transaction():
            job = self.load_job(job_id)
            if job.is_terminal:
                return job
            job.message = message
            job.last_update_at = self._now()
            self.repository.save_job(job)
        return job

    def list_jobs(
        self,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[BatchJob]:
        return self.repository.list_jobs(status=status, limit=limit, offset=offset)

    def purge_expired(self, max_age_hours: int | None = None) -> int:
        hours = self.settings.job_expiry_hours if max_age_hours is None else max_age_hours
        cutoff = to_iso(self.clock() - timedelta(hours=hours))
        deleted = self.repository.delete_jobs(created_before=cutoff)
        if deleted:
            logger.info("Purged %s batch jobs older than %s hours", deleted, hours)
        return deleted


logger = logging.getLogger(__name__)
