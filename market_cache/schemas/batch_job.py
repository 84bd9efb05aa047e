from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


JobStatus = Literal["pending", "running", "paused", "completed", "failed"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class TickerFailure(BaseModel):
    ticker: str
    error: str
    batch_index: int | None = None


class YearWarning(BaseModel):
    ticker: str
    year: int
    issue: str


class BatchJob(BaseModel):
    job_id: str
    tickers: list[str]
    batch_size: int = Field(..., ge=1)
    status: JobStatus = "pending"
    total_batches: int = Field(..., ge=0)
    current_batch_index: int = Field(default=0, ge=0)
    processed: int = Field(default=0, ge=0)
    successful: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    created_at: str
    processing_started_at: str | None = None
    last_update_at: str
    message: str = ""
    force: bool = False
    retry_delisted: bool = False
    lookup_suffix: str | None = None
    failed_tickers: list[TickerFailure] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def remaining_batches(self) -> int:
        return max(0, self.total_batches - self.current_batch_index)

    @property
    def percentage(self) -> float:
        if not self.tickers:
            return 100.0
        return round(self.processed / len(self.tickers) * 100, 2)


class BatchResult(BaseModel):
    """Outcome of running the Batch Processor over one slice of tickers.

    ``complete`` is False when the deadline or a store failure stopped the
    batch before every ticker was handled. Incomplete results are never
    merged into the job; the cached part of the work survives in the store.
    """

    batch_index: int | None = None
    successful: list[str] = Field(default_factory=list)
    failed: list[TickerFailure] = Field(default_factory=list)
    warnings: list[YearWarning] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    complete: bool = True
    message: str = ""

    @property
    def processed(self) -> int:
        return len(self.successful) + len(self.failed)
