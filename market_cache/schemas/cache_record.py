from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class CacheRecord(BaseModel):
    ticker: str = Field(..., min_length=1)
    year: int = Field(..., ge=1900)
    price: float | None = None
    adjusted_price: float = Field(..., gt=0)
    market_cap: float | None = None
    shares_outstanding: float | None = None
    price_date: str | None = None
    source: str | None = None
    fetched_at: str

    @field_validator("ticker")
    @classmethod
    def normalize_ticker(cls, value: str) -> str:
        return value.strip().upper()


class FailedTicker(BaseModel):
    ticker: str
    error: str
    first_failed_at: str
    last_attempt_at: str
    attempts: int = Field(default=1, ge=1)
