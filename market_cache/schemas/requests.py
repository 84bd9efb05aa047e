from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


def clean_tickers(values: list[str]) -> list[str]:
    cleaned: list[str] = []
    seen: set[str] = set()
    for value in values:
        ticker = value.strip().upper()
        if not ticker or ticker in seen:
            continue
        seen.add(ticker)
        cleaned.append(ticker)
    return cleaned


class FillCacheRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tickers: list[str] = Field(..., min_length=1)
    action: Literal["validate", "fill"] = "validate"
    retry_delisted: bool = Field(default=False, alias="retryDelisted")
    use_batch: bool = Field(default=False, alias="useBatch")
    batch_size: int | None = Field(default=None, alias="batchSize", ge=1)
    start_immediately: bool = Field(default=False, alias="startImmediately")

    @field_validator("tickers")
    @classmethod
    def normalize_tickers(cls, value: list[str]) -> list[str]:
        cleaned = clean_tickers(value)
        if not cleaned:
            raise ValueError("tickers must contain at least one symbol")
        return cleaned


class OrchestrateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., min_length=1, alias="jobId")


class JobControlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., min_length=1, alias="jobId")
    action: Literal["pause", "resume"]


class CacheManagementRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal[
        "remove_failed_ticker",
        "clear_market_data",
        "clear_everything",
        "clear_by_ticker",
    ]
    ticker: str | None = None
    tickers: list[str] | None = None
    confirmation_code: str | None = Field(default=None, alias="confirmationCode")

    @field_validator("ticker")
    @classmethod
    def normalize_ticker(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip().upper()
        return cleaned or None

    @field_validator("tickers")
    @classmethod
    def normalize_tickers(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return clean_tickers(value)


class RetryFailedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tickers: list[str] = Field(..., min_length=1)
    suffix: str | None = None
    start_immediately: bool = Field(default=False, alias="startImmediately")

    @field_validator("tickers")
    @classmethod
    def normalize_tickers(cls, value: list[str]) -> list[str]:
        cleaned = clean_tickers(value)
        if not cleaned:
            raise ValueError("tickers must contain at least one symbol")
        return cleaned
