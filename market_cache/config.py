"""
Runtime settings for the market cache service.

All values come from environment variables (a ``.env`` file at the project
root is loaded by the app entry point):

- MC_DB_PATH: sqlite file for the cache store. Default: market_cache/db/marketCache.db
- MC_TESTING: "1" swaps the EODHD client for an offline fake
- EODHD_API_TOKEN / EODHD_BASE_URL: upstream provider credentials
- MC_BATCH_SIZE / MC_MAX_BATCH_SIZE: default and maximum tickers per batch
- MC_MAX_TICKERS: largest accepted ticker list
- MC_SYNC_FILL_LIMIT: lists up to this size are filled synchronously
- MC_MAX_WORKERS: concurrent upstream fetches per batch
- MC_INVOCATION_BUDGET_SECONDS / MC_SAFETY_MARGIN_SECONDS: execution window
  (the budget must be larger than the margin)
- MC_MAX_BATCHES_PER_INVOCATION: batches one orchestrator call may run
- MC_STORE_RETRY_ATTEMPTS: retries for transient store failures
- MC_JOB_EXPIRY_HOURS: age after which jobs are purged
- MC_MIN_YEAR: first year fetched for every ticker
- MC_DELISTED_SUFFIX: alternate symbol form for delisted securities
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_DB_PATH = str(Path(__file__).resolve().parent / "db" / "marketCache.db")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    testing: bool = False
    eodhd_api_token: str | None = None
    eodhd_base_url: str = "https://eodhd.com/api"
    batch_size: int = 5
    max_batch_size: int = 50
    max_tickers: int = 10000
    sync_fill_limit: int = 50
    max_workers: int = 4
    invocation_budget_seconds: float = 240.0
    safety_margin_seconds: float = 60.0
    max_batches_per_invocation: int = 1
    store_retry_attempts: int = 3
    job_expiry_hours: int = 24
    min_year: int = 2000
    delisted_suffix: str = ".US.DELISTED"

    def __post_init__(self) -> None:
        if self.invocation_budget_seconds <= self.safety_margin_seconds:
            raise ValueError(
                "MC_INVOCATION_BUDGET_SECONDS must exceed MC_SAFETY_MARGIN_SECONDS "
                f"(got {self.invocation_budget_seconds} <= {self.safety_margin_seconds})"
            )

    @classmethod
    def from_environment(cls) -> "Settings":
        return cls(
            db_path=os.getenv("MC_DB_PATH") or DEFAULT_DB_PATH,
            testing=os.getenv("MC_TESTING") == "1",
            eodhd_api_token=os.getenv("EODHD_API_TOKEN"),
            eodhd_base_url=os.getenv("EODHD_BASE_URL", "https://eodhd.com/api"),
            batch_size=_env_int("MC_BATCH_SIZE", 5),
            max_batch_size=_env_int("MC_MAX_BATCH_SIZE", 50),
            max_tickers=_env_int("MC_MAX_TICKERS", 10000),
            sync_fill_limit=_env_int("MC_SYNC_FILL_LIMIT", 50),
            max_workers=max(1, _env_int("MC_MAX_WORKERS", 4)),
            invocation_budget_seconds=_env_float("MC_INVOCATION_BUDGET_SECONDS", 240.0),
            safety_margin_seconds=_env_float("MC_SAFETY_MARGIN_SECONDS", 60.0),
            max_batches_per_invocation=max(
                1, _env_int("MC_MAX_BATCHES_PER_INVOCATION", 1)
            ),
            store_retry_attempts=max(1, _env_int("MC_STORE_RETRY_ATTEMPTS", 3)),
            job_expiry_hours=_env_int("MC_JOB_EXPIRY_HOURS", 24),
            min_year=_env_int("MC_MIN_YEAR", 2000),
            delisted_suffix=os.getenv("MC_DELISTED_SUFFIX", ".US.DELISTED"),
        )
