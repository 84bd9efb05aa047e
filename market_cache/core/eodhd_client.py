from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
import logging
import os
import threading
import time

import httpx
import pandas as pd

from .errors import ProviderError, RateLimitedError, TickerNotFoundError


ETF_TICKERS = frozenset(
    {
        "SPY",
        "QQQ",
        "IWM",
        "VTI",
        "EFA",
        "VEA",
        "EEM",
        "VWO",
        "AGG",
        "BND",
        "TLT",
        "GLD",
        "VB",
        "VTV",
        "VUG",
        "VXUS",
    }
)

# Prices are sampled on the first trading day on or after this date each year.
PRICE_MONTH_DAY = (1, 2)
PRICE_FALLBACK_DAYS = 5


def is_etf(ticker: str) -> bool:
    base = ticker.strip().upper()
    if base.endswith(".US"):
        base = base[: -len(".US")]
    return base in ETF_TICKERS


def to_symbol(ticker: str, suffix: str | None = None) -> str:
    """Build the provider symbol: explicit suffix, else as-is if qualified, else ``.US``."""
    cleaned = ticker.strip().upper()
    if suffix:
        return f"{cleaned}{suffix}"
    if "." in cleaned:
        return cleaned
    return f"{cleaned}.US"


@dataclass(frozen=True)
class YearlyQuote:
    year: int
    price_date: str
    close: float | None
    adjusted_close: float
    shares_outstanding: float | None = None


class EODHDClient:
    """Thin fetch wrapper for EODHD end-of-day prices and fundamentals.

    Calls may come from several worker threads, so the request pacing state
    is guarded by a lock. Tests inject fakes instead of this class.
    """

    def __init__(
        self,
        api_token: str | None = None,
        base_url: str | None = None,
        min_request_interval: float = 0.1,
        max_retries: int = 3,
        backoff_base_seconds: float = 1.0,
        timeout: float = 30.0,
        http_client: httpx.Client | None = None,
    ):
        self.api_token = api_token or os.getenv("EODHD_API_TOKEN")
        self.base_url = (
            base_url or os.getenv("EODHD_BASE_URL", "https://eodhd.com/api")
        ).rstrip("/")
        self.min_request_interval = min_request_interval
        self.max_retries = max(1, max_retries)
        self.backoff_base_seconds = max(0.0, backoff_base_seconds)
        self.last_request_time = 0.0
        self.request_count = 0
        self._rate_lock = threading.Lock()
        self._logger = logging.getLogger(__name__)
        self.client = http_client or httpx.Client(timeout=timeout)

        if not self.api_token:
            self._logger.warning("EODHD_API_TOKEN not set; data fetches will fail.")

    def close(self) -> None:
        self.client.close()

    def _rate_limit(self) -> None:
        with self._rate_lock:
            elapsed = time.time() - self.last_request_time
            if elapsed < self.min_request_interval:
                time.sleep(self.min_request_interval - elapsed)
            self.last_request_time = time.time()
            self.request_count += 1

    def _backoff(self, attempt: int, reason: str) -> None:
        backoff_seconds = self.backoff_base_seconds * (2 ** (attempt - 1))
        self._logger.warning(
            "EODHD request failed: %s (attempt %s/%s). Retrying in %.2fs",
            reason,
            attempt,
            self.max_retries,
            backoff_seconds,
        )
        time.sleep(backoff_seconds)

    def _get_json(self, path: str, symbol: str, params: dict | None = None):
        if not self.api_token:
            raise ProviderError("EODHD client not configured; set EODHD_API_TOKEN.")

        query = {"api_token": self.api_token, "fmt": "json"}
        query.update(params or {})
        url = f"{self.base_url}/{path}/{symbol}"

        for attempt in range(1, self.max_retries + 1):
            self._rate_limit()
            try:
                response = self.client.get(url, params=query)
            except httpx.HTTPError as exc:
                if attempt == self.max_retries:
                    self._logger.exception("EODHD request for %s failed", symbol)
                    raise ProviderError(f"EODHD request failed: {exc}") from exc
                self._backoff(attempt, str(exc))
                continue

            if response.status_code == 404:
                raise TickerNotFoundError(f"No data found for {symbol}")
            if response.status_code == 429 or response.status_code >= 500:
                if attempt == self.max_retries:
                    if response.status_code == 429:
                        raise RateLimitedError(f"EODHD rate limit hit for {symbol}")
                    raise ProviderError(
                        f"EODHD API error: {response.status_code} for {symbol}"
                    )
                self._backoff(attempt, f"HTTP {response.status_code}")
                continue
            if response.status_code != 200:
                raise ProviderError(
                    f"EODHD API error: {response.status_code} for {symbol}"
                )
            try:
                return response.json()
            except ValueError as exc:
                raise ProviderError(f"Invalid JSON from EODHD for {symbol}") from exc

        raise ProviderError(f"EODHD request failed for {symbol}")

    def fetch_prices(self, symbol: str, start: date, end: date) -> pd.DataFrame:
        """Daily bars for ``symbol`` between two dates, indexed by trading date."""
        data = self._get_json(
            "eod",
            symbol,
            {"from": start.isoformat(), "to": end.isoformat(), "period": "d"},
        )
        if not isinstance(data, list) or not data:
            raise TickerNotFoundError(f"No price data found for {symbol}")

        frame = pd.DataFrame(data)
        if "date" not in frame.columns or "adjusted_close" not in frame.columns:
            raise ProviderError(f"Unexpected EOD payload for {symbol}")
        frame["date"] = pd.to_datetime(frame["date"], errors="coerce")
        frame = frame.dropna(subset=["date"])
        frame["adjusted_close"] = pd.to_numeric(frame["adjusted_close"], errors="coerce")
        if "close" in frame.columns:
            frame["close"] = pd.to_numeric(frame["close"], errors="coerce")
        else:
            frame["close"] = float("nan")
        return frame.set_index("date").sort_index()

    def fetch_shares_history(self, symbol: str) -> dict[str, float]:
        """Quarterly ``commonStockSharesOutstanding`` keyed by report date.

        Missing fundamentals are not fatal for a price series, so provider
        errors here are logged and yield an empty history.
        """
        try:
            data = self._get_json(
                "fundamentals",
                symbol,
                {"filter": "Financials::Balance_Sheet::quarterly"},
            )
        except ProviderError as exc:
            self._logger.warning("No quarterly fundamentals for %s: %s", symbol, exc)
            return {}

        if not isinstance(data, dict):
            return {}

        shares: dict[str, float] = {}
        for report_date, quarter in data.items():
            if not isinstance(quarter, dict):
                continue
            raw = quarter.get("commonStockSharesOutstanding")
            try:
                value = float(raw) if raw not in (None, "") else None
            except (TypeError, ValueError):
                value = None
            if value and value > 0:
                shares[str(report_date)] = value
        return shares

    def fetch_yearly_series(
        self,
        symbol: str,
        start_year: int,
        end_year: int | None = None,
        include_shares: bool = True,
    ) -> list[YearlyQuote]:
        today = datetime.now(timezone.utc).date()
        last_year = end_year or today.year
        start = date(start_year, *PRICE_MONTH_DAY)
        end = min(
            date(last_year, *PRICE_MONTH_DAY) + timedelta(days=PRICE_FALLBACK_DAYS),
            today,
        )
        prices = self.fetch_prices(symbol, start, end)
        shares = self.fetch_shares_history(symbol) if include_shares else {}
        quotes = select_yearly_quotes(prices, start_year, last_year, shares)
        if not quotes:
            raise TickerNotFoundError(f"No price data found for any year for {symbol}")
        return quotes


def shares_before(shares: dict[str, float], price_date: str) -> float | None:
    """Shares from the most recent quarterly report strictly before ``price_date``."""
    candidates = sorted(
        (report_date for report_date in shares if report_date < price_date),
        reverse=True,
    )
    if not candidates:
        return None
    return shares[candidates[0]]


def select_yearly_quotes(
    prices: pd.DataFrame,
    start_year: int,
    end_year: int,
    shares: dict[str, float] | None = None,
) -> list[YearlyQuote]:
    quotes: list[YearlyQuote] = []
    for year in range(start_year, end_year + 1):
        target = pd.Timestamp(year=year, month=PRICE_MONTH_DAY[0], day=PRICE_MONTH_DAY[1])
        window = prices.loc[target : target + pd.Timedelta(days=PRICE_FALLBACK_DAYS)]
        window = window[window["adjusted_close"] > 0]
        if window.empty:
            continue
        row = window.iloc[0]
        price_date = window.index[0].strftime("%Y-%m-%d")
        close = row["close"]
        quotes.append(
            YearlyQuote(
                year=year,
                price_date=price_date,
                close=float(close) if pd.notna(close) else None,
                adjusted_close=float(row["adjusted_close"]),
                shares_outstanding=shares_before(shares, price_date) if shares else None,
            )
        )
    return quotes
