from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from functools import partial
import logging
import time
from typing import Callable, Protocol, TypeVar

from ..config import Settings
from ..core.clock import from_iso, to_iso, utc_now
from ..core.eodhd_client import YearlyQuote, is_etf, to_symbol
from ..core.errors import RepositoryError, StoreUnavailableError, TickerNotFoundError
from ..schemas.batch_job import BatchResult, TickerFailure, YearWarning
from ..schemas.cache_record import CacheRecord
from .tiered_cache import TieredCache


T = TypeVar("T")

NO_DATA_ERROR = "No price data found for any year"
MISSING_SHARES_ISSUE = "Missing shares outstanding data"


class UpstreamProvider(Protocol):
    def fetch_yearly_series(
        self,
        symbol: str,
        start_year: int,
        end_year: int | None = None,
        include_shares: bool = True,
    ) -> list[YearlyQuote]: ...


@dataclass
class TickerFetch:
    ticker: str
    symbol: str | None = None
    records: list[CacheRecord] = field(default_factory=list)
    warnings: list[YearWarning] = field(default_factory=list)
    error: str | None = None


class BatchProcessor:
    """Fetch and cache one slice of tickers under a deadline.

    Worker threads only talk to the upstream provider; every store write
    happens on the calling thread as futures complete. ``deadline`` is a
    ``time.monotonic()`` timestamp.
    """

    def __init__(
        self,
        cache: TieredCache,
        provider: UpstreamProvider,
        settings: Settings,
        monotonic: Callable[[], float] | None = None,
    ):
        self.cache = cache
        self.repository = cache.repository
        self.provider = provider
        self.settings = settings
        self.monotonic = monotonic or time.monotonic

    def run_batch(
        self,
        tickers: list[str],
        deadline: float,
        *,
        batch_index: int | None = None,
        force: bool = False,
        retry_delisted: bool = False,
        lookup_suffix: str | None = None,
        fresh_since: str | None = None,
    ) -> BatchResult:
        """Fetch ``tickers`` that still need work and cache what comes back.

        Without ``force``, tickers already cached or already failed are settled
        from the store. With ``force``, only outcomes recorded at or after
        ``fresh_since`` (an ISO timestamp, normally the job's start) settle a
        ticker, so a re-run of an interrupted forced batch picks up where the
        last run stopped.
        """
        result = BatchResult(batch_index=batch_index)
        try:
            to_fetch = self._triage(tickers, result, force, fresh_since)
        except StoreUnavailableError as exc:
            result.complete = False
            result.message = f"Cache store unavailable: {exc}"
            return result

        queue = list(to_fetch)
        stopped = False
        store_failed = False
        with ThreadPoolExecutor(max_workers=self.settings.max_workers) as executor:
            in_flight: set[Future] = set()
            while queue or in_flight:
                while queue and not stopped and len(in_flight) < self.settings.max_workers:
                    if self.remaining(deadline) <= self.settings.safety_margin_seconds:
                        stopped = True
                        result.message = (
                            f"Stopped before timeout with {len(queue)} tickers not started"
                        )
                        logger.warning(
                            "Deadline reached for batch %s; %s tickers not started",
                            batch_index,
                            len(queue),
                        )
                        break
                    ticker = queue.pop(0)
                    in_flight.add(
                        executor.submit(
                            self._fetch_ticker, ticker, retry_delisted, lookup_suffix
                        )
                    )
                if not in_flight:
                    break
                done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    if store_failed:
                        continue
                    try:
                        self._record(future.result(), result, batch_index)
                    except StoreUnavailableError as exc:
                        stopped = store_failed = True
                        result.message = f"Cache store unavailable: {exc}"
                        logger.error(
                            "Stopping batch %s after store failure: %s", batch_index, exc
                        )

        result.complete = not stopped
        if result.complete and not result.message:
            result.message = (
                f"Processed {result.processed} tickers: {len(result.successful)} successful, "
                f"{len(result.failed)} failed"
            )
        return result

    def remaining(self, deadline: float) -> float:
        return deadline - self.monotonic()

    def _with_store_retry(self, operation: Callable[[], T]) -> T:
        attempts = self.settings.store_retry_attempts
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except RepositoryError as exc:
                if attempt == attempts:
                    raise StoreUnavailableError(str(exc)) from exc
                logger.warning(
                    "Cache store write failed (attempt %s/%s): %s", attempt, attempts, exc
                )
                time.sleep(0.05 * attempt)
        raise StoreUnavailableError("Cache store unavailable")

    def _triage(
        self,
        tickers: list[str],
        result: BatchResult,
        force: bool,
        fresh_since: str | None,
    ) -> list[str]:
        if force:
            return self._triage_forced(tickers, result, fresh_since)
        cached = self._with_store_retry(lambda: self.cache.cached_tickers(tickers))
        previously_failed = self._with_store_retry(
            lambda: self.repository.get_failed_tickers(tickers)
        )
        to_fetch: list[str] = []
        for ticker in tickers:
            if ticker in cached:
                result.successful.append(ticker)
                result.skipped.append(ticker)
            elif ticker in previously_failed:
                result.failed.append(
                    TickerFailure(
                        ticker=ticker,
                        error=f"Previously failed: {previously_failed[ticker].error}",
                        batch_index=result.batch_index,
                    )
                )
            else:
                to_fetch.append(ticker)
        return to_fetch

    def _triage_forced(
        self, tickers: list[str], result: BatchResult, fresh_since: str | None
    ) -> list[str]:
        if fresh_since is None:
            return list(tickers)
        since = from_iso(fresh_since)
        failures = self._with_store_retry(
            lambda: self.repository.get_failed_tickers(tickers)
        )
        to_fetch: list[str] = []
        for ticker in tickers:
            records = self._with_store_retry(partial(self.cache.get_ticker, ticker))
            failure = failures.get(ticker)
            if any(from_iso(record.fetched_at) >= since for record in records.values()):
                result.successful.append(ticker)
                result.skipped.append(ticker)
            elif failure is not None and from_iso(failure.last_attempt_at) >= since:
                result.failed.append(
                    TickerFailure(
                        ticker=ticker, error=failure.error, batch_index=result.batch_index
                    )
                )
            else:
                to_fetch.append(ticker)
        return to_fetch

    def _fetch_ticker(
        self, ticker: str, retry_delisted: bool, lookup_suffix: str | None
    ) -> TickerFetch:
        symbol = to_symbol(ticker, lookup_suffix)
        include_shares = not is_etf(ticker)
        try:
            try:
                quotes = self.provider.fetch_yearly_series(
                    symbol, self.settings.min_year, include_shares=include_shares
                )
            except TickerNotFoundError:
                delisted = self.settings.delisted_suffix
                if not retry_delisted or lookup_suffix == delisted:
                    raise
                symbol = to_symbol(ticker, delisted)
                logger.info("Retrying %s as %s", ticker, symbol)
                quotes = self.provider.fetch_yearly_series(
                    symbol, self.settings.min_year, include_shares=include_shares
                )
        except Exception as exc:
            logger.warning("Fetch failed for %s: %s", ticker, exc)
            return TickerFetch(ticker=ticker, symbol=symbol, error=str(exc) or type(exc).__name__)
        return build_records(ticker, symbol, quotes, include_shares)

    def _record(
        self, fetched: TickerFetch, result: BatchResult, batch_index: int | None
    ) -> None:
        now = to_iso(utc_now())
        if fetched.error is None:
            self._with_store_retry(lambda: self.cache.batch_set(fetched.records))
            self._with_store_retry(
                lambda: self.repository.delete_failed_tickers([fetched.ticker])
            )
            result.successful.append(fetched.ticker)
            result.warnings.extend(fetched.warnings)
            return

        self._with_store_retry(
            lambda: self.repository.upsert_failed_ticker(fetched.ticker, fetched.error, now)
        )
        result.failed.append(
            TickerFailure(ticker=fetched.ticker, error=fetched.error, batch_index=batch_index)
        )
        result.warnings.extend(fetched.warnings)


def build_records(
    ticker: str, symbol: str, quotes: list[YearlyQuote], include_shares: bool = True
) -> TickerFetch:
    """Turn provider quotes into cache records, dropping years that fail data checks."""
    fetched_at = to_iso(utc_now())
    outcome = TickerFetch(ticker=ticker, symbol=symbol)
    for quote in quotes:
        shares = quote.shares_outstanding if include_shares else None
        if include_shares and not shares:
            outcome.warnings.append(
                YearWarning(ticker=ticker, year=quote.year, issue=MISSING_SHARES_ISSUE)
            )
            continue
        outcome.records.append(
            CacheRecord(
                ticker=ticker,
                year=quote.year,
                price=quote.close,
                adjusted_price=quote.adjusted_close,
                market_cap=quote.adjusted_close * shares if shares else None,
                shares_outstanding=shares,
                price_date=quote.price_date,
                source=symbol,
                fetched_at=fetched_at,
            )
        )
    if not outcome.records:
        outcome.error = NO_DATA_ERROR
    return outcome


logger = logging.getLogger(__name__)
