import sqlite3
import threading

import pytest

from market_cache.config import Settings
from market_cache.core.eodhd_client import YearlyQuote
from market_cache.core.errors import RepositoryError, TickerNotFoundError
from market_cache.db.db import SCHEMA_SQL
from market_cache.db.repository import CacheRepository
from market_cache.schemas.cache_record import CacheRecord
from market_cache.services.batch_processor import (
    MISSING_SHARES_ISSUE,
    NO_DATA_ERROR,
    BatchProcessor,
    build_records,
)
from market_cache.services.tiered_cache import TieredCache


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class FakeEODHDClient:
    """Records requested symbols and serves two years of data per symbol.

    Symbols in ``missing`` raise ``TickerNotFoundError``. ``tick`` advances
    the shared fake clock on every fetch to simulate slow upstream calls.
    """

    def __init__(
        self,
        missing: set[str] | None = None,
        clock: FakeClock | None = None,
        tick: float = 0.0,
        shares: float | None = 1000.0,
    ):
        self.missing = missing or set()
        self.clock = clock
        self.tick = tick
        self.shares = shares
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch_yearly_series(
        self,
        symbol: str,
        start_year: int,
        end_year: int | None = None,
        include_shares: bool = True,
    ) -> list[YearlyQuote]:
        with self._lock:
            self.calls.append(symbol)
            if self.clock is not None:
                self.clock.now += self.tick
        if symbol in self.missing:
            raise TickerNotFoundError(f"No data found for {symbol}")
        return [
            YearlyQuote(
                year=year,
                price_date=f"{year}-01-03",
                close=10.0,
                adjusted_close=10.0,
                shares_outstanding=self.shares if include_shares else None,
            )
            for year in (start_year, start_year + 1)
        ]


class BrokenWritesRepository(CacheRepository):
    def upsert_cache_records(self, records):
        raise RepositoryError("disk full")


def make_repository(repository_class=CacheRepository) -> CacheRepository:
    connection = sqlite3.connect(":memory:", check_same_thread=False)
    connection.row_factory = sqlite3.Row
    connection.executescript(SCHEMA_SQL)
    return repository_class(connection)


@pytest.fixture()
def repository() -> CacheRepository:
    return make_repository()


@pytest.fixture()
def settings() -> Settings:
    return Settings(db_path=":memory:", max_workers=2, store_retry_attempts=2)


def build_processor(
    repository: CacheRepository,
    provider: FakeEODHDClient,
    settings: Settings,
    clock: FakeClock | None = None,
) -> BatchProcessor:
    return BatchProcessor(
        TieredCache(repository), provider, settings, monotonic=clock or FakeClock()
    )


def test_fetches_and_caches_each_ticker(repository, settings) -> None:
    provider = FakeEODHDClient()
    processor = build_processor(repository, provider, settings)

    result = processor.run_batch(["AAPL", "MSFT"], deadline=1000.0, batch_index=0)

    assert result.complete is True
    assert sorted(result.successful) == ["AAPL", "MSFT"]
    assert sorted(provider.calls) == ["AAPL.US", "MSFT.US"]
    record = repository.get_cache_record("AAPL", 2000)
    assert record is not None
    assert record.market_cap == 10000.0
    assert record.source == "AAPL.US"


def test_cached_ticker_is_skipped(repository, settings) -> None:
    repository.upsert_cache_records(
        [
            CacheRecord(
                ticker="AAPL",
                year=2000,
                adjusted_price=5.0,
                fetched_at="2024-01-01T00:00:00+00:00",
            )
        ]
    )
    provider = FakeEODHDClient()
    processor = build_processor(repository, provider, settings)

    result = processor.run_batch(["AAPL"], deadline=1000.0)

    assert result.successful == ["AAPL"]
    assert result.skipped == ["AAPL"]
    assert provider.calls == []


def test_force_refetches_cached_ticker(repository, settings) -> None:
    repository.upsert_cache_records(
        [
            CacheRecord(
                ticker="AAPL",
                year=2000,
                adjusted_price=5.0,
                fetched_at="2024-01-01T00:00:00+00:00",
            )
        ]
    )
    provider = FakeEODHDClient()
    processor = build_processor(repository, provider, settings)

    result = processor.run_batch(["AAPL"], deadline=1000.0, force=True)

    assert result.skipped == []
    assert provider.calls == ["AAPL.US"]
    assert repository.get_cache_record("AAPL", 2000).adjusted_price == 10.0


def test_unknown_ticker_is_recorded_and_then_short_circuited(repository, settings) -> None:
    provider = FakeEODHDClient(missing={"ZZZZ.US"})
    processor = build_processor(repository, provider, settings)

    first = processor.run_batch(["ZZZZ"], deadline=1000.0)
    second = processor.run_batch(["ZZZZ"], deadline=1000.0)

    assert first.failed[0].ticker == "ZZZZ"
    assert "No data found" in first.failed[0].error
    assert "ZZZZ" in repository.get_failed_tickers(["ZZZZ"])
    assert second.failed[0].error.startswith("Previously failed: ")
    assert provider.calls == ["ZZZZ.US"]


def test_delisted_retry_uses_alternate_suffix(repository, settings) -> None:
    provider = FakeEODHDClient(missing={"LEH.US"})
    processor = build_processor(repository, provider, settings)

    result = processor.run_batch(["LEH"], deadline=1000.0, retry_delisted=True)

    assert result.successful == ["LEH"]
    assert provider.calls == ["LEH.US", "LEH.US.DELISTED"]
    assert repository.get_cache_record("LEH", 2000).source == "LEH.US.DELISTED"


def test_suffix_retry_clears_failed_record(repository, settings) -> None:
    repository.upsert_failed_ticker("LEH", "No data found for LEH.US", "2024-01-01T00:00:00+00:00")
    provider = FakeEODHDClient()
    processor = build_processor(repository, provider, settings)

    result = processor.run_batch(
        ["LEH"], deadline=1000.0, force=True, lookup_suffix=".US.DELISTED"
    )

    assert result.successful == ["LEH"]
    assert provider.calls == ["LEH.US.DELISTED"]
    assert repository.get_failed_tickers(["LEH"]) == {}
    assert repository.cached_tickers(["LEH"]) == {"LEH"}


def test_deadline_stops_new_fetches_and_keeps_partial_results(repository) -> None:
    settings = Settings(db_path=":memory:", max_workers=1, safety_margin_seconds=60.0)
    clock = FakeClock()
    provider = FakeEODHDClient(clock=clock, tick=30.0)
    processor = build_processor(repository, provider, settings, clock)

    result = processor.run_batch(["A", "B", "C", "D"], deadline=100.0, batch_index=0)

    assert result.complete is False
    assert result.successful == ["A", "B"]
    assert provider.calls == ["A.US", "B.US"]
    assert repository.cached_tickers(["A", "B", "C", "D"]) == {"A", "B"}


def test_store_failure_makes_batch_incomplete(settings) -> None:
    repository = make_repository(BrokenWritesRepository)
    processor = build_processor(repository, FakeEODHDClient(), settings)

    result = processor.run_batch(["AAPL"], deadline=1000.0)

    assert result.complete is False
    assert "Cache store unavailable" in result.message
    assert result.successful == []


def test_missing_shares_drops_year_with_warning() -> None:
    quotes = [
        YearlyQuote(year=2000, price_date="2000-01-03", close=1.0, adjusted_close=1.0),
        YearlyQuote(
            year=2001,
            price_date="2001-01-02",
            close=2.0,
            adjusted_close=2.0,
            shares_outstanding=50.0,
        ),
    ]

    fetched = build_records("AAPL", "AAPL.US", quotes)

    assert [record.year for record in fetched.records] == [2001]
    assert fetched.records[0].market_cap == 100.0
    assert fetched.warnings[0].year == 2000
    assert fetched.warnings[0].issue == MISSING_SHARES_ISSUE
    assert fetched.error is None


def test_etf_skips_shares_and_market_cap(repository, settings) -> None:
    provider = FakeEODHDClient()
    processor = build_processor(repository, provider, settings)

    result = processor.run_batch(["SPY"], deadline=1000.0)

    assert result.successful == ["SPY"]
    assert result.warnings == []
    record = repository.get_cache_record("SPY", 2000)
    assert record.shares_outstanding is None
    assert record.market_cap is None


def test_ticker_without_any_usable_year_fails(repository, settings) -> None:
    provider = FakeEODHDClient(shares=None)
    processor = build_processor(repository, provider, settings)

    result = processor.run_batch(["AAPL"], deadline=1000.0)

    assert result.successful == []
    assert result.failed[0].error == NO_DATA_ERROR
    assert len(result.warnings) == 2


def test_force_with_fresh_since_skips_work_done_in_this_run(repository, settings) -> None:
    repository.upsert_cache_records(
        [
            CacheRecord(
                ticker="AAPL",
                year=2000,
                adjusted_price=5.0,
                fetched_at="2024-06-01T00:00:00+00:00",
            ),
            CacheRecord(
                ticker="MSFT",
                year=2000,
                adjusted_price=5.0,
                fetched_at="2023-01-01T00:00:00+00:00",
            ),
        ]
    )
    repository.upsert_failed_ticker("LEH", "No data found", "2024-06-01T00:00:01+00:00")
    repository.upsert_failed_ticker("ENRN", "No data found", "2023-01-01T00:00:00+00:00")
    provider = FakeEODHDClient()
    processor = build_processor(repository, provider, settings)

    result = processor.run_batch(
        ["AAPL", "MSFT", "LEH", "ENRN"],
        deadline=1000.0,
        force=True,
        lookup_suffix=".US.DELISTED",
        fresh_since="2024-01-01T00:00:00+00:00",
    )

    assert sorted(provider.calls) == ["ENRN.US.DELISTED", "MSFT.US.DELISTED"]
    assert sorted(result.skipped) == ["AAPL"]
    assert sorted(result.successful) == ["AAPL", "ENRN", "MSFT"]
    assert [failure.ticker for failure in result.failed] == ["LEH"]
    assert result.failed[0].error == "No data found"
