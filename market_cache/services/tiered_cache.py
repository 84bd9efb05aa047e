from __future__ import annotations

import threading
from typing import Iterable

from ..db.repository import CacheRepository
from ..schemas.cache_record import CacheRecord


class TieredCache:
    """Read-through cache in front of the repository.

    Reads try process memory first and fall back to the store, populating
    memory on a hit. Writes go to the store first and then to memory. An
    instance lives for one execution window only.
    """

    def __init__(self, repository: CacheRepository):
        self.repository = repository
        self._memory: dict[tuple[str, int], CacheRecord] = {}
        self._complete_tickers: set[str] = set()
        self._lock = threading.Lock()

    def get(self, ticker: str, year: int) -> CacheRecord | None:
        key = (ticker.upper(), year)
        return self.batch_get([key]).get(key)

    def set(self, record: CacheRecord) -> None:
        self.batch_set([record])

    def batch_get(
        self, keys: Iterable[tuple[str, int]]
    ) -> dict[tuple[str, int], CacheRecord]:
        wanted = [(ticker.upper(), year) for ticker, year in keys]
        found: dict[tuple[str, int], CacheRecord] = {}
        missing: list[tuple[str, int]] = []
        with self._lock:
            for key in wanted:
                record = self._memory.get(key)
                if record is None:
                    missing.append(key)
                else:
                    found[key] = record
        if missing:
            stored = self.repository.get_cache_records(missing)
            with self._lock:
                self._memory.update(stored)
            found.update(stored)
        return found

    def batch_set(self, records: Iterable[CacheRecord]) -> None:
        record_list = list(records)
        if not record_list:
            return
        self.repository.upsert_cache_records(record_list)
        with self._lock:
            for record in record_list:
                self._memory[(record.ticker, record.year)] = record

    def cached_tickers(self, tickers: Iterable[str]) -> set[str]:
        """Tickers with at least one cached year, checking memory before the store."""
        wanted = {ticker.upper() for ticker in tickers}
        with self._lock:
            found = {ticker for ticker, _ in self._memory if ticker in wanted}
        rest = wanted - found
        if rest:
            found |= self.repository.cached_tickers(sorted(rest))
        return found

    def get_ticker(self, ticker: str) -> dict[int, CacheRecord]:
        cleaned = ticker.upper()
        with self._lock:
            if cleaned in self._complete_tickers:
                return {
                    year: record
                    for (symbol, year), record in self._memory.items()
                    if symbol == cleaned
                }
        records = self.repository.get_ticker_records(cleaned)
        with self._lock:
            for year, record in records.items():
                self._memory[(cleaned, year)] = record
            self._complete_tickers.add(cleaned)
        return records
