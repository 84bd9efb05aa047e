from __future__ import annotations

import logging
import sqlite3
from typing import cast

from ..config import Settings
from ..core.eodhd_client import EODHDClient, YearlyQuote
from ..core.errors import TickerNotFoundError
from ..db.db import get_connection, init_db
from ..db.repository import CacheRepository
from ..services.batch_processor import UpstreamProvider
from ..services.fill_service import FillCacheService


_service: FillCacheService | None = None
_service_db_path: str | None = None


class _FakeEODHDClient:
    """Offline provider: deterministic prices, ``ZZZZ``-style symbols are unknown."""

    def fetch_yearly_series(
        self,
        symbol: str,
        start_year: int,
        end_year: int | None = None,
        include_shares: bool = True,
    ) -> list[YearlyQuote]:
        ticker = symbol.split(".")[0]
        if ticker.startswith("ZZZZ"):
            raise TickerNotFoundError(f"No data found for {symbol}")
        last_year = end_year or start_year + 2
        base = float(sum(ord(char) for char in ticker) % 200 + 10)
        return [
            YearlyQuote(
                year=year,
                price_date=f"{year}-01-03",
                close=base + index,
                adjusted_close=base + index,
                shares_outstanding=1_000_000.0 if include_shares else None,
            )
            for index, year in enumerate(range(start_year, last_year + 1))
        ]


def get_settings() -> Settings:
    return Settings.from_environment()


def get_service() -> FillCacheService:
    global _service, _service_db_path
    settings = get_settings()
    db_path = settings.db_path
    if _service is None or _service_db_path != db_path:
        if _service is not None:
            try:
                _service.repository.connection.close()
            except sqlite3.Error as exc:
                logger.warning("Closing previous cache connection failed: %s", exc)
        init_db(db_path)
        repository = CacheRepository(get_connection(db_path))
        if settings.testing:
            provider: UpstreamProvider = cast(UpstreamProvider, _FakeEODHDClient())
        else:
            provider = EODHDClient(
                api_token=settings.eodhd_api_token,
                base_url=settings.eodhd_base_url,
            )
        _service = FillCacheService(
            repository=repository,
            provider=provider,
            settings=settings,
        )
        _service_db_path = db_path
    return _service


logger = logging.getLogger(__name__)
