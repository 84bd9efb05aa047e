from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from ..core.errors import RepositoryError
from ..schemas.batch_job import BatchJob, BatchResult
from ..schemas.cache_record import CacheRecord, FailedTicker

logger = logging.getLogger(__name__)

# sqlite's default SQLITE_MAX_VARIABLE_NUMBER is 999 on older builds.
_IN_CHUNK = 500


def _chunks(values: list[str], size: int = _IN_CHUNK) -> Iterator[list[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def _row_to_record(row: sqlite3.Row) -> CacheRecord:
    return CacheRecord(
        ticker=row["ticker"],
        year=int(row["year"]),
        price=float(row["price"]) if row["price"] is not None else None,
        adjusted_price=float(row["adjusted_price"]),
        market_cap=float(row["market_cap"]) if row["market_cap"] is not None else None,
        shares_outstanding=float(row["shares_outstanding"])
        if row["shares_outstanding"] is not None
        else None,
        price_date=row["price_date"],
        source=row["source"],
        fetched_at=row["fetched_at"],
    )


def _row_to_failed(row: sqlite3.Row) -> FailedTicker:
    return FailedTicker(
        ticker=row["ticker"],
        error=row["error"],
        first_failed_at=row["first_failed_at"],
        last_attempt_at=row["last_attempt_at"],
        attempts=int(row["attempts"]),
    )


class CacheRepository:
    """Data access layer for the market cache store.

    This repository encapsulates all SQL against the SQLite database: the
    per-(ticker, year) cache records, the failed-ticker set, persisted batch
    jobs and the per-batch outcome rows that make job merges idempotent.
    Callers never touch raw SQL or the connection directly.

    One connection is shared by request threads, so writes and explicit
    transactions are serialised through a re-entrant lock. Cross-process
    safety comes from WAL mode and ``BEGIN IMMEDIATE``.
    """

    def __init__(self, connection: sqlite3.Connection):
        self.connection = connection
        self._lock = threading.RLock()
        self._txn_depth = 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE`` so the write lock is taken up front."""
        with self._lock:
            try:
                self.connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                logger.exception("Failed to open transaction")
                raise RepositoryError("Failed to open transaction") from exc
            self._txn_depth += 1
            try:
                yield self.connection
            except BaseException:
                self.connection.rollback()
                raise
            else:
                try:
                    self.connection.commit()
                except sqlite3.Error as exc:
                    self.connection.rollback()
                    logger.exception("Failed to commit transaction")
                    raise RepositoryError("Failed to commit transaction") from exc
            finally:
                self._txn_depth -= 1

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        # Reads share the connection with transaction(); hold the lock so a
        # reader never sees another thread's uncommitted writes.
        with self._lock:
            return self.connection.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.connection.execute(sql, params).fetchone()

    # -- cache records -------------------------------------------------

    def upsert_cache_records(self, records: Iterable[CacheRecord]) -> int:
        record_list = list(records)
        if not record_list:
            return 0
        try:
            with self._lock, self.connection:
                self.connection.executemany(
                    """
                    INSERT INTO cache_records (
                        ticker, year, price, adjusted_price, market_cap,
                        shares_outstanding, price_date, source, fetched_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(ticker, year) DO UPDATE SET
                        price = excluded.price,
                        adjusted_price = excluded.adjusted_price,
                        market_cap = excluded.market_cap,
                        shares_outstanding = excluded.shares_outstanding,
                        price_date = excluded.price_date,
                        source = excluded.source,
                        fetched_at = excluded.fetched_at
                    """,
                    [
                        (
                            record.ticker,
                            record.year,
                            record.price,
                            record.adjusted_price,
                            record.market_cap,
                            record.shares_outstanding,
                            record.price_date,
                            record.source,
                            record.fetched_at,
                        )
                        for record in record_list
                    ],
                )
        except sqlite3.Error as exc:
            logger.exception("Failed to upsert %s cache records", len(record_list))
            raise RepositoryError("Failed to upsert cache records") from exc
        return len(record_list)

    def get_cache_record(self, ticker: str, year: int) -> CacheRecord | None:
        try:
            row = self._query_one(
                "SELECT * FROM cache_records WHERE ticker = ? AND year = ?",
                (ticker, year),
            )
        except sqlite3.Error as exc:
            logger.exception("Failed to read cache record %s %s", ticker, year)
            raise RepositoryError("Failed to read cache record") from exc
        if row is None:
            return None
        return _row_to_record(row)

    def get_cache_records(
        self, keys: Iterable[tuple[str, int]]
    ) -> dict[tuple[str, int], CacheRecord]:
        wanted = set(keys)
        if not wanted:
            return {}
        tickers = sorted({ticker for ticker, _ in wanted})
        found: dict[tuple[str, int], CacheRecord] = {}
        try:
            for chunk in _chunks(tickers):
                placeholders = ",".join("?" for _ in chunk)
                rows = self._query(
                    f"SELECT * FROM cache_records WHERE ticker IN ({placeholders})",
                    tuple(chunk),
                )
                for row in rows:
                    key = (row["ticker"], int(row["year"]))
                    if key in wanted:
                        found[key] = _row_to_record(row)
        except sqlite3.Error as exc:
            logger.exception("Failed to batch read %s cache records", len(wanted))
            raise RepositoryError("Failed to read cache records") from exc
        return found

    def get_ticker_records(self, ticker: str) -> dict[int, CacheRecord]:
        try:
            rows = self._query(
                "SELECT * FROM cache_records WHERE ticker = ? ORDER BY year",
                (ticker,),
            )
        except sqlite3.Error as exc:
            logger.exception("Failed to read cache records for %s", ticker)
            raise RepositoryError("Failed to read cache records") from exc
        return {int(row["year"]): _row_to_record(row) for row in rows}

    def cached_tickers(self, tickers: Iterable[str]) -> set[str]:
        """Return the subset of ``tickers`` that has at least one cached year."""
        ticker_list = sorted(set(tickers))
        present: set[str] = set()
        try:
            for chunk in _chunks(ticker_list):
                placeholders = ",".join("?" for _ in chunk)
                rows = self._query(
                    f"SELECT DISTINCT ticker FROM cache_records WHERE ticker IN ({placeholders})",
                    tuple(chunk),
                )
                present.update(row["ticker"] for row in rows)
        except sqlite3.Error as exc:
            logger.exception("Failed to check cached tickers")
            raise RepositoryError("Failed to check cached tickers") from exc
        return present

    def delete_cache_records(self, tickers: list[str] | None = None) -> int:
        """Delete cache records for ``tickers``, or every record when None."""
        try:
            with self._lock, self.connection:
                if tickers is None:
                    deleted = self.connection.execute("DELETE FROM cache_records")
                    return int(deleted.rowcount)
                total = 0
                for chunk in _chunks(list(tickers)):
                    placeholders = ",".join("?" for _ in chunk)
                    deleted = self.connection.execute(
                        f"DELETE FROM cache_records WHERE ticker IN ({placeholders})",
                        tuple(chunk),
                    )
                    total += int(deleted.rowcount)
                return total
        except sqlite3.Error as exc:
            logger.exception("Failed to delete cache records")
            raise RepositoryError("Failed to delete cache records") from exc

    def get_cache_stats(self) -> dict:
        try:
            row = self._query_one(
                """
                SELECT COUNT(DISTINCT ticker) AS ticker_count,
                       COUNT(1) AS record_count,
                       MIN(year) AS min_year,
                       MAX(year) AS max_year
                FROM cache_records
                """
            )
        except sqlite3.Error as exc:
            logger.exception("Failed to read cache stats")
            raise RepositoryError("Failed to read cache stats") from exc
        ticker_count = int(row["ticker_count"] or 0)
        record_count = int(row["record_count"] or 0)
        return {
            "ticker_count": ticker_count,
            "record_count": record_count,
            "min_year": row["min_year"],
            "max_year": row["max_year"],
            "average_years_per_ticker": round(record_count / ticker_count)
            if ticker_count
            else 0,
        }

    # -- failed tickers ------------------------------------------------

    def upsert_failed_ticker(self, ticker: str, error: str, attempted_at: str) -> None:
        try:
            with self._lock, self.connection:
                self.connection.execute(
                    """
                    INSERT INTO failed_tickers (
                        ticker, error, first_failed_at, last_attempt_at, attempts
                    ) VALUES (?, ?, ?, ?, 1)
                    ON CONFLICT(ticker) DO UPDATE SET
                        error = excluded.error,
                        last_attempt_at = excluded.last_attempt_at,
                        attempts = failed_tickers.attempts + 1
                    """,
                    (ticker, error, attempted_at, attempted_at),
                )
        except sqlite3.Error as exc:
            logger.exception("Failed to record failed ticker %s", ticker)
            raise RepositoryError("Failed to record failed ticker") from exc

    def get_failed_tickers(self, tickers: Iterable[str]) -> dict[str, FailedTicker]:
        ticker_list = sorted(set(tickers))
        found: dict[str, FailedTicker] = {}
        try:
            for chunk in _chunks(ticker_list):
                placeholders = ",".join("?" for _ in chunk)
                rows = self._query(
                    f"SELECT * FROM failed_tickers WHERE ticker IN ({placeholders})",
                    tuple(chunk),
                )
                for row in rows:
                    found[row["ticker"]] = _row_to_failed(row)
        except sqlite3.Error as exc:
            logger.exception("Failed to read failed tickers")
            raise RepositoryError("Failed to read failed tickers") from exc
        return found

    def list_failed_tickers(
        self, limit: int | None = None, offset: int | None = None
    ) -> list[FailedTicker]:
        limit_clause = ""
        params: tuple = ()
        if limit is not None:
            limit_clause = "LIMIT ? OFFSET ?"
            params = (limit, offset or 0)
        try:
            rows = self._query(
                f"""
                SELECT * FROM failed_tickers
                ORDER BY last_attempt_at DESC, ticker
                {limit_clause}
                """,
                params,
            )
        except sqlite3.Error as exc:
            logger.exception("Failed to list failed tickers")
            raise RepositoryError("Failed to list failed tickers") from exc
        return [_row_to_failed(row) for row in rows]

    def count_failed_tickers(self) -> int:
        try:
            row = self._query_one("SELECT COUNT(1) AS total FROM failed_tickers")
        except sqlite3.Error as exc:
            logger.exception("Failed to count failed tickers")
            raise RepositoryError("Failed to count failed tickers") from exc
        return int(row["total"]) if row else 0

    def delete_failed_tickers(self, tickers: list[str] | None = None) -> int:
        try:
            with self._lock, self.connection:
                if tickers is None:
                    deleted = self.connection.execute("DELETE FROM failed_tickers")
                    return int(deleted.rowcount)
                total = 0
                for chunk in _chunks(list(tickers)):
                    placeholders = ",".join("?" for _ in chunk)
                    deleted = self.connection.execute(
                        f"DELETE FROM failed_tickers WHERE ticker IN ({placeholders})",
                        tuple(chunk),
                    )
                    total += int(deleted.rowcount)
                return total
        except sqlite3.Error as exc:
            logger.exception("Failed to delete failed tickers")
            raise RepositoryError("Failed to delete failed tickers") from exc

    # -- batch jobs ----------------------------------------------------

    def create_job(self, job: BatchJob) -> None:
        try:
            with self._lock, self.connection:
                self.connection.execute(
                    """
                    INSERT INTO batch_jobs (job_id, status, created_at, updated_at, data)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        job.job_id,
                        job.status,
                        job.created_at,
                        job.last_update_at,
                        job.model_dump_json(),
                    ),
                )
        except sqlite3.Error as exc:
            logger.exception("Failed to create job %s", job.job_id)
            raise RepositoryError("Failed to create job") from exc

    def get_job(self, job_id: str) -> BatchJob | None:
        try:
            row = self._query_one(
                "SELECT data FROM batch_jobs WHERE job_id = ?", (job_id,)
            )
        except sqlite3.Error as exc:
            logger.exception("Failed to read job %s", job_id)
            raise RepositoryError("Failed to read job") from exc
        if row is None:
            return None
        return BatchJob.model_validate_json(row["data"])

    def save_job(self, job: BatchJob) -> None:
        """Overwrite a job row. Use inside ``transaction()`` for read-modify-write."""
        try:
            with self._lock:
                self.connection.execute(
                    """
                    UPDATE batch_jobs
                    SET status = ?, updated_at = ?, data = ?
                    WHERE job_id = ?
                    """,
                    (job.status, job.last_update_at, job.model_dump_json(), job.job_id),
                )
                if self._txn_depth == 0:
                    self.connection.commit()
        except sqlite3.Error as exc:
            logger.exception("Failed to update job %s", job.job_id)
            raise RepositoryError("Failed to update job") from exc

    def list_jobs(
        self,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[BatchJob]:
        clauses: list[str] = []
        params: list[object] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit_clause = ""
        if limit is not None:
            limit_clause = "LIMIT ? OFFSET ?"
            params.extend([limit, offset or 0])
        try:
            rows = self._query(
                f"""
                SELECT data FROM batch_jobs
                {where_clause}
                ORDER BY created_at DESC
                {limit_clause}
                """,
                tuple(params),
            )
        except sqlite3.Error as exc:
            logger.exception("Failed to list jobs")
            raise RepositoryError("Failed to list jobs") from exc
        return [BatchJob.model_validate_json(row["data"]) for row in rows]

    def count_jobs_by_status(self) -> dict[str, int]:
        try:
            rows = self._query(
                "SELECT status, COUNT(1) AS total FROM batch_jobs GROUP BY status"
            )
        except sqlite3.Error as exc:
            logger.exception("Failed to count jobs")
            raise RepositoryError("Failed to count jobs") from exc
        return {row["status"]: int(row["total"]) for row in rows}

    def delete_jobs(self, created_before: str | None = None) -> int:
        """Delete jobs created before an ISO timestamp, or all jobs when None."""
        try:
            with self._lock, self.connection:
                if created_before is None:
                    deleted = self.connection.execute("DELETE FROM batch_jobs")
                else:
                    deleted = self.connection.execute(
                        "DELETE FROM batch_jobs WHERE created_at < ?",
                        (created_before,),
                    )
                return int(deleted.rowcount)
        except sqlite3.Error as exc:
            logger.exception("Failed to delete jobs")
            raise RepositoryError("Failed to delete jobs") from exc

    # -- batch outcomes ------------------------------------------------

    def insert_batch_outcome(
        self, job_id: str, batch_index: int, result: BatchResult, merged_at: str
    ) -> bool:
        """Record one batch's merged outcome; False if it was already recorded.

        Must be called inside ``transaction()`` together with the job update.
        """
        try:
            cursor = self.connection.execute(
                """
                INSERT INTO batch_outcomes (job_id, batch_index, successful, failed, merged_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(job_id, batch_index) DO NOTHING
                """,
                (
                    job_id,
                    batch_index,
                    json.dumps(result.successful),
                    json.dumps([failure.model_dump() for failure in result.failed]),
                    merged_at,
                ),
            )
        except sqlite3.Error as exc:
            logger.exception("Failed to record batch %s of job %s", batch_index, job_id)
            raise RepositoryError("Failed to record batch outcome") from exc
        return cursor.rowcount == 1

    def list_batch_outcomes(self, job_id: str) -> list[dict]:
        try:
            rows = self._query(
                """
                SELECT batch_index, successful, failed, merged_at
                FROM batch_outcomes
                WHERE job_id = ?
                ORDER BY batch_index
                """,
                (job_id,),
            )
        except sqlite3.Error as exc:
            logger.exception("Failed to read batch outcomes for %s", job_id)
            raise RepositoryError("Failed to read batch outcomes") from exc
        return [
            {
                "batch_index": int(row["batch_index"]),
                "successful": json.loads(row["successful"]),
                "failed": json.loads(row["failed"]),
                "merged_at": row["merged_at"],
            }
            for row in rows
        ]
