import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from market_cache.config import Settings
from market_cache.core.errors import JobNotFoundError, JobStateError, JobValidationError
from market_cache.db.db import SCHEMA_SQL, get_connection, init_db
from market_cache.db.repository import CacheRepository
from market_cache.schemas.batch_job import BatchResult, TickerFailure
from market_cache.services.job_state import JobStateManager


@pytest.fixture()
def repository() -> CacheRepository:
    connection = sqlite3.connect(":memory:", check_same_thread=False)
    connection.row_factory = sqlite3.Row
    connection.executescript(SCHEMA_SQL)
    return CacheRepository(connection)


@pytest.fixture()
def manager(repository: CacheRepository) -> JobStateManager:
    return JobStateManager(repository, Settings(db_path=":memory:"))


def tickers(count: int) -> list[str]:
    return [f"T{index:04d}" for index in range(count)]


def complete_batch(manager: JobStateManager, job_id: str, batch_index: int) -> BatchResult:
    job = manager.load_job(job_id)
    return BatchResult(
        batch_index=batch_index,
        successful=manager.batch_tickers(job, batch_index),
    )


def test_create_job_partitions_tickers(manager: JobStateManager) -> None:
    job = manager.create_job(tickers(250), 50)

    assert job.total_batches == 5
    assert job.status == "pending"
    assert job.job_id.startswith("batch_job_")
    assert manager.batch_tickers(job, 4) == tickers(250)[200:250]
    assert manager.batch_tickers(job, 5) == []


def test_create_job_normalizes_and_dedupes(manager: JobStateManager) -> None:
    job = manager.create_job([" aapl", "AAPL", "msft ", ""], 5)

    assert job.tickers == ["AAPL", "MSFT"]
    assert job.total_batches == 1


def test_create_job_rejects_empty_list(manager: JobStateManager) -> None:
    with pytest.raises(JobValidationError):
        manager.create_job([], 5)


@pytest.mark.parametrize("batch_size", [0, 51])
def test_create_job_rejects_out_of_range_batch_size(
    manager: JobStateManager, batch_size: int
) -> None:
    with pytest.raises(JobValidationError):
        manager.create_job(["AAPL"], batch_size)


def test_load_unknown_job_raises(manager: JobStateManager) -> None:
    with pytest.raises(JobNotFoundError):
        manager.load_job("batch_job_missing")


def test_advance_through_all_batches_completes(manager: JobStateManager) -> None:
    job = manager.create_job(tickers(250), 50)
    manager.start_job(job.job_id)

    for batch_index in range(5):
        job = manager.advance_job(job.job_id, complete_batch(manager, job.job_id, batch_index))

    assert job.status == "completed"
    assert job.processed == 250
    assert job.successful == 250
    assert job.current_batch_index == 5
    assert job.percentage == 100.0


def test_advance_same_batch_twice_does_not_double_count(manager: JobStateManager) -> None:
    job = manager.create_job(tickers(4), 2)
    manager.start_job(job.job_id)
    result = complete_batch(manager, job.job_id, 0)

    first = manager.advance_job(job.job_id, result)
    second = manager.advance_job(job.job_id, result)

    assert first.processed == 2
    assert second.processed == 2
    assert second.current_batch_index == 1
    assert len(manager.repository.list_batch_outcomes(job.job_id)) == 1


def test_advance_out_of_order_is_rejected(manager: JobStateManager) -> None:
    job = manager.create_job(tickers(6), 2)
    manager.start_job(job.job_id)

    with pytest.raises(JobStateError):
        manager.advance_job(job.job_id, BatchResult(batch_index=2, successful=["T0004"]))

    assert manager.load_job(job.job_id).current_batch_index == 0


def test_advance_records_failures(manager: JobStateManager) -> None:
    job = manager.create_job(["AAPL", "ZZZZ"], 2)
    manager.start_job(job.job_id)

    job = manager.advance_job(
        job.job_id,
        BatchResult(
            batch_index=0,
            successful=["AAPL", "NOT_IN_BATCH"],
            failed=[TickerFailure(ticker="ZZZZ", error="No data found")],
        ),
    )

    assert job.successful == 1
    assert job.failed == 1
    assert job.processed == 2
    assert job.failed_tickers[0].ticker == "ZZZZ"
    assert job.failed_tickers[0].batch_index == 0


def test_incomplete_result_cannot_be_merged(manager: JobStateManager) -> None:
    job = manager.create_job(tickers(2), 2)

    with pytest.raises(JobValidationError):
        manager.advance_job(job.job_id, BatchResult(batch_index=0, complete=False))


def test_terminal_job_is_immutable(manager: JobStateManager) -> None:
    job = manager.create_job(tickers(4), 2)
    manager.start_job(job.job_id)
    failed = manager.mark_failed(job.job_id, "store gone")

    after_advance = manager.advance_job(job.job_id, complete_batch(manager, job.job_id, 0))
    after_annotate = manager.annotate(job.job_id, "ignored")
    after_second_fail = manager.mark_failed(job.job_id, "again")

    assert failed.status == "failed"
    assert after_advance.processed == 0
    assert after_annotate.message == failed.message
    assert after_second_fail.message == failed.message
    with pytest.raises(JobStateError):
        manager.resume_job(job.job_id)


def test_pause_and_resume(manager: JobStateManager) -> None:
    job = manager.create_job(tickers(4), 2)
    manager.start_job(job.job_id)

    paused = manager.pause_job(job.job_id)
    assert paused.status == "paused"
    assert manager.start_job(job.job_id).status == "paused"

    resumed = manager.resume_job(job.job_id)
    assert resumed.status == "running"


def test_start_job_sets_processing_time_once(repository: CacheRepository) -> None:
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    manager = JobStateManager(repository, Settings(db_path=":memory:"), clock=lambda: now)
    job = manager.create_job(tickers(2), 1)

    started = manager.start_job(job.job_id)
    again = manager.start_job(job.job_id)

    assert started.processing_started_at == "2024-01-01T00:00:00+00:00"
    assert again.processing_started_at == started.processing_started_at


def test_purge_expired_removes_old_jobs(repository: CacheRepository) -> None:
    current = {"now": datetime(2024, 1, 1, tzinfo=timezone.utc)}
    manager = JobStateManager(
        repository, Settings(db_path=":memory:"), clock=lambda: current["now"]
    )
    old = manager.create_job(["AAPL"], 1)
    current["now"] += timedelta(hours=30)
    fresh = manager.create_job(["MSFT"], 1)

    deleted = manager.purge_expired()

    assert deleted == 1
    assert [job.job_id for job in manager.list_jobs()] == [fresh.job_id]
    with pytest.raises(JobNotFoundError):
        manager.load_job(old.job_id)


def test_concurrent_merges_of_same_batch_count_once(tmp_path) -> None:
    db_path = str(tmp_path / "jobs.db")
    init_db(db_path)
    settings = Settings(db_path=db_path)
    managers = [
        JobStateManager(CacheRepository(get_connection(db_path)), settings)
        for _ in range(2)
    ]
    job = managers[0].create_job(tickers(4), 2)
    result = BatchResult(batch_index=0, successful=["T0000", "T0001"])
    barrier = threading.Barrier(2)

    def merge(manager: JobStateManager) -> None:
        barrier.wait()
        manager.advance_job(job.job_id, result)

    threads = [threading.Thread(target=merge, args=(manager,)) for manager in managers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stored = managers[1].load_job(job.job_id)
    assert stored.processed == 2
    assert stored.current_batch_index == 1
