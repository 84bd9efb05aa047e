import pytest
from click.testing import CliRunner
from fastapi.testclient import TestClient

from market_cache.api.api import create_app
from market_cache.cli import cli, read_tickers
from market_cache.client.fill_client import FillCacheClient
from market_cache.client.job_handle import JobHandle, JobHandleStore


@pytest.fixture()
def store(tmp_path) -> JobHandleStore:
    return JobHandleStore(tmp_path / "last_job.json")


@pytest.fixture()
def client(store: JobHandleStore) -> FillCacheClient:
    return FillCacheClient(
        "http://testserver",
        http_client=TestClient(create_app()),
        handle_store=store,
    )


def invoke(client: FillCacheClient, *args: str):
    return CliRunner().invoke(cli, list(args), obj={"client": client})


def test_read_tickers_merges_arguments_and_file(tmp_path):
    ticker_file = tmp_path / "tickers.txt"
    ticker_file.write_text("ibm, orcl\n\nnvda\n", encoding="utf-8")

    assert read_tickers(("aapl",), str(ticker_file)) == ["aapl", "ibm", "orcl", "nvda"]


def test_validate_prints_summary(client):
    result = invoke(client, "validate", "CLIV1", "CLIV2")

    assert result.exit_code == 0
    assert "Total: 2" in result.output
    assert "Missing: 2" in result.output


def test_validate_without_tickers_fails(client):
    result = invoke(client, "validate")

    assert result.exit_code == 1


def test_fill_drives_job_to_completion(client, store):
    result = invoke(
        client, "fill", "CLIF1", "CLIF2", "ZZZZCLIF", "-b", "1", "--poll-interval", "0"
    )

    assert result.exit_code == 0
    assert "Created job batch_job_" in result.output
    assert ": completed 3/3" in result.output
    assert store.load() is None


def test_fill_detach_keeps_handle_for_resume(client, store):
    detached = invoke(client, "fill", "CLID1", "CLID2", "-b", "1", "--detach")
    handle = store.load()

    assert detached.exit_code == 0
    assert handle is not None

    status = invoke(client, "status")
    assert status.exit_code == 0
    assert f"{handle.job_id}: pending" in status.output

    resumed = invoke(client, "resume", "--poll-interval", "0")
    assert resumed.exit_code == 0
    assert ": completed 2/2" in resumed.output
    assert store.load() is None


def test_resume_continues_paused_job(client, store):
    invoke(client, "fill", "CLIP1", "CLIP2", "-b", "1", "--detach")
    job_id = store.load().job_id

    paused = invoke(client, "pause")
    assert paused.exit_code == 0
    assert f"{job_id}: paused" in paused.output

    resumed = invoke(client, "resume", "--poll-interval", "0")
    assert resumed.exit_code == 0
    assert ": completed 2/2" in resumed.output


def test_resume_without_saved_job_fails(client):
    result = invoke(client, "resume")

    assert result.exit_code == 1
    assert "No saved job" in result.output


def test_status_of_unknown_job_fails(client, store):
    store.save(JobHandle.new("batch_job_unknown", "http://testserver"))

    result = invoke(client, "status")

    assert result.exit_code == 1
    assert "404" in result.output
