"""
Command line client for the fill-cache service.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import click
import httpx
from tqdm import tqdm

from .client.fill_client import FillCacheClient
from .client.job_handle import JobHandleStore
from .logging_config import setup_logging


DEFAULT_SERVER = "http://127.0.0.1:8000"


def read_tickers(tickers: tuple[str, ...], ticker_file: str | None) -> list[str]:
    values = list(tickers)
    if ticker_file:
        for line in Path(ticker_file).read_text(encoding="utf-8").splitlines():
            values.extend(part for part in line.replace(",", " ").split() if part)
    return values


def build_client(ctx: click.Context) -> FillCacheClient:
    if "client" not in ctx.obj:
        ctx.obj["client"] = FillCacheClient(
            ctx.obj["server"],
            timeout=ctx.obj["timeout"],
            handle_store=JobHandleStore(ctx.obj.get("handle_path")),
        )
    return ctx.obj["client"]


def echo_status(status: dict) -> None:
    progress = status.get("progress", {})
    click.echo(
        f"{status.get('jobId')}: {status.get('status')} "
        f"{progress.get('processed', 0)}/{progress.get('total', 0)} "
        f"({progress.get('percentage', 0)}%)"
    )
    if status.get("message"):
        click.echo(f"  {status['message']}")


def drive(client: FillCacheClient, handle, poll_interval: float, max_invocations) -> dict:
    with tqdm(total=100, desc=handle.job_id, unit="%") as pbar:

        def update(status: dict) -> None:
            pbar.n = float(status.get("progress", {}).get("percentage", 0))
            pbar.set_postfix_str(status.get("status", ""))
            pbar.refresh()

        return client.run_until_done(
            handle,
            poll_interval=poll_interval,
            max_invocations=max_invocations,
            on_status=update,
        )


@click.group()
@click.option("--server", "-s", default=None, help="Fill-cache server base URL")
@click.option("--timeout", default=300.0, type=float, help="HTTP timeout in seconds")
@click.option("--handle-path", default=None, help="Where the last job id is stored")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def cli(ctx, server, timeout, handle_path, verbose):
    """Fill the market data cache through a running fill-cache server."""
    setup_logging("DEBUG" if verbose else "WARNING", stream=sys.stderr)
    ctx.ensure_object(dict)
    ctx.obj.setdefault("server", server or os.getenv("MC_SERVER_URL", DEFAULT_SERVER))
    ctx.obj.setdefault("timeout", timeout)
    ctx.obj.setdefault("handle_path", handle_path)


@cli.command()
@click.argument("tickers", nargs=-1)
@click.option("--file", "-f", "ticker_file", default=None, help="File of tickers")
@click.pass_context
def validate(ctx, tickers, ticker_file):
    """Report which tickers are cached, missing or known to fail."""
    symbols = read_tickers(tickers, ticker_file)
    if not symbols:
        click.echo("ERROR: no tickers given", err=True)
        sys.exit(1)
    summary = build_client(ctx).validate(symbols)["summary"]
    click.echo(
        f"Total: {summary['total']}  Cached: {summary['cached']}  "
        f"Missing: {summary['missing']}  Failed: {summary['failed']}"
    )


@cli.command()
@click.argument("tickers", nargs=-1)
@click.option("--file", "-f", "ticker_file", default=None, help="File of tickers")
@click.option("--batch-size", "-b", default=None, type=int, help="Tickers per batch")
@click.option("--retry-delisted", is_flag=True, help="Retry missing tickers as delisted")
@click.option("--detach", is_flag=True, help="Create the job and exit")
@click.option("--poll-interval", default=2.0, type=float, help="Seconds between invocations")
@click.pass_context
def fill(ctx, tickers, ticker_file, batch_size, retry_delisted, detach, poll_interval):
    """Create a batch fill job and drive it to completion."""
    symbols = read_tickers(tickers, ticker_file)
    if not symbols:
        click.echo("ERROR: no tickers given", err=True)
        sys.exit(1)

    client = build_client(ctx)
    handle = client.start_fill(symbols, batch_size=batch_size, retry_delisted=retry_delisted)
    click.echo(f"Created job {handle.job_id}")
    if detach:
        return
    final = drive(client, handle, poll_interval, None)
    echo_status(final)
    if final["status"] == "failed":
        sys.exit(1)


@cli.command()
@click.argument("job_id", required=False)
@click.option("--detailed", is_flag=True, help="Include per-ticker failures")
@click.pass_context
def status(ctx, job_id, detailed):
    """Show a job's status (defaults to the last job started here)."""
    client = build_client(ctx)
    if job_id is None:
        handle = client.last_job()
        if handle is None:
            click.echo("No saved job", err=True)
            sys.exit(1)
        job_id = handle.job_id
    try:
        data = client.status(job_id, detailed=detailed)
    except httpx.HTTPStatusError as e:
        click.echo(f"ERROR: {e.response.status_code} {e.response.text}", err=True)
        sys.exit(1)
    echo_status(data)
    for failure in data.get("failedTickers", []):
        click.echo(f"  {failure['ticker']}: {failure['error']}")


@cli.command()
@click.option("--poll-interval", default=2.0, type=float, help="Seconds between invocations")
@click.option("--max-invocations", default=None, type=int, help="Stop after N orchestrator calls")
@click.pass_context
def resume(ctx, poll_interval, max_invocations):
    """Resume driving the last job started from this machine."""
    client = build_client(ctx)
    handle = client.last_job()
    if handle is None:
        click.echo("No saved job to resume", err=True)
        sys.exit(1)
    click.echo(f"Resuming job {handle.job_id}")
    current = client.status(handle.job_id)
    if current["status"] == "paused":
        client.resume(handle.job_id)
    final = drive(client, handle, poll_interval, max_invocations)
    echo_status(final)
    if final["status"] == "failed":
        sys.exit(1)


@cli.command()
@click.argument("job_id", required=False)
@click.pass_context
def pause(ctx, job_id):
    """Pause a job so later orchestrator calls leave it alone."""
    client = build_client(ctx)
    if job_id is None:
        handle = client.last_job()
        if handle is None:
            click.echo("No saved job", err=True)
            sys.exit(1)
        job_id = handle.job_id
    data = client.pause(job_id)
    click.echo(f"{job_id}: {data.get('status')}")


@cli.command()
def serve():
    """Run the fill-cache HTTP server."""
    from .market_cache import main

    main()


if __name__ == "__main__":
    cli(obj={})
