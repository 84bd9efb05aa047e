from __future__ import annotations

import logging
import time
from typing import Callable

import httpx

from .job_handle import JobHandle, JobHandleStore


TERMINAL = {"completed", "failed"}
# Responses a gateway returns when the host cuts an invocation short.
GATEWAY_TIMEOUT_CODES = {502, 503, 504}


class FillCacheClient:
    """HTTP client for the fill-cache endpoints.

    Large fills become server-side jobs. The client keeps the last job id in
    a :class:`JobHandleStore` and drives it by re-triggering the orchestrator
    until the job reaches a terminal status.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 300.0,
        http_client: httpx.Client | None = None,
        handle_store: JobHandleStore | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = http_client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self.handle_store = handle_store or JobHandleStore()

    def close(self) -> None:
        self.client.close()

    def _post(self, path: str, payload: dict) -> dict:
        response = self.client.post(path, json=payload)
        response.raise_for_status()
        return response.json()

    def validate(self, tickers: list[str]) -> dict:
        return self._post("/api/fill-cache", {"tickers": tickers, "action": "validate"})

    def start_fill(
        self,
        tickers: list[str],
        batch_size: int | None = None,
        retry_delisted: bool = False,
        start_immediately: bool = False,
    ) -> JobHandle:
        payload: dict = {
            "tickers": tickers,
            "action": "fill",
            "useBatch": True,
            "retryDelisted": retry_delisted,
            "startImmediately": start_immediately,
        }
        if batch_size is not None:
            payload["batchSize"] = batch_size
        data = self._post("/api/fill-cache", payload)
        handle = JobHandle.new(data["jobId"], self.base_url)
        self.handle_store.save(handle)
        logger.info(
            "Started fill job %s (%s batches)",
            handle.job_id,
            data.get("batchInfo", {}).get("totalBatches"),
        )
        return handle

    def last_job(self) -> JobHandle | None:
        return self.handle_store.load()

    def status(self, job_id: str, detailed: bool = False) -> dict:
        response = self.client.get(
            "/api/fill-cache-batch-status",
            params={"jobId": job_id, "detailed": str(detailed).lower()},
        )
        response.raise_for_status()
        return response.json()

    def orchestrate(self, job_id: str) -> dict:
        return self._post("/api/fill-cache-batch-orchestrator", {"jobId": job_id})

    def pause(self, job_id: str) -> dict:
        return self._post(
            "/api/fill-cache-batch-control", {"jobId": job_id, "action": "pause"}
        )

    def resume(self, job_id: str) -> dict:
        return self._post(
            "/api/fill-cache-batch-control", {"jobId": job_id, "action": "resume"}
        )

    def run_until_done(
        self,
        handle: JobHandle,
        poll_interval: float = 2.0,
        max_invocations: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_status: Callable[[dict], None] | None = None,
    ) -> dict:
        """Re-trigger the orchestrator until the job completes, fails or is paused.

        A timeout, dropped connection or 502/503/504 from a gateway means the
        host cut the invocation short, so the loop carries on and polls
        status. Other HTTP errors propagate. The stored handle is cleared once
        the job completes.
        """
        invocations = 0
        while True:
            status = self.status(handle.job_id)
            if on_status is not None:
                on_status(status)
            if status["status"] in TERMINAL or status["status"] == "paused":
                break
            if max_invocations is not None and invocations >= max_invocations:
                break
            try:
                self.orchestrate(handle.job_id)
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code not in GATEWAY_TIMEOUT_CODES:
                    raise
                logger.info(
                    "Orchestrator call for %s cut off (%s); still running",
                    handle.job_id,
                    exc.response.status_code,
                )
            except httpx.TransportError as exc:
                logger.info(
                    "Orchestrator call for %s interrupted (%s); still running",
                    handle.job_id,
                    type(exc).__name__,
                )
            invocations += 1
            sleep(poll_interval)

        if status["status"] == "completed":
            self.handle_store.clear()
        return status


logger = logging.getLogger(__name__)
