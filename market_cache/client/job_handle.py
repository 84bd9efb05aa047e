from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from pydantic import BaseModel, ValidationError

from ..core.clock import to_iso, utc_now


DEFAULT_HANDLE_PATH = Path.home() / ".market_cache" / "last_job.json"


class JobHandle(BaseModel):
    job_id: str
    base_url: str
    created_at: str = ""

    @classmethod
    def new(cls, job_id: str, base_url: str) -> "JobHandle":
        return cls(job_id=job_id, base_url=base_url, created_at=to_iso(utc_now()))


class JobHandleStore:
    """Remembers the most recent job so a restarted client can resume polling."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path or os.getenv("MC_JOB_HANDLE_PATH") or DEFAULT_HANDLE_PATH)

    def load(self) -> JobHandle | None:
        if not self.path.exists():
            return None
        try:
            return JobHandle.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable job handle at %s: %s", self.path, exc)
            return None

    def save(self, handle: JobHandle) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(handle.model_dump_json(), encoding="utf-8")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


logger = logging.getLogger(__name__)
