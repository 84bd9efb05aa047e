from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_SQL = """
PRAGMA foreign_keys = ON;
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS cache_records (
    ticker TEXT NOT NULL,
    year INTEGER NOT NULL,
    price NUMERIC,
    adjusted_price NUMERIC NOT NULL,
    market_cap NUMERIC,
    shares_outstanding NUMERIC,
    price_date TEXT,
    source TEXT,
    fetched_at TEXT NOT NULL,
    PRIMARY KEY (ticker, year)
);

CREATE INDEX IF NOT EXISTS idx_cache_records_ticker
ON cache_records (ticker);

CREATE TABLE IF NOT EXISTS failed_tickers (
    ticker TEXT PRIMARY KEY,
    error TEXT NOT NULL,
    first_failed_at TEXT NOT NULL,
    last_attempt_at TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS batch_jobs (
    job_id TEXT PRIMARY KEY,
    status TEXT NOT NULL CHECK (status IN ('pending', 'running', 'paused', 'completed', 'failed')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_batch_jobs_status
ON batch_jobs (status);

CREATE TABLE IF NOT EXISTS batch_outcomes (
    job_id TEXT NOT NULL,
    batch_index INTEGER NOT NULL CHECK (batch_index >= 0),
    successful TEXT NOT NULL,
    failed TEXT NOT NULL,
    merged_at TEXT NOT NULL,
    PRIMARY KEY (job_id, batch_index),
    FOREIGN KEY (job_id) REFERENCES batch_jobs(job_id) ON DELETE CASCADE
);
"""


def get_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA busy_timeout = 30000;")
    return conn


def init_db(db_path: str) -> None:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(SCHEMA_SQL)
    finally:
        conn.close()
