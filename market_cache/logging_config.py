"""
Market cache logging configuration.

Supports console output and optional rotating file logging.

Environment variables:
- MC_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL). Default: INFO
- MC_LOG_FILE: Optional log file path. If set, logs are written to this file with rotation.
  Example: MC_LOG_FILE=logs/market_cache.log (creates logs/ if needed)
- MC_LOG_MAX_BYTES: Max size per log file before rotation (default: 10MB)
- MC_LOG_BACKUP_COUNT: Number of backup log files to keep (default: 5)
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional, TextIO


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Setup logging for the market cache service.

    The console handler is always installed; a rotating file handler is
    added when ``log_file`` is given. Parent directories are created.

    Args:
        level: Logging level name
        log_file: Optional log file path (e.g., "logs/market_cache.log")
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated files to keep
        stream: Console stream (stdout by default; the CLI passes stderr)

    Returns:
        Configured root logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # httpx logs every request at INFO; the fill loop makes thousands.
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    return root_logger


def configure_from_environment() -> logging.Logger:
    """Configure logging from the MC_LOG_* environment variables."""
    return setup_logging(
        level=os.getenv("MC_LOG_LEVEL", "INFO"),
        log_file=os.getenv("MC_LOG_FILE"),
        max_bytes=int(os.getenv("MC_LOG_MAX_BYTES", 10 * 1024 * 1024)),
        backup_count=int(os.getenv("MC_LOG_BACKUP_COUNT", 5)),
    )
