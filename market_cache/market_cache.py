from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
import uvicorn

from .api.api import create_app
from .logging_config import configure_from_environment


env_path = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(env_path)

configure_from_environment()
app = create_app()


def main() -> None:
    uvicorn.run(
        "market_cache.market_cache:app",
        host=os.getenv("MC_HOST", "127.0.0.1"),
        port=int(os.getenv("MC_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    main()
