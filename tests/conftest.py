import os

import pytest


@pytest.fixture(autouse=True, scope="session")
def _market_cache_test_db(tmp_path_factory: pytest.TempPathFactory) -> None:
    tmp_dir = tmp_path_factory.mktemp("market_cache_db")
    db_path = tmp_dir / "marketCache.db"
    os.environ["MC_DB_PATH"] = str(db_path)
    os.environ["MC_TESTING"] = "1"
