"""
Pytest configuration and shared fixtures.
"""
import os

# Never pick up a developer's DATABASE_URL in tests.
os.environ.pop("DATABASE_URL", None)

import pytest

from perp_indexer.storage.db import Database
from perp_indexer.storage.repository import SqlLedgerStore
from tests.helpers import PROXY, TOKEN, TOKEN_POOL, FakeChainClient, SleepRecorder, make_handles


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.drop_all()


@pytest.fixture
def store(db):
    return SqlLedgerStore(db)


@pytest.fixture
def handles():
    return make_handles()


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def config_file(tmp_path):
    """Write a config.yaml with valid addresses; keyword args become indexer settings."""

    def _make(**indexer_overrides) -> str:
        indexer = {"chunk_size": 2000, **indexer_overrides}
        indexer_lines = "\n".join(f"  {k}: {v}" for k, v in indexer.items())
        content = f"""
environment: dev
chain:
  rpc_url: "wss://rpc.example.org"
  privacy_proxy_address: "{PROXY}"
  token_pool_address: "{TOKEN_POOL}"
  token_address: "{TOKEN}"
indexer:
{indexer_lines}
storage:
  database_url: "sqlite:///{tmp_path / 'ledger.db'}"
monitoring:
  log_level: INFO
  log_format: text
  log_file: null
"""
        path = tmp_path / "config.yaml"
        path.write_text(content)
        return str(path)

    return _make
