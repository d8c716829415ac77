import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from memcore.core.config import get_settings
from memcore.main import create_runtime


@pytest.fixture
def runtime(tmp_path, monkeypatch):
    db_path = tmp_path / "test_memcore.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("EMBED_PROVIDER", "deterministic")
    monkeypatch.setenv("EMBED_MODEL", "deterministic-v1")
    monkeypatch.setenv("EMBED_DIM", "64")
    monkeypatch.setenv("MEMORY_INDEX_WORKERS", "1")
    monkeypatch.delenv("MEMORY_KEYWORDS_PATH", raising=False)
    get_settings.cache_clear()
    yield create_runtime()
    get_settings.cache_clear()


@pytest.fixture
async def started_runtime(runtime):
    await runtime.startup()
    yield runtime
    await runtime.shutdown()


@pytest.fixture
async def service(started_runtime):
    return started_runtime.memory_service


@pytest.fixture
def anyio_backend():
    return "asyncio"
