from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from docqa.config import get_settings
from docqa.db import Base, get_engine
from docqa.main import app, get_embedding_client

TEST_EMBEDDING_DIM = 256


@pytest.fixture(autouse=True)
def reset_api_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_embedding_client.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
    get_embedding_client.cache_clear()
    app.dependency_overrides.clear()


@pytest.fixture
def engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Engine]:
    sqlite_db_path = tmp_path / "docqa-tests.db"
    monkeypatch.setenv("DOCQA_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("DOCQA_DB_ECHO", "false")
    monkeypatch.setenv("DOCQA_STORAGE_DIR", str(tmp_path / "documents"))
    monkeypatch.setenv("EMBEDDING_DIM", str(TEST_EMBEDDING_DIM))

    engine = get_engine()
    Base.metadata.create_all(bind=engine)

    yield engine

    engine.dispose()


@pytest.fixture
def client(engine: Engine) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
