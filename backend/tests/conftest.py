from __future__ import annotations

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest

from app.core.config import Settings
from app.db import create_db_engine, create_session_factory, init_db
from app.repositories import Store
from factories import Seeder


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'markets.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory) -> Store:
    return Store(session_factory, retry_attempts=5, retry_backoff=(0.0,), sleep=lambda _: None)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'markets.db'}",
        resolution_creator_fee_rate=0.0,
        sale_creator_fee_rate=0.04,
        transaction_retry_backoff_seconds="0",
        notification_webhook_url=None,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings
