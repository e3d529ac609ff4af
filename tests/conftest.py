"""
Pytest fixtures for Tubely tests.
Provides an isolated config, test client, fake media tools and sample records.

Uses a per-test SQLite database and temp directories so tests never touch
real storage or require ffmpeg.
"""

import uuid
from pathlib import Path
from typing import AsyncGenerator

import pytest
from databases import Database

from api.auth import TokenValidator
from api.database import VideoStore, create_tables
from config import AppConfig
from fixtures.media import FakeProbe, FakeRewriter

TEST_JWT_SECRET = "test-secret-for-tubely"


@pytest.fixture(scope="function")
def test_storage(tmp_path: Path) -> dict:
    """Create isolated asset and scratch directories."""
    assets = tmp_path / "assets"
    scratch = tmp_path / "scratch"
    assets.mkdir()
    scratch.mkdir()
    return {"root": tmp_path, "assets": assets, "scratch": scratch}


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'tubely_test.db'}"


@pytest.fixture(scope="function")
def app_config(test_storage: dict, test_db_url: str) -> AppConfig:
    return AppConfig(
        database_url=test_db_url,
        jwt_secret=TEST_JWT_SECRET,
        storage_backend="local",
        assets_root=test_storage["assets"],
        public_base_url="http://testserver",
        scratch_dir=test_storage["scratch"],
        faststart_enabled=False,
        rate_limit_enabled=False,
        audit_log_enabled=False,
    )


@pytest.fixture(scope="function")
def validator() -> TokenValidator:
    return TokenValidator(TEST_JWT_SECRET)


@pytest.fixture(scope="function")
def user_id() -> str:
    return str(uuid.uuid4())


@pytest.fixture(scope="function")
def auth_headers(validator: TokenValidator, user_id: str) -> dict:
    return {"Authorization": f"Bearer {validator.issue(user_id)}"}


@pytest.fixture(scope="function")
def other_auth_headers(validator: TokenValidator) -> dict:
    """Headers for a second, unrelated user."""
    return {"Authorization": f"Bearer {validator.issue(str(uuid.uuid4()))}"}


@pytest.fixture(scope="function")
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture(scope="function")
def fake_rewriter() -> FakeRewriter:
    return FakeRewriter()


@pytest.fixture(scope="function")
def client(app_config: AppConfig, fake_probe: FakeProbe, fake_rewriter: FakeRewriter):
    """Test client for the media API with fake media tools."""
    from fastapi.testclient import TestClient

    from api.app import create_app

    app = create_app(app_config, probe=fake_probe, rewriter=fake_rewriter)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture(scope="function")
def sample_video(client, auth_headers: dict) -> dict:
    """A freshly created record owned by the `user_id` fixture."""
    response = client.post(
        "/api/videos",
        json={"title": "Boot.dev Beats", "description": "Lo-fi for coding"},
        headers=auth_headers,
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """A connected database with the schema created, for store-level tests."""
    create_tables(test_db_url)
    database = Database(test_db_url)
    await database.connect()
    yield database
    await database.disconnect()


@pytest.fixture(scope="function")
def video_store(test_database: Database) -> VideoStore:
    return VideoStore(test_database)
