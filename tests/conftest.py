"""
Test Configuration

Pytest fixtures shared by the test suite. Every test gets its own in-memory
Redis (fakeredis) and settings tuned for fast timers.
"""

from typing import AsyncGenerator, Generator

import fakeredis
import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import create_app
from app.store import KeySpace
from helpers import SAMPLE_DIFF, fake_redis, make_settings, runtime_factory_for


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def keys(settings: Settings) -> KeySpace:
    return KeySpace(settings.queue_prefix)


@pytest.fixture
async def redis() -> AsyncGenerator[fakeredis.FakeAsyncRedis, None]:
    client = fake_redis()
    yield client
    await client.aclose()


@pytest.fixture
def sample_diff() -> str:
    return SAMPLE_DIFF


@pytest.fixture
def api_settings() -> Settings:
    return make_settings(run_workers=False)


@pytest.fixture
def client(api_settings: Settings) -> Generator[TestClient, None, None]:
    """Test client over a runtime backed by an in-memory Redis."""
    app = create_app(api_settings, runtime_factory=runtime_factory_for())
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sample_pr_payload() -> dict:
    """Sample pull request webhook payload."""
    return {
        "action": "opened",
        "number": 42,
        "pull_request": {
            "id": 123456789,
            "number": 42,
            "state": "open",
            "title": "Add new feature",
            "body": "This PR adds a new feature to the application.",
            "user": {"login": "testuser", "id": 12345, "type": "User"},
            "head": {"ref": "feature-branch", "sha": "abc123def456"},
            "base": {"ref": "main", "sha": "xyz789abc012"},
            "draft": False,
        },
        "repository": {
            "id": 111,
            "name": "repo",
            "full_name": "owner/repo",
            "private": False,
            "owner": {"login": "owner", "id": 1, "type": "User"},
        },
        "sender": {"login": "testuser", "id": 12345, "type": "User"},
        "installation": {"id": 987654},
    }
