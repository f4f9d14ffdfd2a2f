"""Global test configuration and fixtures."""

import os

# Ensure test modules can import src
import sys
from collections.abc import Generator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from test_helpers import MASTER_KEY, MutableClock, send  # noqa: E402


@pytest.fixture
def mock_env_vars():
    """Mock environment variables for testing."""
    env_vars = {
        "MASTER_API_KEY": MASTER_KEY,
        "API_KEY_PREFIX_LENGTH": "8",
        "TASK_POLL_INTERVAL": "0.01",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        yield env_vars


@pytest.fixture
def clock() -> MutableClock:
    """Controllable time source shared by the key store, authorization and tasks."""
    return MutableClock()


@pytest.fixture
def settings():
    from src.config import Settings

    return Settings(master_key=MASTER_KEY)


@pytest.fixture
def container(settings, clock):
    """Real service container wired with the test clock."""
    from src.container import configure_services

    return configure_services(settings, clock=clock)


@pytest.fixture
def key_store(container):
    return container.get("key_store")


@pytest.fixture
def task_queue(container):
    return container.get("task_queue")


@pytest.fixture
def api_client(container) -> Generator[TestClient, None, None]:
    """Create FastAPI test client with properly configured container."""
    from src.service.main import app

    client = TestClient(app)
    # TestClient doesn't execute lifespan functions, so we manually set up the container
    client.app.state.container = container

    yield client


class TestHelpers:
    """Common request helpers for end-to-end tests."""

    @staticmethod
    def create_key(client, **content) -> dict:
        response = send(client, "POST", "/keys", MASTER_KEY, json=content)
        assert response.status_code == 201, response.text
        return response.json()

    @staticmethod
    def patch_key(client, uid: str, **content) -> dict:
        response = send(client, "PATCH", f"/keys/{uid}", MASTER_KEY, json=content)
        assert response.status_code == 200, response.text
        return response.json()

    @staticmethod
    def create_index(client, task_queue, uid: str, primary_key: str = "id") -> None:
        response = send(client, "POST", "/indexes", MASTER_KEY, json={"uid": uid, "primaryKey": primary_key})
        assert response.status_code == 202, response.text
        task_queue.process_pending()


@pytest.fixture
def test_helpers():
    """Test helper methods fixture."""
    return TestHelpers
