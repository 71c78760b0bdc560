"""
Pytest configuration and fixtures for end-to-end testing.
"""
import os
import logging
import pytest
from typing import Generator
from fastapi.testclient import TestClient

os.environ.setdefault("BOOTSTRAP_OPERATOR_EMAIL", "operator@test.com")
os.environ.setdefault("BOOTSTRAP_OPERATOR_PASSWORD", "operator123")

from main import (app, get_bridge_config, get_mqtt_client_factory, stream_registry,
                  DB_PATH_ENV_VAR, SNAPSHOT_DIR_ENV_VAR,
                  BOOTSTRAP_OPERATOR_EMAIL_ENV_VAR, BOOTSTRAP_OPERATOR_PASSWORD_ENV_VAR)
from stream_bridge import BridgeConfig
from tests.utils.fake_mqtt import FakeMQTTFactory


@pytest.fixture(scope="function")
def temp_db() -> Generator[str, None, None]:
    """Create a temporary database for testing."""
    # Use in-memory database for fast, isolated tests
    db_path = ":memory:"

    # Set environment variable for the test
    original_db_path = os.environ.get(DB_PATH_ENV_VAR)
    os.environ[DB_PATH_ENV_VAR] = db_path

    yield db_path

    # Cleanup
    if original_db_path is not None:
        os.environ[DB_PATH_ENV_VAR] = original_db_path
    elif DB_PATH_ENV_VAR in os.environ:
        del os.environ[DB_PATH_ENV_VAR]


@pytest.fixture(scope="function")
def snapshot_dir(tmp_path, monkeypatch) -> str:
    """Point snapshot storage at a temporary directory."""
    path = str(tmp_path / "snapshots")
    monkeypatch.setenv(SNAPSHOT_DIR_ENV_VAR, path)
    return path


@pytest.fixture(scope="function")
def test_client(temp_db, snapshot_dir) -> Generator[TestClient, None, None]:
    """Create a FastAPI TestClient instance."""
    with TestClient(app) as client:
        yield client


@pytest.fixture(scope="function")
def operator_token(test_client: TestClient) -> str:
    """Sign in as the bootstrap operator and return authentication token."""
    response = test_client.post("/signin", json={
        "email": os.environ[BOOTSTRAP_OPERATOR_EMAIL_ENV_VAR],
        "password": os.environ[BOOTSTRAP_OPERATOR_PASSWORD_ENV_VAR]
    })
    assert response.status_code == 200, f"Failed to sign in as operator: {response.text}"
    return response.json()["token"]


@pytest.fixture(scope="function")
def auth_headers(operator_token: str) -> dict:
    return {"Authorization": f"Bearer {operator_token}"}


@pytest.fixture(scope="function")
def bridge_config() -> BridgeConfig:
    """Bridge settings for tests. Keepalive is long enough to stay out of the way."""
    return BridgeConfig(default_host="broker.test.local", sse_keepalive_seconds=60)


@pytest.fixture(scope="function")
def mqtt_factory() -> FakeMQTTFactory:
    return FakeMQTTFactory()


@pytest.fixture(scope="function")
def stream_app(bridge_config: BridgeConfig, mqtt_factory: FakeMQTTFactory):
    """The app with the MQTT client replaced by a fake."""
    app.dependency_overrides[get_bridge_config] = lambda: bridge_config
    app.dependency_overrides[get_mqtt_client_factory] = lambda: mqtt_factory
    yield app
    app.dependency_overrides.clear()
    stream_registry.close_all()


@pytest.fixture(scope="function")
def test_logger() -> logging.Logger:
    return logging.getLogger("tests.stream")
