"""API test fixtures."""

import pytest
from fastapi.testclient import TestClient

from marketplace_engine.api.app import create_app


@pytest.fixture
def client(session_factory, provider, config) -> TestClient:
    """HTTP client for an app bound to the test database and stub provider."""
    app = create_app(session_factory=session_factory, provider=provider, engine_config=config)
    return TestClient(app)
