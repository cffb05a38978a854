"""
Pytest configuration for Harbormaster tests.
"""

import os

import pytest

# Import test fixtures
from tests.fixtures.engine_fixtures import *  # noqa: F401,F403


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Setup test environment before running tests."""
    os.environ["TEST_MODE"] = "true"
    os.environ["LOG_LEVEL"] = "INFO"
    # Unit tests never talk to a real audit database.
    os.environ.pop("POSTGRES_URL", None)

    yield


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow running"
    )
    config.addinivalue_line(
        "markers", "requires_docker: marks tests that require Docker to be running"
    )
