"""Global pytest configuration and fixtures.

Provides marker infrastructure separating unit tests from tests that need a
real Redis server.
"""

from __future__ import annotations

from pathlib import Path

_INTEGRATION_DIR = Path(__file__).parent / "integration"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: test runs against a Redis server started in Docker"
    )


def pytest_collection_modifyitems(items):
    """Mark everything under tests/integration as an integration test."""
    for item in items:
        if _INTEGRATION_DIR in Path(str(item.fspath)).parents:
            item.add_marker("integration")
