"""Pytest configuration and shared fixtures."""

import pytest

# Loaded here rather than through the ``pytest11`` entry point
# (disabled with ``-p no:devicelink``) so pytest-cov is already tracing
# when the devicelink import chain runs.
pytest_plugins = ["devicelink.testing._plugin"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, no external dependencies)")
    config.addinivalue_line(
        "markers", "integration: End-to-end lifecycle scenarios on in-memory stores"
    )
