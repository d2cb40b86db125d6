"""Root pytest configuration for agentkit tests."""

from __future__ import annotations

import pytest

from agentkit.config import clear_secret_cache, reset_config


@pytest.fixture(autouse=True)
def isolated_config():
    """Drop cached config and secrets so env changes take effect per test."""
    reset_config()
    clear_secret_cache()
    yield
    reset_config()
    clear_secret_cache()


@pytest.fixture(scope="session")
def anyio_backend():
    """Set anyio backend to asyncio."""
    return "asyncio"
