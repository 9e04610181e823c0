"""
Pytest configuration for async tests.
"""
import pytest

from lineops.stream.cache import CacheSynchronizer, LineCache

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)


def pytest_configure(config):
    """Configure pytest-asyncio mode."""
    config.option.asyncio_mode = "auto"


@pytest.fixture
def cache() -> LineCache:
    return LineCache()


@pytest.fixture
def synchronizer(cache) -> CacheSynchronizer:
    return CacheSynchronizer(cache)
