"""
Shared pytest fixtures and configuration for all tests.
"""

from typing import Callable

import httpx
import pytest

from src.api.routes import limiter


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Start every test with an empty rate-limit window."""
    limiter.reset()
    yield


@pytest.fixture
def sample_urls():
    """Sample URLs for bulk-check testing."""
    return [
        "https://example.com/",
        "example.org",
        "  https://example.net/status  ",
        "",
        "http://127.0.0.1/admin",
    ]


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an AsyncClient whose traffic is answered by ``handler``."""

    def _build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build
