"""
Shared fixtures for the Harvest API test-suite.
Run with: pytest tests/
"""

import os
import sys
from datetime import datetime, timezone
from unittest.mock import patch

import fakeredis
import pytest
import respx
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-secret")

import extraction  # noqa: E402
import store as store_module  # noqa: E402
from config import settings  # noqa: E402
from encryption import encrypt  # noqa: E402
from store import EndpointStore  # noqa: E402

FIRECRAWL_URL = "https://api.firecrawl.dev/v1"
SCRAPER_KEY = "fc-test-key"
TOKEN = "sk_" + "ab" * 24


# ── Isolation ────────────────────────────────────────────────────────────────
@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Fast polling, known secrets and no server-side keys leaking in from .env."""
    monkeypatch.setattr(settings, "encryption_key", "test-encryption-secret")
    monkeypatch.setattr(settings, "firecrawl_api_url", FIRECRAWL_URL)
    monkeypatch.setattr(settings, "firecrawl_api_key", None)
    monkeypatch.setattr(settings, "groq_api_key", None)
    monkeypatch.setattr(settings, "firecrawl_poll_interval", 0)
    monkeypatch.setattr(settings, "public_base_url", "http://testserver")
    # A stale client never leaks into the next test's event loop
    extraction._http_client = None
    store_module._redis = None
    yield
    extraction._http_client = None
    store_module._redis = None


@pytest.fixture
def fake_redis():
    """In-memory Redis (async API)."""
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
def endpoint_store(fake_redis):
    return EndpointStore(fake_redis)


@pytest.fixture
def firecrawl():
    """respx router for the Firecrawl API; unmatched calls fail the test."""
    with respx.mock(base_url=FIRECRAWL_URL, assert_all_called=False) as router:
        yield router


@pytest.fixture
def make_record():
    """Factory for a complete, deployed endpoint record."""

    def _make(data=None, **metadata_overrides):
        now = datetime.now(timezone.utc).isoformat()
        metadata = {
            "query": "Extract the company name",
            "schema": {"type": "object", "properties": {"name": {"type": "string"}}},
            "sources": ["https://example.com"],
            "updateFrequency": "0 * * * *",
            "firecrawlApiKey": encrypt(SCRAPER_KEY),
            "apiKey": TOKEN,
            "createdAt": now,
            "lastUpdated": now,
            "lastUpdateAttempt": now,
            "lastSuccessfulUpdate": now,
            "updateStatus": "success",
        }
        metadata.update(metadata_overrides)
        return {"data": {"name": "Acme"} if data is None else data, "metadata": metadata}

    return _make


# ── App client ───────────────────────────────────────────────────────────────
@pytest.fixture
def client(fake_redis):
    """Test client for the FastAPI app with lifespan, backed by fake Redis."""
    from main import app, limiter

    limiter.reset()
    with patch("store.aioredis.from_url", return_value=fake_redis):
        # TestClient automatically triggers startup/shutdown events
        with TestClient(app) as test_client:
            yield test_client


@pytest.fixture
def run(client):
    """Run a coroutine function on the app's event loop (for seeding/inspecting Redis)."""

    def _run(fn, *args, **kwargs):
        return client.portal.call(lambda: fn(*args, **kwargs))

    return _run
