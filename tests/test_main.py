"""
API tests for Harvest
Run with: pytest tests/
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

import main
from config import Settings, settings
from encryption import decrypt

SCHEMA = {"type": "object", "properties": {"name": {"type": "string"}}}


def deploy_body(route="acme", **metadata_overrides):
    metadata = {
        "query": "Extract the company name",
        "schema": SCHEMA,
        "sources": ["https://example.com"],
        "firecrawlApiKey": "fc-user-key",
        "updateFrequency": "0 * * * *",
    }
    metadata.update(metadata_overrides)
    return {"key": route, "route": route, "data": {"data": {}, "metadata": metadata}}


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def extract_ok(firecrawl):
    return firecrawl.post("/extract").mock(
        return_value=httpx.Response(200, json={"success": True, "data": {"name": "Acme"}})
    )


@pytest.fixture
def seeded(run, make_record):
    """Store a ready endpoint under ``acme`` and return its record."""

    def _seed(route="acme", **kwargs):
        record = make_record(**kwargs)
        run(main.store.create, route, record)
        return record

    return _seed


# ── Health & Basic Endpoints ─────────────────────────────────────────────────
def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["service"] == "harvest-api"
    assert data["redis_connected"] is True
    assert data["encryption_configured"] is True
    assert data["scheduled_jobs"] == 0
    assert "X-Request-ID" in response.headers
    assert "X-Response-Time" in response.headers


def test_root_endpoint(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["docs"] == "/docs"


def test_init_is_idempotent(client):
    response = client.get("/api/_init")
    assert response.status_code == 200
    assert response.json()["message"] == "Services already initialized"


# ── Deploy ───────────────────────────────────────────────────────────────────
def test_deploy_then_read_results(client, extract_ok, run):
    response = client.post("/api/deploy", json=deploy_body())
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["route"] == "acme"
    assert body["url"] == "http://testserver/api/results/acme"
    assert body["apiKey"].startswith("sk_")
    assert body["extractionStatus"] == "success"
    assert body["updateScheduled"] is True
    assert body["apiKey"] in body["curlCommand"]

    # the scraper key was sent to Firecrawl in the clear and stored encrypted
    assert extract_ok.calls.last.request.headers["Authorization"] == "Bearer fc-user-key"
    stored = run(main.store.get, "acme")
    assert stored["metadata"]["firecrawlApiKey"] != "fc-user-key"
    assert decrypt(stored["metadata"]["firecrawlApiKey"]) == "fc-user-key"
    assert main.scheduler.is_armed("acme")

    results = client.get("/api/results/acme", headers=bearer(body["apiKey"]))
    assert results.status_code == 200
    data = results.json()
    assert data["success"] is True
    assert data["data"] == {"name": "Acme"}
    assert data["isFresh"] is True
    assert data["updateStatus"] == "success"
    assert data["sources"] == ["https://example.com"]
    assert "warning" not in data


def test_deploy_sanitizes_route(client, extract_ok):
    response = client.post("/api/deploy", json=deploy_body(route="My Route!!"))
    assert response.status_code == 200
    assert response.json()["route"] == "my-route"


def test_deploy_rejects_route_without_characters(client):
    response = client.post("/api/deploy", json=deploy_body(route="!!!"))
    assert response.status_code == 400


def test_deploy_existing_route_is_conflict(client, extract_ok, run):
    assert client.post("/api/deploy", json=deploy_body()).status_code == 200
    before = run(main.store.get_raw, "acme")

    response = client.post("/api/deploy", json=deploy_body(query="Something else"))

    assert response.status_code == 409
    assert response.json() == {"success": False, "error": "Route already exists"}
    assert run(main.store.get_raw, "acme") == before


def test_deploy_invalid_cron(client):
    response = client.post("/api/deploy", json=deploy_body(updateFrequency="every day"))
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert any("updateFrequency" in detail["field"] for detail in body["details"])


def test_deploy_missing_fields(client):
    body = deploy_body()
    del body["data"]["metadata"]["firecrawlApiKey"]
    response = client.post("/api/deploy", json=body)
    assert response.status_code == 400


def test_deploy_with_failed_first_extraction(client, firecrawl):
    firecrawl.post("/extract").mock(return_value=httpx.Response(402, json={"error": "Payment required"}))

    response = client.post("/api/deploy", json=deploy_body())

    assert response.status_code == 200
    body = response.json()
    assert body["extractionStatus"] == "failed"
    assert "Payment required" in body["extractionError"]
    assert body["updateScheduled"] is False
    assert not main.scheduler.is_armed("acme")

    results = client.get("/api/results/acme", headers=bearer(body["apiKey"])).json()
    assert results["updateStatus"] == "failed"
    assert "Payment required" in results["error"]
    assert results["data"] == {}


def test_deploy_without_encryption_key(client, monkeypatch, run):
    monkeypatch.setattr(settings, "encryption_key", None)
    response = client.post("/api/deploy", json=deploy_body())
    assert response.status_code == 500
    assert run(main.store.exists, "acme") is False


def test_deploy_survives_storage_error_during_first_write(client, extract_ok, run, monkeypatch):
    real_update = main.store.update
    writes = []

    async def flaky_update(route, mutate):
        writes.append(route)
        if len(writes) == 1:
            raise RedisConnectionError("Connection closed by server.")
        return await real_update(route, mutate)

    monkeypatch.setattr(main.store, "update", flaky_update)

    response = client.post("/api/deploy", json=deploy_body())

    assert response.status_code == 200
    body = response.json()
    assert body["extractionStatus"] == "failed"
    assert body["updateScheduled"] is False
    assert run(main.store.get, "acme")["metadata"]["updateStatus"] == "failed"

    results = client.get("/api/results/acme", headers=bearer(body["apiKey"]))
    assert results.status_code == 200
    assert results.json()["updateStatus"] == "failed"


def test_deploy_never_leaves_record_initializing(client, run):
    with patch("main.extract_and_update", new=AsyncMock(side_effect=RuntimeError("boom"))):
        response = client.post("/api/deploy", json=deploy_body())

    assert response.status_code == 200
    assert response.json()["extractionStatus"] == "failed"
    metadata = run(main.store.get, "acme")["metadata"]
    assert metadata["updateStatus"] == "failed"
    assert metadata["lastError"] == "Initial extraction failed: RuntimeError"


# ── Results ──────────────────────────────────────────────────────────────────
def test_results_requires_bearer(client, seeded):
    seeded()
    response = client.get("/api/results/acme")
    assert response.status_code == 401
    assert response.json()["error"] == "Missing or invalid Authorization header"


def test_results_wrong_token(client, seeded):
    seeded()
    response = client.get("/api/results/acme", headers=bearer("sk_wrong"))
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid API key"


def test_results_unknown_endpoint(client):
    response = client.get("/api/results/ghost", headers=bearer("sk_whatever"))
    assert response.status_code == 404


def test_results_stale_data_warns(client, seeded):
    old = (datetime.now(timezone.utc) - timedelta(days=2)).isoformat()
    record = seeded(lastUpdated=old)

    data = client.get("/api/results/acme", headers=bearer(record["metadata"]["apiKey"])).json()

    assert data["isFresh"] is False
    assert data["warning"] == "Data is older than 24 hours"
    assert data["age"] >= 2 * 86400 - 5
    assert data["data"] == {"name": "Acme"}


def test_results_initialization_timeout(client, seeded, monkeypatch):
    monkeypatch.setattr(settings, "init_wait_timeout", 0.2)
    monkeypatch.setattr(settings, "init_poll_interval", 0.05)
    record = seeded(updateStatus="initializing")

    response = client.get("/api/results/acme", headers=bearer(record["metadata"]["apiKey"]))

    assert response.status_code == 504


def test_results_waits_for_first_extraction(client, seeded, run, monkeypatch):
    monkeypatch.setattr(settings, "init_wait_timeout", 5)
    monkeypatch.setattr(settings, "init_poll_interval", 0.05)
    record = seeded(data={}, updateStatus="initializing")
    background = []

    def finish(current):
        current["data"] = {"name": "Acme Corp"}
        current["metadata"]["updateStatus"] = "success"
        return current

    async def finish_later():
        await asyncio.sleep(0.2)
        await main.store.update("acme", finish)

    async def start():
        background.append(asyncio.create_task(finish_later()))

    run(start)
    response = client.get("/api/results/acme", headers=bearer(record["metadata"]["apiKey"]))

    assert response.status_code == 200
    data = response.json()
    assert data["data"] == {"name": "Acme Corp"}
    assert data["updateStatus"] == "success"
    assert background[0].done()


def test_results_schema_view_hides_secrets(client, seeded):
    record = seeded()

    response = client.get("/api/results/acme?schema=true", headers=bearer(record["metadata"]["apiKey"]))

    data = response.json()["data"]
    assert data["data"] == {"name": "Acme"}
    assert data["metadata"]["schema"] == SCHEMA
    assert "apiKey" not in data["metadata"]
    assert "firecrawlApiKey" not in data["metadata"]
    assert record["metadata"]["apiKey"] not in response.text


def test_results_rate_limited(client, seeded, monkeypatch):
    record = seeded()
    monkeypatch.setattr(main.token_limiter, "max_requests", 2)
    headers = bearer(record["metadata"]["apiKey"])

    assert client.get("/api/results/acme", headers=headers).status_code == 200
    assert client.get("/api/results/acme", headers=headers).status_code == 200
    response = client.get("/api/results/acme", headers=headers)
    assert response.status_code == 429
    assert response.json()["error"] == "Rate limit exceeded"


def test_results_corrupt_record(client, run):
    run(main.store.redis.set, "api/results/broken", "{not json")
    response = client.get("/api/results/broken", headers=bearer("sk_whatever"))
    assert response.status_code == 500


# ── Route management ─────────────────────────────────────────────────────────
def test_list_routes_has_no_secrets(client, seeded):
    record = seeded()
    seeded(route="globex")

    response = client.get("/api/routes")

    body = response.json()
    assert body["count"] == 2
    assert [r["route"] for r in body["routes"]] == ["acme", "globex"]
    assert record["metadata"]["apiKey"] not in response.text
    assert record["metadata"]["firecrawlApiKey"] not in response.text


def test_get_route_config(client, seeded):
    record = seeded()
    response = client.get("/api/routes/acme", headers=bearer(record["metadata"]["apiKey"]))
    assert response.status_code == 200
    config = response.json()["config"]
    assert config["schema"] == SCHEMA
    assert config["updateFrequency"] == "0 * * * *"
    assert "apiKey" not in config


def test_update_route_reschedules_and_refreshes(client, seeded, run):
    record = seeded()
    headers = bearer(record["metadata"]["apiKey"])

    async def settle():
        await asyncio.gather(*list(main.scheduler._tasks))

    with patch("scheduler.extract_and_update", new=AsyncMock()) as worker:
        response = client.put(
            "/api/routes/acme",
            json={"updateFrequency": "*/5 * * * *", "urls": ["https://example.org"]},
            headers=headers,
        )
        run(settle)

    assert response.status_code == 200
    body = response.json()
    assert body["updateScheduled"] is True
    assert body["refreshStarted"] is True
    assert body["config"]["sources"] == ["https://example.org"]
    assert body["config"]["nextRun"] is not None
    worker.assert_awaited_once()
    assert worker.await_args.args[4] == ["https://example.org"]
    assert worker.await_args.args[5] == "fc-test-key"
    stored = run(main.store.get, "acme")
    assert stored["metadata"]["updateFrequency"] == "*/5 * * * *"
    assert stored["metadata"]["updateStatus"] == "success"
    assert stored["metadata"]["apiKey"] == record["metadata"]["apiKey"]
    assert stored["data"] == {"name": "Acme"}


def test_update_route_cadence_only_does_not_refresh(client, seeded):
    record = seeded()

    with patch("scheduler.Scheduler.refresh_soon") as refresh:
        response = client.put(
            "/api/routes/acme", json={"updateFrequency": "0 0 * * *"}, headers=bearer(record["metadata"]["apiKey"])
        )

    assert response.status_code == 200
    assert response.json()["refreshStarted"] is False
    refresh.assert_not_called()


def test_update_route_requires_auth_and_changes(client, seeded):
    record = seeded()
    assert client.put("/api/routes/acme", json={"prompt": "x"}).status_code == 401
    response = client.put("/api/routes/acme", json={}, headers=bearer(record["metadata"]["apiKey"]))
    assert response.status_code == 400


def test_delete_route(client, seeded, run):
    record = seeded()
    headers = bearer(record["metadata"]["apiKey"])
    run(main.scheduler.schedule, "acme")

    response = client.delete("/api/routes/acme", headers=headers)

    assert response.status_code == 200
    assert not main.scheduler.is_armed("acme")
    assert run(main.store.exists, "acme") is False
    assert client.get("/api/results/acme", headers=headers).status_code == 404


# ── Extraction proxy ─────────────────────────────────────────────────────────
def test_extract_proxy(client, extract_ok):
    response = client.post(
        "/api/extract",
        json={"urls": ["https://example.com"], "prompt": "Get name", "schema": SCHEMA, "firecrawlApiKey": "fc-k"},
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "data": {"name": "Acme"}}


def test_extract_proxy_invalid_schema(client):
    response = client.post(
        "/api/extract",
        json={"urls": ["https://example.com"], "prompt": "Get name", "schema": {"type": "object"}},
    )
    assert response.status_code == 400


def test_extract_proxy_needs_a_key(client):
    response = client.post(
        "/api/extract", json={"urls": ["https://example.com"], "prompt": "Get name", "schema": SCHEMA}
    )
    assert response.status_code == 503


def test_extract_proxy_upstream_failure(client, firecrawl):
    firecrawl.post("/extract").mock(return_value=httpx.Response(500, text="upstream down"))
    response = client.post(
        "/api/extract",
        json={"urls": ["https://example.com"], "prompt": "Get name", "schema": SCHEMA, "firecrawlApiKey": "fc-k"},
    )
    assert response.status_code == 500
    assert "upstream down" in response.json()["error"]


# ── Search & schema generation ───────────────────────────────────────────────
def test_search_without_server_key(client):
    assert client.post("/api/search", json={"query": "widgets"}).status_code == 503


def test_search(client, firecrawl, monkeypatch):
    monkeypatch.setattr(settings, "firecrawl_api_key", "fc-server")
    firecrawl.post("/search").mock(
        return_value=httpx.Response(
            200, json={"success": True, "data": [{"url": "https://a.example", "title": "A", "description": "d"}]}
        )
    )

    response = client.post("/api/search", json={"query": "widgets", "limit": 1})

    assert response.status_code == 200
    assert response.json()["results"] == [{"url": "https://a.example", "title": "A", "description": "d"}]


def test_search_limit_bounds(client):
    assert client.post("/api/search", json={"query": "widgets", "limit": 50}).status_code == 400


def test_generate_schema_without_groq(client):
    assert client.post("/api/generate-schema", json={"query": "companies"}).status_code == 503


def test_generate_schema(client, monkeypatch):
    monkeypatch.setattr(main, "groq_client", MagicMock())
    with patch("main.generate_schema", new=AsyncMock(return_value=SCHEMA)) as generate:
        response = client.post(
            "/api/generate-schema", json={"query": "companies", "firecrawlApiKey": "ignored"}
        )

    assert response.status_code == 200
    assert response.json() == {"success": True, "schema": SCHEMA}
    assert generate.await_args.args[1] == "companies"


# ── Settings Configuration ───────────────────────────────────────────────────
def test_settings_default_values():
    test_settings = Settings(_env_file=None)
    assert test_settings.port == 8000
    assert test_settings.rate_limit_window_seconds == 60
    assert test_settings.rate_limit_max_requests == 60
    assert test_settings.stale_after_seconds == 86400


def test_settings_cors_origins_parsing():
    test_settings = Settings(_env_file=None, allowed_origins="http://a.com,http://b.com")
    assert test_settings.cors_origins == ["http://a.com", "http://b.com"]


def test_settings_is_development():
    assert Settings(_env_file=None, env="development").is_development is True
    assert Settings(_env_file=None, env="production").is_development is False
