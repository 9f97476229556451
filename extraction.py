"""
Structured extraction through Firecrawl, and the worker that writes the
outcome back onto an endpoint record.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config import settings
from store import EndpointStore, Record, StoreError

logger = logging.getLogger("harvest.extraction")


class ExtractionError(Exception):
    """Base class for extraction failures."""


class InvalidExtractionRequest(ExtractionError, ValueError):
    """Raised when extraction inputs fail local validation."""


class InvalidSchemaError(InvalidExtractionRequest):
    """Raised when a schema has no usable ``properties``."""


class FirecrawlError(ExtractionError):
    """Raised when Firecrawl errors out or answers with something unusable."""


@dataclass
class ExtractionResult:
    success: bool
    data: Any = None
    error: Optional[str] = None


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ── Schema helpers ───────────────────────────────────────────────────────────
def is_valid_json_schema(schema: Any) -> bool:
    """True for an object schema with at least one property."""
    return (
        isinstance(schema, dict)
        and schema.get("type") == "object"
        and isinstance(schema.get("properties"), dict)
        and len(schema["properties"]) > 0
    )


def normalize_schema(schema: Any) -> dict:
    """Return ``{type, properties, required}`` with every property required by default."""
    if not isinstance(schema, dict) or not isinstance(schema.get("properties"), dict) or not schema["properties"]:
        raise InvalidSchemaError("Invalid schema format")
    properties = schema["properties"]
    return {
        "type": "object",
        "properties": properties,
        "required": schema.get("required") or list(properties.keys()),
    }


# ── HTTP client ──────────────────────────────────────────────────────────────
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Return the shared AsyncClient. Creates one if missing."""
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.firecrawl_timeout),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
        logger.info("HTTP client closed")
    _http_client = None


class FirecrawlClient:
    """Thin async wrapper over the Firecrawl REST API."""

    def __init__(self, api_key: str, base_url: Optional[str] = None):
        if not api_key:
            raise InvalidExtractionRequest("Firecrawl API key is required")
        self._api_key = api_key
        self._base_url = (base_url or settings.firecrawl_api_url).rstrip("/")

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        resp = await get_http_client().request(
            method, f"{self._base_url}{path}", headers=self._headers, json=payload
        )
        resp.raise_for_status()
        return resp.json()

    async def _call(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        try:
            body = await self._request(method, path, payload)
        except httpx.TimeoutException as exc:
            raise FirecrawlError("Firecrawl timed out") from exc
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:300]
            try:
                detail = exc.response.json().get("error") or detail
            except (ValueError, AttributeError):
                pass
            raise FirecrawlError(f"Firecrawl returned {exc.response.status_code}: {detail}") from exc
        except httpx.RequestError as exc:
            raise FirecrawlError(f"Firecrawl request failed: {type(exc).__name__}") from exc
        except ValueError as exc:
            raise FirecrawlError("Firecrawl returned a non-JSON response") from exc

        if not isinstance(body, dict):
            raise FirecrawlError("Invalid response format from Firecrawl API")
        if body.get("success") is False or body.get("error"):
            raise FirecrawlError(str(body.get("error") or "Firecrawl request was not successful"))
        return body

    async def extract(self, urls: list[str], prompt: str, schema: dict) -> Any:
        """Run an extract job and wait for its data."""
        body = await self._call("POST", "/extract", {"urls": urls, "prompt": prompt, "schema": schema})
        if "data" in body and body.get("status", "completed") == "completed":
            return body["data"]

        job_id = body.get("id")
        if not job_id:
            raise FirecrawlError("Invalid response format from Firecrawl API")

        deadline = time.monotonic() + settings.firecrawl_max_wait
        while True:
            status = await self._call("GET", f"/extract/{job_id}")
            state = status.get("status")
            if state == "completed":
                if "data" not in status:
                    raise FirecrawlError("Invalid response format from Firecrawl API")
                return status["data"]
            if state in ("failed", "cancelled"):
                raise FirecrawlError(f"Extract job {job_id} {state}")
            if time.monotonic() >= deadline:
                raise FirecrawlError(f"Extract job {job_id} did not finish in {settings.firecrawl_max_wait}s")
            await asyncio.sleep(settings.firecrawl_poll_interval)

    async def search(self, query: str, limit: int) -> list[dict]:
        body = await self._call("POST", "/search", {"query": query, "limit": limit})
        results = body.get("data")
        if not isinstance(results, list):
            raise FirecrawlError("Invalid response format from Firecrawl API")
        return [
            {
                "url": item.get("url", ""),
                "title": item.get("title") or "",
                "description": item.get("description") or "",
            }
            for item in results
            if isinstance(item, dict) and item.get("url")
        ]


# ── Worker ───────────────────────────────────────────────────────────────────
def _validate_inputs(schema: Any, sources: Any, api_key: str) -> dict:
    if not api_key:
        raise InvalidExtractionRequest("Firecrawl API key is required")
    formatted = normalize_schema(schema)
    if not isinstance(sources, list) or not sources:
        raise InvalidExtractionRequest("At least one source URL is required")
    return formatted


async def extract_and_update(
    store: EndpointStore,
    route: str,
    prompt: str,
    schema: Any,
    sources: list[str],
    api_key: str,
) -> ExtractionResult:
    """Extract fresh data for ``route`` and record the outcome on its record.

    Never raises for validation or upstream failures; those are written to
    ``metadata.updateStatus`` / ``metadata.lastError`` and returned.
    """
    logger.info("Starting extraction for endpoint %s (%d sources)", route, len(sources or []))
    try:
        formatted = _validate_inputs(schema, sources, api_key)
        data = await FirecrawlClient(api_key).extract(sources, prompt, formatted)

        def apply_success(record: Record) -> Record:
            now = utcnow_iso()
            metadata = record.get("metadata") or {}
            metadata.pop("lastError", None)
            metadata.update(
                lastUpdated=now,
                lastUpdateAttempt=now,
                lastSuccessfulUpdate=now,
                updateStatus="success",
            )
            return {"data": data, "metadata": metadata}

        await store.update(route, apply_success)
        logger.info("Extraction succeeded for endpoint %s", route)
        return ExtractionResult(success=True, data=data)

    except (ExtractionError, StoreError, RedisError) as exc:
        message = str(exc) or type(exc).__name__
        logger.error("Extraction failed for endpoint %s: %s", route, message)
        await record_failure(store, route, message)
        return ExtractionResult(success=False, error=message)


async def record_failure(store: EndpointStore, route: str, message: str) -> None:
    """Mark ``route`` as failed with ``message``, keeping its data. Never raises."""

    def apply_failure(record: Record) -> Record:
        metadata = record.get("metadata") or {}
        metadata.update(
            lastUpdateAttempt=utcnow_iso(),
            updateStatus="failed",
            lastError=message,
        )
        return {"data": record.get("data", {}), "metadata": metadata}

    try:
        await store.update(route, apply_failure)
    except (StoreError, RedisError) as exc:
        logger.error("Failed to record error status for %s: %s", route, exc)
