"""
Harvest API — turn a natural-language data need into a live JSON endpoint.
Stack: FastAPI + Firecrawl (search + extraction) + Groq (schema inference) + Redis.

Capabilities:
- /api/generate-schema → JSON schema from a plain-English description
- /api/search          → Candidate source URLs for a query
- /api/extract         → One-off structured extraction from URLs + schema
- /api/deploy          → Persist an extraction as a bearer-protected endpoint
- /api/results/{route} → Read the latest data (cron-refreshed in the background)
- /api/routes          → List, inspect, update and delete deployed endpoints
"""

import asyncio
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from groq import APIError as GroqAPIError
from groq import Groq
from pydantic import BaseModel, ConfigDict, Field, field_validator
from redis.exceptions import RedisError
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthError, RateLimiter, authenticate, generate_api_key, get_bearer_token
from config import configure_logging, settings
from encryption import EncryptionError, encrypt
from extraction import (
    ExtractionResult,
    FirecrawlClient,
    FirecrawlError,
    close_http_client,
    extract_and_update,
    is_valid_json_schema,
    normalize_schema,
    record_failure,
    utcnow_iso,
)
from scheduler import Scheduler, next_fire_time
from schema_gen import SchemaGenerationError, generate_schema
from store import (
    ConcurrentUpdateError,
    CorruptRecordError,
    EndpointStore,
    Record,
    RecordNotFound,
    StoreError,
    close_redis,
    get_redis,
)

VERSION = "1.0.0"
SECRET_FIELDS = ("apiKey", "firecrawlApiKey")

configure_logging()
logger = logging.getLogger("harvest")


# ── Models ───────────────────────────────────────────────────────────────────
class SchemaDefinition(BaseModel):
    """JSON Schema describing the extracted payload."""
    type: str
    properties: dict[str, Any]
    required: Optional[list[str]] = None


def _validate_cron(v: Optional[str]) -> Optional[str]:
    if v is not None:
        next_fire_time(v)  # raises InvalidCronError (a ValueError)
    return v


class DeployMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    schema_definition: SchemaDefinition = Field(alias="schema")
    sources: list[str]
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    firecrawl_api_key: str = Field(alias="firecrawlApiKey", min_length=1)
    update_frequency: str = Field(alias="updateFrequency")

    @field_validator("update_frequency")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        return _validate_cron(v)


class DeployData(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: DeployMetadata


class DeployRequest(BaseModel):
    """Request body for POST /api/deploy."""
    key: str = Field(min_length=1)
    data: DeployData
    route: str = Field(min_length=1)


class DeployResponse(BaseModel):
    success: bool
    message: str
    route: str
    url: str
    apiKey: str
    extractionStatus: str
    extractionError: Optional[str] = None
    updateScheduled: bool
    curlCommand: str


class ResultsResponse(BaseModel):
    success: bool
    data: Any
    lastUpdated: Optional[str] = None
    sources: list[str] = []
    isFresh: bool
    age: Optional[int] = None
    updateStatus: Optional[str] = None
    warning: Optional[str] = None
    error: Optional[str] = None


class ExtractRequest(BaseModel):
    """Request body for the one-off extraction proxy."""
    model_config = ConfigDict(populate_by_name=True)

    urls: list[str] = Field(min_length=1)
    prompt: str = Field(min_length=1)
    schema_definition: Any = Field(alias="schema")
    firecrawl_api_key: Optional[str] = Field(default=None, alias="firecrawlApiKey")


class GenerateSchemaRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1)
    # Accepted for client compatibility; schema inference does not call Firecrawl.
    firecrawl_api_key: Optional[str] = Field(default=None, alias="firecrawlApiKey")


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    limit: Optional[int] = Field(default=None, ge=1, le=20)


class UpdateRouteRequest(BaseModel):
    """Request body for PUT /api/routes/{route}. Every field is optional."""
    model_config = ConfigDict(populate_by_name=True)

    urls: Optional[list[str]] = Field(default=None, min_length=1)
    schema_definition: Optional[SchemaDefinition] = Field(default=None, alias="schema")
    prompt: Optional[str] = Field(default=None, min_length=1)
    update_frequency: Optional[str] = Field(default=None, alias="updateFrequency")

    @field_validator("update_frequency")
    @classmethod
    def validate_cron(cls, v: Optional[str]) -> Optional[str]:
        return _validate_cron(v)


# ── Helpers ──────────────────────────────────────────────────────────────────
def sanitize_route(route: str) -> str:
    """Lowercase, map anything outside [a-z0-9-_] to '-', collapse and trim hyphens."""
    clean = re.sub(r"[^a-z0-9\-_]", "-", route.lower())
    clean = re.sub(r"-+", "-", clean)
    return clean.strip("-").strip()


def endpoint_url(route: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/api/results/{route}"


def curl_command(url: str, api_key: str) -> str:
    return (
        f'curl -X GET "{url}" \\\n'
        f'  -H "Authorization: Bearer {api_key}" \\\n'
        f'  -H "Content-Type: application/json"'
    )


def strip_secrets(record: Record) -> Record:
    metadata = {k: v for k, v in (record.get("metadata") or {}).items() if k not in SECRET_FIELDS}
    return {"data": record.get("data", {}), "metadata": metadata}


def public_config(route: str, record: Record, include_schema: bool = False) -> dict:
    """Non-secret view of a deployed endpoint's configuration."""
    metadata = record.get("metadata") or {}
    next_run = scheduler.next_run(route) if scheduler else None
    config = {
        "route": route,
        "url": endpoint_url(route),
        "query": metadata.get("query"),
        "sources": metadata.get("sources", []),
        "updateFrequency": metadata.get("updateFrequency"),
        "updateStatus": metadata.get("updateStatus"),
        "lastUpdated": metadata.get("lastUpdated"),
        "createdAt": metadata.get("createdAt"),
        "nextRun": next_run.isoformat() if next_run else None,
    }
    if include_schema:
        config["schema"] = metadata.get("schema")
    return config


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


async def wait_for_initialization(route: str) -> Optional[Record]:
    """Poll until the record leaves ``initializing``; ``None`` on timeout or deletion."""
    deadline = time.monotonic() + settings.init_wait_timeout
    while time.monotonic() < deadline:
        record = await store.get(route)
        if record is None:
            return None
        if (record.get("metadata") or {}).get("updateStatus") != "initializing":
            return record
        await asyncio.sleep(settings.init_poll_interval)
    return None


async def require_token(route: str, authorization: Optional[str]) -> dict:
    """Run the auth gate for ``route`` and map failures to HTTP errors."""
    try:
        return await authenticate(store, token_limiter, route, get_bearer_token(authorization))
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


# ── Global clients (set in lifespan) ─────────────────────────────────────────
store: Optional[EndpointStore] = None
token_limiter: Optional[RateLimiter] = None
scheduler: Optional[Scheduler] = None
groq_client: Optional[Groq] = None


# ── Lifespan ─────────────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Startup and shutdown lifecycle."""
    global store, token_limiter, scheduler, groq_client

    logger.info("──────────────────────────────────────────")
    logger.info("  Harvest API v%s starting up", VERSION)
    logger.info("  Environment: %s", settings.env)
    logger.info("  CORS Origins: %s", settings.cors_origins)
    logger.info("  Redis: %s", settings.redis_url.split("@")[-1])
    logger.info("  ENCRYPTION_KEY: %s", "✅ configured" if settings.encryption_key else "❌ not set (deploys will fail)")
    logger.info("  GROQ_API_KEY: %s", "✅ configured" if settings.groq_api_key else "❌ not set (schema generation disabled)")
    logger.info("  FIRECRAWL_API_KEY: %s", "✅ configured" if settings.firecrawl_api_key else "❌ not set (search disabled)")
    logger.info("  Results rate limit: %d/%ds", settings.rate_limit_max_requests, settings.rate_limit_window_seconds)
    logger.info("──────────────────────────────────────────")

    redis = get_redis()
    store = EndpointStore(redis)
    token_limiter = RateLimiter(
        redis,
        window_seconds=settings.rate_limit_window_seconds,
        max_requests=settings.rate_limit_max_requests,
    )
    scheduler = Scheduler(store, claim_ttl=settings.scheduler_claim_ttl)

    if settings.groq_api_key:
        groq_client = Groq(api_key=settings.groq_api_key)
        logger.info("Groq client initialized successfully")

    if settings.scheduler_enabled:
        try:
            await scheduler.initialize()
        except RedisError as exc:
            logger.error("Failed to initialize scheduler: %s", exc)

    yield  # ← app is running

    await scheduler.shutdown()
    await close_http_client()
    await close_redis()
    groq_client = None


# ── FastAPI App Setup ────────────────────────────────────────────────────────
app = FastAPI(
    title="Harvest API",
    version=VERSION,
    description=(
        "Describe the data you need, pick sources, and deploy a live JSON endpoint "
        "that refreshes itself on a cron schedule."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "deploy", "description": "Create extraction-backed endpoints"},
        {"name": "results", "description": "Read deployed endpoint data"},
        {"name": "routes", "description": "Manage deployed endpoints"},
        {"name": "extract", "description": "One-off structured extraction"},
        {"name": "schema", "description": "Schema generation from natural language"},
        {"name": "search", "description": "Source discovery"},
        {"name": "health", "description": "Service health monitoring"},
    ],
)

# IP rate limiter for the proxy routes
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore

# Gzip compression for responses > 1KB
app.add_middleware(GZipMiddleware, minimum_size=1000)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
)


# ── Exception Handlers ───────────────────────────────────────────────────────
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Standardized error response format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Request body/query validation failures are 400s with per-field details."""
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Validation error",
            "details": [
                {
                    "field": ".".join(str(p) for p in err["loc"] if p != "body"),
                    "message": err["msg"],
                }
                for err in exc.errors()
            ],
        },
    )


@app.exception_handler(RedisError)
async def storage_error_handler(request: Request, exc: RedisError):
    logger.error("Storage error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})


# ── Request timing middleware ────────────────────────────────────────────────
@app.middleware("http")
async def add_timing_and_logging(request: Request, call_next):
    """Add response time tracking and a request ID to every response."""
    start = time.time()

    request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex[:12])
    request.state.request_id = request_id

    logger.info(
        "[%s] %s %s from %s",
        request_id,
        request.method,
        request.url.path,
        request.client.host if request.client else "unknown",
    )

    response = await call_next(request)

    elapsed = round(time.time() - start, 3)
    response.headers["X-Response-Time"] = f"{elapsed}s"
    response.headers["X-Request-ID"] = request_id

    logger.info(
        "[%s] %s %s → %s (%ss)",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        elapsed,
    )
    return response


# ── Routes ───────────────────────────────────────────────────────────────────
@app.get("/health", tags=["health"])
async def health():
    """Health check for uptime monitors."""
    try:
        redis_ok = bool(await store.redis.ping())
    except RedisError:
        redis_ok = False
    return {
        "status": "healthy" if redis_ok else "degraded",
        "service": "harvest-api",
        "version": VERSION,
        "redis_connected": redis_ok,
        "groq_configured": settings.groq_api_key is not None,
        "firecrawl_configured": settings.firecrawl_api_key is not None,
        "encryption_configured": bool(settings.encryption_key),
        "environment": settings.env,
        "scheduled_jobs": len(scheduler.jobs()),
    }


@app.get("/", include_in_schema=False)
async def root():
    return {"service": "harvest-api", "version": VERSION, "docs": "/docs"}


@app.get("/api/_init", tags=["health"])
async def init_services():
    """Arm refresh timers for every stored endpoint (idempotent)."""
    if scheduler.initialized:
        return {"success": True, "message": "Services already initialized", "scheduled": len(scheduler.jobs())}
    try:
        count = await scheduler.initialize()
    except RedisError as exc:
        logger.error("Failed to initialize services: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to initialize services") from exc
    return {"success": True, "message": "Services initialized successfully", "scheduled": count}


# ── Deploy ───────────────────────────────────────────────────────────────────
@app.post("/api/deploy", response_model=DeployResponse, tags=["deploy"])
async def deploy(req: DeployRequest):
    """
    Deploy an extraction as a live endpoint.

    Creates the record, runs the first extraction synchronously and, if it
    succeeded, schedules refreshes on ``updateFrequency``. A failed first
    extraction does not abort the deploy.
    """
    route = sanitize_route(req.route)
    if not route:
        raise HTTPException(status_code=400, detail="Route must contain at least one letter or digit")
    logger.info("Deploy request — route=%s", route)

    if await store.exists(route):
        raise HTTPException(status_code=409, detail="Route already exists")

    meta = req.data.metadata
    schema = meta.schema_definition.model_dump(exclude_none=True)
    api_key = generate_api_key()
    try:
        encrypted_key = encrypt(meta.firecrawl_api_key)
    except EncryptionError as exc:
        logger.error("Cannot encrypt scraper key: %s", exc)
        raise HTTPException(status_code=500, detail="Encryption is not configured") from exc

    now = utcnow_iso()
    record = {
        "data": {},
        "metadata": {
            "query": meta.query,
            "schema": schema,
            "sources": meta.sources,
            "updateFrequency": meta.update_frequency,
            "firecrawlApiKey": encrypted_key,
            "apiKey": api_key,
            "lastUpdated": now,
            "createdAt": now,
            "lastUpdateAttempt": None,
            "lastSuccessfulUpdate": None,
            "updateStatus": "initializing",
        },
    }
    if not await store.create(route, record):
        raise HTTPException(status_code=409, detail="Route already exists")

    try:
        result = await extract_and_update(store, route, meta.query, schema, meta.sources, meta.firecrawl_api_key)
    except Exception as exc:
        # The record must leave ``initializing`` whatever happened.
        logger.exception("Initial extraction crashed for %s", route)
        message = f"Initial extraction failed: {type(exc).__name__}"
        await record_failure(store, route, message)
        result = ExtractionResult(success=False, error=message)

    scheduled = False
    if result.success:
        scheduled = await scheduler.schedule(route)
        logger.info("Scheduling status for %s: %s", route, "success" if scheduled else "failed")
    else:
        logger.error("Initial extraction failed for %s: %s", route, result.error)

    url = endpoint_url(route)
    return DeployResponse(
        success=True,
        message="API endpoint deployed successfully",
        route=route,
        url=url,
        apiKey=api_key,
        extractionStatus="success" if result.success else "failed",
        extractionError=result.error,
        updateScheduled=scheduled,
        curlCommand=curl_command(url, api_key),
    )


# ── Results ──────────────────────────────────────────────────────────────────
@app.get(
    "/api/results/{endpoint}",
    response_model=ResultsResponse,
    response_model_exclude_none=True,
    tags=["results"],
)
async def get_results(
    endpoint: str,
    schema: bool = False,
    authorization: Optional[str] = Header(default=None),
):
    """
    Return the latest data for a deployed endpoint.

    Requires ``Authorization: Bearer <apiKey>``. While the first extraction is
    still running, waits for it (up to ``init_wait_timeout``). Data older than
    ``stale_after_seconds`` is returned with a warning. ``?schema=true``
    returns the whole record, secrets removed.
    """
    await require_token(endpoint, authorization)

    try:
        record = await store.get(endpoint)
    except CorruptRecordError as exc:
        logger.error("Failed to parse stored data for %s: %s", endpoint, exc)
        raise HTTPException(status_code=500, detail="Invalid data format in storage") from exc
    if record is None:
        raise HTTPException(status_code=404, detail="No results found for this endpoint")

    if (record.get("metadata") or {}).get("updateStatus") == "initializing":
        record = await wait_for_initialization(endpoint)
        if record is None:
            raise HTTPException(status_code=504, detail="Endpoint initialization timed out")

    metadata = record.get("metadata") or {}
    last_updated = parse_timestamp(metadata.get("lastUpdated"))
    age_seconds = (datetime.now(timezone.utc) - last_updated).total_seconds() if last_updated else None
    is_fresh = age_seconds is not None and age_seconds <= settings.stale_after_seconds

    response = ResultsResponse(
        success=True,
        data=strip_secrets(record) if schema else record.get("data", {}),
        lastUpdated=metadata.get("lastUpdated"),
        sources=metadata.get("sources") or [],
        isFresh=is_fresh,
        age=round(age_seconds) if age_seconds is not None else None,
        updateStatus=metadata.get("updateStatus"),
    )
    if not is_fresh:
        response.warning = "Data is older than 24 hours"
    if metadata.get("updateStatus") == "failed":
        response.error = metadata.get("lastError")
    return response


# ── Route management ─────────────────────────────────────────────────────────
@app.get("/api/routes", tags=["routes"])
async def list_routes():
    """List deployed endpoints and their public configuration."""
    configs = []
    for route in await store.list_routes():
        try:
            record = await store.get(route)
        except CorruptRecordError as exc:
            logger.warning("Skipping unreadable record %s: %s", route, exc)
            continue
        if record is not None:
            configs.append(public_config(route, record))
    return {"success": True, "routes": configs, "count": len(configs)}


@app.get("/api/routes/{route}", tags=["routes"])
async def get_route(route: str, authorization: Optional[str] = Header(default=None)):
    """Return one endpoint's configuration, including its schema."""
    await require_token(route, authorization)
    record = await store.get(route)
    if record is None:
        raise HTTPException(status_code=404, detail="Endpoint not found")
    return {"success": True, "config": public_config(route, record, include_schema=True)}


@app.put("/api/routes/{route}", tags=["routes"])
async def update_route(
    route: str,
    req: UpdateRouteRequest,
    authorization: Optional[str] = Header(default=None),
):
    """Change an endpoint's sources, schema, prompt or cadence and re-arm its refresh."""
    await require_token(route, authorization)

    changes: dict[str, Any] = {}
    if req.urls is not None:
        changes["sources"] = req.urls
    if req.schema_definition is not None:
        changes["schema"] = req.schema_definition.model_dump(exclude_none=True)
    if req.prompt is not None:
        changes["query"] = req.prompt
    if req.update_frequency is not None:
        changes["updateFrequency"] = req.update_frequency
    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")

    def apply(record: Record) -> Record:
        metadata = record.get("metadata") or {}
        metadata.update(changes)
        record["metadata"] = metadata
        return record

    try:
        updated = await store.update(route, apply)
    except RecordNotFound as exc:
        raise HTTPException(status_code=404, detail="Endpoint not found") from exc
    except ConcurrentUpdateError as exc:
        raise HTTPException(status_code=409, detail="Endpoint is being updated concurrently, retry") from exc
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    scheduled = await scheduler.schedule(route)
    # New inputs make the stored data obsolete; don't wait for the next slot.
    refreshing = bool({"sources", "schema", "query"} & changes.keys())
    if refreshing:
        scheduler.refresh_soon(route)
    logger.info(
        "Updated endpoint %s (%s), rescheduled=%s refreshing=%s",
        route, ", ".join(sorted(changes)), scheduled, refreshing,
    )
    return {
        "success": True,
        "updateScheduled": scheduled,
        "refreshStarted": refreshing,
        "config": public_config(route, updated, include_schema=True),
    }


@app.delete("/api/routes/{route}", tags=["routes"])
async def delete_route(route: str, authorization: Optional[str] = Header(default=None)):
    """Delete an endpoint and stop its refresh."""
    await require_token(route, authorization)
    await scheduler.unschedule(route)
    deleted = await store.delete(route)
    if not deleted:
        raise HTTPException(status_code=404, detail="Endpoint not found")
    logger.info("Deleted endpoint %s", route)
    return {"success": True, "message": f"Endpoint {route} deleted"}


# ── Proxies ──────────────────────────────────────────────────────────────────
@app.post("/api/extract", tags=["extract"])
@limiter.limit(settings.rate_limit_proxy)
async def extract_structured(request: Request, req: ExtractRequest):
    """
    One-off structured extraction, without deploying anything.

    ```json
    POST /api/extract
    {
      "urls": ["https://example.com/pricing"],
      "prompt": "Extract every plan with its monthly price",
      "schema": {"type": "object", "properties": {"plans": {"type": "array"}}}
    }
    ```
    """
    if not is_valid_json_schema(req.schema_definition):
        raise HTTPException(
            status_code=400,
            detail='Invalid JSON schema format. Schema must be an object with "type" and "properties".',
        )
    api_key = req.firecrawl_api_key or settings.firecrawl_api_key
    if not api_key:
        raise HTTPException(
            status_code=503,
            detail="Extraction requires a Firecrawl API key. Pass firecrawlApiKey or set FIRECRAWL_API_KEY.",
        )

    logger.info("Extract request — %d urls", len(req.urls))
    try:
        data = await FirecrawlClient(api_key).extract(req.urls, req.prompt, normalize_schema(req.schema_definition))
    except FirecrawlError as exc:
        logger.error("Extraction failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {"success": True, "data": data}


@app.post("/api/generate-schema", tags=["schema"])
@limiter.limit(settings.rate_limit_proxy)
async def generate_schema_route(request: Request, req: GenerateSchemaRequest):
    """Infer a JSON schema from a natural-language description of the data."""
    if not groq_client:
        raise HTTPException(
            status_code=503,
            detail="Schema generation requires Groq API key. Set GROQ_API_KEY in environment.",
        )
    try:
        schema = await generate_schema(groq_client, req.query)
    except SchemaGenerationError as exc:
        raise HTTPException(status_code=502, detail=f"Schema generation failed: {exc}") from exc
    except GroqAPIError as exc:
        logger.error("Groq request failed: %s", exc)
        raise HTTPException(status_code=502, detail=f"Schema generation failed: {exc}") from exc
    return {"success": True, "schema": schema}


@app.post("/api/search", tags=["search"])
@limiter.limit(settings.rate_limit_proxy)
async def search_sources(request: Request, req: SearchRequest):
    """Find candidate source URLs for a query."""
    if not settings.firecrawl_api_key:
        raise HTTPException(
            status_code=503,
            detail="Search requires FIRECRAWL_API_KEY in environment.",
        )
    limit = req.limit or settings.search_default_limit
    logger.info("Search request — query='%s' limit=%d", req.query, limit)
    try:
        results = await FirecrawlClient(settings.firecrawl_api_key).search(req.query, limit)
    except FirecrawlError as exc:
        logger.error("Search failed: %s", exc)
        raise HTTPException(status_code=502, detail=f"Search failed: {exc}") from exc
    return {"success": True, "results": results}


# ── Entrypoint ───────────────────────────────────────────────────────────────
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.is_development,
    )
