"""
Bearer-token auth and per-token rate limiting for deployed endpoints.
"""

import hmac
import logging
import secrets
import time
import uuid
from typing import Any, Optional

from redis import asyncio as aioredis

from store import CorruptRecordError, EndpointStore

logger = logging.getLogger("harvest.auth")

API_KEY_PREFIX = "sk_"
API_KEY_BYTES = 24  # 48 hex chars
RATE_LIMIT_PREFIX = "rate_limit:"


class AuthError(Exception):
    """Authentication or admission failure, carrying the HTTP status to return."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def generate_api_key() -> str:
    """Mint a new bearer token for a deployed endpoint."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(API_KEY_BYTES)}"


def get_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


def mask_token(token: str) -> str:
    return f"{token[:7]}…" if token else ""


# Prune, count and conditionally record in one server-side step.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_start = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', window_start)
if redis.call('ZCARD', key) >= max_requests then
    return 0
end
redis.call('ZADD', key, now_ms, ARGV[4])
redis.call('EXPIRE', key, tonumber(ARGV[5]))
return 1
"""


class RateLimiter:
    """
    Sliding-window limiter on a Redis sorted set per token.

    Each admitted request adds one member scored by its epoch-ms timestamp.
    A request is denied once ``max_requests`` members fall inside the
    trailing window; denied requests are not recorded. The prune, count and
    insert run as a single Lua script, so concurrent requests from any
    number of processes never overshoot the cap.
    """

    def __init__(self, redis: aioredis.Redis, window_seconds: int = 60, max_requests: int = 60):
        self._script = redis.register_script(SLIDING_WINDOW_SCRIPT)
        self.window_seconds = window_seconds
        self.max_requests = max_requests

    async def check(self, token: str, now_ms: Optional[int] = None) -> bool:
        """Return ``True`` and record the request if it is admitted."""
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        admitted = await self._script(
            keys=[f"{RATE_LIMIT_PREFIX}{token}"],
            args=[
                now_ms,
                now_ms - self.window_seconds * 1000,
                self.max_requests,
                f"{now_ms}-{uuid.uuid4().hex[:8]}",
                self.window_seconds,
            ],
        )
        return int(admitted) == 1


async def authenticate(
    store: EndpointStore,
    limiter: RateLimiter,
    route: str,
    token: Optional[str],
) -> dict[str, Any]:
    """Validate ``token`` for ``route`` and apply the rate limit.

    Returns the record's metadata on success.

    Raises:
        AuthError: 401 (missing or wrong token), 404 (unknown route),
            500 (unreadable record) or 429 (rate limit exceeded).
    """
    if not token:
        raise AuthError(401, "Missing or invalid Authorization header")

    try:
        record = await store.get(route)
    except CorruptRecordError as exc:
        logger.error("Failed to parse stored data for %s: %s", route, exc)
        raise AuthError(500, "Invalid data format") from exc

    if record is None:
        raise AuthError(404, "Endpoint not found")

    metadata = record.get("metadata") or {}
    stored = metadata.get("apiKey")
    if not stored or not hmac.compare_digest(str(stored).encode(), token.encode()):
        logger.info("Rejected token %s for endpoint %s", mask_token(token), route)
        raise AuthError(401, "Invalid API key")

    if not await limiter.check(token):
        logger.warning("Rate limit exceeded for endpoint %s", route)
        raise AuthError(429, "Rate limit exceeded")

    return metadata
