"""
Cron-driven refresh of deployed endpoints.

Each endpoint has at most one armed one-shot timer on the event loop. When it
fires, the endpoint is re-extracted and the timer re-armed for the next cron
slot, whatever the outcome. Next-fire times are also written to the
``scheduler:jobs`` sorted set so they can be inspected from outside the
process, and each fire slot is claimed in Redis before running so several
replicas bootstrapping the same endpoints extract it only once per slot.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from croniter import croniter
from redis.exceptions import RedisError

from encryption import EncryptionError, decrypt
from extraction import extract_and_update
from store import EndpointStore, StoreError

logger = logging.getLogger("harvest.scheduler")

JOBS_KEY = "scheduler:jobs"
RUN_CLAIM_PREFIX = "scheduler:run:"
REQUIRED_FIELDS = ("query", "schema", "sources", "updateFrequency", "firecrawlApiKey")


class InvalidCronError(ValueError):
    """Raised for anything that is not a valid 5-field cron expression."""


def next_fire_time(expression: str, now: Optional[datetime] = None) -> datetime:
    """Return the first cron slot strictly after ``now`` (UTC)."""
    if not isinstance(expression, str) or len(expression.split()) != 5 or not croniter.is_valid(expression):
        raise InvalidCronError(f"Invalid cron expression: {expression!r}")
    now = now or datetime.now(timezone.utc)
    itr = croniter(expression, now)
    candidate = itr.get_next(datetime)
    while candidate <= now:
        candidate = itr.get_next(datetime)
    return candidate


class Scheduler:
    """In-process timers for endpoint refresh, mirrored to a Redis job table."""

    def __init__(self, store: EndpointStore, claim_ttl: int = 300):
        self._store = store
        self._claim_ttl = claim_ttl
        self._instance_id = uuid.uuid4().hex[:12]
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._next_runs: dict[str, datetime] = {}
        self._tasks: set[asyncio.Task] = set()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def is_armed(self, route: str) -> bool:
        return route in self._timers

    def jobs(self) -> dict[str, str]:
        """Armed routes mapped to their next fire time (ISO-8601)."""
        return {route: self._next_runs[route].isoformat() for route in sorted(self._timers)}

    def next_run(self, route: str) -> Optional[datetime]:
        return self._next_runs.get(route) if route in self._timers else None

    # ── Arming ───────────────────────────────────────────────────────────────
    def _cancel(self, route: str) -> None:
        handle = self._timers.pop(route, None)
        if handle is not None:
            handle.cancel()
        self._next_runs.pop(route, None)

    async def unschedule(self, route: str) -> None:
        """Cancel the armed timer for ``route`` and drop it from the job table."""
        self._cancel(route)
        try:
            await self._store.redis.zrem(JOBS_KEY, route)
        except RedisError as exc:
            logger.error("Failed to remove %s from job table: %s", route, exc)

    async def schedule(self, route: str) -> bool:
        """Arm (or re-arm) the refresh timer for ``route``.

        Returns ``False`` and leaves nothing armed when the record is missing
        or incomplete, its scraper key cannot be decrypted, or its cron
        expression is invalid.
        """
        try:
            record = await self._store.get(route)
        except (StoreError, RedisError) as exc:
            logger.error("Failed to read endpoint %s for scheduling: %s", route, exc)
            await self.unschedule(route)
            return False

        if record is None:
            logger.error("No data found for endpoint: %s", route)
            await self.unschedule(route)
            return False

        metadata = record.get("metadata") or {}
        missing = [field for field in REQUIRED_FIELDS if not metadata.get(field)]
        if missing:
            logger.error("Missing required metadata fields for endpoint %s: %s", route, missing)
            await self.unschedule(route)
            return False

        try:
            decrypt(metadata["firecrawlApiKey"])
            next_run = next_fire_time(metadata["updateFrequency"])
        except (EncryptionError, InvalidCronError) as exc:
            logger.error("Cannot schedule endpoint %s: %s", route, exc)
            await self.unschedule(route)
            return False

        delay = max(0.0, (next_run - datetime.now(timezone.utc)).total_seconds())
        fire_ts = int(next_run.timestamp())

        self._cancel(route)
        loop = asyncio.get_running_loop()
        self._timers[route] = loop.call_later(delay, self._spawn, route, fire_ts)
        self._next_runs[route] = next_run

        try:
            await self._store.redis.zadd(JOBS_KEY, {route: fire_ts})
        except RedisError as exc:
            logger.warning("Failed to persist next run for %s: %s", route, exc)

        logger.info("Scheduled next update for %s in %d seconds", route, round(delay))
        return True

    # ── Firing ───────────────────────────────────────────────────────────────
    def _track(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _spawn(self, route: str, fire_ts: int) -> None:
        self._timers.pop(route, None)
        self._track(self.on_fire(route, fire_ts))

    def refresh_soon(self, route: str) -> asyncio.Task:
        """Re-extract ``route`` now, in the background, outside its cron cadence."""
        return self._track(self._safe_refresh(route))

    async def _safe_refresh(self, route: str) -> None:
        try:
            await self._refresh(route)
        except Exception:
            logger.exception("Out-of-cadence refresh failed for endpoint %s", route)

    async def _claim(self, route: str, fire_ts: int) -> bool:
        claimed = await self._store.redis.set(
            f"{RUN_CLAIM_PREFIX}{route}:{fire_ts}",
            self._instance_id,
            nx=True,
            ex=self._claim_ttl,
        )
        return bool(claimed)

    async def on_fire(self, route: str, fire_ts: int) -> None:
        """Refresh ``route`` for the slot ``fire_ts``, then re-arm unconditionally."""
        try:
            if await self._claim(route, fire_ts):
                logger.info("Running scheduled update for endpoint: %s", route)
                await self._refresh(route)
            else:
                logger.info("Slot %d for %s already claimed by another worker", fire_ts, route)
        except Exception:
            # Background task: nothing upstream can observe the error.
            logger.exception("Update failed for endpoint %s", route)

        await self.schedule(route)

    async def _refresh(self, route: str) -> None:
        record = await self._store.get(route)
        if record is None:
            return
        metadata = record.get("metadata") or {}
        api_key = decrypt(metadata.get("firecrawlApiKey", ""))
        await extract_and_update(
            self._store,
            route,
            metadata.get("query", ""),
            metadata.get("schema"),
            metadata.get("sources") or [],
            api_key,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────
    async def initialize(self) -> int:
        """Arm a timer for every stored endpoint. Runs once per instance."""
        if self._initialized:
            logger.info("Scheduler already initialized (%d armed)", len(self._timers))
            return len(self._timers)

        logger.info("Initializing scheduler for all endpoints...")
        routes = await self._store.list_routes()
        armed = 0
        for route in routes:
            if await self.schedule(route):
                armed += 1
        self._initialized = True
        logger.info("Initialized scheduler: %d/%d endpoints armed", armed, len(routes))
        return armed

    async def shutdown(self) -> None:
        """Cancel every timer and in-flight refresh."""
        for route in list(self._timers):
            self._cancel(route)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")
