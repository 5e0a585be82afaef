"""
Fixed-window rate limiting.

Each named limiter counts requests per caller key inside fixed windows of
`window_ms`. The first request after a window ends starts a new one with a
count of 1, so a caller can get up to 2x `max_requests` through across a
window boundary. That is accepted in exchange for O(1) state per key.

Counters live behind `CounterStore`. `MemoryCounterStore` keeps them in the
process, so every worker enforces its own budget. `MongoCounterStore` shares
them between processes through one atomic upsert per request.
"""

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from pymongo import ReturnDocument
from pymongo.collection import Collection
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from errors import RateLimitedError

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Counter:
    count: int
    reset_at: int


class CounterStore(Protocol):
    def increment(self, key: str, window_ms: int, now: int) -> Counter:
        """Count one request for `key`, starting a new window when the current one has ended."""
        ...

    def purge_expired(self, now: int) -> int: ...


class MemoryCounterStore:
    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, Counter] = {}

    def increment(self, key: str, window_ms: int, now: int) -> Counter:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now >= entry.reset_at:
                entry = Counter(count=1, reset_at=now + window_ms)
            else:
                entry = Counter(count=entry.count + 1, reset_at=entry.reset_at)
            self._entries[key] = entry
            return entry

    def purge_expired(self, now: int) -> int:
        # Lock per deletion so requests never wait on a full sweep.
        with self._lock:
            keys = list(self._entries)
        removed = 0
        for key in keys:
            with self._lock:
                entry = self._entries.get(key)
                if entry is not None and now >= entry.reset_at:
                    del self._entries[key]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._entries)


class MongoCounterStore:
    """Counters shared by every process pointed at the same collection."""

    def __init__(self, collection: Collection, namespace: str):
        self.collection = collection
        self.namespace = namespace

    def increment(self, key: str, window_ms: int, now: int) -> Counter:
        live = {"$gt": ["$reset_at", now]}
        doc = self.collection.find_one_and_update(
            {"_id": f"{self.namespace}:{key}"},
            [{"$set": {
                "limiter": {"$literal": self.namespace},
                "count": {"$cond": [live, {"$add": ["$count", 1]}, 1]},
                "reset_at": {"$cond": [live, "$reset_at", now + window_ms]},
            }}],
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return Counter(count=doc["count"], reset_at=doc["reset_at"])

    def purge_expired(self, now: int) -> int:
        result = self.collection.delete_many({"limiter": self.namespace, "reset_at": {"$lte": now}})
        return result.deleted_count


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at / 1000)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    def __init__(
        self,
        name: str,
        max_requests: int,
        window_ms: int,
        message: str = "Too many requests, please try again later.",
        store: Optional[CounterStore] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.name = name
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.message = message
        self.store = store if store is not None else MemoryCounterStore()
        self.clock = clock

    def hit(self, key: str) -> RateLimitResult:
        now = self.clock()
        entry = self.store.increment(key, self.window_ms, now)
        allowed = entry.count <= self.max_requests
        return RateLimitResult(
            allowed=allowed,
            limit=self.max_requests,
            remaining=max(0, self.max_requests - entry.count),
            reset_at=entry.reset_at,
            retry_after=0 if allowed else math.ceil((entry.reset_at - now) / 1000),
        )

    def check(self, key: str) -> RateLimitResult:
        """Like `hit`, but raises RateLimitedError once the budget is spent."""
        result = self.hit(key)
        if not result.allowed:
            raise RateLimitedError(self.message, result.retry_after, headers=result.headers())
        return result

    def sweep(self) -> int:
        return self.store.purge_expired(self.clock())


def client_ip_key(trust_proxy: bool = False) -> Callable[[Request], str]:
    def key_func(request: Request) -> str:
        if trust_proxy:
            forwarded = request.headers.get("x-forwarded-for")
            if forwarded:
                # One trusted hop: the address our proxy saw is the last entry.
                return forwarded.split(",")[-1].strip()
        return request.client.host if request.client else "unknown"

    return key_func


def rate_limited_response(exc: RateLimitedError) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"detail": str(exc), "error_type": exc.kind, "retry_after": exc.retry_after_seconds},
        headers=exc.headers,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply every limiter whose path prefix matches, in order.

    The headers of the last matching limiter (the most specific one) are
    attached to the response.
    """

    def __init__(
        self,
        app,
        limiters: Sequence[Tuple[str, RateLimiter]],
        key_func: Callable[[Request], str] = client_ip_key(),
    ):
        super().__init__(app)
        self.limiters = list(limiters)
        self.key_func = key_func

    async def dispatch(self, request: Request, call_next):
        key = self.key_func(request)
        result: Optional[RateLimitResult] = None
        for prefix, limiter in self.limiters:
            if not request.url.path.startswith(prefix):
                continue
            try:
                result = await run_in_threadpool(limiter.check, key)
            except RateLimitedError as exc:
                logger.warning(
                    "Rate limit %s exceeded by %s on %s %s",
                    limiter.name, key, request.method, request.url.path,
                )
                return rate_limited_response(exc)

        response = await call_next(request)
        if result is not None:
            response.headers.update(result.headers())
        return response


async def sweep_forever(limiter: RateLimiter) -> None:
    """Purge expired counters once per window until cancelled."""
    interval = limiter.window_ms / 1000
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await run_in_threadpool(limiter.sweep)
        except Exception:
            logger.exception("Sweeping rate limiter %s failed", limiter.name)
        else:
            if removed:
                logger.debug("Rate limiter %s purged %d expired keys", limiter.name, removed)


def start_sweepers(limiters: List[RateLimiter]) -> List[asyncio.Task]:
    return [asyncio.create_task(sweep_forever(limiter)) for limiter in limiters]
