"""In-memory per-process token bucket limiter for the HTTP surface.

Manual rule runs touch tenant databases and channel providers, so they
draw from a separate, smaller budget than ordinary CRUD requests.
"""

from __future__ import annotations

import hashlib
import os
import threading
import time
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request

from .config import env_float, env_int, get_app_env


def rate_limit_enabled() -> bool:
    raw = os.getenv("RATE_LIMIT_ENABLED")
    if raw is not None and raw.strip().lower() in {"1", "true", "yes", "0", "false", "no"}:
        return raw.strip().lower() in {"1", "true", "yes"}
    return get_app_env() == "prod"


def _budget(request: Request) -> tuple[str, float, int]:
    path = request.url.path
    if request.method == "POST" and (path.endswith("/run") or path.endswith("/cron-run")):
        return "run", max(env_float("RUN_RATE_LIMIT_RPS", 0.2), 0.01), max(env_int("RUN_RATE_LIMIT_BURST", 3), 1)
    return "api", max(env_float("RATE_LIMIT_RPS", 5.0), 0.1), max(env_int("RATE_LIMIT_BURST", 20), 1)


def _caller_identity(request: Request, authorization: Optional[str]) -> str:
    tenant = request.headers.get("X-Tenant-Id")
    if authorization:
        return hashlib.sha256(authorization.encode("utf-8")).hexdigest()[:16]
    if tenant:
        return f"tenant:{tenant}"
    return request.client.host if request.client else "unknown"


@dataclass
class Bucket:
    tokens: float
    last_ts: float


class TokenBucketLimiter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: dict[str, Bucket] = {}

    def allow(self, key: str, *, rps: float, burst: int) -> tuple[bool, float]:
        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = Bucket(tokens=float(burst), last_ts=now)
                self._buckets[key] = bucket
            elapsed = max(0.0, now - bucket.last_ts)
            bucket.tokens = min(float(burst), bucket.tokens + elapsed * rps)
            bucket.last_ts = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, 0.0
            retry_after = (1.0 - bucket.tokens) / rps
            return False, max(retry_after, 0.1)

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


_limiter = TokenBucketLimiter()


def rate_limit_dependency(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> None:
    if not rate_limit_enabled():
        return
    budget, rps, burst = _budget(request)
    key = f"{_caller_identity(request, authorization)}:{budget}"
    allowed, retry_after = _limiter.allow(key, rps=rps, burst=burst)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail={"field": "", "code": "RATE_LIMITED", "message": "Too Many Requests"},
            headers={"Retry-After": str(max(1, int(retry_after)))},
        )
