from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from contextvars import ContextVar
from dataclasses import dataclass, field

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from relnotes.core.config import Settings
from relnotes.core.security import new_random_token

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
logger = logging.getLogger("relnotes.api")

UNKNOWN_CLIENT = "unknown"


@dataclass
class RateLimitCounter:
    count: int
    reset_time: float


@dataclass
class RateLimiter:
    """Fixed-window request counter keyed by client identity.

    State lives in this process only. Several API workers each keep their own
    counters, so the effective limit across a deployment is max_requests per
    worker.
    """

    max_requests: int
    window_seconds: float = 60.0
    name: str = "default"
    key_func: Callable[[Request], str] | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _counters: dict[str, RateLimitCounter] = field(default_factory=dict)

    def allow(self, key: str, *, now_ts: float) -> bool:
        with self._lock:
            self._purge_stale(now_ts)

            counter = self._counters.get(key)
            if counter is None:
                counter = RateLimitCounter(count=0, reset_time=now_ts + self.window_seconds)
                self._counters[key] = counter
            elif counter.reset_time <= now_ts:
                counter.count = 0
                counter.reset_time = now_ts + self.window_seconds

            if counter.count >= self.max_requests:
                return False

            counter.count += 1
            return True

    def check(self, request: Request, *, now_ts: float) -> bool:
        key = (self.key_func or rate_limit_key)(request)
        return self.allow(key, now_ts=now_ts)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._counters)

    def _purge_stale(self, now_ts: float) -> None:
        stale = [k for k, c in self._counters.items() if c.reset_time <= now_ts]
        for k in stale:
            del self._counters[k]


def build_rate_limiters(settings: Settings) -> dict[str, RateLimiter]:
    policies = {
        "api": (settings.RATE_LIMIT_API_MAX, settings.RATE_LIMIT_API_WINDOW_SECONDS),
        "auth": (settings.RATE_LIMIT_AUTH_MAX, settings.RATE_LIMIT_AUTH_WINDOW_SECONDS),
        "public": (settings.RATE_LIMIT_PUBLIC_MAX, settings.RATE_LIMIT_PUBLIC_WINDOW_SECONDS),
    }
    return {
        name: RateLimiter(max_requests=max_requests, window_seconds=float(window), name=name)
        for name, (max_requests, window) in policies.items()
        if max_requests > 0
    }


def build_request_id(request: Request, *, header_name: str) -> str:
    incoming = (request.headers.get(header_name) or "").strip()
    if incoming:
        return incoming[:128]
    return new_random_token(nbytes=18)


def apply_security_headers(response: Response, *, settings: Settings) -> None:
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Content-Security-Policy", settings.CONTENT_SECURITY_POLICY)


def rate_limit_key(request: Request) -> str:
    forwarded_for = (request.headers.get("x-forwarded-for") or "").strip()
    if forwarded_for:
        ip = forwarded_for.split(",", 1)[0].strip()
        if ip:
            return ip

    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    return UNKNOWN_CLIENT


def rate_limit_response() -> JSONResponse:
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


def log_request_completion(
    *,
    request_id: str,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
    rate_limited: bool,
) -> None:
    logger.info(
        json.dumps(
            {
                "event": "http.request.completed",
                "request_id": request_id,
                "method": method,
                "path": path,
                "status_code": status_code,
                "duration_ms": duration_ms,
                "rate_limited": rate_limited,
            },
            separators=(",", ":"),
            sort_keys=True,
        )
    )


def now_ts() -> float:
    return time.time()
