from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "relnotes_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "relnotes_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_HTTP_RATE_LIMITED_TOTAL = Counter(
    "relnotes_http_rate_limited_total",
    "Total HTTP requests blocked by rate limiting.",
    labelnames=("policy",),
)
_OAUTH_CALLBACKS_TOTAL = Counter(
    "relnotes_oauth_callbacks_total",
    "OAuth callback outcomes by provider and result code.",
    labelnames=("provider", "result"),
)
_TICKET_CACHE_WRITES_TOTAL = Counter(
    "relnotes_ticket_cache_writes_total",
    "Ticket cache upsert batches by outcome.",
    labelnames=("provider", "outcome"),
)


def observe_http_request(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )


def observe_rate_limited(*, policy: str) -> None:
    # Policy only: api-policy rejections happen before routing.
    _HTTP_RATE_LIMITED_TOTAL.labels(policy=policy).inc()


def observe_oauth_callback(*, provider: str, result: str) -> None:
    _OAUTH_CALLBACKS_TOTAL.labels(provider=provider, result=result).inc()


def observe_ticket_cache_write(*, provider: str, outcome: str) -> None:
    _TICKET_CACHE_WRITES_TOTAL.labels(provider=provider, outcome=outcome).inc()
