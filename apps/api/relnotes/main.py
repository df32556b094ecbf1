from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from relnotes.core.config import get_settings
from relnotes.core.metrics import observe_http_request, observe_rate_limited
from relnotes.core.middleware import (
    apply_security_headers,
    build_rate_limiters,
    build_request_id,
    log_request_completion,
    now_ts,
    rate_limit_response,
    request_id_ctx,
)
from relnotes.core.otel import setup_otel
from relnotes.routers.health import router as health_router
from relnotes.routers.integrations import router as integrations_router
from relnotes.routers.oauth import router as oauth_router


def _route_path(request: Request) -> str:
    # Route template rather than the concrete path; unmatched requests share one label.
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Release Notes Integrations API", version=settings.VERSION)

    app.state.rate_limiters = build_rate_limiters(settings)
    api_limiter = app.state.rate_limiters.get("api")

    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers_and_request_context(request, call_next):  # type: ignore[no-untyped-def]
        request_id = build_request_id(request, header_name=settings.REQUEST_ID_HEADER)
        token = request_id_ctx.set(request_id)
        start_ts = now_ts()
        method = request.method
        response = None
        blocked = False
        status_code = 500

        try:
            if api_limiter is not None and not api_limiter.check(request, now_ts=now_ts()):
                blocked = True
                observe_rate_limited(policy=api_limiter.name)
                response = rate_limit_response()

            if response is None:
                response = await call_next(request)
                blocked = bool(getattr(request.state, "rate_limited", False))

            status_code = response.status_code
            response.headers[settings.REQUEST_ID_HEADER] = request_id
            apply_security_headers(response, settings=settings)
            return response
        finally:
            duration_ms = int((now_ts() - start_ts) * 1000)
            log_request_completion(
                request_id=request_id,
                method=method,
                path=request.url.path,
                status_code=status_code,
                duration_ms=duration_ms,
                rate_limited=blocked,
            )
            observe_http_request(
                method=method,
                path=_route_path(request),
                status_code=status_code,
                duration_ms=duration_ms,
            )
            request_id_ctx.reset(token)

    if settings.ENABLE_PROMETHEUS_METRICS:

        @app.get(settings.PROMETHEUS_METRICS_PATH, include_in_schema=False)
        def metrics() -> Response:
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    otel = setup_otel(app=app, settings=settings)
    app.state.otel_tracing_enabled = otel.enabled
    app.state.otel_tracing_reason = otel.reason
    if otel.shutdown is not None:
        app.add_event_handler("shutdown", otel.shutdown)

    app.include_router(health_router)
    app.include_router(oauth_router)
    app.include_router(integrations_router)
    return app


app = create_app()
