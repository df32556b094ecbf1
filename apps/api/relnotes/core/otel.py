from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

from fastapi import FastAPI

from relnotes.core.config import Settings
from relnotes.db.session import get_engine

logger = logging.getLogger("relnotes.api")


@dataclass(frozen=True)
class OTelSetupResult:
    enabled: bool
    reason: str
    shutdown: Callable[[], None] | None = None


_TRACER_PROVIDER: Any | None = None
_TRACER_PROVIDER_LOCK = Lock()
_GLOBAL_INSTRUMENTED = False


def setup_otel(*, app: FastAPI, settings: Settings) -> OTelSetupResult:
    """Trace inbound requests, database calls and outbound provider HTTP calls.

    SQLAlchemy and httpx are instrumented once per process; the FastAPI app is
    instrumented per instance and uninstrumented by the returned shutdown hook.
    """
    if not settings.ENABLE_OTEL_TRACING:
        return OTelSetupResult(enabled=False, reason="disabled")

    endpoint = settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT.strip()
    if not endpoint:
        logger.warning(
            "OpenTelemetry tracing is enabled but OTEL_EXPORTER_OTLP_TRACES_ENDPOINT is empty."
        )
        return OTelSetupResult(enabled=False, reason="missing_endpoint")

    try:
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
    except ImportError as exc:
        logger.warning("OpenTelemetry tracing setup skipped: %s", exc)
        return OTelSetupResult(enabled=False, reason="dependency_missing")

    provider = _get_or_create_provider(settings)
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=provider,
        excluded_urls=settings.OTEL_EXCLUDED_URLS,
    )

    global _GLOBAL_INSTRUMENTED
    if not _GLOBAL_INSTRUMENTED:
        SQLAlchemyInstrumentor().instrument(engine=get_engine(), tracer_provider=provider)
        # Outbound token exchanges and provider API calls.
        HTTPXClientInstrumentor().instrument(tracer_provider=provider)
        _GLOBAL_INSTRUMENTED = True

    logger.info(
        "OpenTelemetry tracing enabled for service=%s endpoint=%s",
        settings.OTEL_SERVICE_NAME,
        endpoint,
    )

    def _shutdown() -> None:
        FastAPIInstrumentor.uninstrument_app(app)

    return OTelSetupResult(enabled=True, reason="enabled", shutdown=_shutdown)


def _get_or_create_provider(settings: Settings) -> Any:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

    global _TRACER_PROVIDER
    with _TRACER_PROVIDER_LOCK:
        if _TRACER_PROVIDER is not None:
            return _TRACER_PROVIDER

        provider = TracerProvider(
            resource=Resource.create(
                {SERVICE_NAME: settings.OTEL_SERVICE_NAME, SERVICE_VERSION: settings.VERSION}
            ),
            sampler=TraceIdRatioBased(settings.OTEL_TRACE_SAMPLE_RATIO),
        )

        exporter_kwargs: dict[str, Any] = {"endpoint": settings.OTEL_EXPORTER_OTLP_TRACES_ENDPOINT}
        headers = parse_otlp_headers(settings.OTEL_EXPORTER_OTLP_HEADERS)
        if headers:
            exporter_kwargs["headers"] = headers

        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**exporter_kwargs)))
        trace.set_tracer_provider(provider)
        _TRACER_PROVIDER = provider
        return provider


def parse_otlp_headers(raw_headers: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for token in raw_headers.split(","):
        piece = token.strip()
        if not piece:
            continue
        key, sep, value = piece.partition("=")
        if not sep or not key.strip() or not value.strip():
            logger.warning("Ignoring malformed OTLP header token: %s", piece)
            continue
        out[key.strip()] = value.strip()
    return out
