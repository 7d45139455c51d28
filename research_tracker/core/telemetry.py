from __future__ import annotations

from dataclasses import dataclass
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from research_tracker.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
UNTRACED_ROUTES = "healthz,readyz"
SERVICE_VERSION_VALUE = "0.1.0"

_default_record_factory = logging.getLogRecordFactory()
_correlation_enabled = False
_httpx_instrumentor = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    component: str
    provider: TracerProvider | None = None
    app: FastAPI | None = None

    @property
    def enabled(self) -> bool:
        return self.provider is not None


def configure_logging(level: str = "INFO") -> None:
    """Installs trace correlation and, unless the host already configured logging, a root handler."""
    enable_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    runtime = start_telemetry(settings, component="api")
    if runtime.enabled:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=runtime.provider, excluded_urls=UNTRACED_ROUTES)
        runtime.app = app
    return runtime


def setup_worker_telemetry(settings: Settings, component: str = "reconciler") -> TelemetryRuntime:
    return start_telemetry(settings, component=component)


def start_telemetry(settings: Settings, *, component: str) -> TelemetryRuntime:
    if not settings.otel_enabled:
        logger.debug("otel disabled component=%s", component)
        return TelemetryRuntime(component=component)

    if settings.otel_log_correlation:
        enable_log_correlation()

    resource = Resource.create(
        {
            SERVICE_NAME: f"{settings.otel_service_name}-{component}",
            SERVICE_VERSION: SERVICE_VERSION_VALUE,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
        }
    )
    provider = TracerProvider(resource=resource, sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)))
    exporter = build_span_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    # processor and analyzer calls both go through httpx
    if not _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(component=component, provider=provider)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
    if _httpx_instrumentor.is_instrumented_by_opentelemetry:
        _httpx_instrumentor.uninstrument()
    runtime.provider.force_flush()
    runtime.provider.shutdown()
    logger.info("telemetry flushed component=%s", runtime.component)


def build_span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logger.info("otlp endpoint not set; spans stay in-process service=%s", settings.otel_service_name)
        return None

    headers = parse_otlp_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_otlp_headers(raw: str | None) -> dict[str, str]:
    """Parses ``key=value,key2=value2``; entries without ``=`` or with an empty key are dropped."""
    headers: dict[str, str] = {}
    for item in (raw or "").split(","):
        key, separator, value = item.partition("=")
        if separator and key.strip():
            headers[key.strip()] = value.strip()
    return headers


def current_trace_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return "0" * 32, "0" * 16
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def enable_log_correlation() -> None:
    global _correlation_enabled
    if _correlation_enabled:
        return

    def correlated_record(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _default_record_factory(*args, **kwargs)
        record.trace_id, record.span_id = current_trace_ids()
        return record

    logging.setLogRecordFactory(correlated_record)
    _correlation_enabled = True
