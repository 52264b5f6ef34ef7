from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import threading

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import ReadableSpan, SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import StatusCode

from jobsync.core.config import Settings

logger = logging.getLogger(__name__)

SYNC_SPAN_PREFIX = "sync."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
CORRELATED_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"

_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


class TraceContextFilter(logging.Filter):
    """Stamps the active span's ids onto records so engine logs join their sync spans."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = "0" * 32
            record.span_id = "0" * 16
        return True


class SyncSpanStats(SpanProcessor):
    """Tallies finished `sync.*` spans and their failures for the status route."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._finished: dict[str, int] = {}
        self._failed: dict[str, int] = {}

    def on_end(self, span: ReadableSpan) -> None:
        if not span.name.startswith(SYNC_SPAN_PREFIX):
            return
        failed = span.status.status_code is StatusCode.ERROR or any(
            event.name == "exception" for event in span.events
        )
        with self._lock:
            self._finished[span.name] = self._finished.get(span.name, 0) + 1
            if failed:
                self._failed[span.name] = self._failed.get(span.name, 0) + 1

        if span.name == "sync.fetch" and span.start_time and span.end_time:
            logger.debug(
                "sync span ended domain=%s failed=%s duration_ms=%.1f",
                (span.attributes or {}).get("sync.domain"),
                failed,
                (span.end_time - span.start_time) / 1_000_000,
            )

    def snapshot(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {
                name: {"finished": count, "failed": self._failed.get(name, 0)}
                for name, count in sorted(self._finished.items())
            }


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    sync_stats: SyncSpanStats | None = None


def configure_engine_logging(settings: Settings) -> None:
    if logging.getLogger().handlers:
        return
    if not settings.otel_log_correlation:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        return
    logging.basicConfig(level=logging.INFO, format=CORRELATED_LOG_FORMAT)
    for handler in logging.getLogger().handlers:
        handler.addFilter(TraceContextFilter())


def setup_telemetry(settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
                "jobsync.snapshot_backend": "sqlite" if settings.snapshot_db_path else "memory",
                "jobsync.full_pass_debounce_ms": settings.full_pass_debounce_ms,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    sync_stats = SyncSpanStats()
    provider.add_span_processor(sync_stats)

    endpoint = settings.otel_exporter_otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    if endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    else:
        logger.info("no OTLP endpoint configured; sync spans are only tallied locally")

    trace.set_tracer_provider(provider)
    _HTTPX_INSTRUMENTOR.instrument()
    return TelemetryRuntime(enabled=True, provider=provider, sync_stats=sync_stats)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.shutdown()
