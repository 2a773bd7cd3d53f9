"""
Trace Exporter
==============
Hands an assembled Trace to an OpenTelemetry SpanExporter.

The OpenTelemetry Tracer API always mints its own span ids and timestamps,
so spans are not created through a Tracer here. Each SpanRecord is instead
converted straight into an SDK ``ReadableSpan`` carrying the derived ids,
the provider's timestamps and its parent link, and the whole trace is passed
to ``SpanExporter.export`` in one call. That call's result is the success /
failure signal the pipeline needs before touching the ledger.

Exporters:
    otlp     — OTLP over gRPC (default) or HTTP/protobuf, configured through
               the standard OTEL_EXPORTER_OTLP_* environment variables
    console  — prints spans to stdout, for local inspection
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import (
    ConsoleSpanExporter,
    SpanExporter,
    SpanExportResult,
)
from opentelemetry.sdk.util.instrumentation import InstrumentationScope
from opentelemetry.trace import SpanContext, SpanKind, Status, StatusCode, TraceFlags

from runtrace.core.constants import SERVICE_NAME, VERSION
from runtrace.core.errors import ExportError
from runtrace.models.span import SpanRecord, Trace

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_SAMPLED = TraceFlags(TraceFlags.SAMPLED)


def to_unix_nanos(value: datetime) -> int:
    """Exact nanoseconds since the epoch (float timestamps lose precision)."""
    return ((value - _EPOCH) // timedelta(microseconds=1)) * 1000


def default_resource() -> Resource:
    return Resource.create({"service.name": SERVICE_NAME, "service.version": VERSION})


def to_readable_span(
    record: SpanRecord, resource: Resource, scope: InstrumentationScope
) -> ReadableSpan:
    context = SpanContext(
        trace_id=record.trace_id,
        span_id=record.span_id,
        is_remote=False,
        trace_flags=_SAMPLED,
    )
    parent = None
    if record.parent_span_id is not None:
        parent = SpanContext(
            trace_id=record.trace_id,
            span_id=record.parent_span_id,
            is_remote=False,
            trace_flags=_SAMPLED,
        )

    if record.status == "ERROR":
        status = Status(StatusCode.ERROR, record.status_description or None)
    else:
        status = Status(StatusCode.OK)

    return ReadableSpan(
        name=record.name,
        context=context,
        parent=parent,
        resource=resource,
        attributes=dict(record.attributes),
        kind=SpanKind.INTERNAL,
        status=status,
        start_time=to_unix_nanos(record.start_time),
        end_time=to_unix_nanos(record.end_time),
        instrumentation_scope=scope,
    )


def build_span_exporter(
    kind: str = "otlp", protocol: str = "grpc", timeout_seconds: float = 30.0
) -> SpanExporter:
    """
    Construct the configured OpenTelemetry exporter.

    Parameters
    ----------
    kind : str
        "otlp" or "console".
    protocol : str
        For OTLP: "grpc" or "http/protobuf".
    timeout_seconds : float
        Exporter-level request timeout.
    """
    kind = (kind or "otlp").lower()
    if kind == "console":
        return ConsoleSpanExporter()
    if kind != "otlp":
        raise ValueError(f"Unknown exporter: {kind}")

    if protocol.lower() == "grpc":
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

        return OTLPSpanExporter(timeout=int(timeout_seconds))
    if protocol.lower() in ("http/protobuf", "http"):
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

        return OTLPSpanExporter(timeout=int(timeout_seconds))
    raise ValueError(f"Unknown OTLP protocol: {protocol}")


class TraceExporter:
    """
    Exports one Trace per call and reports failure as ExportError.

    Thread-safe as far as the wrapped SpanExporter is; the OTLP exporters
    are.
    """

    def __init__(
        self,
        span_exporter: SpanExporter,
        timeout_seconds: float = 30.0,
        resource: Optional[Resource] = None,
    ) -> None:
        self.span_exporter = span_exporter
        self.timeout_seconds = timeout_seconds
        self.resource = resource or default_resource()
        self.scope = InstrumentationScope("runtrace", VERSION)

    def to_readable_spans(self, trace: Trace) -> List[ReadableSpan]:
        return [to_readable_span(s, self.resource, self.scope) for s in trace.spans]

    async def export(self, trace: Trace) -> None:
        """
        Send every span of ``trace`` in a single export call.

        Raises
        ------
        ExportError
            On a non-success result, an exporter exception, or timeout.
        """
        spans = self.to_readable_spans(trace)
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.span_exporter.export, spans),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise ExportError(
                f"export of trace {trace.trace_id_hex} timed out after {self.timeout_seconds}s"
            ) from e
        except Exception as e:
            raise ExportError(f"export of trace {trace.trace_id_hex} failed: {e}") from e

        if result is not SpanExportResult.SUCCESS:
            raise ExportError(f"exporter rejected trace {trace.trace_id_hex}: {result.name}")
        logger.info("Exported trace %s (%d spans)", trace.trace_id_hex, len(spans))

    def shutdown(self) -> None:
        self.span_exporter.shutdown()
