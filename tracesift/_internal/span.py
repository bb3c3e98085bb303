from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NamedTuple, Sequence

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import Event, ReadableSpan
from opentelemetry.sdk.trace.sampling import Decision
from opentelemetry.sdk.util.instrumentation import InstrumentationScope
from opentelemetry.trace import Link, SpanContext, SpanKind, TraceFlags, format_span_id, format_trace_id
from opentelemetry.trace.status import Status, StatusCode
from opentelemetry.util import types as otel_types

from .constants import HTTP_ROUTE_KEY, HTTP_STATUS_CODE_KEY, HTTP_TARGET_KEY, ONE_SECOND_IN_NANOSECONDS

INSTRUMENTATION_SCOPE = InstrumentationScope('tracesift')

TRACE_ID_BITS = 128
SPAN_ID_BITS = 64


class SpanTime(NamedTuple):
    """A timestamp split into whole seconds since the epoch and the remaining nanoseconds."""

    seconds: int
    nanos: int

    @classmethod
    def from_ns(cls, timestamp_ns: int) -> SpanTime:
        seconds, nanos = divmod(timestamp_ns, ONE_SECOND_IN_NANOSECONDS)
        return cls(seconds, nanos)

    def to_ns(self) -> int:
        return self.seconds * ONE_SECOND_IN_NANOSECONDS + self.nanos

    def to_ms(self) -> float:
        return self.seconds * 1000 + self.nanos / 1e6


@dataclass(eq=False)
class Span:
    """One recorded unit of work, as handed over by the request-handling layer.

    The pipeline only ever changes `attributes`. Identifiers and timestamps belong to the caller.
    """

    trace_id: str
    """Hex trace ID shared by every span of one logical request chain."""

    span_id: str
    name: str
    attributes: dict[str, otel_types.AttributeValue] = field(default_factory=dict)
    start_time: SpanTime | None = None
    end_time: SpanTime | None = None
    status: StatusCode = StatusCode.UNSET
    status_description: str | None = None
    parent_span_id: str | None = None
    kind: SpanKind = SpanKind.SERVER
    events: Sequence[Event] = ()
    links: Sequence[Link] = ()
    resource: Resource | None = None
    """Resource of the process that recorded the span. Spans without one get the export queue's resource."""
    instrumentation_scope: InstrumentationScope | None = None

    head_decision: Decision | None = field(default=None, init=False)
    """Decision of the head sampler, set by `PipelineCoordinator.on_start`."""

    ended: bool = field(default=False, init=False, repr=False)

    @property
    def path(self) -> str:
        """The request path used to match sampling rules, falling back to the span name."""
        target = self.attributes.get(HTTP_TARGET_KEY) or self.attributes.get(HTTP_ROUTE_KEY)
        return target if isinstance(target, str) else self.name

    @property
    def duration_ms(self) -> float | None:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time.to_ms() - self.start_time.to_ms()

    def to_readable_span(self, resource: Resource | None = None) -> ReadableSpan:
        """Freeze this span into an OTEL `ReadableSpan` for exporting.

        The attributes are copied, so later changes to this span don't leak into the exported snapshot.
        """
        trace_id = parse_hex_id(self.trace_id, TRACE_ID_BITS)
        if resource is None:
            resource = Resource.get_empty()
        scope = self.instrumentation_scope if self.instrumentation_scope is not None else INSTRUMENTATION_SCOPE
        parent = None
        if self.parent_span_id is not None:
            parent = SpanContext(
                trace_id=trace_id,
                span_id=parse_hex_id(self.parent_span_id, SPAN_ID_BITS),
                is_remote=False,
                trace_flags=TraceFlags(TraceFlags.SAMPLED),
            )
        return ReadableSpan(
            name=self.name,
            context=SpanContext(
                trace_id=trace_id,
                span_id=parse_hex_id(self.span_id, SPAN_ID_BITS),
                is_remote=False,
                trace_flags=TraceFlags(TraceFlags.SAMPLED),
            ),
            parent=parent,
            resource=self.resource if self.resource is not None else resource,
            attributes=dict(self.attributes),
            events=tuple(self.events),
            links=tuple(self.links),
            kind=self.kind,
            # OTEL only keeps a description for ERROR statuses and warns otherwise.
            status=Status(self.status, self.status_description if self.status is StatusCode.ERROR else None),
            start_time=self.start_time.to_ns() if self.start_time else None,
            end_time=self.end_time.to_ns() if self.end_time else None,
            instrumentation_scope=scope,
        )

    @classmethod
    def from_readable_span(cls, span: ReadableSpan) -> Span:
        context = span.context
        assert context is not None
        return cls(
            trace_id=format_trace_id(context.trace_id),
            span_id=format_span_id(context.span_id),
            name=span.name,
            attributes=dict(span.attributes or {}),
            start_time=SpanTime.from_ns(span.start_time) if span.start_time is not None else None,
            end_time=SpanTime.from_ns(span.end_time) if span.end_time is not None else None,
            status=span.status.status_code,
            status_description=span.status.description,
            parent_span_id=format_span_id(span.parent.span_id) if span.parent else None,
            kind=span.kind,
            events=tuple(span.events),
            links=tuple(span.links),
            resource=span.resource,
            instrumentation_scope=span.instrumentation_scope,
        )


def get_status_code(attributes: otel_types.Attributes) -> int | None:
    """The HTTP status code recorded by the request layer, if there's a usable one."""
    value = (attributes or {}).get(HTTP_STATUS_CODE_KEY)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


def parse_hex_id(value: Any, bits: int) -> int:
    """Parse a hex trace/span ID, returning 0 (the OTEL invalid ID) if it's malformed or doesn't fit in `bits`.

    IDs that are too wide would make the OTLP encoder fail for the whole batch they're exported in.
    """
    try:
        parsed = int(value, 16)
    except (TypeError, ValueError):
        return 0
    return parsed if 0 <= parsed < 2**bits else 0
