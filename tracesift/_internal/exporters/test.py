from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult


class TestExporter(SpanExporter):
    """A SpanExporter that stores exported spans in a list for asserting in tests."""

    # NOTE: Avoid test discovery by pytest.
    __test__ = False

    def __init__(self) -> None:
        self.exported_spans: list[ReadableSpan] = []
        self.shutdown_called = False

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        """Exports a batch of telemetry data."""
        self.exported_spans.extend(spans)
        return SpanExportResult.SUCCESS

    def clear(self) -> None:
        """Clears the collected spans."""
        self.exported_spans = []

    def shutdown(self) -> None:
        self.shutdown_called = True

    def exported_spans_as_dict(self, include_resources: bool = False) -> list[dict[str, Any]]:
        """The exported spans as a list of dicts.

        Args:
            include_resources: Whether to include the resource attributes in the exported spans.

        Returns:
            A list of dicts representing the exported spans.
        """

        def build_context(context: trace.SpanContext) -> dict[str, Any]:
            return {'trace_id': context.trace_id, 'span_id': context.span_id, 'is_remote': context.is_remote}

        def build_span(span: ReadableSpan) -> dict[str, Any]:
            context = span.context or trace.INVALID_SPAN_CONTEXT
            res: dict[str, Any] = {
                'name': span.name,
                'context': build_context(context),
                'parent': build_context(span.parent) if span.parent else None,
                'start_time': span.start_time,
                'end_time': span.end_time,
                'attributes': dict(span.attributes or {}),
            }
            if span.status.status_code is not trace.StatusCode.UNSET:
                res['status'] = span.status.status_code.name
            if include_resources:
                res['resource'] = {'attributes': dict(span.resource.attributes)}
            return res

        return [build_span(span) for span in self.exported_spans]
