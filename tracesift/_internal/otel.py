"""Plugging the pipeline into an OpenTelemetry `TracerProvider`.

OTEL never calls `on_end` for spans that the sampler dropped, so `PipelineSampler` turns a head `DROP`
into `RECORD_ONLY`: the span is recorded but not sampled, and `PipelineSpanProcessor` gets a chance to rescue it.
"""

from __future__ import annotations

from typing import Sequence

from opentelemetry import context as context_api, trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, Span as SDKSpan, SpanProcessor, TracerProvider, sampling
from opentelemetry.sdk.trace.sampling import Decision
from opentelemetry.util.types import Attributes

from .constants import ATTRIBUTES_HEAD_DECISION_KEY, HTTP_ROUTE_KEY, HTTP_TARGET_KEY
from .pipeline import PipelineCoordinator
from .sampling import HeadSampler
from .span import Span
from .utils import handle_internal_errors


def path_from_attributes(name: str, attributes: Attributes) -> str:
    attributes = attributes or {}
    path = attributes.get(HTTP_TARGET_KEY) or attributes.get(HTTP_ROUTE_KEY)
    return path if isinstance(path, str) else name


class PipelineSampler(sampling.Sampler):
    """An OTEL sampler that asks a `HeadSampler` and keeps dropped spans recordable for tail rescue."""

    def __init__(self, head_sampler: HeadSampler) -> None:
        super().__init__()
        self.head_sampler = head_sampler

    def should_sample(
        self,
        parent_context: context_api.Context | None,
        trace_id: int,
        name: str,
        kind: trace.SpanKind | None = None,
        attributes: Attributes | None = None,
        links: Sequence[trace.Link] | None = None,
        trace_state: trace.TraceState | None = None,
    ) -> sampling.SamplingResult:
        result = self.head_sampler.should_sample(
            trace.format_trace_id(trace_id), path_from_attributes(name, attributes), attributes
        )
        # The SDK replaces the span's attributes with the ones returned here, so merge rather than replace.
        merged_attributes = {
            **(attributes or {}),
            **result.attributes,
            ATTRIBUTES_HEAD_DECISION_KEY: result.decision.name,
        }
        decision = Decision.RECORD_ONLY if result.decision is Decision.DROP else result.decision
        return sampling.SamplingResult(decision, merged_attributes, trace_state)

    def get_description(self) -> str:
        return f'PipelineSampler{{{self.head_sampler.get_description()}}}'


def head_decision_of(span: ReadableSpan) -> Decision:
    recorded = (span.attributes or {}).get(ATTRIBUTES_HEAD_DECISION_KEY)
    if isinstance(recorded, str) and recorded in Decision.__members__:
        return Decision[recorded]
    if span.context is not None and span.context.trace_flags.sampled:
        return Decision.RECORD_AND_SAMPLE
    return Decision.DROP


class PipelineSpanProcessor(SpanProcessor):
    """Feeds finished OTEL spans through a `PipelineCoordinator`."""

    def __init__(self, coordinator: PipelineCoordinator) -> None:
        self.coordinator = coordinator

    def on_start(self, span: SDKSpan, parent_context: context_api.Context | None = None) -> None:
        pass

    @handle_internal_errors
    def on_end(self, span: ReadableSpan) -> None:
        pipeline_span = Span.from_readable_span(span)
        pipeline_span.head_decision = head_decision_of(span)
        self.coordinator.on_end(pipeline_span)

    def shutdown(self) -> None:
        self.coordinator.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self.coordinator.force_flush(timeout_millis)


def create_tracer_provider(coordinator: PipelineCoordinator, resource: Resource | None = None) -> TracerProvider:
    """A `TracerProvider` whose spans are sampled, enriched and exported by `coordinator`."""
    tracer_provider = TracerProvider(
        sampler=PipelineSampler(coordinator.sampler),
        resource=resource,
        id_generator=coordinator.id_generator,
        shutdown_on_exit=False,
    )
    tracer_provider.add_span_processor(PipelineSpanProcessor(coordinator))
    return tracer_provider
