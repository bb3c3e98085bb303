from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from ..constants import (
    DEFAULT_EXPORT_TIMEOUT_MILLIS,
    DEFAULT_MAX_EXPORT_BATCH_SIZE,
    DEFAULT_MAX_QUEUE_SIZE,
    DEFAULT_SCHEDULE_DELAY_MILLIS,
)
from ..span import Span


@dataclass
class BatchExportOptions:
    """Settings passed through to the OTEL `BatchSpanProcessor` that batches and ships spans."""

    max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE
    """Spans beyond this many waiting to be exported are dropped."""

    max_export_batch_size: int = DEFAULT_MAX_EXPORT_BATCH_SIZE
    scheduled_delay_millis: int = DEFAULT_SCHEDULE_DELAY_MILLIS
    export_timeout_millis: int = DEFAULT_EXPORT_TIMEOUT_MILLIS


class ExportQueue(ABC):
    """Where finalized spans go once the pipeline has decided to keep them."""

    @abstractmethod
    def enqueue(self, span: Span) -> None:
        """Hand over a span for export. Must not block on export I/O."""

    @abstractmethod
    def force_flush(self, timeout_millis: int = 30000) -> bool: ...

    @abstractmethod
    def shutdown(self) -> None: ...


class NoOpExportQueue(ExportQueue):
    """Discards every span. Used when telemetry is disabled."""

    def enqueue(self, span: Span) -> None:
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True

    def shutdown(self) -> None:
        pass


class ProcessorExportQueue(ExportQueue):
    """Passes frozen snapshots of spans to an OTEL `SpanProcessor`, typically a `BatchSpanProcessor`."""

    def __init__(self, processor: SpanProcessor, resource: Resource | None = None) -> None:
        self.processor = processor
        self.resource = resource or Resource.get_empty()

    @classmethod
    def batching(
        cls, exporter: SpanExporter, resource: Resource | None = None, options: BatchExportOptions | None = None
    ) -> ProcessorExportQueue:
        options = options or BatchExportOptions()
        processor = BatchSpanProcessor(
            exporter,
            max_queue_size=options.max_queue_size,
            schedule_delay_millis=options.scheduled_delay_millis,
            max_export_batch_size=options.max_export_batch_size,
            export_timeout_millis=options.export_timeout_millis,
        )
        return cls(processor, resource)

    def enqueue(self, span: Span) -> None:
        self.processor.on_end(span.to_readable_span(self.resource))

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self.processor.force_flush(timeout_millis)

    def shutdown(self) -> None:
        self.processor.shutdown()
