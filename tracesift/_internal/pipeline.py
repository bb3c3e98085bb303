from __future__ import annotations

import time
from contextlib import contextmanager
from threading import Lock, Thread, current_thread
from typing import Callable, Iterator, Sequence

from opentelemetry.sdk.trace.id_generator import IdGenerator, RandomIdGenerator
from opentelemetry.sdk.trace.sampling import Decision, SamplingResult
from opentelemetry.trace import format_span_id, format_trace_id
from opentelemetry.trace.status import StatusCode
from opentelemetry.util import types as otel_types

from .constants import ATTRIBUTES_ERROR_CAPTURED_KEY, ATTRIBUTES_SLOW_REQUEST_KEY, DEFAULT_SHUTDOWN_TIMEOUT_MILLIS
from .exporters.queue import ExportQueue, NoOpExportQueue
from .processors import DurationClassifier, ErrorCapturingProcessor, TailProcessor
from .sampling import AlwaysSampleSampler, HeadSampler
from .span import Span, SpanTime
from .utils import handle_internal_errors, log_internal_error, logger


def is_export_eligible(span: Span) -> bool:
    """Whether a finished span should be exported.

    The head decision keeps volume down, but a span flagged as slow or as an error by the
    tail processors is exported even if the head sampler dropped it.
    """
    attributes = span.attributes
    return (
        span.head_decision is Decision.RECORD_AND_SAMPLE
        or attributes.get(ATTRIBUTES_SLOW_REQUEST_KEY) is True
        or attributes.get(ATTRIBUTES_ERROR_CAPTURED_KEY) is True
    )


def default_tail_processors() -> tuple[TailProcessor, ...]:
    # The two processors write disjoint attributes, but the order is still fixed:
    # duration first, then errors.
    return (DurationClassifier(), ErrorCapturingProcessor())


class PipelineCoordinator:
    """Runs the head sampler when spans start, and tail processors and reconciliation when they end.

    Eligible spans are handed to the export queue, which does its I/O on a background thread.
    """

    def __init__(
        self,
        sampler: HeadSampler | None = None,
        processors: Sequence[TailProcessor] | None = None,
        export_queue: ExportQueue | None = None,
        *,
        shutdown_timeout_millis: float = DEFAULT_SHUTDOWN_TIMEOUT_MILLIS,
        id_generator: IdGenerator | None = None,
        ns_timestamp_generator: Callable[[], int] = time.time_ns,
    ) -> None:
        self.sampler = sampler or AlwaysSampleSampler()
        self.processors: tuple[TailProcessor, ...] = (
            default_tail_processors() if processors is None else tuple(processors)
        )
        self.export_queue = export_queue or NoOpExportQueue()
        self.shutdown_timeout_millis = shutdown_timeout_millis
        self.id_generator = id_generator or RandomIdGenerator()
        self.ns_timestamp_generator = ns_timestamp_generator

        self._shutdown_lock = Lock()
        self._is_shutdown = False
        self._shutdown_result = True
        self._shutdown_thread: Thread | None = None

    @property
    def is_shutdown(self) -> bool:
        return self._is_shutdown

    def on_start(self, span: Span) -> SamplingResult:
        """Make the head decision for a span and record it on the span."""
        result = self.sampler.should_sample(span.trace_id, span.path, span.attributes)
        span.head_decision = result.decision
        if result.attributes:
            span.attributes.update(result.attributes)
        return result

    def on_end(self, span: Span) -> bool:
        """Enrich a finished span and export it if it's eligible.

        Returns whether the span was handed to the export queue.
        Each span is only processed once, later calls are ignored.
        """
        if span.ended:
            return False
        span.ended = True

        for processor in self.processors:
            with handle_internal_errors:
                processor.on_end(span)

        if span.head_decision is None:
            # `on_start` was never called, so there's no head decision to keep the span.
            span.head_decision = Decision.DROP

        if not is_export_eligible(span) or self._is_shutdown:
            return False

        try:
            self.export_queue.enqueue(span)
        except Exception:
            log_internal_error()
            return False
        return True

    @contextmanager
    def span(
        self,
        name: str,
        *,
        attributes: dict[str, otel_types.AttributeValue] | None = None,
        parent: Span | None = None,
        trace_id: str | None = None,
    ) -> Iterator[Span]:
        """Record a span around a block of code.

        The head decision is made on entry. On exit the end time and any exception are recorded
        and the span goes through the tail processors and reconciliation.
        """
        if parent is not None:
            trace_id = parent.trace_id
        elif trace_id is None:
            trace_id = format_trace_id(self.id_generator.generate_trace_id())

        span = Span(
            trace_id=trace_id,
            span_id=format_span_id(self.id_generator.generate_span_id()),
            name=name,
            attributes=dict(attributes or {}),
            start_time=SpanTime.from_ns(self.ns_timestamp_generator()),
            parent_span_id=parent.span_id if parent else None,
        )
        self.on_start(span)
        try:
            yield span
        except BaseException as e:
            span.status = StatusCode.ERROR
            span.status_description = f'{type(e).__name__}: {e}'
            span.attributes['exception.type'] = type(e).__name__
            span.attributes['exception.message'] = str(e)
            raise
        finally:
            span.end_time = SpanTime.from_ns(self.ns_timestamp_generator())
            self.on_end(span)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        result = True
        for processor in self.processors:
            result = processor.force_flush(timeout_millis) and result
        return self.export_queue.force_flush(timeout_millis) and result

    def shutdown(self, timeout_millis: float | None = None) -> bool:
        """Flush and shut down the tail processors, then the export queue.

        Only the first call starts the work, so it's safe to call from several signal handlers.
        Later calls wait up to their own timeout for that same work to finish.
        The work runs in a daemon thread and is abandoned after the timeout,
        so a hanging exporter can't keep the process from exiting.
        Returns whether everything finished in time.
        """
        if timeout_millis is None:
            timeout_millis = self.shutdown_timeout_millis

        with self._shutdown_lock:
            first_call = self._shutdown_thread is None
            if first_call:
                self._is_shutdown = True
                self._shutdown_thread = Thread(
                    target=self._drain, args=(int(timeout_millis),), name='tracesift_pipeline_shutdown', daemon=True
                )
                self._shutdown_thread.start()
            thread = self._shutdown_thread

        if thread is current_thread():
            # Called by one of the components being drained.
            return self._shutdown_result
        thread.join(timeout_millis / 1000)
        if thread.is_alive():
            if first_call:
                logger.warning(
                    'Timed out after %sms shutting down the trace pipeline, abandoning export', timeout_millis
                )
                self._shutdown_result = False
            return False
        return self._shutdown_result

    def _drain(self, timeout_millis: int) -> None:
        components = (*self.processors, self.export_queue)
        for component in components:
            try:
                component.force_flush(timeout_millis)
            except Exception:
                logger.exception('Error flushing %s', type(component).__name__)
                self._shutdown_result = False
        for component in components:
            try:
                component.shutdown()
            except Exception:
                logger.exception('Error shutting down %s', type(component).__name__)
                self._shutdown_result = False
