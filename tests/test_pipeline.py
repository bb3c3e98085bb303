from __future__ import annotations

import logging
import random
import threading

import pytest
from dirty_equals import IsFloat, IsStr
from inline_snapshot import snapshot
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.trace import format_trace_id
from opentelemetry.trace.status import StatusCode

from tracesift import (
    Decision,
    DurationClassifier,
    ErrorCapturingProcessor,
    ExportQueue,
    NoOpExportQueue,
    PipelineCoordinator,
    ProcessorExportQueue,
    RuleBasedSampler,
    SamplingRule,
    Span,
    SpanTime,
    TailProcessor,
    is_export_eligible,
)
from tracesift.testing import CaptureSift, IncrementalIdGenerator, TestExporter, TimeGenerator


class RecordingProcessor(TailProcessor):
    def __init__(self, calls: list[str], name: str = 'processor') -> None:
        self.calls = calls
        self.name = name

    def on_end(self, span: Span) -> None:
        self.calls.append(f'on_end:{self.name}')

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        self.calls.append(f'flush:{self.name}')
        return True

    def shutdown(self) -> None:
        self.calls.append(f'shutdown:{self.name}')


class RecordingQueue(ExportQueue):
    def __init__(self, calls: list[str]) -> None:
        self.calls = calls
        self.spans: list[Span] = []

    def enqueue(self, span: Span) -> None:
        self.spans.append(span)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        self.calls.append('flush:queue')
        return True

    def shutdown(self) -> None:
        self.calls.append('shutdown:queue')


def make_coordinator(exporter: TestExporter, step_ns: int = 1_000_000_000) -> PipelineCoordinator:
    return PipelineCoordinator(
        RuleBasedSampler(),
        export_queue=ProcessorExportQueue(SimpleSpanProcessor(exporter)),
        id_generator=IncrementalIdGenerator(),
        ns_timestamp_generator=TimeGenerator(step_ns=step_ns),
    )


def make_span(path: str, trace_id: str = '4bf92f3577b34da6a3ce929dffffffff', **attributes: object) -> Span:
    return Span(
        trace_id=trace_id,
        span_id='00f067aa0ba902b7',
        name=f'GET {path}',
        attributes={'http.target': path, **attributes},  # type: ignore[dict-item]
        start_time=SpanTime(10, 0),
        end_time=SpanTime(10, 50_000_000),
    )


def test_sampled_span_is_exported(capsift: CaptureSift) -> None:
    with capsift.coordinator.span('GET /api/v1/reports/7', attributes={'http.target': '/api/v1/reports/7'}):
        pass

    assert capsift.exporter.exported_spans_as_dict() == snapshot(
        [
            {
                'name': 'GET /api/v1/reports/7',
                'context': {'trace_id': 1, 'span_id': 1, 'is_remote': False},
                'parent': None,
                'start_time': 1000000000,
                'end_time': 2000000000,
                'attributes': {
                    'http.target': '/api/v1/reports/7',
                    'sampling.reason': 'probabilistic',
                    'sampling.rule': 'reports',
                    'sampling.rate': 0.5,
                    'duration_ms': 1000.0,
                    'performance_class': 'slow',
                },
            }
        ]
    )


def test_dropped_span_is_not_exported(capsift: CaptureSift) -> None:
    with capsift.coordinator.span('GET /health', attributes={'http.target': '/health'}) as span:
        assert span.head_decision is Decision.DROP

    assert capsift.exporter.exported_spans == []
    assert span.ended
    # Enrichment still happens for dropped spans.
    assert span.attributes == {'http.target': '/health', 'duration_ms': 1000.0, 'performance_class': 'slow'}


def test_slow_dropped_span_is_rescued(exporter: TestExporter) -> None:
    coordinator = make_coordinator(exporter, step_ns=3_000_000_000)
    with coordinator.span('GET /health', attributes={'http.target': '/health'}) as span:
        assert span.head_decision is Decision.DROP

    assert exporter.exported_spans_as_dict() == snapshot(
        [
            {
                'name': 'GET /health',
                'context': {'trace_id': 1, 'span_id': 1, 'is_remote': False},
                'parent': None,
                'start_time': 3000000000,
                'end_time': 6000000000,
                'attributes': {
                    'http.target': '/health',
                    'duration_ms': 3000.0,
                    'slow_request': True,
                    'slow_request.threshold_ms': 2000.0,
                    'slow_request.exceeded_by_ms': 1000.0,
                    'performance_class': 'critical',
                },
            }
        ]
    )


def test_error_dropped_span_is_rescued(capsift: CaptureSift) -> None:
    with capsift.coordinator.span('GET /health', attributes={'http.target': '/health'}) as span:
        assert span.head_decision is Decision.DROP
        span.attributes['http.status_code'] = 503

    assert capsift.exporter.exported_spans_as_dict() == snapshot(
        [
            {
                'name': 'GET /health',
                'context': {'trace_id': 1, 'span_id': 1, 'is_remote': False},
                'parent': None,
                'start_time': 1000000000,
                'end_time': 2000000000,
                'attributes': {
                    'http.target': '/health',
                    'http.status_code': 503,
                    'duration_ms': 1000.0,
                    'performance_class': 'slow',
                    'error_captured': True,
                    'error_status_code': 503,
                    'error_class': 'server_error',
                },
            }
        ]
    )


def test_error_status_known_at_start_is_head_sampled(capsift: CaptureSift) -> None:
    with capsift.coordinator.span('GET /health', attributes={'http.target': '/health', 'http.status_code': 500}):
        pass

    [span] = capsift.exporter.exported_spans_as_dict()
    assert span['attributes'] == {
        'http.target': '/health',
        'http.status_code': 500,
        'sampling.reason': 'error_response',
        'sampling.rule': 'error',
        'duration_ms': 1000.0,
        'performance_class': 'slow',
        'error_captured': True,
        'error_status_code': 500,
        'error_class': 'server_error',
    }


def test_exception_marks_span_as_error(capsift: CaptureSift) -> None:
    with pytest.raises(ValueError, match='boom'):
        with capsift.coordinator.span('GET /health', attributes={'http.target': '/health'}):
            raise ValueError('boom')

    assert capsift.exporter.exported_spans_as_dict() == snapshot(
        [
            {
                'name': 'GET /health',
                'context': {'trace_id': 1, 'span_id': 1, 'is_remote': False},
                'parent': None,
                'start_time': 1000000000,
                'end_time': 2000000000,
                'attributes': {
                    'http.target': '/health',
                    'exception.type': 'ValueError',
                    'exception.message': 'boom',
                    'duration_ms': 1000.0,
                    'performance_class': 'slow',
                    'error_captured': True,
                },
                'status': 'ERROR',
            }
        ]
    )
    assert capsift.exporter.exported_spans[0].status.description == 'ValueError: boom'


def test_nested_spans_share_trace(capsift: CaptureSift) -> None:
    with capsift.coordinator.span('parent', attributes={'http.target': '/api/v1/reports/1'}) as parent:
        with capsift.coordinator.span('child', parent=parent) as child:
            assert child.trace_id == parent.trace_id
            assert child.parent_span_id == parent.span_id

    assert capsift.exporter.exported_spans_as_dict() == snapshot(
        [
            {
                'name': 'child',
                'context': {'trace_id': 1, 'span_id': 2, 'is_remote': False},
                'parent': {'trace_id': 1, 'span_id': 1, 'is_remote': False},
                'start_time': 2000000000,
                'end_time': 3000000000,
                'attributes': {
                    'sampling.reason': 'default',
                    'sampling.rule': 'default',
                    'sampling.rate': 0.01,
                    'duration_ms': 1000.0,
                    'performance_class': 'slow',
                },
            },
            {
                'name': 'parent',
                'context': {'trace_id': 1, 'span_id': 1, 'is_remote': False},
                'parent': None,
                'start_time': 1000000000,
                'end_time': 4000000000,
                'attributes': {
                    'http.target': '/api/v1/reports/1',
                    'sampling.reason': 'probabilistic',
                    'sampling.rule': 'reports',
                    'sampling.rate': 0.5,
                    'duration_ms': 3000.0,
                    'slow_request': True,
                    'slow_request.threshold_ms': 2000.0,
                    'slow_request.exceeded_by_ms': 1000.0,
                    'performance_class': 'critical',
                },
            },
        ]
    )


def test_explicit_trace_id(capsift: CaptureSift) -> None:
    # 0x80000000 / 0xFFFFFFFF is above the 0.5 rate of the reports rule.
    trace_id = '4bf92f3577b34da6a3ce929d80000000'
    with capsift.coordinator.span('a', attributes={'http.target': '/api/v1/reports/1'}, trace_id=trace_id) as span:
        assert span.trace_id == trace_id
        assert span.head_decision is Decision.DROP
    assert capsift.exporter.exported_spans == []


def test_on_end_runs_once() -> None:
    queue = RecordingQueue([])
    coordinator = PipelineCoordinator(export_queue=queue)
    span = make_span('/api/v1/things')
    coordinator.on_start(span)

    assert coordinator.on_end(span) is True
    assert coordinator.on_end(span) is False
    assert queue.spans == [span]


def test_span_without_head_decision_is_dropped() -> None:
    queue = RecordingQueue([])
    coordinator = PipelineCoordinator(export_queue=queue)
    span = make_span('/api/v1/things')

    assert coordinator.on_end(span) is False
    assert span.head_decision is Decision.DROP
    assert queue.spans == []


def test_tail_processors_run_in_order() -> None:
    calls: list[str] = []
    coordinator = PipelineCoordinator(
        processors=[RecordingProcessor(calls, 'first'), RecordingProcessor(calls, 'second')],
        export_queue=RecordingQueue(calls),
    )
    span = make_span('/x')
    coordinator.on_start(span)
    coordinator.on_end(span)
    assert calls == ['on_end:first', 'on_end:second']


def test_default_coordinator() -> None:
    coordinator = PipelineCoordinator()
    assert coordinator.sampler.get_description() == 'AlwaysSampleSampler{development}'
    assert [type(p) for p in coordinator.processors] == [DurationClassifier, ErrorCapturingProcessor]
    assert isinstance(coordinator.export_queue, NoOpExportQueue)

    span = make_span('/health')
    result = coordinator.on_start(span)
    assert result.decision is Decision.RECORD_AND_SAMPLE
    assert coordinator.on_end(span) is True


def test_is_export_eligible() -> None:
    span = make_span('/x')
    assert not is_export_eligible(span)

    span.head_decision = Decision.DROP
    assert not is_export_eligible(span)

    span.head_decision = Decision.RECORD_ONLY
    assert not is_export_eligible(span)

    span.head_decision = Decision.RECORD_AND_SAMPLE
    assert is_export_eligible(span)

    span.head_decision = Decision.DROP
    span.attributes['slow_request'] = True
    assert is_export_eligible(span)

    span.attributes['slow_request'] = False
    span.attributes['error_captured'] = True
    assert is_export_eligible(span)

    # Only a real `True` counts.
    span.attributes['error_captured'] = 'true'
    assert not is_export_eligible(span)


def test_error_spans_are_never_lost() -> None:
    queue = RecordingQueue([])
    coordinator = PipelineCoordinator(RuleBasedSampler([SamplingRule(r'^/api/', 0.01, 'api')]), export_queue=queue)
    rng = random.Random(2024)
    n = 1000
    for _ in range(n):
        span = make_span('/api/v1/things', trace_id=format_trace_id(rng.getrandbits(128)))
        coordinator.on_start(span)
        span.attributes['http.status_code'] = rng.choice([400, 404, 500, 502])
        assert coordinator.on_end(span) is True
    assert len(queue.spans) == n


def test_no_export_after_shutdown(capsift: CaptureSift) -> None:
    assert capsift.coordinator.shutdown() is True
    assert capsift.coordinator.is_shutdown
    assert capsift.exporter.shutdown_called

    with capsift.coordinator.span('GET /api/v1/reports/7', attributes={'http.target': '/api/v1/reports/7'}) as span:
        pass
    assert span.head_decision is Decision.RECORD_AND_SAMPLE
    assert capsift.exporter.exported_spans == []


def test_shutdown_order() -> None:
    calls: list[str] = []
    coordinator = PipelineCoordinator(
        processors=[RecordingProcessor(calls, 'first'), RecordingProcessor(calls, 'second')],
        export_queue=RecordingQueue(calls),
    )
    assert coordinator.shutdown() is True
    assert calls == [
        'flush:first',
        'flush:second',
        'flush:queue',
        'shutdown:first',
        'shutdown:second',
        'shutdown:queue',
    ]


def test_shutdown_is_idempotent() -> None:
    calls: list[str] = []
    coordinator = PipelineCoordinator(processors=[RecordingProcessor(calls)], export_queue=RecordingQueue(calls))
    assert coordinator.shutdown() is True
    assert coordinator.shutdown() is True
    assert calls.count('shutdown:processor') == 1
    assert calls.count('shutdown:queue') == 1


def test_concurrent_shutdown() -> None:
    calls: list[str] = []
    coordinator = PipelineCoordinator(processors=[RecordingProcessor(calls)], export_queue=RecordingQueue(calls))
    barrier = threading.Barrier(8)
    results: list[bool] = []

    def shutdown() -> None:
        barrier.wait()
        results.append(coordinator.shutdown())

    threads = [threading.Thread(target=shutdown) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results == [True] * 8
    assert calls.count('shutdown:queue') == 1


class BlockingQueue(NoOpExportQueue):
    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        self.started.set()
        self.release.wait(5)
        return True


def test_shutdown_timeout(caplog: pytest.LogCaptureFixture) -> None:
    queue = BlockingQueue()
    coordinator = PipelineCoordinator(export_queue=queue, shutdown_timeout_millis=50)
    try:
        with caplog.at_level(logging.WARNING, logger='tracesift'):
            assert coordinator.shutdown() is False
    finally:
        queue.release.set()

    assert [r.getMessage() for r in caplog.records] == [
        'Timed out after 50ms shutting down the trace pipeline, abandoning export'
    ]
    assert coordinator.shutdown() is False


def test_shutdown_while_draining(caplog: pytest.LogCaptureFixture) -> None:
    queue = BlockingQueue()
    coordinator = PipelineCoordinator(export_queue=queue, shutdown_timeout_millis=5000)
    results: list[bool] = []
    first = threading.Thread(target=lambda: results.append(coordinator.shutdown()))
    first.start()
    try:
        assert queue.started.wait(5)
        with caplog.at_level(logging.WARNING, logger='tracesift'):
            # The export queue is still being flushed, so the pipeline isn't shut down yet.
            assert coordinator.shutdown(timeout_millis=20) is False
        assert caplog.records == []
    finally:
        queue.release.set()
        first.join(5)

    assert results == [True]
    assert coordinator.shutdown() is True


class FailingQueue(RecordingQueue):
    def force_flush(self, timeout_millis: int = 30000) -> bool:
        raise RuntimeError('collector unreachable')


def test_shutdown_errors_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    calls: list[str] = []
    coordinator = PipelineCoordinator(processors=[RecordingProcessor(calls)], export_queue=FailingQueue(calls))
    with caplog.at_level(logging.ERROR, logger='tracesift'):
        assert coordinator.shutdown() is False

    [record] = caplog.records
    assert record.getMessage() == 'Error flushing FailingQueue'
    assert record.exc_info is not None
    # The queue is still shut down after failing to flush.
    assert calls == ['flush:processor', 'shutdown:processor', 'shutdown:queue']


class ExplodingProcessor(TailProcessor):
    def on_end(self, span: Span) -> None:
        raise RuntimeError('processor bug')


def test_internal_exception_in_tail_processor(caplog: pytest.LogCaptureFixture, exporter: TestExporter) -> None:
    coordinator = PipelineCoordinator(
        RuleBasedSampler(),
        [ExplodingProcessor(), DurationClassifier(), ErrorCapturingProcessor()],
        ProcessorExportQueue(SimpleSpanProcessor(exporter)),
    )
    span = make_span('/health')
    coordinator.on_start(span)
    span.attributes['http.status_code'] = 500

    with caplog.at_level(logging.ERROR, logger='tracesift'):
        assert coordinator.on_end(span) is True

    [record] = caplog.records
    assert record.getMessage() == IsStr(regex=r'Caught an internal error in tracesift\..*')
    [exported] = exporter.exported_spans_as_dict()
    assert exported['attributes'] == {
        'http.target': '/health',
        'http.status_code': 500,
        'duration_ms': IsFloat(approx=50.0),
        'performance_class': 'fast',
        'error_captured': True,
        'error_status_code': 500,
        'error_class': 'server_error',
    }


class BrokenQueue(NoOpExportQueue):
    def enqueue(self, span: Span) -> None:
        raise RuntimeError('queue bug')


def test_internal_exception_in_export_queue(caplog: pytest.LogCaptureFixture) -> None:
    coordinator = PipelineCoordinator(export_queue=BrokenQueue())
    span = make_span('/x')
    coordinator.on_start(span)
    with caplog.at_level(logging.ERROR, logger='tracesift'):
        assert coordinator.on_end(span) is False
    assert len(caplog.records) == 1


def test_status_is_unset_by_default(capsift: CaptureSift) -> None:
    with capsift.coordinator.span('GET /api/v1/reports/7') as span:
        pass
    assert span.status is StatusCode.UNSET
    assert 'status' not in capsift.exporter.exported_spans_as_dict()[0]
